from unittest import mock

import pytest

from couchlogin.config import SecuritySettings
from couchlogin.service.errors import (
    AuthenticationError,
    SessionInvalidError,
    UpstreamStoreFailure,
)
from couchlogin.service.security_keys import CloudantSecurityAdapter, credential_id
from couchlogin.service.sessions import all_roles, mint_session_key, url_safe_uuid
from couchlogin.storage.errors import DocumentNotFound, StoreUnavailable
from couchlogin.storage.models import ProviderLink, RequestContext, UserRecord

from conftest import Stack, make_settings

HOUR_MS = 3600 * 1000


def _security(**overrides):
    return SecuritySettings(
        hash_time_cost=1, hash_memory_cost=8, hash_parallelism=1, **overrides
    )


def test_url_safe_uuid_shape():
    value = url_safe_uuid()
    assert len(value) == 22
    assert "=" not in value and "+" not in value and "/" not in value


def test_minted_keys_never_start_with_reserved_characters():
    for _ in range(200):
        assert mint_session_key()[0] not in ("_", "-")


def test_all_roles_adds_provider_and_local_roles():
    user = UserRecord(
        id="alice",
        roles=["user"],
        local_roles=["editor"],
        providers=["local", "github"],
        provider_data={
            "github": ProviderLink(profile={"id": "1", "roles": ["_admin", "coder"]})
        },
    )
    roles = all_roles(user)
    assert roles[0] == "user"
    assert "provider.github" in roles
    assert "coder" in roles
    assert "UNDERSCORE_admin" in roles
    assert "editor" in roles


async def test_create_session_authorizes_personal_database(notes_stack):
    stack = await notes_stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice", "local", RequestContext(ip="10.0.0.1"))
    assert session.token and session.password
    assert session.ip == "10.0.0.1"
    assert session.token in await stack.member_names("notes$alice")
    assert session.user_dbs["notes"].endswith(f"{session.token}:{session.password}@localhost:5984/notes$alice")
    credential = await stack.auth_db.get(credential_id(session.token))
    assert credential["roles"][0] == "user:alice"
    user = await stack.users.get("alice")
    entry = user.session[session.token]
    assert entry.expires == session.expires
    assert entry.provider == "local"
    assert user.activity[0].action == "login"


async def test_confirm_session_checks_the_secret(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    token = await stack.engine.confirm_session(session.token, session.password)
    assert token.user_id == "alice"
    assert token.secret_hash is None
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session(session.token, "wrong")
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session("unknown", session.password)


async def test_token_store_never_holds_the_plain_secret(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    stored = await stack.tokens.fetch_token(session.token)
    assert stored.password is None
    assert stored.secret_hash["derived_key"] != session.password


async def test_session_one_millisecond_past_expiry_is_rejected_and_removed(stack, clock):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    clock.now = session.expires + 1
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session(session.token, session.password)
    assert await stack.tokens.fetch_token(session.token) is None


async def test_update_session_past_expiry_is_rejected(stack, clock):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    clock.now = session.expires + 1
    with pytest.raises(SessionInvalidError):
        await stack.engine.refresh_session(session.token)
    assert await stack.tokens.fetch_token(session.token) is None


async def test_refresh_is_monotonic_without_hard_limit(stack, clock):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    clock.advance(1000)
    first = await stack.engine.refresh_session(session.token)
    clock.advance(1000)
    second = await stack.engine.refresh_session(session.token)
    assert first.ends == 0
    assert second.expires >= first.expires
    assert second.expires == clock() + stack.engine.session_life_ms
    credential = await stack.auth_db.get(credential_id(session.token))
    assert credential["expires"] == second.expires


async def test_refresh_converges_to_hard_limit(clock):
    stack = await Stack(make_settings(security=_security(session_life=3600, session_max_life=10)), clock).setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    assert session.ends == clock() + 10_000
    assert session.expires <= session.ends
    for _ in range(3):
        clock.advance(2000)
        refreshed = await stack.engine.refresh_session(session.token)
        assert refreshed.expires == refreshed.ends == session.ends


async def test_refresh_heals_session_missing_from_user_document(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    user = await stack.users.get("alice")
    user.session.pop(session.token)
    await stack.users.save(user)
    await stack.engine.refresh_session(session.token)
    healed = await stack.users.get("alice")
    assert session.token in healed.session


async def test_sync_session_roles_propagates_new_roles(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    user = await stack.users.get("alice")
    user.roles.append("admin")
    await stack.users.save(user)
    updated = await stack.engine.sync_session_roles(session.token)
    assert "admin" in updated.roles
    assert updated.expires == session.expires
    stored = await stack.tokens.fetch_token(session.token)
    assert "admin" in stored.roles
    assert await stack.engine.sync_session_roles("unknown") is None


async def test_logout_user_by_key_revokes_every_session(notes_stack):
    stack = await notes_stack.setup()
    await stack.register("alice")
    sessions = [await stack.engine.create_session("alice") for _ in range(3)]
    await stack.engine.logout_user(None, sessions[0].token)
    for session in sessions:
        with pytest.raises(SessionInvalidError):
            await stack.engine.confirm_session(session.token, session.password)
        with pytest.raises(DocumentNotFound):
            await stack.auth_db.get(credential_id(session.token))
    user = await stack.users.get("alice")
    assert user.session == {}
    assert await stack.member_names("notes$alice") == []


async def test_logout_user_requires_an_identity(stack):
    await stack.setup()
    with pytest.raises(AuthenticationError):
        await stack.engine.logout_user()


async def test_logout_session_revokes_only_that_session(notes_stack):
    stack = await notes_stack.setup()
    await stack.register("alice")
    keep = await stack.engine.create_session("alice")
    drop = await stack.engine.create_session("alice")
    assert await stack.engine.logout_session(drop.token) is True
    user = await stack.users.get("alice")
    assert list(user.session) == [keep.token]
    assert await stack.member_names("notes$alice") == [keep.token]
    with pytest.raises(AuthenticationError):
        await stack.engine.logout_session(drop.token)


async def test_logout_others_keeps_current(stack):
    await stack.setup()
    await stack.register("alice")
    current = await stack.engine.create_session("alice")
    other = await stack.engine.create_session("alice")
    assert await stack.engine.logout_others(current.token) is True
    await stack.engine.confirm_session(current.token, current.password)
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session(other.token, other.password)
    assert await stack.engine.logout_others("unknown") is False


async def test_login_drops_sessions_that_already_expired(stack, clock):
    await stack.setup()
    await stack.register("alice")
    old = await stack.engine.create_session("alice")
    clock.now = old.expires + 1
    await stack.engine.create_session("alice")
    user = await stack.users.get("alice")
    assert old.token not in user.session


async def test_sweep_removes_only_expired_sessions(notes_stack, clock):
    stack = await notes_stack.setup()
    await stack.register("alice")
    await stack.register("bob")
    expired = {
        "alice": await stack.engine.create_session("alice"),
        "bob": await stack.engine.create_session("bob"),
    }
    clock.advance(stack.engine.session_life_ms - 600_000)
    live = {
        "alice": await stack.engine.create_session("alice"),
        "bob": await stack.engine.create_session("bob"),
    }
    clock.advance(700_000)

    removed = await stack.engine.remove_expired_keys()

    assert sorted(removed) == sorted(s.token for s in expired.values())
    for name in ("alice", "bob"):
        gone, kept = expired[name], live[name]
        assert await stack.tokens.fetch_token(gone.token) is None
        assert await stack.tokens.fetch_token(kept.token) is not None
        with pytest.raises(DocumentNotFound):
            await stack.auth_db.get(credential_id(gone.token))
        assert (await stack.auth_db.get(credential_id(kept.token)))["name"] == kept.token
        assert await stack.member_names(f"notes${name}") == [kept.token]
        user = await stack.users.get(name)
        assert list(user.session) == [kept.token]


async def test_active_sessions_never_outlive_their_hard_limit(clock):
    stack = await Stack(make_settings(security=_security(session_life=60, session_max_life=90)), clock).setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    for _ in range(5):
        clock.advance(20_000)
        if clock() > session.ends:
            break
        refreshed = await stack.engine.refresh_session(session.token)
        assert refreshed.expires <= refreshed.ends


async def test_login_event_is_emitted(stack):
    await stack.setup()
    await stack.register("alice")
    seen = []
    stack.events.on("login", lambda descriptor, provider: seen.append((descriptor.user_id, provider)))
    await stack.engine.create_session("alice", "local")
    assert seen == [("alice", "local")]


async def test_failed_logins_lock_the_account(clock):
    stack = await Stack(make_settings(security=_security(max_failed_logins=2, lockout_time=600)), clock).setup()
    user = await stack.register("alice")
    assert await stack.engine.handle_failed_login(user) is False
    assert await stack.engine.handle_failed_login(user) is False
    assert await stack.engine.handle_failed_login(user) is True
    stored = await stack.users.get("alice")
    assert stored.local.locked_until == clock() + 600_000
    assert stored.local.failed_login_attempts == 0


async def test_failed_user_write_surfaces_as_upstream_failure(stack):
    await stack.setup()
    await stack.register("alice")
    outage = StoreUnavailable("couch down")
    with mock.patch.object(stack.users, "save", side_effect=outage):
        with pytest.raises(UpstreamStoreFailure) as excinfo:
            await stack.engine.create_session("alice", "local")
    assert excinfo.value.doc == {"_id": "alice"}
    assert excinfo.value.cause is outage
    assert (await stack.users.get("alice")).session == {}


async def test_unreachable_token_store_is_an_upstream_failure(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice", "local")
    with mock.patch.object(stack.token_store, "get", side_effect=StoreUnavailable("redis down")):
        with pytest.raises(UpstreamStoreFailure):
            await stack.engine.confirm_session(session.token, session.password)


async def test_login_cleanup_failure_does_not_block_the_login(stack):
    await stack.setup()
    await stack.register("alice")
    with mock.patch.object(
        stack.engine, "logout_user_sessions", side_effect=UpstreamStoreFailure("mirror down")
    ):
        session = await stack.engine.create_session("alice", "local")
    assert session.token in (await stack.users.get("alice")).session


async def test_cloudant_sessions_use_issued_api_keys(notes_stack):
    stack = await notes_stack.setup()
    adapter = CloudantSecurityAdapter(stack.server)
    stack.engine.adapter = adapter
    stack.coordinator.adapter = adapter
    await stack.register("alice")

    session = await stack.engine.create_session("alice", "local")
    assert stack.server.issued_api_keys[session.token] == session.password
    granted = (await stack.security("notes$alice"))["cloudant"][session.token]
    assert granted[0] == "user:alice"
    assert "_writer" in granted and "user" in granted
    await stack.engine.confirm_session(session.token, session.password)

    refreshed = await stack.engine.refresh_session(session.token)
    assert refreshed.token == session.token

    await stack.engine.logout_session(session.token)
    cloudant = (await stack.security("notes$alice")).get("cloudant") or {}
    assert session.token not in cloudant
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session(session.token, session.password)


def _logout_during_user_load(stack, key, stale):
    original_get = stack.users.get
    state = {"fired": False}

    async def _get(user_id):
        loaded = await original_get(user_id)
        if not state["fired"]:
            state["fired"] = True
            await stack.engine.logout_session(key)
            if not stale:
                loaded = await original_get(user_id)
        return loaded

    return mock.patch.object(stack.users, "get", side_effect=_get)


async def test_refresh_racing_a_logout_does_not_revive_the_session(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    with _logout_during_user_load(stack, session.token, stale=True):
        with pytest.raises(SessionInvalidError):
            await stack.engine.refresh_session(session.token)
    assert await stack.tokens.fetch_token(session.token) is None
    user = await stack.users.get("alice")
    assert session.token not in user.session
    with pytest.raises(SessionInvalidError):
        await stack.engine.confirm_session(session.token, session.password)


async def test_role_sync_after_logout_does_not_heal_the_session(stack):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    with _logout_during_user_load(stack, session.token, stale=False):
        assert await stack.engine.sync_session_roles(session.token) is None
    assert await stack.tokens.fetch_token(session.token) is None
    user = await stack.users.get("alice")
    assert session.token not in user.session


async def test_sweep_keeps_a_session_expiring_exactly_now(stack, clock):
    await stack.setup()
    await stack.register("alice")
    session = await stack.engine.create_session("alice")
    clock.now = session.expires
    assert await stack.engine.remove_expired_keys() == []
    await stack.engine.confirm_session(session.token, session.password)

    clock.advance(1)
    assert await stack.engine.remove_expired_keys() == [session.token]
    assert await stack.tokens.fetch_token(session.token) is None
