import asyncio

from couchlogin.storage.memory import MemoryServer
from couchlogin.storage.models import (
    ProviderLink,
    RequestContext,
    SessionEntry,
    UserRecord,
)
from couchlogin.storage.users import UserRecordStore


async def _store(**kwargs) -> UserRecordStore:
    server = MemoryServer(databases=["sl-users"])
    store = UserRecordStore(server.database("sl-users"), **kwargs)
    await store.setup()
    return store


async def test_lookups_by_username_email_and_session():
    store = await _store()
    user = UserRecord(
        id="alice",
        email="alice@example.com",
        session={"k1": SessionEntry(issued=1, refreshed=1, expires=100)},
    )
    await store.save(user)
    assert (await store.by_username("ALICE")).id == "alice"
    assert (await store.by_email("Alice@Example.com")).id == "alice"
    assert (await store.by_login("alice@example.com")).id == "alice"
    assert (await store.by_login("alice")).id == "alice"
    assert (await store.by_session("k1")).id == "alice"
    assert await store.by_session("k2") is None


async def test_unverified_email_is_still_indexed():
    store = await _store()
    await store.save(
        UserRecord(id="bob", unverified_email={"email": "bob@example.com", "token": "T"})
    )
    assert (await store.by_email("bob@example.com")).id == "bob"
    assert (await store.by_verify_email("T")).id == "bob"
    assert (await store.by_email_username("bob")).id == "bob"


async def test_provider_lookup_ignores_profile_id_case():
    store = await _store(providers=["github"])
    user = UserRecord(
        id="carol",
        providers=["github"],
        provider_data={"github": ProviderLink(profile={"id": "AbC123"})},
    )
    await store.save(user)
    assert (await store.by_provider("github", "abc123")).id == "carol"
    assert (await store.by_provider("github", "ABC123")).id == "carol"


async def test_expired_sessions_snapshot():
    store = await _store()
    await store.save(
        UserRecord(
            id="dave",
            session={
                "old": SessionEntry(issued=1, refreshed=1, expires=50),
                "new": SessionEntry(issued=1, refreshed=1, expires=500),
            },
        )
    )
    rows = await store.expired_sessions(100)
    assert [row.value for row in rows] == [{"key": "old", "user": "dave"}]
    assert rows[0].doc["_id"] == "dave"


async def test_existing_ids():
    store = await _store()
    await store.save(UserRecord(id="erin"))
    await store.save(UserRecord(id="erin1"))
    assert await store.existing_ids(["erin", "erin1", "erin2"]) == {"erin", "erin1"}


async def test_activity_log_is_capped_newest_first():
    store = await _store(activity_log_size=2)
    user = UserRecord(id="frank")
    for action in ("signup", "login", "logout"):
        await store.log_activity(user, action, "local", RequestContext(ip="1.2.3.4"))
    assert [entry.action for entry in user.activity] == ["logout", "login"]
    assert user.activity[0].ip == "1.2.3.4"


async def test_activity_log_disabled():
    store = await _store(activity_log_size=0)
    user = UserRecord(id="gina")
    await store.log_activity(user, "login", "local")
    assert user.activity == []


async def test_subscribe_deletions_receives_previous_body():
    store = await _store()
    user = await store.save(UserRecord(id="henry", email="henry@example.com"))
    seen = []

    async def _on_delete(deleted: UserRecord) -> None:
        seen.append(deleted)

    task = asyncio.create_task(store.subscribe_deletions(_on_delete))
    await asyncio.sleep(0)
    await store.remove(user)
    for _ in range(20):
        if seen:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    assert [record.email for record in seen] == ["henry@example.com"]
    assert await store.get("henry") is None
