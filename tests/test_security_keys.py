import pytest

from couchlogin.service.errors import UpstreamStoreFailure
from couchlogin.service.security_keys import (
    CloudantSecurityAdapter,
    CouchSecurityAdapter,
    credential_id,
    owner_from_roles,
    owner_role,
    retry_on_conflict,
    trim_roles,
)
from couchlogin.storage.errors import DocumentConflict
from couchlogin.storage.memory import MemoryServer

from conftest import FakeClock


async def _couch(clock=None):
    server = MemoryServer(databases=["_users", "notes$alice"])
    adapter = CouchSecurityAdapter(server, "_users", clock=clock or FakeClock())
    await adapter.setup()
    return server, adapter


def test_owner_marker_round_trip():
    roles = [owner_role("alice"), "user", "admin"]
    assert roles[0] == "user:alice"
    assert owner_from_roles(roles) == "alice"
    assert owner_from_roles(["user", "admin"]) is None


def test_trim_roles_dedupes_and_strips():
    assert trim_roles([" user ", "user", "", "admin", None]) == ["user", "admin"]


async def test_retry_on_conflict_retries_then_succeeds():
    calls = []

    async def _op():
        calls.append(1)
        if len(calls) == 1:
            raise DocumentConflict("conflict")
        return "done"

    assert await retry_on_conflict(_op, attempts=2) == "done"
    assert len(calls) == 2


async def test_retry_on_conflict_exhaustion_is_upstream_failure():
    calls = []

    async def _op():
        calls.append(1)
        raise DocumentConflict("conflict")

    with pytest.raises(UpstreamStoreFailure) as excinfo:
        await retry_on_conflict(_op, attempts=3, description="test update")
    assert len(calls) == 3
    assert isinstance(excinfo.value.cause, DocumentConflict)


async def test_store_key_writes_credentials_doc_with_owner_role():
    server, adapter = await _couch()
    await adapter.store_key("alice", "key1", "pw", 2000, 1000, ["user"])
    doc = await server.database("_users").get(credential_id("key1"))
    assert doc["name"] == "key1"
    assert doc["user_id"] == "alice"
    assert doc["roles"] == ["user:alice", "user"]
    assert doc["expires"] == 2000


async def test_update_key_keeps_owner_and_replaces_roles():
    server, adapter = await _couch()
    await adapter.store_key("alice", "key1", "pw", 2000, 1000, ["user"])
    await adapter.update_key("key1", expires=5000, refreshed=3000, roles=["user", "admin", "user:mallory"])
    doc = await server.database("_users").get(credential_id("key1"))
    assert doc["roles"] == ["user:alice", "user", "admin"]
    assert doc["expires"] == 5000
    assert doc["refreshed"] == 3000


async def test_update_key_for_revoked_key_is_noop():
    _, adapter = await _couch()
    await adapter.update_key("missing", expires=10)


async def test_remove_keys_accepts_one_or_many():
    server, adapter = await _couch()
    for key in ("a", "b", "c"):
        await adapter.store_key("alice", key, "pw", 2000, 1000)
    await adapter.remove_keys("a")
    await adapter.remove_keys(["b", "c", "never-existed"])
    rows = await server.database("_users").all_docs(
        [credential_id(k) for k in "abc"], include_docs=False
    )
    assert rows == []


async def test_authorize_keys_is_idempotent():
    server, adapter = await _couch()
    await adapter.authorize_keys("alice", "notes$alice", ["k1", "k2"])
    await adapter.authorize_keys("alice", "notes$alice", ["k2", "k1"])
    security = await server.get_security("notes$alice")
    assert sorted(security["members"]["names"]) == ["k1", "k2"]


async def test_deauthorize_keys_leaves_other_members():
    server, adapter = await _couch()
    await adapter.authorize_keys("alice", "notes$alice", ["k1", "k2", "k3"])
    await adapter.deauthorize_keys("notes$alice", {"k1", "k3"})
    security = await server.get_security("notes$alice")
    assert security["members"]["names"] == ["k2"]


async def test_init_security_merges_roles():
    server, adapter = await _couch()
    await adapter.init_security("notes$alice", ["admins"], ["members"])
    await adapter.init_security("notes$alice", ["admins"], ["members", "extra"])
    security = await server.get_security("notes$alice")
    assert security["admins"]["roles"] == ["admins"]
    assert security["members"]["roles"] == ["members", "extra"]


async def test_remove_expired_keys_only_drops_expired_credentials():
    clock = FakeClock(10_000)
    server, adapter = await _couch(clock)
    await adapter.store_key("alice", "old", "pw", 9_000, 1_000)
    await adapter.store_key("alice", "live", "pw", 20_000, 1_000)
    removed = await adapter.remove_expired_keys()
    assert removed == ["old"]
    assert (await server.database("_users").get(credential_id("live")))["name"] == "live"


async def test_cloudant_grants_permissions_per_key():
    server = MemoryServer(databases=["notes"])
    adapter = CloudantSecurityAdapter(server)
    key, password = await adapter.issue_api_key()
    assert server.issued_api_keys[key] == password
    await adapter.authorize_keys("alice", "notes", [key], None, ["user"])
    security = await server.get_security("notes")
    assert security["cloudant"][key] == ["user:alice", "_reader", "_replicator", "user"]
    await adapter.deauthorize_keys("notes", key)
    assert key not in (await server.get_security("notes"))["cloudant"]
