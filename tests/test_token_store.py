import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from couchlogin.storage.errors import StoreUnavailable
from couchlogin.storage.redis_cache import RedisTokenStore
from couchlogin.storage.token_store import FileTokenStore, MemoryTokenStore


class _FakeRedis:
    """Minimal async stand-in for the redis client methods the store uses."""

    def __init__(self, fail: bool = False):
        self.values = {}
        self.ttls = {}
        self.fail = fail
        self.closed = False

    async def psetex(self, key, ttl_ms, value):
        if self.fail:
            raise RedisConnectionError("down")
        self.values[key] = value
        self.ttls[key] = ttl_ms

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("down")
        return self.values.get(key)

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


@pytest.fixture(params=["memory", "file"])
def token_store(request, tmp_path):
    if request.param == "memory":
        return MemoryTokenStore()
    return FileTokenStore(str(tmp_path / "sessions"))


async def test_store_get_delete(token_store):
    await token_store.store("session:a", 60_000, "payload-a")
    assert await token_store.get("session:a") == "payload-a"
    assert await token_store.delete("session:a") == 1
    assert await token_store.get("session:a") is None


async def test_delete_accepts_one_or_many(token_store):
    for key in ("k1", "k2", "k3"):
        await token_store.store(key, 60_000, key)
    assert await token_store.delete(["k1", "k2", "missing"]) == 2
    assert await token_store.delete("k3") == 1
    assert await token_store.delete(None) == 0


async def test_non_positive_ttl_removes_key(token_store):
    await token_store.store("gone", 60_000, "x")
    await token_store.store("gone", 0, "y")
    assert await token_store.get("gone") is None


async def test_expired_entry_reads_as_missing(token_store):
    await token_store.store("short", 1, "x")
    await asyncio.sleep(0.01)
    assert await token_store.get("short") is None


async def test_concurrent_writes_to_one_key_never_interleave(token_store):
    first = json.dumps({"writer": 1, "blob": "a" * 4096})
    second = json.dumps({"writer": 2, "blob": "b" * 4096})
    await asyncio.gather(
        token_store.store("same", 60_000, first),
        token_store.store("same", 60_000, second),
    )
    assert await token_store.get("same") in (first, second)
    assert not token_store._locks


async def test_file_store_sanitizes_key(tmp_path):
    store = FileTokenStore(str(tmp_path))
    await store.store("a/b:c", 60_000, "v")
    assert (tmp_path / "a_b_c.json").exists()
    assert await store.get("a/b:c") == "v"


async def test_redis_store_uses_psetex():
    client = _FakeRedis()
    store = RedisTokenStore("redis://localhost:6379/0", client=client)
    await store.store("k", 5000, "v")
    assert client.ttls["k"] == 5000
    assert await store.get("k") == "v"
    assert await store.delete(["k"]) == 1


async def test_redis_failure_raises_store_unavailable():
    store = RedisTokenStore("redis://localhost:6379/0", client=_FakeRedis(fail=True))
    with pytest.raises(StoreUnavailable):
        await store.store("k", 5000, "v")
    with pytest.raises(StoreUnavailable):
        await store.get("k")
