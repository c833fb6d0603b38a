"""Key/value stores holding session tokens with a time-to-live.

All backends share the per-key lock registry of :class:`TokenStore`, so two
operations on the same key never interleave while different keys run in
parallel.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple

from couchlogin.logging import get_logger
from couchlogin.storage.common import KeyInput, as_key_set
from couchlogin.storage.models import now_ms

logger = get_logger(__name__)

_UNSAFE_FILENAME = re.compile(r'[/\\?<>:*|"\x00-\x1f\x80-\x9f]')


class TokenStore:
    """Base class: TTL semantics, key normalization and per-key ordering."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def store(self, key: str, ttl_ms: int, value: str) -> None:
        """Write ``value`` under ``key``; a non-positive TTL deletes the key."""
        if ttl_ms <= 0:
            await self.delete(key)
            return
        async with self._key_lock(key):
            await self._store(key, ttl_ms, value)

    async def get(self, key: str) -> Optional[str]:
        async with self._key_lock(key):
            return await self._get(key)

    async def delete(self, keys: KeyInput) -> int:
        """Delete one or many keys; returns how many existed."""
        removed = 0
        for key in sorted(as_key_set(keys)):
            async with self._key_lock(key):
                if await self._delete(key):
                    removed += 1
        return removed

    async def quit(self) -> None:
        return None

    async def _store(self, key: str, ttl_ms: int, value: str) -> None:
        raise NotImplementedError

    async def _get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def _delete(self, key: str) -> bool:
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    """Process-local store; entries vanish with the process."""

    def __init__(self) -> None:
        super().__init__()
        self._entries: Dict[str, Tuple[str, int]] = {}

    async def _store(self, key: str, ttl_ms: int, value: str) -> None:
        self._entries[key] = (value, now_ms() + ttl_ms)

    async def _get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expire = entry
        if expire <= now_ms():
            del self._entries[key]
            return None
        return value

    async def _delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def quit(self) -> None:
        self._entries.clear()


class FileTokenStore(TokenStore):
    """One JSON file ``{data, expire}`` per key under ``root``."""

    def __init__(self, root: str) -> None:
        super().__init__()
        self.root = Path(root).resolve()
        logger.info("file_token_store_loaded", root=str(self.root))

    def _path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_FILENAME.sub('_', key)}.json"

    def _write_file(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.parent / f"{path.name}.{os.getpid()}.tmp"
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)

    def _read_file(self, path: Path) -> Optional[dict]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("token_file_unreadable", path=str(path), error=str(exc))
            return None

    @staticmethod
    def _remove_file(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    async def _store(self, key: str, ttl_ms: int, value: str) -> None:
        payload = json.dumps({"data": value, "expire": now_ms() + ttl_ms})
        await asyncio.to_thread(self._write_file, self._path(key), payload)

    async def _get(self, key: str) -> Optional[str]:
        path = self._path(key)
        record = await asyncio.to_thread(self._read_file, path)
        if not record:
            return None
        if int(record.get("expire") or 0) > now_ms():
            return record.get("data")
        await asyncio.to_thread(self._remove_file, path)
        return None

    async def _delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove_file, self._path(key))
