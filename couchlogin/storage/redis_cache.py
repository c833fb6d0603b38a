from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from couchlogin.logging import get_logger
from couchlogin.storage.errors import StoreUnavailable
from couchlogin.storage.token_store import TokenStore

logger = get_logger(__name__)


class RedisTokenStore(TokenStore):
    """Redis-backed token store; TTL is enforced by Redis itself (PSETEX)."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ) -> None:
        super().__init__()
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving sessions from it."""
        from redis import Redis

        # Short-lived synchronous client so the async one is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _store(self, key: str, ttl_ms: int, value: str) -> None:
        try:
            await self.client.psetex(key, ttl_ms, value)
        except RedisError as exc:
            logger.error("redis_token_store_failed", key=key, error=str(exc))
            raise StoreUnavailable("Token store unavailable", {"key": key}) from exc

    async def _get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            logger.error("redis_token_get_failed", key=key, error=str(exc))
            raise StoreUnavailable("Token store unavailable", {"key": key}) from exc

    async def _delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except RedisError as exc:
            logger.error("redis_token_delete_failed", key=key, error=str(exc))
            raise StoreUnavailable("Token store unavailable", {"key": key}) from exc

    async def quit(self) -> None:
        await self.client.aclose()
