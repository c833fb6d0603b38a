from __future__ import annotations

import dataclasses
from typing import Callable, Optional

from couchlogin.logging import get_logger
from couchlogin.service.errors import SessionInvalidError
from couchlogin.service.passwords import PasswordHasher
from couchlogin.storage.common import KeyInput, as_key_set
from couchlogin.storage.models import SessionToken, now_ms
from couchlogin.storage.token_store import TokenStore

logger = get_logger(__name__)

TOKEN_PREFIX = "token"


def token_key(key: str) -> str:
    return f"{TOKEN_PREFIX}:{key}"


class SessionTokens:
    """Session tokens in the TokenStore, secret kept only as a hash."""

    def __init__(
        self,
        store: TokenStore,
        hasher: PasswordHasher,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self._now = clock

    async def store_token(self, token: SessionToken) -> SessionToken:
        """Persist ``token`` until its ``expires``; returns a copy without secrets.

        A token carrying a plain ``password`` is hashed first; one that already
        holds ``secret_hash`` is written as is.
        """
        stored = dataclasses.replace(token, roles=list(token.roles))
        if stored.password:
            secret = await self.hasher.hash_async(stored.password)
            stored.secret_hash = secret.to_doc()
            stored.password = None
        await self.store.store(
            token_key(stored.key), stored.expires - self._now(), stored.to_json()
        )
        return dataclasses.replace(stored, secret_hash=None)

    async def fetch_token(self, key: str) -> Optional[SessionToken]:
        """Stored token with its secret hash, or None when absent."""
        raw = await self.store.get(token_key(key))
        if not raw:
            return None
        return SessionToken.from_json(raw)

    async def confirm_token(self, key: str, password: str) -> SessionToken:
        token = await self.fetch_token(key)
        if token is None:
            raise SessionInvalidError("invalid token")
        if token.is_expired(self._now()):
            await self.delete_tokens(key)
            raise SessionInvalidError("invalid token")
        if not await self.hasher.verify_async(token.secret_hash, password):
            logger.warning("session_secret_mismatch", session_key=key)
            raise SessionInvalidError("invalid token")
        return dataclasses.replace(token, secret_hash=None)

    async def delete_tokens(self, keys: KeyInput) -> int:
        return await self.store.delete({token_key(k) for k in as_key_set(keys)})

    async def quit(self) -> None:
        await self.store.quit()
