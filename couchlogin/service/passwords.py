from __future__ import annotations

import asyncio
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from argon2.low_level import Type, hash_secret_raw

from couchlogin.logging import get_logger

logger = get_logger(__name__)

ARGON2ID = "argon2id"
KEY_LENGTH = 32
SALT_BYTES = 16
# Records written before the argon2 switch: PBKDF2-HMAC-SHA1, 20-byte key
LEGACY_KEY_LENGTH = 20
LEGACY_ITERATIONS = 10


@dataclass
class PasswordHash:
    salt: str
    derived_key: str
    iterations: int
    algo: Optional[str] = ARGON2ID
    memory_cost: Optional[int] = None
    parallelism: Optional[int] = None

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "salt": self.salt,
            "derived_key": self.derived_key,
            "iterations": self.iterations,
        }
        if self.algo:
            doc["algo"] = self.algo
            doc["memory_cost"] = self.memory_cost
            doc["parallelism"] = self.parallelism
        return doc


class PasswordHasher:
    """Salted, iterated key derivation for passwords and session secrets."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    def _argon2(
        self, password: str, salt: str, time_cost: int, memory_cost: int, parallelism: int
    ) -> str:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt.encode("utf-8"),
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=KEY_LENGTH,
            type=Type.ID,
        ).hex()

    @staticmethod
    def _pbkdf2(password: str, salt: str, iterations: int) -> str:
        return hashlib.pbkdf2_hmac(
            "sha1",
            password.encode("utf-8"),
            salt.encode("utf-8"),
            iterations,
            dklen=LEGACY_KEY_LENGTH,
        ).hex()

    def hash(self, password: str) -> PasswordHash:
        salt = os.urandom(SALT_BYTES).hex()
        derived = self._argon2(
            password, salt, self.time_cost, self.memory_cost, self.parallelism
        )
        return PasswordHash(
            salt=salt,
            derived_key=derived,
            iterations=self.time_cost,
            algo=ARGON2ID,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
        )

    def verify(self, record: Optional[Mapping[str, Any]], password: Optional[str]) -> bool:
        """Constant-time check of ``password`` against a stored hash record.

        Missing salt, key or password simply fail; there is no distinct
        mismatch error.
        """
        if not record or password is None:
            return False
        salt = record.get("salt")
        expected = record.get("derived_key")
        if not salt or not expected:
            return False
        algo = record.get("algo")
        if algo is None:
            derived = self._pbkdf2(
                password, salt, int(record.get("iterations") or LEGACY_ITERATIONS)
            )
        elif algo == ARGON2ID:
            derived = self._argon2(
                password,
                salt,
                int(record.get("iterations") or self.time_cost),
                int(record.get("memory_cost") or self.memory_cost),
                int(record.get("parallelism") or self.parallelism),
            )
        else:
            logger.warning("password_algo_unsupported", algo=algo)
            return False
        return hmac.compare_digest(derived, str(expected))

    def needs_upgrade(self, record: Optional[Mapping[str, Any]]) -> bool:
        return bool(record) and record.get("algo") != ARGON2ID

    async def hash_async(self, password: str) -> PasswordHash:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(
        self, record: Optional[Mapping[str, Any]], password: Optional[str]
    ) -> bool:
        return await asyncio.to_thread(self.verify, record, password)


def hash_token(token: str) -> str:
    """sha256 hex digest used to store password-reset tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
