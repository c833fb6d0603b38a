from __future__ import annotations

import re
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

from couchlogin.config import DatabaseType, UserDBSettings
from couchlogin.logging import get_logger
from couchlogin.service.errors import UpstreamStoreFailure
from couchlogin.service.security_keys import SecurityKeyAdapter
from couchlogin.storage.common import DatabaseServer, KeyInput, as_key_set
from couchlogin.storage.design import load_design_docs
from couchlogin.storage.errors import DatabaseExists, DocumentNotFound, StorageError
from couchlogin.storage.models import DBConfig, PersonalDB, UserRecord, now_ms
from couchlogin.storage.users import UserRecordStore

logger = get_logger(__name__)

_ESCAPE = re.compile(r"%([0-9a-f]{2})")
# Unreserved characters quote() leaves alone but database names cannot hold
_EXTRA_ESCAPES = {".": "%2E", "-": "%2D", "~": "%7E"}


def legal_db_name(identity: str) -> str:
    """Turn a user id into a legal database name fragment.

    ``My.Name@x.com`` -> ``my(2e)name(40)x(2e)com``
    """
    encoded = quote(identity.lower(), safe="")
    for char, escape in _EXTRA_ESCAPES.items():
        encoded = encoded.replace(char, escape)
    return _ESCAPE.sub(lambda m: f"({m.group(1)})", encoded.lower())


def _union(base: List[str], extra: Optional[Iterable[str]]) -> List[str]:
    merged = list(base)
    for role in extra or []:
        if role and role not in merged:
            merged.append(role)
    return merged


class DatabaseAccessCoordinator:
    """Provision personal databases and fan session grants out across them."""

    def __init__(
        self,
        server: DatabaseServer,
        adapter: SecurityKeyAdapter,
        users: UserRecordStore,
        settings: UserDBSettings,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.server = server
        self.adapter = adapter
        self.users = users
        self.settings = settings
        self._now = clock

    async def create_database(self, name: str) -> bool:
        """Create ``name``; False when it already exists."""
        try:
            await self.server.create_database(name)
        except DatabaseExists:
            return False
        except StorageError as exc:
            logger.error("database_create_failed", db=name, error=str(exc))
            raise UpstreamStoreFailure(f"cannot create database {name}", cause=exc) from exc
        return True

    async def remove_database(self, name: str) -> bool:
        """Destroy ``name``; False when it was already gone."""
        try:
            await self.server.destroy_database(name)
        except DocumentNotFound:
            logger.debug("database_already_removed", db=name)
            return False
        except StorageError as exc:
            logger.error("database_remove_failed", db=name, error=str(exc))
            raise UpstreamStoreFailure(f"cannot remove database {name}", cause=exc) from exc
        return True

    def compute_database_config(self, name: str, db_type: Optional[str] = None) -> DBConfig:
        """Merge the per-name model (or ``_default``) over the default roles."""
        roles = self.settings.default_security_roles
        config = DBConfig(
            name=name,
            admin_roles=list(roles.admins),
            member_roles=list(roles.members),
        )
        model = self.settings.model.get(name)
        default = self.settings.model.get("_default")
        if model is not None:
            config.permissions = list(model.permissions or [])
            config.design_docs = list(model.design_docs)
            config.type = db_type or (model.type.value if model.type else DatabaseType.PRIVATE.value)
            config.admin_roles = _union(config.admin_roles, model.admin_roles)
            config.member_roles = _union(config.member_roles, model.member_roles)
        elif default is not None:
            config.permissions = list(default.permissions or [])
            config.type = db_type or DatabaseType.PRIVATE.value
            # The default design docs only go into private databases
            if config.type == DatabaseType.PRIVATE.value:
                config.design_docs = list(default.design_docs)
        else:
            config.type = db_type or DatabaseType.PRIVATE.value
        config.delete_with_user = bool(getattr(self.settings.delete_with_user, config.type, False))
        return config

    def physical_name(self, user_id: str, db_name: str, db_type: str) -> str:
        if db_type == DatabaseType.SHARED.value:
            return db_name
        prefix = f"{self.settings.private_prefix}_" if self.settings.private_prefix else ""
        return f"{prefix}{db_name}${legal_db_name(user_id)}"

    async def provision_user_database(
        self,
        user: UserRecord,
        db_name: str,
        design_docs: Optional[List[str]] = None,
        db_type: str = DatabaseType.PRIVATE.value,
        permissions: Optional[List[str]] = None,
        admin_roles: Optional[List[str]] = None,
        member_roles: Optional[List[str]] = None,
    ) -> str:
        """Create (if needed) and secure a personal database; returns its physical name.

        Every live session of ``user`` is authorized on the new database.
        """
        final_name = self.physical_name(user.id, db_name, db_type)
        created = await self.create_database(final_name)
        if created:
            logger.info("personal_db_created", user_id=user.id, db=final_name)
        await self.adapter.init_security(final_name, admin_roles or [], member_roles or [])
        if design_docs:
            db = self.server.database(final_name)
            try:
                for design in load_design_docs(design_docs, self.settings.design_doc_dir):
                    await db.seed_design(design)
            except StorageError as exc:
                raise UpstreamStoreFailure(
                    f"cannot seed design docs into {final_name}", cause=exc
                ) from exc
            finally:
                await db.close()
        live_keys = user.live_session_keys(self._now())
        if live_keys:
            await self.adapter.authorize_keys(
                user.id, final_name, live_keys, permissions, user.roles
            )
        return final_name

    def effective_permissions(self, personal_db: PersonalDB) -> List[str]:
        """Explicit permissions, else the per-name model's, else ``_default``'s."""
        if personal_db.permissions is not None:
            return list(personal_db.permissions)
        model = self.settings.model.get(personal_db.name)
        if model is not None and model.permissions is not None:
            return list(model.permissions)
        default = self.settings.model.get("_default")
        if default is not None and default.permissions is not None:
            return list(default.permissions)
        return []

    async def authorize_user_across_databases(
        self,
        user_id: str,
        personal_dbs: Dict[str, PersonalDB],
        keys: KeyInput,
        roles: Optional[List[str]] = None,
    ) -> None:
        """Authorize ``keys`` on every personal database, one database at a time.

        The first failure propagates; databases already processed stay
        authorized.
        """
        key_set = sorted(as_key_set(keys))
        if not key_set:
            return
        for db_name, personal_db in personal_dbs.items():
            try:
                await self.adapter.authorize_keys(
                    user_id,
                    db_name,
                    key_set,
                    self.effective_permissions(personal_db),
                    roles,
                )
            except UpstreamStoreFailure:
                logger.error("authorize_keys_failed", user_id=user_id, db=db_name)
                raise

    async def deauthorize_user_across_databases(
        self, user: UserRecord, keys: KeyInput = None
    ) -> None:
        """Remove ``keys`` (default: every session of ``user``) from all personal DBs."""
        key_set = as_key_set(keys) if keys is not None else set(user.session_keys())
        if not key_set or not user.personal_dbs:
            return
        for db_name in user.personal_dbs:
            await self.adapter.deauthorize_keys(db_name, key_set)

    async def sweep_expired_keys(self) -> List[str]:
        """Revoke every session whose expiry has passed, across all users.

        Works on a snapshot of the ``expiredKeys`` index; user documents that
        changed since the snapshot fail the bulk save and are picked up again
        by the next sweep.
        """
        now = self._now()
        try:
            rows = await self.users.expired_sessions(now)
        except StorageError as exc:
            raise UpstreamStoreFailure("cannot query expired sessions", cause=exc) from exc
        keys_by_user: Dict[str, List[str]] = defaultdict(list)
        records: Dict[str, UserRecord] = {}
        for row in rows:
            value = row.value or {}
            user_id, key = value.get("user"), value.get("key")
            if not user_id or not key or not row.doc:
                continue
            record = records.setdefault(user_id, UserRecord.from_doc(row.doc))
            keys_by_user[user_id].append(key)
            record.session.pop(key, None)
        expired = [key for keys in keys_by_user.values() for key in keys]
        if not expired:
            return []
        await self.adapter.remove_keys(expired)
        for user_id, keys in keys_by_user.items():
            await self.deauthorize_user_across_databases(records[user_id], keys)
        try:
            results = await self.users.save_many(list(records.values()))
        except StorageError as exc:
            raise UpstreamStoreFailure("cannot save swept user documents", cause=exc) from exc
        for result in results:
            if not result.ok:
                logger.warning("sweep_user_save_skipped", user_id=result.id, error=result.error)
        logger.info("expired_keys_swept", keys=len(expired), users=len(records))
        return expired
