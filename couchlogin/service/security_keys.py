"""Mirror session keys into the document database's own access control.

Two strategies share one interface:

- ``CouchSecurityAdapter`` writes a pseudo-user document per session key into
  the credentials database (``_users`` on CouchDB) and lists keys by name in
  each personal database's ``_security`` members.
- ``CloudantSecurityAdapter`` gets key material from the hosting provider's
  API key endpoint and grants per-key permission lists in the ``cloudant``
  section of the security document.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from couchlogin.logging import get_logger
from couchlogin.service.errors import UpstreamStoreFailure
from couchlogin.storage.common import DatabaseServer, KeyInput, as_key_set
from couchlogin.storage.design import (
    CREDENTIALS_DESIGN_ID,
    credentials_design_doc,
    view_path,
)
from couchlogin.storage.errors import DocumentConflict, DocumentNotFound, StorageError
from couchlogin.storage.models import now_ms

logger = get_logger(__name__)

T = TypeVar("T")

# Roles of a credentials doc start with this marker so the owning user can be
# recovered from the role list alone.
OWNER_ROLE_PREFIX = "user:"
CREDENTIAL_ID_PREFIX = "org.couchdb.user:"
DEFAULT_CLOUDANT_PERMISSIONS = ["_reader", "_replicator"]


def owner_role(user_id: str) -> str:
    return f"{OWNER_ROLE_PREFIX}{user_id}"


def owner_from_roles(roles: Iterable[str]) -> Optional[str]:
    for role in roles:
        if role.startswith(OWNER_ROLE_PREFIX):
            return role[len(OWNER_ROLE_PREFIX):]
    return None


def trim_roles(roles: Optional[Iterable[str]]) -> List[str]:
    """Strip whitespace, drop empties and duplicates, keep order."""
    trimmed: List[str] = []
    for role in roles or []:
        if not isinstance(role, str):
            continue
        role = role.strip()
        if role and role not in trimmed:
            trimmed.append(role)
    return trimmed


def credential_id(key: str) -> str:
    return f"{CREDENTIAL_ID_PREFIX}{key}"


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    description: str = "document update",
    **context: Any,
) -> T:
    """Run ``operation`` again on revision conflict, at most ``attempts`` times.

    Exhaustion raises ``UpstreamStoreFailure`` carrying the last conflict.
    """
    last_error: Optional[DocumentConflict] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except DocumentConflict as exc:
            last_error = exc
            logger.warning(
                "conflict_retry", description=description, attempt=attempt, **context
            )
    logger.error(
        "conflict_retries_exhausted", description=description, attempts=attempts, **context
    )
    raise UpstreamStoreFailure(
        f"cannot complete {description} after {attempts} attempts",
        doc=context or None,
        cause=last_error,
    )


def _upstream(message: str, exc: BaseException, doc: Any = None, **context: Any) -> UpstreamStoreFailure:
    logger.error(
        "upstream_store_failure",
        message=message,
        error=str(exc),
        error_type=type(exc).__name__,
        **context,
    )
    return UpstreamStoreFailure(message, doc=doc, cause=exc)


class SecurityKeyAdapter:
    """Interface shared by the credentials-mirror strategies."""

    def __init__(self, server: DatabaseServer) -> None:
        self.server = server

    async def setup(self) -> None:
        return None

    async def issue_api_key(self) -> Optional[Tuple[str, str]]:
        """Key and password minted by the hosting provider, if it mints them."""
        return None

    async def store_key(
        self,
        user_id: str,
        key: str,
        password: str,
        expires: int,
        refreshed: int,
        roles: Optional[List[str]] = None,
    ) -> None:
        raise NotImplementedError

    async def update_key(
        self,
        key: str,
        expires: Optional[int] = None,
        refreshed: Optional[int] = None,
        roles: Optional[List[str]] = None,
    ) -> None:
        raise NotImplementedError

    async def remove_keys(self, keys: KeyInput) -> None:
        raise NotImplementedError

    async def init_security(
        self, db_name: str, admin_roles: List[str], member_roles: List[str]
    ) -> None:
        raise NotImplementedError

    async def authorize_keys(
        self,
        user_id: str,
        db_name: str,
        keys: KeyInput,
        permissions: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
    ) -> None:
        raise NotImplementedError

    async def deauthorize_keys(self, db_name: str, keys: KeyInput) -> None:
        raise NotImplementedError

    async def remove_expired_keys(self) -> List[str]:
        return []

    async def _get_security(self, db_name: str) -> Dict[str, Any]:
        try:
            return await self.server.get_security(db_name) or {}
        except StorageError as exc:
            raise _upstream("cannot read security document", exc, db=db_name) from exc

    async def _put_security(self, db_name: str, security: Dict[str, Any]) -> None:
        try:
            await self.server.put_security(db_name, security)
        except StorageError as exc:
            raise _upstream(
                "cannot write security document", exc, doc=security, db=db_name
            ) from exc


class CouchSecurityAdapter(SecurityKeyAdapter):
    """Self-managed CouchDB: one credentials document per session key."""

    def __init__(
        self,
        server: DatabaseServer,
        auth_db_name: str = "_users",
        *,
        conflict_attempts: int = 2,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__(server)
        self.auth_db_name = auth_db_name
        self.conflict_attempts = conflict_attempts
        self._now = clock

    @property
    def auth_db(self):
        return self.server.database(self.auth_db_name)

    async def setup(self) -> None:
        await self.auth_db.seed_design(credentials_design_doc())

    async def store_key(
        self,
        user_id: str,
        key: str,
        password: str,
        expires: int,
        refreshed: int,
        roles: Optional[List[str]] = None,
    ) -> None:
        doc = {
            "_id": credential_id(key),
            "type": "user",
            "name": key,
            "user_id": user_id,
            "password": password,
            "expires": expires,
            "refreshed": refreshed,
            "roles": [owner_role(user_id)] + list(roles or []),
        }
        try:
            await self.auth_db.put(doc)
        except StorageError as exc:
            raise _upstream(
                "cannot store key at couch auth db", exc, doc={"_id": doc["_id"]}, session_key=key
            ) from exc

    async def update_key(
        self,
        key: str,
        expires: Optional[int] = None,
        refreshed: Optional[int] = None,
        roles: Optional[List[str]] = None,
    ) -> None:
        """Merge expiry and roles into the key's credentials document.

        A missing document means the key was already revoked: no-op.
        """
        if expires is None and refreshed is None and roles is None:
            return
        incoming_roles = (
            [r for r in roles if not r.startswith(OWNER_ROLE_PREFIX)]
            if roles is not None
            else None
        )

        async def _attempt() -> None:
            try:
                doc = await self.auth_db.get(credential_id(key))
            except DocumentNotFound:
                return
            except StorageError as exc:
                raise _upstream(
                    "cannot access couch auth db entry for session key", exc, session_key=key
                ) from exc
            changed = False
            if expires is not None and doc.get("expires") != expires:
                doc["expires"] = expires
                changed = True
            if refreshed is not None and doc.get("refreshed") != refreshed:
                doc["refreshed"] = refreshed
                changed = True
            if incoming_roles is not None:
                owner = owner_from_roles(doc.get("roles") or []) or doc.get("user_id")
                new_roles = ([owner_role(owner)] if owner else []) + incoming_roles
                if doc.get("roles") != new_roles:
                    doc["roles"] = new_roles
                    changed = True
            if not changed:
                return
            try:
                await self.auth_db.put(doc)
            except DocumentConflict:
                raise
            except DocumentNotFound:
                return
            except StorageError as exc:
                raise _upstream(
                    "cannot update key at couch auth db",
                    exc,
                    doc={"_id": doc["_id"]},
                    session_key=key,
                ) from exc

        await retry_on_conflict(
            _attempt,
            attempts=self.conflict_attempts,
            description="credentials key update",
            session_key=key,
        )

    async def remove_keys(self, keys: KeyInput) -> None:
        ids = [credential_id(key) for key in sorted(as_key_set(keys))]
        if not ids:
            return
        try:
            rows = await self.auth_db.all_docs(ids, include_docs=False)
            deletions = [
                {"_id": row.id, "_rev": row.value["rev"], "_deleted": True}
                for row in rows
                if row.value and row.value.get("rev")
            ]
            if deletions:
                await self.auth_db.bulk_docs(deletions)
        except StorageError as exc:
            raise _upstream("cannot delete from couch auth db", exc, doc=ids) from exc

    async def init_security(
        self, db_name: str, admin_roles: List[str], member_roles: List[str]
    ) -> None:
        security = await self._get_security(db_name)
        admins = security.setdefault("admins", {})
        admins.setdefault("names", [])
        admins.setdefault("roles", [])
        members = security.setdefault("members", {})
        members.setdefault("names", [])
        members.setdefault("roles", [])
        changed = False
        for role in admin_roles or []:
            if role not in admins["roles"]:
                admins["roles"].append(role)
                changed = True
        for role in member_roles or []:
            if role not in members["roles"]:
                members["roles"].append(role)
                changed = True
        if changed:
            await self._put_security(db_name, security)

    async def authorize_keys(
        self,
        user_id: str,
        db_name: str,
        keys: KeyInput,
        permissions: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
    ) -> None:
        key_set = as_key_set(keys)
        if not key_set:
            return
        security = await self._get_security(db_name)
        members = security.setdefault("members", {})
        names = members.setdefault("names", [])
        members.setdefault("roles", [])
        missing = [key for key in sorted(key_set) if key not in names]
        if missing:
            names.extend(missing)
            await self._put_security(db_name, security)
        if roles is not None:
            await asyncio.gather(*(self.update_key(key, roles=roles) for key in sorted(key_set)))

    async def deauthorize_keys(self, db_name: str, keys: KeyInput) -> None:
        key_set = as_key_set(keys)
        security = await self._get_security(db_name)
        names = (security.get("members") or {}).get("names")
        if not names or not key_set:
            return
        kept = [name for name in names if name not in key_set]
        if len(kept) != len(names):
            security["members"]["names"] = kept
            await self._put_security(db_name, security)

    async def remove_expired_keys(self) -> List[str]:
        """Delete credentials documents whose ``expires`` is in the past.

        Documents that change underneath (conflicts) are left for the next run.
        """
        try:
            rows = await self.auth_db.query(
                view_path(CREDENTIALS_DESIGN_ID, "expiration"),
                endkey=self._now() - 1,
                include_docs=True,
            )
        except StorageError as exc:
            raise _upstream("cannot query expired credentials", exc) from exc
        deletions = [
            {"_id": row.id, "_rev": row.doc["_rev"], "_deleted": True}
            for row in rows
            if row.doc and row.doc.get("_rev")
        ]
        if not deletions:
            return []
        try:
            results = await self.auth_db.bulk_docs(deletions)
        except StorageError as exc:
            raise _upstream("cannot delete expired credentials", exc) from exc
        removed = []
        for result in results:
            if result.ok:
                removed.append(result.id[len(CREDENTIAL_ID_PREFIX):])
            else:
                logger.info("expired_credential_skipped", doc_id=result.id, error=result.error)
        logger.info("expired_credentials_removed", count=len(removed))
        return removed


class CloudantSecurityAdapter(SecurityKeyAdapter):
    """Managed hosting: the provider issues keys and has no ``_users`` mirror."""

    async def issue_api_key(self) -> Optional[Tuple[str, str]]:
        try:
            result = await self.server.issue_api_key()
        except StorageError as exc:
            raise _upstream("cannot issue api key", exc) from exc
        if result.get("key") and result.get("password") and result.get("ok") is True:
            return result["key"], result["password"]
        logger.error("api_key_issue_rejected", error=result.get("error"), reason=result.get("reason"))
        raise UpstreamStoreFailure("api key request was rejected", doc=result)

    async def store_key(self, user_id, key, password, expires, refreshed, roles=None) -> None:
        return None

    async def update_key(self, key, expires=None, refreshed=None, roles=None) -> None:
        return None

    async def remove_keys(self, keys: KeyInput) -> None:
        return None

    async def init_security(self, db_name, admin_roles, member_roles) -> None:
        return None

    async def authorize_keys(
        self,
        user_id: str,
        db_name: str,
        keys: KeyInput,
        permissions: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
    ) -> None:
        key_set = as_key_set(keys)
        if not key_set:
            return
        granted = [owner_role(user_id)] + trim_roles(
            list(permissions or DEFAULT_CLOUDANT_PERMISSIONS) + list(roles or [])
        )
        security = await self._get_security(db_name)
        cloudant = security.setdefault("cloudant", {})
        changed = False
        for key in sorted(key_set):
            if cloudant.get(key) != granted:
                cloudant[key] = list(granted)
                changed = True
        if changed:
            await self._put_security(db_name, security)

    async def deauthorize_keys(self, db_name: str, keys: KeyInput) -> None:
        key_set = as_key_set(keys)
        security = await self._get_security(db_name)
        cloudant = security.get("cloudant")
        if not cloudant:
            return
        removed = [key for key in key_set if cloudant.pop(key, None) is not None]
        if removed:
            await self._put_security(db_name, security)
