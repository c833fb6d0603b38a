"""Session lifecycle: create, refresh, confirm and revoke bearer sessions.

A session lives in two places that are updated without a shared transaction:
the TokenStore (key, hashed secret, expiry, roles) and the ``session`` map of
the user document. The credentials mirror and every personal database's
member list follow the same keys. Drift between the two is repaired when a
session is next refreshed; the TokenStore copy wins.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

from couchlogin.config import CouchSettings, SecuritySettings
from couchlogin.logging import get_logger
from couchlogin.service.errors import (
    AuthenticationError,
    NotFoundError,
    SessionInvalidError,
    UpstreamStoreFailure,
)
from couchlogin.service.events import EventEmitter
from couchlogin.service.security_keys import (
    SecurityKeyAdapter,
    retry_on_conflict,
    trim_roles,
)
from couchlogin.service.session_tokens import SessionTokens
from couchlogin.service.userdbs import DatabaseAccessCoordinator
from couchlogin.storage.common import KeyInput, as_key_set
from couchlogin.storage.errors import DocumentConflict, StorageError
from couchlogin.storage.models import (
    LocalCredential,
    RequestContext,
    SessionDescriptor,
    SessionToken,
    UserRecord,
    now_ms,
)
from couchlogin.storage.users import UserRecordStore

logger = get_logger(__name__)

LOGOUT_ALL = "all"
LOGOUT_OTHER = "other"
LOGOUT_EXPIRED = "expired"


def url_safe_uuid() -> str:
    """Random UUID as unpadded URL-safe base64 (22 chars)."""
    return base64.urlsafe_b64encode(uuid.uuid4().bytes).decode("ascii").rstrip("=")


def mint_session_key() -> str:
    # Keys become CouchDB user names, which may not start with '_' or '-'
    key = url_safe_uuid()
    while key[0] in ("_", "-"):
        key = url_safe_uuid()
    return key


def all_roles(user: UserRecord) -> List[str]:
    """Explicit roles plus provider and local roles derived from the user document."""
    roles = trim_roles(user.roles)

    def _add(role: Optional[str]) -> None:
        if not role:
            return
        if role.startswith("_"):
            logger.warning("role_underscore_prefixed", role=role, user_id=user.id)
            role = "UNDERSCORE" + role
        if role not in roles:
            roles.append(role)

    for provider in user.providers:
        link = user.provider_data.get(provider)
        if link is None:
            continue
        _add(f"provider.{provider}")
        for role in link.profile.get("roles") or []:
            _add(role)
    for role in user.local_roles:
        _add(role)
    return roles


class SessionLifecycleEngine:
    def __init__(
        self,
        users: UserRecordStore,
        tokens: SessionTokens,
        adapter: SecurityKeyAdapter,
        coordinator: DatabaseAccessCoordinator,
        security: SecuritySettings,
        couch: CouchSettings,
        *,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.adapter = adapter
        self.coordinator = coordinator
        self.security = security
        self.couch = couch
        self.events = events or EventEmitter()
        self._now = clock
        self.logger = logger

    @property
    def session_life_ms(self) -> int:
        return self.security.session_life * 1000

    @property
    def session_max_life_ms(self) -> int:
        return self.security.session_max_life * 1000

    # -- store helpers -----------------------------------------------------

    async def _save_user(self, user: UserRecord, message: str) -> UserRecord:
        try:
            return await self.users.save(user)
        except StorageError as exc:
            self.logger.error("user_save_failed", user_id=user.id, reason=message, error=str(exc))
            raise UpstreamStoreFailure(message, doc={"_id": user.id}, cause=exc) from exc

    async def _store_token(self, token: SessionToken) -> SessionToken:
        try:
            return await self.tokens.store_token(token)
        except StorageError as exc:
            self.logger.error("token_store_failed", session_key=token.key, error=str(exc))
            raise UpstreamStoreFailure("cannot store session token", cause=exc) from exc

    async def _fetch_token(self, key: str) -> Optional[SessionToken]:
        try:
            return await self.tokens.fetch_token(key)
        except StorageError as exc:
            self.logger.error("token_fetch_failed", session_key=key, error=str(exc))
            raise UpstreamStoreFailure("cannot read session token", cause=exc) from exc

    async def _delete_tokens(self, keys: KeyInput) -> int:
        try:
            return await self.tokens.delete_tokens(keys)
        except StorageError as exc:
            self.logger.error("token_delete_failed", error=str(exc))
            raise UpstreamStoreFailure("cannot delete session tokens", cause=exc) from exc

    # -- creation ----------------------------------------------------------

    async def _generate_token(self, user_id: str, roles: List[str]) -> SessionToken:
        issued = await self.adapter.issue_api_key()
        if issued is not None:
            key, password = issued
        else:
            key, password = mint_session_key(), url_safe_uuid()
        now = self._now()
        if self.session_max_life_ms > 0:
            ends = now + self.session_max_life_ms
            expires = min(now + self.session_life_ms, ends)
        else:
            ends = 0
            expires = now + self.session_life_ms
        return SessionToken(
            key=key,
            user_id=user_id,
            password=password,
            issued=now,
            refreshed=now,
            expires=expires,
            ends=ends,
            roles=roles,
        )

    def _public_base_url(self, key: str, password: str) -> str:
        credentials = f"{key}:{password}"
        if self.couch.public_url:
            parts = urlsplit(self.couch.public_url)
            host = parts.netloc.rsplit("@", 1)[-1]
            path = parts.path if parts.path.endswith("/") else parts.path + "/"
            return urlunsplit((parts.scheme, f"{credentials}@{host}", path, "", ""))
        return f"{self.couch.protocol}{credentials}@{self.couch.host}/"

    async def create_session(
        self,
        user_id: str,
        provider: str = "local",
        ctx: Optional[RequestContext] = None,
    ) -> SessionDescriptor:
        """Log ``user_id`` in through ``provider`` and return the new session.

        The token is live in the TokenStore and the credentials mirror before
        the user document is written; a failing final write is not rolled
        back.
        """
        ctx = ctx or RequestContext()
        user = await self.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})

        token = await self._generate_token(user.id, all_roles(user))
        token.provider = provider
        password = token.password or ""
        await self._store_token(token)
        await self.adapter.store_key(
            user.id, token.key, password, token.expires, token.refreshed, token.roles
        )
        if user.personal_dbs:
            await self.coordinator.authorize_user_across_databases(
                user.id, user.personal_dbs, [token.key], token.roles
            )

        user.session[token.key] = token.to_entry(ip=ctx.ip)
        if provider == "local":
            user.local = user.local or LocalCredential()
            user.local.failed_login_attempts = 0
            user.local.locked_until = None
        await self.users.log_activity(user, "login", provider, ctx)
        try:
            user = await self.logout_user_sessions(user, LOGOUT_EXPIRED)
        except (UpstreamStoreFailure, StorageError) as exc:
            self.logger.warning("login_cleanup_failed", user_id=user.id, error=str(exc))
        user = await self._save_user(user, "cannot store new session for user")

        descriptor = SessionDescriptor(
            token=token.key,
            password=password,
            user_id=user.id,
            issued=token.issued,
            refreshed=token.refreshed,
            expires=token.expires,
            ends=token.ends,
            roles=all_roles(user),
            provider=provider,
            ip=ctx.ip,
            profile=user.profile,
        )
        if user.personal_dbs:
            base = self._public_base_url(token.key, password)
            descriptor.user_dbs = {
                pdb.name: f"{base}{physical}" for physical, pdb in user.personal_dbs.items()
            }
        self.logger.info(
            "session_created", user_id=user.id, session_key=token.key, provider=provider
        )
        await self.events.emit("login", descriptor, provider)
        return descriptor

    # -- refresh / sync ----------------------------------------------------

    async def refresh_session(self, key: str) -> SessionDescriptor:
        descriptor = await self.update_session(key, refresh=True, cleanup=True)
        if descriptor is None:
            raise SessionInvalidError(f'no session for key "{key}"')
        return descriptor

    async def sync_session_roles(self, key: str) -> Optional[SessionDescriptor]:
        """Recompute the session's roles without touching its expiry."""
        return await self.update_session(key, refresh=False, cleanup=False)

    async def _heal_missing_session(self, user: UserRecord, token: SessionToken) -> UserRecord:
        """Write the TokenStore's copy of a session back into the user document."""
        self.logger.warning(
            "session_drift_repaired", user_id=user.id, session_key=token.key
        )

        async def _attempt() -> UserRecord:
            nonlocal user
            if token.key not in user.session:
                user.session[token.key] = token.to_entry()
            try:
                return await self.users.save(user)
            except DocumentConflict:
                reloaded = await self.users.get(user.id)
                if reloaded is None:
                    raise SessionInvalidError("session owner no longer exists")
                user = reloaded
                raise
            except StorageError as exc:
                raise UpstreamStoreFailure(
                    "cannot repair session in user doc", doc={"_id": user.id}, cause=exc
                ) from exc

        return await retry_on_conflict(
            _attempt, description="session drift repair", session_key=token.key
        )

    def _revoked(self, key: str, refresh: bool) -> None:
        self.logger.info("session_revoked_during_update", session_key=key)
        if refresh:
            raise SessionInvalidError(f'session for key "{key}" was revoked')
        return None

    async def update_session(
        self, key: str, refresh: bool = True, cleanup: bool = True
    ) -> Optional[SessionDescriptor]:
        token = await self._fetch_token(key)
        if token is None:
            if refresh:
                raise SessionInvalidError(f'no session for key "{key}"')
            return None
        now = self._now()
        if token.is_expired(now):
            await self._delete_tokens(key)
            raise SessionInvalidError(f'session for key "{key}" already expired')

        changed = refreshed = roles_changed = False
        if refresh:
            if token.ends > 0:
                expires = min(token.ends, now + self.session_life_ms)
                if expires != token.expires:
                    token.expires = expires
                    token.refreshed = now
                    changed = refreshed = True
            else:
                token.expires = now + self.session_life_ms
                token.refreshed = now
                changed = refreshed = True

        user = await self.users.get(token.user_id)
        if user is None:
            await self._delete_tokens(key)
            raise SessionInvalidError(f'owner of session "{key}" no longer exists')
        if key not in user.session:
            # A missing entry is drift only while the token is still stored
            if await self._fetch_token(key) is None:
                return self._revoked(key, refresh)
            user = await self._heal_missing_session(user, token)

        roles = all_roles(user)
        if roles != token.roles:
            token.roles = roles
            changed = roles_changed = True
        if changed:
            if await self._fetch_token(key) is None:
                return self._revoked(key, refresh)
            await self._store_token(token)

        entry = user.session[key]
        if refreshed:
            entry.expires = token.expires
            entry.refreshed = token.refreshed
        if cleanup:
            user = await self.cleanup_sessions(user, LOGOUT_EXPIRED, force_save=refresh)

        if refreshed:
            await self.adapter.update_key(key, token.expires, token.refreshed, token.roles)
        if roles_changed and user.personal_dbs and user.session:
            await self.coordinator.authorize_user_across_databases(
                user.id, user.personal_dbs, [key], token.roles
            )

        descriptor = SessionDescriptor(
            token=token.key,
            user_id=token.user_id,
            issued=token.issued,
            refreshed=token.refreshed,
            expires=token.expires,
            ends=token.ends,
            roles=list(token.roles),
            provider=token.provider,
            ip=entry.ip,
        )
        if changed:
            self.logger.info(
                "session_updated",
                user_id=token.user_id,
                session_key=key,
                refreshed=refreshed,
                roles_changed=roles_changed,
            )
            await self.events.emit("refresh", descriptor)
        return descriptor

    async def confirm_session(self, key: str, password: str) -> SessionToken:
        """Authenticate a ``key:password`` bearer pair against the TokenStore."""
        try:
            return await self.tokens.confirm_token(key, password)
        except StorageError as exc:
            self.logger.error("token_confirm_failed", session_key=key, error=str(exc))
            raise UpstreamStoreFailure("cannot read session token", cause=exc) from exc

    # -- revocation --------------------------------------------------------

    async def _revoke_keys(self, user: UserRecord, keys: Iterable[str]) -> None:
        key_set = as_key_set(keys)
        await asyncio.gather(
            self._delete_tokens(key_set),
            self.adapter.remove_keys(key_set),
            self.coordinator.deauthorize_user_across_databases(user, key_set),
        )

    async def logout_user_sessions(
        self, user: UserRecord, op: str, current: Optional[str] = None
    ) -> UserRecord:
        """Revoke ``all``, ``other`` (all but ``current``) or ``expired`` sessions.

        Returns the mutated user; persisting it is up to the caller.
        """
        if op in (LOGOUT_ALL, LOGOUT_OTHER):
            keys = user.session_keys()
        elif op == LOGOUT_EXPIRED:
            keys = user.expired_session_keys(self._now())
        else:
            raise ValueError(f"unknown logout operation: {op}")
        if op == LOGOUT_OTHER and current:
            keys = [k for k in keys if k != current]
        if keys:
            await self._revoke_keys(user, keys)
            if op in (LOGOUT_EXPIRED, LOGOUT_OTHER):
                for key in keys:
                    user.session.pop(key, None)
        if op == LOGOUT_ALL:
            user.session = {}
        return user

    async def cleanup_sessions(
        self, user: UserRecord, op: str = LOGOUT_EXPIRED, force_save: bool = False
    ) -> UserRecord:
        """Revoke sessions and persist only when the session set changed."""
        before = set(user.session)
        user = await self.logout_user_sessions(user, op)
        if force_save or set(user.session) != before:
            user = await self._save_user(user, "cannot update user doc")
        return user

    async def logout_session(self, key: str) -> bool:
        """Revoke one session; returns True when the user document was rewritten."""
        user = await self.users.by_session(key)
        if user is None:
            raise AuthenticationError("unauthorized")
        before = len(user.session)
        user.session.pop(key, None)
        await self._revoke_keys(user, [key])
        user = await self.logout_user_sessions(user, LOGOUT_EXPIRED)
        self.logger.info("session_logged_out", user_id=user.id, session_key=key)
        await self.events.emit("logout", user.id)
        if len(user.session) != before:
            await self._save_user(user, "cannot remove sessions from user doc")
            return True
        return False

    async def logout_user(self, user_id: Optional[str] = None, key: Optional[str] = None) -> UserRecord:
        """Revoke every session of a user named directly or through one session key."""
        if user_id:
            user = await self.users.get(user_id)
            if user is None:
                raise NotFoundError("User not found", detail={"user_id": user_id})
        elif key:
            user = await self.users.by_session(key)
            if user is None:
                raise AuthenticationError("unauthorized")
        else:
            raise AuthenticationError("Either user_id or session key must be specified")
        user = await self.logout_user_sessions(user, LOGOUT_ALL)
        self.logger.info("user_logged_out", user_id=user.id)
        await self.events.emit("logout", user.id)
        await self.events.emit("logout-all", user.id)
        return await self._save_user(user, "cannot logout user")

    async def logout_others(self, key: str) -> bool:
        user = await self.users.by_session(key)
        if user is None or key not in user.session:
            return False
        user = await self.logout_user_sessions(user, LOGOUT_OTHER, key)
        await self._save_user(user, "cannot remove sessions from user db")
        self.logger.info("other_sessions_logged_out", user_id=user.id, session_key=key)
        return True

    # -- security bookkeeping ----------------------------------------------

    async def handle_failed_login(
        self, user: UserRecord, ctx: Optional[RequestContext] = None
    ) -> bool:
        """Count a failed local login; returns True once the account is locked."""
        max_failed = self.security.max_failed_logins
        if not max_failed:
            return False
        now = self._now()
        user.local = user.local or LocalCredential()
        user.local.failed_login_attempts += 1
        if user.local.failed_login_attempts > max_failed:
            user.local.failed_login_attempts = 0
            user.local.locked_until = now + self.security.lockout_time * 1000
            self.logger.warning("account_locked", user_id=user.id)
        await self.users.log_activity(user, "failed login", "local", ctx)
        await self._save_user(user, "cannot record failed login")
        return user.local.locked_until is not None and user.local.locked_until > now

    async def remove_expired_keys(self) -> List[str]:
        """Global sweep of expired sessions across all users."""
        expired = await self.coordinator.sweep_expired_keys()
        if expired:
            await self._delete_tokens(expired)
        return expired

    all_roles = staticmethod(all_roles)
