from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from couchlogin.logging import get_logger
from couchlogin.storage.common import BulkResult, DocumentStore, ViewRow
from couchlogin.storage.design import USER_DESIGN_ID, user_design_doc, view_path
from couchlogin.storage.errors import DocumentNotFound
from couchlogin.storage.models import ActivityEntry, RequestContext, UserRecord

logger = get_logger(__name__)

USERNAME_REGEX = re.compile(r"^[a-z0-9_.-]{3,16}$")
EMAIL_REGEX = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,6}$")

DeletionCallback = Callable[[UserRecord], Awaitable[None]]


def _view(name: str) -> str:
    return view_path(USER_DESIGN_ID, name)


class UserRecordStore:
    """User documents plus their secondary indexes.

    Every lookup is an exact match on a key derived by a design-doc view.
    """

    def __init__(
        self,
        db: DocumentStore,
        *,
        activity_log_size: int = 10,
        providers: Iterable[str] = (),
    ) -> None:
        self.db = db
        self.activity_log_size = activity_log_size
        self.providers = list(providers)

    async def setup(self) -> None:
        """Install the user design document (one view per provider)."""
        await self.db.seed_design(user_design_doc(self.providers))

    async def get(self, user_id: str) -> Optional[UserRecord]:
        try:
            doc = await self.db.get(user_id)
        except DocumentNotFound:
            return None
        return UserRecord.from_doc(doc)

    async def save(self, user: UserRecord) -> UserRecord:
        """Persist ``user``; a stale revision raises ``DocumentConflict``."""
        written = await self.db.put(user.to_doc())
        user.rev = written["_rev"]
        return user

    async def save_many(self, users: List[UserRecord]) -> List[BulkResult]:
        results = await self.db.bulk_docs([user.to_doc() for user in users])
        by_id = {user.id: user for user in users}
        for result in results:
            if result.ok and result.id in by_id:
                by_id[result.id].rev = result.rev
        return results

    async def remove(self, user: UserRecord) -> None:
        await self.db.delete(user.id, user.rev)

    async def existing_ids(self, ids: Iterable[str]) -> Set[str]:
        rows = await self.db.all_docs(list(ids), include_docs=False)
        return {row.id for row in rows}

    async def _first(self, view: str, key: str) -> Optional[UserRecord]:
        rows = await self.db.query(_view(view), key=key, include_docs=True)
        for row in rows:
            if row.doc:
                return UserRecord.from_doc(row.doc)
        return None

    async def by_username(self, username: str) -> Optional[UserRecord]:
        return await self._first("username", username.lower())

    async def by_email(self, email: str) -> Optional[UserRecord]:
        return await self._first("email", email.lower())

    async def by_email_username(self, login: str) -> Optional[UserRecord]:
        return await self._first("emailUsername", login.lower())

    async def by_login(self, login: str, *, email_username: bool = False) -> Optional[UserRecord]:
        """Resolve a login name: email-shaped names go through the email index."""
        if email_username:
            return await self.by_email_username(login)
        if EMAIL_REGEX.match(login):
            return await self.by_email(login)
        return await self.by_username(login)

    async def by_provider(self, provider: str, profile_id: str) -> Optional[UserRecord]:
        return await self._first(provider, str(profile_id).lower())

    async def by_session(self, key: str) -> Optional[UserRecord]:
        return await self._first("session", key)

    async def by_password_reset(self, token_hash: str) -> Optional[UserRecord]:
        return await self._first("passwordReset", token_hash)

    async def by_verify_email(self, token: str) -> Optional[UserRecord]:
        return await self._first("verifyEmail", token)

    async def expired_sessions(self, now: int) -> List[ViewRow]:
        """Point-in-time snapshot of ``{key, user}`` rows with ``expires < now``."""
        return await self.db.query(_view("expiredKeys"), endkey=now - 1, include_docs=True)

    async def expired_password_resets(self, now: int) -> List[UserRecord]:
        rows = await self.db.query(_view("passwordResetExpiry"), endkey=now - 1, include_docs=True)
        return [UserRecord.from_doc(row.doc) for row in rows if row.doc]

    async def log_activity(
        self,
        user: UserRecord,
        action: str,
        provider: Optional[str],
        ctx: Optional[RequestContext] = None,
        *,
        save: bool = False,
    ) -> UserRecord:
        """Prepend an activity entry, dropping the oldest beyond the cap.

        Does nothing when the activity log is disabled (size 0).
        """
        if not self.activity_log_size:
            return user
        entry = ActivityEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            provider=provider,
            ip=ctx.ip if ctx else None,
        )
        user.activity.insert(0, entry)
        while len(user.activity) > self.activity_log_size:
            user.activity.pop()
        if save:
            await self.save(user)
        return user

    async def subscribe_deletions(self, callback: DeletionCallback) -> None:
        """Invoke ``callback(user)`` for every user document deleted from now on.

        ``user`` is the record as it was just before the deletion. Runs until
        cancelled; callback failures are logged and the watch continues.
        """
        feed = self.db.changes(since="now")
        try:
            async for change in feed:
                if not change.deleted or change.id.startswith("_design/"):
                    continue
                try:
                    previous = await self.db.last_revision(change.id)
                    await callback(UserRecord.from_doc(previous))
                except Exception as exc:
                    logger.error(
                        "user_deletion_handler_failed",
                        user_id=change.id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        finally:
            aclose = getattr(feed, "aclose", None)
            if aclose is not None:
                await aclose()
