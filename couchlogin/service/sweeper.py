"""Background maintenance for the session stores.

``SweepWorker`` periodically revokes expired sessions across all users, drops
expired credential documents from the credentials mirror, clears stale
password-reset tokens and expires abandoned login relay channels.
``DeletionWatcher`` follows the user database's change feed and cleans up
after user documents that were deleted directly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from couchlogin.logging import get_logger

if TYPE_CHECKING:
    from couchlogin.service.accounts import AccountService
    from couchlogin.service.relay import LoginRelay
    from couchlogin.service.security_keys import SecurityKeyAdapter
    from couchlogin.service.sessions import SessionLifecycleEngine

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 3 * 60 * 60


@dataclass
class SweepReport:
    expired_sessions: int = 0
    expired_credentials: int = 0
    expired_resets: int = 0
    expired_channels: int = 0


class SweepWorker:
    """Runs the expiry sweeps on a fixed interval.

    Sweeps work on point-in-time snapshots and tolerate concurrent logins;
    anything they lose to a revision conflict is retried on the next pass.
    """

    def __init__(
        self,
        engine: "SessionLifecycleEngine",
        adapter: "SecurityKeyAdapter",
        accounts: Optional["AccountService"] = None,
        relay: Optional["LoginRelay"] = None,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.engine = engine
        self.adapter = adapter
        self.accounts = accounts
        self.relay = relay
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("sweep_worker_already_running")
            return
        if self.interval <= 0:
            logger.info("sweep_worker_disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("sweep_worker_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweep_worker_stopped")

    async def run_once(self) -> SweepReport:
        """One full pass over every sweep; failures propagate to the caller."""
        report = SweepReport()
        report.expired_sessions = len(await self.engine.remove_expired_keys())
        report.expired_credentials = len(await self.adapter.remove_expired_keys())
        if self.accounts is not None:
            report.expired_resets = await self.accounts.clear_expired_password_resets()
        if self.relay is not None:
            report.expired_channels = self.relay.sweep()
        logger.info(
            "sweep_completed",
            expired_sessions=report.expired_sessions,
            expired_credentials=report.expired_credentials,
            expired_resets=report.expired_resets,
            expired_channels=report.expired_channels,
        )
        return report

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "sweep_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            await asyncio.sleep(self.interval)


class DeletionWatcher:
    """Follows user deletions and runs the account cleanup for each."""

    def __init__(self, accounts: "AccountService") -> None:
        self.accounts = accounts
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self.accounts.users.subscribe_deletions(self.accounts.handle_user_deleted)
        )
        # Let the subscription register before callers go on to delete users
        await asyncio.sleep(0)
        logger.info("deletion_watcher_started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("deletion_watcher_stopped")
