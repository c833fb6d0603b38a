from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from couchlogin.config import Settings, TokenStoreBackend, get_settings, reset_settings_cache
from couchlogin.logging import get_logger
from couchlogin.service.accounts import AccountService
from couchlogin.service.email import Mailer
from couchlogin.service.events import EventEmitter
from couchlogin.service.passwords import PasswordHasher
from couchlogin.service.relay import LoginRelay
from couchlogin.service.security_keys import (
    CloudantSecurityAdapter,
    CouchSecurityAdapter,
    SecurityKeyAdapter,
)
from couchlogin.service.session_tokens import SessionTokens
from couchlogin.service.sessions import SessionLifecycleEngine
from couchlogin.service.sweeper import DeletionWatcher, SweepWorker
from couchlogin.service.userdbs import DatabaseAccessCoordinator
from couchlogin.storage.common import DatabaseServer
from couchlogin.storage.couchdb import CouchServer
from couchlogin.storage.errors import DatabaseExists
from couchlogin.storage.memory import MemoryServer
from couchlogin.storage.redis_cache import RedisTokenStore
from couchlogin.storage.token_store import FileTokenStore, MemoryTokenStore, TokenStore
from couchlogin.storage.users import UserRecordStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_server(settings: Settings) -> DatabaseServer:
    couch = settings.couch
    if settings.use_memory_store:
        return MemoryServer(
            f"{couch.protocol}{couch.host}",
            databases=[couch.user_db, couch.couch_auth_db],
        )
    return CouchServer(
        f"{couch.protocol}{couch.host}",
        user=couch.user,
        password=couch.password,
        timeout_seconds=couch.timeout_seconds,
    )


def _build_token_store(settings: Settings) -> TokenStore:
    store_settings = settings.session_store
    if store_settings.adapter == TokenStoreBackend.REDIS:
        store = RedisTokenStore(store_settings.redis_url)
        try:
            store.verify_connection()
        except Exception as exc:
            if not settings.test_mode:
                raise RuntimeError(
                    "Redis is configured as the session store but is unreachable; "
                    "start Redis or set TEST_MODE=true for the in-memory fallback."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(store_settings.redis_url),
                error=str(exc),
            )
            return MemoryTokenStore()
        return store
    if store_settings.adapter == TokenStoreBackend.FILE:
        return FileTokenStore(store_settings.sessions_root)
    return MemoryTokenStore()


class Runtime:
    """Holds the singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            token_store=self.settings.session_store.adapter.value,
        )
        security = self.settings.security
        couch = self.settings.couch

        self.server = _build_server(self.settings)
        self.token_store = _build_token_store(self.settings)
        self.adapter: SecurityKeyAdapter = (
            CloudantSecurityAdapter(self.server)
            if couch.cloudant
            else CouchSecurityAdapter(self.server, auth_db_name=couch.couch_auth_db)
        )
        self.hasher = PasswordHasher(
            time_cost=security.hash_time_cost,
            memory_cost=security.hash_memory_cost,
            parallelism=security.hash_parallelism,
        )
        self.tokens = SessionTokens(self.token_store, self.hasher)
        self.users = UserRecordStore(
            self.server.database(couch.user_db),
            activity_log_size=security.user_activity_log_size,
            providers=list(self.settings.providers),
        )
        self.coordinator = DatabaseAccessCoordinator(
            self.server, self.adapter, self.users, self.settings.userdbs
        )
        self.events = EventEmitter()
        self.engine = SessionLifecycleEngine(
            self.users,
            self.tokens,
            self.adapter,
            self.coordinator,
            security,
            couch,
            events=self.events,
        )
        self.mailer = Mailer(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            test_mode=self.settings.test_mode,
        )
        self.accounts = AccountService(
            self.users,
            self.engine,
            self.coordinator,
            self.hasher,
            self.mailer,
            self.settings,
        )
        self.relay = LoginRelay(wait_seconds=self.settings.relay_timeout_seconds)
        self.sweeper = SweepWorker(
            self.engine,
            self.adapter,
            self.accounts,
            self.relay,
            interval=self.settings.sweep_interval_seconds,
        )
        self.deletion_watcher = DeletionWatcher(self.accounts)
        self._ready = False
        logger.info("runtime_init_complete", user_db=couch.user_db)

    async def setup(self) -> None:
        """Create the user and credentials databases and install their views."""
        if self._ready:
            return
        couch = self.settings.couch
        names = [couch.user_db] if couch.cloudant else [couch.user_db, couch.couch_auth_db]
        for name in names:
            try:
                await self.server.create_database(name)
                logger.info("runtime_database_created", db=name)
            except DatabaseExists:
                pass
        await self.users.setup()
        await self.adapter.setup()
        self._ready = True

    async def start(self) -> None:
        await self.setup()
        await self.sweeper.start()
        await self.deletion_watcher.start()

    async def close(self) -> None:
        await self.deletion_watcher.stop()
        await self.sweeper.stop()
        await self.tokens.quit()
        await self.server.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
