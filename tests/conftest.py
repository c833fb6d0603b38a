import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment for the app-level runtime, set before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="couchlogin_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_STORE__SESSIONS_ROOT", _test_tmp_dir)
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("RELAY_TIMEOUT_SECONDS", "0.1")
os.environ.setdefault("SECURITY__HASH_TIME_COST", "1")
os.environ.setdefault("SECURITY__HASH_MEMORY_COST", "8")
os.environ.setdefault("SECURITY__HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from couchlogin.config import (  # noqa: E402
    LocalSettings,
    SecuritySettings,
    Settings,
    UserDBSettings,
)
from couchlogin.service.accounts import AccountService  # noqa: E402
from couchlogin.service.email import Mailer  # noqa: E402
from couchlogin.service.events import EventEmitter  # noqa: E402
from couchlogin.service.passwords import PasswordHasher  # noqa: E402
from couchlogin.service.relay import LoginRelay  # noqa: E402
from couchlogin.service.runtime import reset_runtime_for_tests  # noqa: E402
from couchlogin.service.security_keys import CouchSecurityAdapter  # noqa: E402
from couchlogin.service.session_tokens import SessionTokens  # noqa: E402
from couchlogin.service.sessions import SessionLifecycleEngine  # noqa: E402
from couchlogin.service.sweeper import DeletionWatcher, SweepWorker  # noqa: E402
from couchlogin.service.userdbs import DatabaseAccessCoordinator  # noqa: E402
from couchlogin.storage.memory import MemoryServer  # noqa: E402
from couchlogin.storage.models import now_ms  # noqa: E402
from couchlogin.storage.token_store import MemoryTokenStore  # noqa: E402
from couchlogin.storage.users import UserRecordStore  # noqa: E402

USER_DB = "sl-users"
AUTH_DB = "_users"


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int | None = None) -> None:
        self.now = start if start is not None else now_ms()

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


def make_settings(**overrides) -> Settings:
    """Settings with cheap hashing; keyword sections replace the defaults."""
    security = overrides.pop(
        "security",
        SecuritySettings(hash_time_cost=1, hash_memory_cost=8, hash_parallelism=1),
    )
    return Settings(security=security, test_mode=True, use_memory_store=True, **overrides)


class Stack:
    """Every service wired against one in-memory server and a fake clock."""

    def __init__(self, settings: Settings, clock: FakeClock) -> None:
        self.settings = settings
        self.clock = clock
        self.server = MemoryServer(databases=[USER_DB, AUTH_DB])
        self.token_store = MemoryTokenStore()
        self.hasher = fast_hasher()
        self.tokens = SessionTokens(self.token_store, self.hasher, clock=clock)
        self.adapter = CouchSecurityAdapter(self.server, AUTH_DB, clock=clock)
        self.users = UserRecordStore(
            self.server.database(USER_DB),
            activity_log_size=settings.security.user_activity_log_size,
            providers=list(settings.providers),
        )
        self.coordinator = DatabaseAccessCoordinator(
            self.server, self.adapter, self.users, settings.userdbs, clock=clock
        )
        self.events = EventEmitter()
        self.engine = SessionLifecycleEngine(
            self.users,
            self.tokens,
            self.adapter,
            self.coordinator,
            settings.security,
            settings.couch,
            events=self.events,
            clock=clock,
        )
        self.mailer = Mailer(test_mode=True, base_url="http://app.test")
        self.accounts = AccountService(
            self.users,
            self.engine,
            self.coordinator,
            self.hasher,
            self.mailer,
            settings,
            clock=clock,
        )
        self.relay = LoginRelay(wait_seconds=0.2, clock=clock)
        self.sweeper = SweepWorker(
            self.engine, self.adapter, self.accounts, self.relay, interval=0
        )
        self.watcher = DeletionWatcher(self.accounts)

    async def setup(self) -> "Stack":
        await self.users.setup()
        await self.adapter.setup()
        return self

    @property
    def auth_db(self):
        return self.server.database(AUTH_DB)

    async def security(self, db_name: str) -> dict:
        return await self.server.get_security(db_name)

    async def member_names(self, db_name: str) -> list:
        security = await self.security(db_name)
        return list((security.get("members") or {}).get("names") or [])

    async def register(self, username: str, password: str = "secret123", **extra):
        form = {
            "username": username,
            "email": extra.pop("email", f"{username}@example.com"),
            "password": password,
            "confirmPassword": password,
            **extra,
        }
        return await self.accounts.create(form)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def notes_settings():
    """Every new user gets a private ``notes`` database."""
    return make_settings(
        userdbs=UserDBSettings.model_validate(
            {
                "default_dbs": {"private": ["notes"]},
                "model": {"_default": {"permissions": ["_reader", "_writer"]}},
            }
        ),
        local=LocalSettings(),
    )


@pytest.fixture
def stack(settings, clock):
    return Stack(settings, clock)


@pytest.fixture
def notes_stack(notes_settings, clock):
    return Stack(notes_settings, clock)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
