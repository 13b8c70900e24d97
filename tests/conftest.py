import asyncio
import inspect
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")
# Cheap argon2 so the suite is not dominated by hashing
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehouse.service.activity import ActivityLogService  # noqa: E402
from gatehouse.service.auth import AuthService, RequestMeta  # noqa: E402
from gatehouse.service.lockout import AccountLockoutEngine  # noqa: E402
from gatehouse.service.permissions import PermissionResolver  # noqa: E402
from gatehouse.service.rate_limit import RateLimiter  # noqa: E402
from gatehouse.service.recovery import AccountRecovery  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.runtime_config import RuntimeConfig  # noqa: E402
from gatehouse.service.sessions import SessionManager  # noqa: E402
from gatehouse.service.tokens import TokenCodec  # noqa: E402
from gatehouse.service.two_factor import PendingChallengeStore, TwoFactorEngine  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402


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


class FakeClock:
    """Settable clock handed to every engine so tests can move time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Stands in for EmailService and keeps what would have been sent."""

    def __init__(self):
        self.sent = []

    @property
    def is_configured(self) -> bool:
        return True

    def send_password_reset(self, to_email, token, *, expires_minutes):
        self.sent.append(("password_reset", to_email, token))
        return True

    def send_email_verification(self, to_email, token, *, expires_hours):
        self.sent.append(("verification", to_email, token))
        return True

    def send_password_changed(self, to_email):
        self.sent.append(("password_changed", to_email, None))
        return True

    def send_two_factor_changed(self, to_email, *, enabled):
        self.sent.append(("two_factor", to_email, enabled))
        return True

    def tokens(self, kind):
        return [token for sent_kind, _, token in self.sent if sent_kind == kind]


class Services:
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.store = MemoryStore(secret_key="test-secret")
        self.codec = TokenCodec(memory_cost=1024, time_cost=1)
        self.email = RecordingEmail()
        self.activity = ActivityLogService(self.store, clock=clock)
        self.config = RuntimeConfig(self.store, activity=self.activity)
        self.limiter = RateLimiter(self.activity, self.config, clock=clock)
        self.lockout = AccountLockoutEngine(self.store, self.config, self.activity, clock=clock)
        self.sessions = SessionManager(self.store, self.config, clock=clock)
        self.two_factor = TwoFactorEngine(
            self.store, self.codec, self.config, self.activity, email=self.email, clock=clock
        )
        self.pending = PendingChallengeStore(None, clock=clock)
        self.permissions = PermissionResolver(self.store, self.activity, clock=clock)
        self.recovery = AccountRecovery(
            self.store,
            self.codec,
            self.config,
            self.activity,
            self.sessions,
            email=self.email,
            clock=clock,
        )
        self.auth = AuthService(
            store=self.store,
            codec=self.codec,
            config=self.config,
            activity=self.activity,
            limiter=self.limiter,
            lockout=self.lockout,
            sessions=self.sessions,
            two_factor=self.two_factor,
            pending=self.pending,
            permissions=self.permissions,
            recovery=self.recovery,
            email=self.email,
            clock=clock,
        )

    def create_user(self, username="alice", password="Password123", **kwargs):
        email = kwargs.pop("email", f"{username}@example.com")
        return self.store.create_user(username, email, self.codec.hash_password(password), **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(clock):
    return Services(clock)


@pytest.fixture
def meta():
    return RequestMeta(ip_address="203.0.113.7", user_agent="pytest")


def _run_concurrently(make_coro, count):
    """Run ``count`` coroutines, each on its own thread and event loop, released together."""
    barrier = threading.Barrier(count)

    def worker(_):
        barrier.wait()
        return asyncio.run(make_coro())

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


@pytest.fixture
def run_concurrently():
    return _run_concurrently
