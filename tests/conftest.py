import asyncio
import inspect
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; the cache is exercised through in-test fakes
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http, so cookies must not be marked secure
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("READ_RETRY_BACKOFF_MS", "0")
# Cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.coordinator import SessionCoordinator  # noqa: E402
from authcore.service.credentials import CredentialStore  # noqa: E402
from authcore.service.passwords import PasswordService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.sessions import SessionStore  # noqa: E402
from authcore.service.tokens import TokenIssuer  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeInvalidationCache:
    """Dict-backed stand-in for the Redis invalidation cache."""

    def __init__(self):
        self.states: Dict[Tuple[str, str], str] = {}
        self.fail = False
        self.calls = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise ConnectionError("cache down")

    async def remember_valid(self, user_id, session_id, expires_at):
        self._check("remember_valid")
        self.states[(user_id, session_id)] = "valid"

    async def mark_invalid(self, user_id, session_id, expires_at=None):
        self._check("mark_invalid")
        self.states[(user_id, session_id)] = "invalid"

    async def is_known_invalid(self, user_id, session_id):
        self._check("is_known_invalid")
        return self.states.get((user_id, session_id)) == "invalid"

    async def clear_for_user(self, user_id, except_session_id=None):
        self._check("clear_for_user")
        stale = [
            key
            for key in self.states
            if key[0] == user_id and key[1] != except_session_id
        ]
        for key in stale:
            del self.states[key]
        return len(stale)


@dataclass
class AuthStack:
    settings: Settings
    clock: FakeClock
    store: MemoryStore
    cache: FakeInvalidationCache
    passwords: PasswordService
    credentials: CredentialStore
    sessions: SessionStore
    tokens: TokenIssuer
    coordinator: SessionCoordinator


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_JWT_SECRET,
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=8192,
        argon2_parallelism=1,
        read_retry_backoff_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


def build_stack(settings: Optional[Settings] = None, *, with_cache: bool = True) -> AuthStack:
    settings = settings or make_settings()
    clock = FakeClock()
    store = MemoryStore()
    cache = FakeInvalidationCache()
    passwords = PasswordService(settings)
    credentials = CredentialStore(store, passwords, settings, clock=clock)
    sessions = SessionStore(store, settings, clock=clock)
    tokens = TokenIssuer(settings, clock=clock)
    coordinator = SessionCoordinator(
        credentials,
        sessions,
        tokens,
        cache if with_cache else None,
        settings,
        clock=clock,
    )
    return AuthStack(
        settings=settings,
        clock=clock,
        store=store,
        cache=cache,
        passwords=passwords,
        credentials=credentials,
        sessions=sessions,
        tokens=tokens,
        coordinator=coordinator,
    )


@pytest.fixture
def stack() -> AuthStack:
    return build_stack()


@pytest.fixture
def make_stack():
    """Factory for stacks with settings overrides, e.g. ``make_stack(max_failed_logins=3)``."""

    def _make(*, with_cache: bool = True, **overrides) -> AuthStack:
        return build_stack(make_settings(**overrides), with_cache=with_cache)

    return _make


@pytest.fixture
def clock(stack) -> FakeClock:
    return stack.clock


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
