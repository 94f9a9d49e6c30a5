import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might initialize settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REVOCATION_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryRevocationStore, MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Callable clock the tests can move forward by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with cheap argon2 parameters so tests stay fast."""
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        revocation_backend="memory",
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
        password_hash_workers=2,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def revocations(clock):
    return MemoryRevocationStore(clock=clock)


@pytest.fixture
def auth_service(memory_store, revocations, settings, clock):
    service = AuthService(
        users=memory_store,
        refresh_tokens=memory_store,
        revocations=revocations,
        settings=settings,
        clock=clock,
    )
    yield service
    service.close()


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
