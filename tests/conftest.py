import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty URL keeps the runtime on the in-process token index
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenward.config import Settings  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.service.sessions import SessionService  # noqa: E402
from tokenward.service.tokens import TokenCodec  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402
from tokenward.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FakeClock:
    """Settable wall clock for token time checks."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def log(self, event) -> None:
        self.events.append(event)

    def actions(self):
        return [e.action for e in self.events]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="tokenward-test",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes="7d",
    )


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token_index():
    return MemoryCache()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def session_service(memory_store, token_index, codec, audit_sink):
    return SessionService(
        memory_store,
        token_index,
        memory_store,
        codec,
        audit=audit_sink,
        store_timeout_seconds=0.5,
    )


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@example.com", "Alice Example")


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
