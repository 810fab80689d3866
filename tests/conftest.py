import asyncio
import inspect
import os
import sys
from pathlib import Path

# Required settings must exist before anything reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("GITHUB_CLIENT_ID", "gh-client")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "gh-secret")
os.environ.setdefault("GITHUB_REDIRECT_URI", "http://localhost:3000/api/auth/github/callback")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("GOOGLE_REDIRECT_URI", "http://localhost:3000/api/auth/google/callback")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("REDIS_PASSWORD", "test-redis-password")
os.environ.setdefault("COOKIE_DOMAIN", "localhost")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehouse.app import create_app  # noqa: E402
from gatehouse.config import Settings, reset_settings_cache  # noqa: E402
from gatehouse.service.runtime import Runtime  # noqa: E402
from gatehouse.storage.keyvalue import MemoryKeyValueStore  # noqa: E402
from gatehouse.storage.users import MemoryUserRepository  # noqa: E402


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def runtime(settings, kv) -> Runtime:
    return Runtime(settings, kv=kv, repository=MemoryUserRepository())


@pytest.fixture
def app(settings, runtime):
    return create_app(settings, runtime=runtime)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


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
