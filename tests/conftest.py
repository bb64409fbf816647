import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Configure the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="benefitsai_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("IDENTITY_PROVIDER", "local")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use")
os.environ.setdefault("LOCAL_IDP_SECRET", "test-idp-secret-for-testing-only-do-not-use")
# No Redis in unit tests; Runtime falls back to MemoryCache under TEST_MODE
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from benefitsai.config import Settings, reset_settings_cache  # noqa: E402
from benefitsai.service.identity import LocalIdentityProvider  # noqa: E402
from benefitsai.service.runtime import Runtime  # noqa: E402
from benefitsai.storage.memory import MemoryCache, MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingCookies:
    """Collects ``set_cookie`` calls the way a response would receive them."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    def set_cookie(self, key, value="", max_age=None, expires=None, path="/",
                   domain=None, secure=False, httponly=False, samesite="lax"):
        self.calls.append(
            {
                "key": key,
                "value": value,
                "max_age": max_age,
                "expires": expires,
                "path": path,
                "secure": secure,
                "httponly": httponly,
                "samesite": samesite,
            }
        )

    def last(self, key: str) -> dict | None:
        matches = [c for c in self.calls if c["key"] == key]
        return matches[-1] if matches else None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings.from_env()


@pytest.fixture
def cookies():
    return RecordingCookies()


@pytest.fixture
def runtime(settings, clock):
    return Runtime(
        settings,
        store=MemoryStore(),
        cache=MemoryCache(clock=clock),
        identity_provider=LocalIdentityProvider(
            settings.local_idp_secret, issuer=settings.local_idp_issuer, clock=clock
        ),
        clock=clock,
    )


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
