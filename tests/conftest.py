from __future__ import annotations

import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Environment must be in place before anything imports the settings or the app
_test_state_dir = tempfile.mkdtemp(prefix="icsession_test_")
os.environ.setdefault("ICS_STATE_DIR", _test_state_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
os.environ.setdefault("CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from icsession.config import Settings  # noqa: E402
from icsession.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_JWT_SECRET = os.environ["JWT_SECRET"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings directly, bypassing the environment."""

    def _make(**overrides) -> Settings:
        values = {"jwt_secret": TEST_JWT_SECRET, "state_dir": str(tmp_path), "test_mode": True}
        values.update(overrides)
        return Settings(**values)

    return _make


class FakeClock:
    """Settable wall clock for components that take ``clock=``."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


@pytest.fixture
def fake_clock():
    from icsession.storage.models import utcnow

    return FakeClock(utcnow())


@pytest.fixture
def fake_monotonic():
    return FakeMonotonic()


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
