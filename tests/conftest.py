import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path

# Configure settings before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("CACHE_CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
TESTS = Path(__file__).resolve().parent
for path in (ROOT, TESTS):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


from fakes import FakeClock, FakeRedis  # noqa: E402
from listeners.service.runtime import reset_runtime_for_tests  # noqa: E402
from listeners.storage.models import Subscription, utcnow  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture(autouse=True)
def runtime(fake_redis):
    rt = reset_runtime_for_tests(redis_client=fake_redis)
    yield rt
    reset_runtime_for_tests(redis_client=FakeRedis())


@pytest.fixture
def make_user(runtime):
    """Create a user with a hashed password directly in the store."""

    def _make(
        email="listener@example.com",
        username="listener",
        *,
        password=STRONG_PASSWORD,
        role="user",
        verified=True,
        premium=False,
    ):
        subscription = None
        if premium:
            subscription = Subscription(type="premium", expires_at=utcnow() + timedelta(days=365))
        user = runtime.users.create_user(
            email,
            username,
            role=role,
            is_verified=verified,
            subscription=subscription,
        )
        runtime.auth.save_password(user.id, password)
        return user

    return _make


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from listeners.app import app

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
