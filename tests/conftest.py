import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hyreauth_test_")
os.environ.setdefault("SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-key-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-key-for-testing-only-do-not-use")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hyreauth.config import Settings  # noqa: E402
from hyreauth.service.auth import AuthService  # noqa: E402
from hyreauth.service.otp import OtpChallengeService  # noqa: E402
from hyreauth.service.revocation import RevocationRegistry  # noqa: E402
from hyreauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from hyreauth.service.sessions import SessionTeardownService  # noqa: E402
from hyreauth.service.tokens import TokenService  # noqa: E402
from hyreauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402

T0 = 1_700_000_000.0


class FakeClock:
    """Controllable epoch-seconds clock shared by the cache and the services."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self, *, result: bool = True, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.deliveries = []

    async def deliver_challenge(self, identifier, code, expires_at, *, purpose="login"):
        self.deliveries.append(
            {"identifier": identifier, "code": code, "expires_at": expires_at, "purpose": purpose}
        )
        if self.error is not None:
            raise self.error
        return self.result

    @property
    def last_code(self) -> str:
        return self.deliveries[-1]["code"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghijklmnop",
        secrets_dir=str(tmp_path),
    )


@pytest.fixture
def otp_service(cache, settings, clock):
    return OtpChallengeService(cache, settings.otp_policy(), clock=clock)


@pytest.fixture
def token_service(settings, clock):
    return TokenService(settings.token_config(), clock=clock)


@pytest.fixture
def revocations(cache, clock):
    return RevocationRegistry(cache, clock=clock)


@pytest.fixture
def teardown(cache):
    return SessionTeardownService(cache)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(store, otp_service, token_service, revocations, teardown, notifier, settings, clock):
    return AuthService(
        store,
        otp_service,
        token_service,
        revocations,
        teardown,
        notifier,
        settings,
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
