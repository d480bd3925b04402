import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="learnhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process rate limiter
os.environ.setdefault("REDIS_URL", "")
# Bootstrap admin is created explicitly by the tests that need one
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from learnhub.service.runtime import reset_runtime_for_tests  # noqa: E402


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


TEST_JWT_SECRET = "unit-test-secret-with-enough-entropy-0123456789"


class RecordingNotifier:
    """Notifier double that records every delivery attempt.

    ``failures_remaining`` makes the next N attempts fail, by returning
    False or by raising when ``raise_on_failure`` is set.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.failures_remaining = 0
        self.raise_on_failure = False

    async def _record(self, kind: str, **payload) -> bool:
        self.sent.append((kind, payload))
        if self.failures_remaining:
            self.failures_remaining -= 1
            if self.raise_on_failure:
                raise ConnectionError("smtp unavailable")
            return False
        return True

    def of_kind(self, kind: str) -> list[dict]:
        return [payload for sent_kind, payload in self.sent if sent_kind == kind]

    async def send_welcome(self, to_email: str, first_name: str) -> bool:
        return await self._record("welcome", to_email=to_email, first_name=first_name)

    async def send_instructor_password(
        self, to_email: str, first_name: str, temporary_password: str
    ) -> bool:
        return await self._record(
            "instructor_password",
            to_email=to_email,
            first_name=first_name,
            temporary_password=temporary_password,
        )

    async def send_otp(self, to_email: str, code: str) -> bool:
        return await self._record("otp", to_email=to_email, code=code)


@pytest.fixture
def token_config():
    from learnhub.config import TokenConfig, derive_refresh_secret

    return TokenConfig(
        access_secret=TEST_JWT_SECRET,
        refresh_secret=derive_refresh_secret(TEST_JWT_SECRET),
        issuer="learnhub",
        audience="learnhub-clients",
    )


@pytest.fixture
def services(tmp_path, token_config):
    """Service graph over a private MemoryStore with a recording notifier."""
    from types import SimpleNamespace

    from argon2 import PasswordHasher, Type

    from learnhub.config import OtpPolicy, RetryPolicy
    from learnhub.service.admin import AdminService
    from learnhub.service.auth import AuthService
    from learnhub.service.credentials import CredentialStore
    from learnhub.service.notifications import NotificationDispatcher
    from learnhub.service.otp import OtpLedger
    from learnhub.service.tokens import TokenLedger
    from learnhub.storage.memory import MemoryStore

    store = MemoryStore(fs_root=str(tmp_path / "store"))
    notifier = RecordingNotifier()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    # Cheap argon2 parameters keep the suite fast
    hasher = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)
    credentials = CredentialStore(store, hasher=hasher)
    tokens = TokenLedger(store, token_config)
    otps = OtpLedger(store, OtpPolicy())
    dispatcher = NotificationDispatcher(
        notifier,
        RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=8.0),
        dead_letter_path=tmp_path / "dead_letter.jsonl",
        sleep=fake_sleep,
    )
    return SimpleNamespace(
        store=store,
        notifier=notifier,
        sleeps=sleeps,
        credentials=credentials,
        tokens=tokens,
        otps=otps,
        notifications=dispatcher,
        auth=AuthService(credentials, tokens, otps, dispatcher),
        admin=AdminService(credentials, tokens, otps),
    )
