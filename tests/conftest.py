import asyncio
import inspect
import os
import sys
import tempfile
import time
from datetime import timedelta
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="notekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process throttle so buckets reset with the runtime
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("PASSWORD_HASH_WORKERS", "2")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from notekeep.config import Settings  # noqa: E402
from notekeep.service.auth import AuthService  # noqa: E402
from notekeep.service.email import EmailService  # noqa: E402
from notekeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from notekeep.storage.memory import MemoryStore  # noqa: E402
from notekeep.storage.models import utcnow  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42!"


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


class RecordingEmail(EmailService):
    """Captures one-time codes and link tokens instead of sending them."""

    def __init__(self, *, delay: float = 0.0, result: bool = True):
        super().__init__()
        self.delay = delay
        self.result = result
        self.sent = []
        self.links = []

    def send_one_time_code(self, to_email, username, code, purpose, *, ttl_minutes=10):
        if self.delay:
            time.sleep(self.delay)
        self.sent.append({"to": to_email, "code": code, "purpose": purpose})
        return self.result

    def last_code(self, purpose=None):
        for entry in reversed(self.sent):
            if purpose is None or entry["purpose"] == purpose:
                return entry["code"]
        raise AssertionError("no code was sent")

    def send_email_verification(self, to_email, username, token, *, ttl_hours=24):
        self.links.append({"to": to_email, "token": token, "purpose": "verify_email"})
        return self.result

    def send_password_reset(self, to_email, username, token, *, ttl_minutes=30):
        self.links.append({"to": to_email, "token": token, "purpose": "password_reset"})
        return self.result

    def last_link(self, purpose):
        for entry in reversed(self.links):
            if entry["purpose"] == purpose:
                return entry["token"]
        raise AssertionError(f"no {purpose} link was sent")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets an empty store directory
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        password_hash_workers=2,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def email_factory():
    return RecordingEmail


@pytest.fixture
def auth_service(memory_store, settings, email, clock):
    service = AuthService(memory_store, settings, email=email, clock=clock)
    yield service
    service.shutdown()


@pytest.fixture
def make_user(auth_service, memory_store, email):
    """Async factory: registered account, optionally with verified email and 2FA."""
    outbox = email

    async def _make(
        username="alice",
        password=STRONG_PASSWORD,
        *,
        email=None,
        verified=False,
        two_factor=False,
        disabled=False,
    ):
        if two_factor and email is None:
            email = f"{username}@example.com"
        result = await auth_service.register(username, password, email)
        user_id = result.user_id
        if verified or two_factor:
            await auth_service.verify_email(outbox.last_link("verify_email"))
        if two_factor:
            memory_store.set_two_factor_enabled(user_id, True)
        if disabled:
            memory_store.set_user_disabled(user_id, True)
        return memory_store.get_user(user_id)

    return _make


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
