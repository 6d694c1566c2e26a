import asyncio
import inspect
import os
import re
import sys
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="reliefgate_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; the runtime falls back to in-process limits and state
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("PURGE_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from reliefgate.config import Settings  # noqa: E402
from reliefgate.service.auth import AuthService  # noqa: E402
from reliefgate.service.passwords import build_hasher, hash_secret  # noqa: E402
from reliefgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from reliefgate.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Relief@2024x"
_CODE_PATTERN = re.compile(r"verification code is: (\d+)")


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


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class RecordingEmail:
    """Email port that keeps every message instead of sending it."""

    def __init__(self):
        self.messages = []
        self.fail = False

    def send(self, to_address: str, subject: str, body: str) -> bool:
        self.messages.append({"to": to_address, "subject": subject, "body": body})
        return not self.fail

    def last_code(self, to_address=None) -> str:
        for message in reversed(self.messages):
            if to_address and message["to"] != to_address:
                continue
            match = _CODE_PATTERN.search(message["body"])
            if match:
                return match.group(1)
        raise AssertionError("no verification code was sent")

    def last_reset_token(self) -> str:
        for message in reversed(self.messages):
            match = re.search(r"token=([A-Za-z0-9_\-]+)", message["body"])
            if match:
                return match.group(1)
        raise AssertionError("no reset link was sent")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    """Settings for service-level tests."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        password_hash_time_cost=1,
        password_hash_memory_kib=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def hasher():
    return build_hasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def service(store, settings, outbox, clock, hasher):
    return AuthService(store, None, settings, email=outbox, clock=clock, hasher=hasher)


@pytest.fixture
def make_user(store, hasher, clock, settings):
    """Factory creating an email/password account with the default role."""

    def _make(email="responder@example.org", password=TEST_PASSWORD, *, two_factor=False, **fields):
        user = store.create_user(
            email,
            fields.pop("name", "Field Responder"),
            auth_provider=fields.pop("auth_provider", "email"),
            auth_provider_id=fields.pop("auth_provider_id", None),
            password_hash=hash_secret(hasher, password) if password else None,
            now=clock(),
        )
        store.assign_role(user.id, settings.default_role)
        if two_factor or fields:
            user = store.update_user(user.id, two_factor_enabled=two_factor, **fields)
        return user

    return _make
