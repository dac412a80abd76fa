import asyncio
import inspect
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("OWNER_EMAIL", "owner@example.com")
# Each runtime reset must start from an empty store and an empty in-process cache
os.environ["SHARED_FS_ROOT"] = ""
os.environ["REDIS_URL"] = ""
os.environ.pop("SMTP_HOST", None)
os.environ.pop("SESSION_COOKIE_SECRET", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from studiogate.config import Settings  # noqa: E402
from studiogate.service.email import EmailResult  # noqa: E402
from studiogate.service.otp import OTPService  # noqa: E402
from studiogate.service.runtime import reset_runtime_for_tests  # noqa: E402
from studiogate.service.sessions import SessionManager  # noqa: E402
from studiogate.storage.local_cache import LocalCache  # noqa: E402
from studiogate.storage.memory import MemoryStore  # noqa: E402

OWNER_EMAIL = "owner@example.com"


class FakeClock:
    """Callable clock shared by the cache and services so tests can move time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingEmail:
    """Email double that records access codes instead of sending them."""

    is_configured = True

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.fail = False

    def send_access_code(
        self, to_email, code, *, expiry_minutes, remaining_attempts, attempt_limit
    ) -> EmailResult:
        self.sent.append(
            {
                "to": to_email,
                "code": code,
                "expiry_minutes": expiry_minutes,
                "remaining_attempts": remaining_attempts,
                "attempt_limit": attempt_limit,
            }
        )
        if self.fail:
            return EmailResult(success=False, error="smtp connection failed")
        return EmailResult(success=True)

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


@dataclass
class AuthHarness:
    clock: FakeClock
    store: MemoryStore
    cache: LocalCache
    email: RecordingEmail
    settings: Settings
    sessions: SessionManager
    otp: OTPService
    owner_id: str = ""


def build_harness(cache_cls=LocalCache, *, with_owner: bool = True) -> AuthHarness:
    clock = FakeClock()
    store = MemoryStore()
    cache = cache_cls(clock=clock)
    email = RecordingEmail()
    settings = Settings()
    sessions = SessionManager(store, cache, settings, clock=clock)
    otp = OTPService(store, cache, sessions, email, settings, clock=clock)
    harness = AuthHarness(
        clock=clock,
        store=store,
        cache=cache,
        email=email,
        settings=settings,
        sessions=sessions,
        otp=otp,
    )
    if with_owner:
        owner = store.create_account(OWNER_EMAIL, first_name="Ada", last_name="Lovelace")
        harness.owner_id = owner.id
    return harness


@pytest.fixture
def harness() -> AuthHarness:
    return build_harness()


@pytest.fixture
def make_harness():
    return build_harness


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
