import os
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatekeep.config import Settings  # noqa: E402
from gatekeep.logging import clear_correlation_id  # noqa: E402
from gatekeep.service.credentials import PasswordHasher  # noqa: E402
from gatekeep.service.runtime import Runtime  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Correct-Horse9"
OTHER_PASSWORD = "Battery-Staple7"
THIRD_PASSWORD = "Tr0ub4dor&3xyz"

_TOKEN_RE = re.compile(r"token=([A-Za-z0-9_\-]+)")


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, body, html_body=None):
        if self.fail:
            return False
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html_body})
        return True

    def last_token(self):
        match = _TOKEN_RE.search(self.sent[-1]["body"])
        return match.group(1) if match else None


@pytest.fixture(autouse=True)
def reset_correlation_id():
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def settings():
    """Default policy: 5 attempts / 30 min window / 60 min lockout / 3rd lockout permanent."""
    return Settings(use_memory_store=True)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # minimal argon2 cost keeps the suite fast
    return PasswordHasher(Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, store, notifier, hasher, clock):
    return Runtime(settings, store=store, notifier=notifier, hasher=hasher, clock=clock)


@pytest.fixture
def make_account(runtime):
    def _make(email="user@example.com", password=PASSWORD, **kwargs):
        return runtime.auth.create_account(email, password, **kwargs)

    return _make


@pytest.fixture
def account(make_account):
    return make_account()
