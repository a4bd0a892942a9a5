import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Configure the environment before any import that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="coursegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ADMIN_INVITE_CODE", "admin-test-invite-code")
os.environ.setdefault("SECURITY_INVITE_CODE", "security-test-invite-code")
# in-memory rate limits so buckets reset with the runtime
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursegate.config import Settings  # noqa: E402
from coursegate.service.audit import AuditSink  # noqa: E402
from coursegate.service.auth import AuthService  # noqa: E402
from coursegate.service.guard import AccessGuard  # noqa: E402
from coursegate.service.incidents import IncidentService  # noqa: E402
from coursegate.service.invites import InviteService  # noqa: E402
from coursegate.service.login_attempts import (  # noqa: E402
    LoginAttemptTracker,
    MemoryLoginAttemptStore,
)
from coursegate.service.passwords import PasswordService  # noqa: E402
from coursegate.service.recovery import RecoveryService  # noqa: E402
from coursegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from coursegate.service.tokens import TokenService  # noqa: E402
from coursegate.storage.memory import MemoryStore  # noqa: E402

ADMIN_INVITE_CODE = os.environ["ADMIN_INVITE_CODE"]
SECURITY_INVITE_CODE = os.environ["SECURITY_INVITE_CODE"]


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state directory per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="unit-test-secret-key-with-enough-length-0123456789",
        admin_invite_code=ADMIN_INVITE_CODE,
        security_invite_code=SECURITY_INVITE_CODE,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def services(store, settings, clock):
    """Services wired by hand over one store, sharing the frozen clock."""
    tokens = TokenService(settings, clock=clock)
    passwords = PasswordService()
    audit = AuditSink(store)
    incidents = IncidentService(store, audit)
    attempt_store = MemoryLoginAttemptStore(
        threshold=settings.login_attempt_threshold,
        window=timedelta(seconds=settings.login_attempt_window_seconds),
        clock=clock,
    )
    attempts = LoginAttemptTracker(
        store,
        attempt_store,
        incidents,
        audit,
        threshold=settings.login_attempt_threshold,
        window_minutes=settings.login_attempt_window_seconds // 60,
    )
    invites = InviteService(store, tokens, audit, settings, clock=clock)
    recovery = RecoveryService(store, tokens, passwords, audit, settings, clock=clock)
    auth = AuthService(
        store, tokens, passwords, attempts, invites, recovery, incidents, audit, settings
    )
    return SimpleNamespace(
        store=store,
        settings=settings,
        clock=clock,
        tokens=tokens,
        passwords=passwords,
        audit=audit,
        incidents=incidents,
        attempt_store=attempt_store,
        attempts=attempts,
        guard=AccessGuard(store, tokens, settings),
        invites=invites,
        recovery=recovery,
        auth=auth,
    )
