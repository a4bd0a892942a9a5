from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.incidents import IncidentService
from coursegate.storage.models import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailedAttempt:
    at: datetime
    origin: Optional[str]


class LoginAttemptStore(Protocol):
    """Windowed failure counter keyed by normalized email."""

    def record_and_check(self, key: str, origin: Optional[str] = None) -> bool:
        """Record one failure; ``True`` only when this failure reaches the threshold."""
        ...

    def attempts(self, key: str) -> List[FailedAttempt]:
        """Failures for ``key`` still inside the window, oldest first."""
        ...

    def clear(self, key: str) -> None:
        ...

    def sweep(self) -> int:
        """Drop expired entries and empty keys; return the number of keys removed."""
        ...


class MemoryLoginAttemptStore:
    """Process-local ``LoginAttemptStore``.

    Each key has its own lock so concurrent failures for one email are
    serialized without contending on unrelated emails. Contents are lost on
    restart and are not shared between processes.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        window: timedelta = timedelta(minutes=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.threshold = threshold
        self.window = window
        self._clock = clock
        self._records: Dict[str, List[FailedAttempt]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        while True:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
            lock.acquire()
            # a sweep may have retired this lock while we waited on it
            if self._locks.get(key) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def record_and_check(self, key: str, origin: Optional[str] = None) -> bool:
        with self._locked(key):
            now = self._now()
            kept = [a for a in self._records.get(key, []) if a.at > now - self.window]
            kept.append(FailedAttempt(at=now, origin=origin))
            self._records[key] = kept
            return len(kept) == self.threshold

    def attempts(self, key: str) -> List[FailedAttempt]:
        with self._locked(key):
            cutoff = self._now() - self.window
            return [a for a in self._records.get(key, []) if a.at > cutoff]

    def clear(self, key: str) -> None:
        with self._locked(key):
            self._records.pop(key, None)

    def sweep(self) -> int:
        removed = 0
        cutoff = self._now() - self.window
        with self._registry_lock:
            for key, lock in list(self._locks.items()):
                with lock:
                    kept = [a for a in self._records.get(key, []) if a.at > cutoff]
                    if kept:
                        self._records[key] = kept
                        continue
                    self._records.pop(key, None)
                    del self._locks[key]
                    removed += 1
        return removed


class AccountLookup(Protocol):
    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...


class LoginAttemptTracker:
    """Escalates repeated failed logins for one account to an incident.

    Only the failure that lands exactly on the threshold escalates, so a
    sustained attack produces one incident per window rather than one per try.
    """

    def __init__(
        self,
        accounts: AccountLookup,
        attempts: LoginAttemptStore,
        incidents: IncidentService,
        audit: AuditSink,
        *,
        threshold: int = 5,
        window_minutes: int = 30,
    ) -> None:
        self.accounts = accounts
        self.attempts = attempts
        self.incidents = incidents
        self.audit = audit
        self.threshold = threshold
        self.window_minutes = window_minutes

    @staticmethod
    def _key(email: str) -> str:
        return (email or "").strip().lower()

    def record_failure(self, email: str, origin: Optional[str] = None) -> bool:
        key = self._key(email)
        account = self.accounts.get_account_by_email(key)
        if not account:
            return False
        exceeded = self.attempts.record_and_check(key, origin)
        logger.info("login_failure_recorded", account_id=account.id, origin=origin)
        if not exceeded:
            return False

        incident = self.incidents.open_incident(
            f"Multiple failed login attempts detected for user {account.id} ({account.email}). "
            f"{self.threshold} failures from IP {origin or 'unknown'} in last {self.window_minutes} minutes."
        )
        self.audit.record(None, f"Failed login threshold exceeded: {account.email}")
        origins = sorted({a.origin for a in self.attempts.attempts(key) if a.origin})
        logger.warning(
            "login_threshold_exceeded",
            account_id=account.id,
            origin=origin,
            window_origins=origins,
            incident_id=incident.id,
        )
        return True

    def record_success(self, email: str) -> None:
        self.attempts.clear(self._key(email))

    def sweep(self) -> int:
        removed = self.attempts.sweep()
        if removed:
            logger.info("login_attempts_swept", removed=removed)
        return removed
