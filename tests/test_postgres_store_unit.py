from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from coursegate.service.roles import Role
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import InviteStatus
from coursegate.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays canned result rows in order."""

    def __init__(self, results=None, raise_on_execute=None):
        self.results = list(results or [])
        self.raise_on_execute = raise_on_execute
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raise_on_execute:
            raise self.raise_on_execute
        rows = self.results.pop(0) if self.results else []
        return FakeCursor(rows)

    @contextmanager
    def transaction(self):
        yield self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.dsn = "postgresql://unit-test"
    return store


def _account_row(**overrides):
    row = {
        "id": 7,
        "name": "Kim",
        "email": "kim@example.com",
        "role": "instructor",
        "password_hash": "h",
        "backup_code": None,
        "backup_code_generated_at": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_row_to_account_keeps_missing_role_empty():
    account = PostgresStore._row_to_account(_account_row(role=None))
    assert account.role is None

    assert PostgresStore._row_to_account(_account_row()).role == Role.INSTRUCTOR


def test_create_account_maps_unique_violation():
    conn = FakeConnection(raise_on_execute=errors.UniqueViolation("duplicate key"))
    store = _store(conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("Kim", "kim@example.com", "h", Role.STUDENT)
    assert excinfo.value.field == "email"


def test_approve_is_conditional_on_pending():
    conn = FakeConnection(results=[[]])
    store = _store(conn)

    result = store.approve_invite_request(
        3, processed_by=1, token="a" * 48, token_expires_at=NOW, processed_at=NOW
    )

    assert result is None
    sql, params = conn.statements[0]
    assert "WHERE id = %s AND status = 'pending'" in sql
    assert params[-1] == 3


def test_approve_returns_updated_request():
    row = {
        "id": 3,
        "name": "Rui",
        "email": "rui@example.com",
        "role": "security_analyst",
        "message": None,
        "status": "approved",
        "token": "a" * 48,
        "token_expires_at": NOW,
        "requested_by": None,
        "processed_by": 1,
        "processed_at": NOW,
        "created_at": NOW,
    }
    store = _store(FakeConnection(results=[[row]]))

    approved = store.approve_invite_request(
        3, processed_by=1, token="a" * 48, token_expires_at=NOW, processed_at=NOW
    )

    assert approved.status == InviteStatus.APPROVED
    assert approved.role == Role.SECURITY_ANALYST


def test_redeem_missing_account_touches_nothing():
    conn = FakeConnection(results=[[]])
    store = _store(conn)

    assert store.redeem_invite_token(3, "a" * 48, 99, NOW) is None
    assert len(conn.statements) == 1
    assert "FOR UPDATE" in conn.statements[0][0]


def test_missing_tables_reported():
    conn = FakeConnection(results=[[{"oid": "account"}], [{"oid": None}], [{"oid": "incident"}], [{"oid": None}]])
    store = _store(conn)

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "audit_log, invite_request" in str(excinfo.value)
