from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from psycopg import Rollback, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coursegate.logging import get_logger
from coursegate.service.roles import Role, parse_role
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import (
    Account,
    AuditEntry,
    Incident,
    IncidentStatus,
    InviteRequest,
    InviteStatus,
)

_REQUIRED_TABLES = ("account", "invite_request", "incident", "audit_log")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresStore:
    """Postgres-backed credential store.

    Tables come from ``sql/001_auth_core.sql``. Multi-statement mutations run in
    ``conn.transaction()`` and lock the rows they read with ``FOR UPDATE``.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=int(row["id"]),
            name=row["name"],
            email=row["email"],
            role=parse_role(row.get("role")),
            password_hash=row.get("password_hash") or "",
            backup_code=row.get("backup_code"),
            backup_code_generated_at=row.get("backup_code_generated_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _row_to_invite(row: dict) -> InviteRequest:
        return InviteRequest(
            id=int(row["id"]),
            name=row["name"],
            email=row["email"],
            role=parse_role(row.get("role")),
            message=row.get("message"),
            status=InviteStatus(row.get("status") or InviteStatus.PENDING.value),
            token=row.get("token"),
            token_expires_at=row.get("token_expires_at"),
            requested_by=row.get("requested_by"),
            processed_by=row.get("processed_by"),
            processed_at=row.get("processed_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _row_to_incident(row: dict) -> Incident:
        return Incident(
            id=int(row["id"]),
            description=row["description"],
            status=IncidentStatus(row.get("status") or IncidentStatus.OPEN.value),
            reported_by=row.get("reported_by"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _row_to_audit(row: dict) -> AuditEntry:
        return AuditEntry(
            id=int(row["id"]),
            user_id=row.get("user_id"),
            action=row["action"],
            created_at=row.get("created_at") or _utcnow(),
            user_name=row.get("user_name"),
            user_email=row.get("user_email"),
        )

    # -- accounts ---------------------------------------------------------

    def create_account(
        self, name: str, email: str, password_hash: str, role: Role
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (name, email, password_hash, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, email, password_hash, role.value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at DESC, id DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_role(self, account_id: int, role: Role) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role.value, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password_hash(self, account_id: int, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )
            return result.rowcount > 0

    def set_backup_code(self, account_id: int, code: str, generated_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET backup_code = %s, backup_code_generated_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (code, generated_at, account_id),
            )
            return result.rowcount > 0

    def clear_backup_code(self, account_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET backup_code = NULL, backup_code_generated_at = NULL, updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )
            return result.rowcount > 0

    def reset_password(self, account_id: int, password_hash: str) -> bool:
        with self._connect() as conn, conn.transaction():
            locked = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not locked:
                return False
            conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )
            conn.execute(
                """
                UPDATE account
                SET backup_code = NULL, backup_code_generated_at = NULL
                WHERE id = %s
                """,
                (account_id,),
            )
            return True

    def delete_account(self, account_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            locked = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not locked:
                return False
            conn.execute(
                "UPDATE audit_log SET user_id = NULL WHERE user_id = %s", (account_id,)
            )
            conn.execute(
                "UPDATE invite_request SET requested_by = NULL WHERE requested_by = %s",
                (account_id,),
            )
            conn.execute(
                "UPDATE invite_request SET processed_by = NULL WHERE processed_by = %s",
                (account_id,),
            )
            conn.execute(
                "UPDATE incident SET reported_by = NULL WHERE reported_by = %s",
                (account_id,),
            )
            conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return True

    def repair_missing_roles(self, role: Role) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE account SET role = %s, updated_at = now()
                WHERE role IS NULL OR role = ''
                RETURNING id
                """,
                (role.value,),
            ).fetchall()
        return [int(row["id"]) for row in rows]

    # -- invite requests --------------------------------------------------

    def create_invite_request(
        self,
        name: str,
        email: str,
        role: Role,
        message: Optional[str] = None,
        requested_by: Optional[int] = None,
    ) -> InviteRequest:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO invite_request (name, email, role, message, requested_by)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (name, email, role.value, message, requested_by),
            ).fetchone()
        return self._row_to_invite(row)

    def get_invite_request(self, request_id: int) -> Optional[InviteRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invite_request WHERE id = %s", (request_id,)
            ).fetchone()
        return self._row_to_invite(row) if row else None

    def list_invite_requests(self, limit: int = 100) -> List[InviteRequest]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM invite_request ORDER BY created_at DESC, id DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_invite(row) for row in rows]

    def find_invite_by_token(self, token: str) -> Optional[InviteRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invite_request WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_invite(row) if row else None

    def approve_invite_request(
        self,
        request_id: int,
        processed_by: int,
        token: str,
        token_expires_at: datetime,
        processed_at: datetime,
    ) -> Optional[InviteRequest]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE invite_request
                SET status = 'approved', token = %s, token_expires_at = %s,
                    processed_by = %s, processed_at = %s
                WHERE id = %s AND status = 'pending'
                RETURNING *
                """,
                (token, token_expires_at, processed_by, processed_at, request_id),
            ).fetchone()
        return self._row_to_invite(row) if row else None

    def reject_invite_request(
        self, request_id: int, processed_by: int, processed_at: datetime
    ) -> Optional[InviteRequest]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE invite_request
                SET status = 'rejected', token = NULL, token_expires_at = NULL,
                    processed_by = %s, processed_at = %s
                WHERE id = %s AND status = 'pending'
                RETURNING *
                """,
                (processed_by, processed_at, request_id),
            ).fetchone()
        return self._row_to_invite(row) if row else None

    @staticmethod
    def _consume_invite_token(conn, request_id: int, token: str, redeemed_at: datetime) -> Optional[dict]:
        return conn.execute(
            """
            UPDATE invite_request
            SET token = NULL, token_expires_at = %s, processed_at = %s
            WHERE id = %s AND token = %s AND status = 'approved' AND token_expires_at > %s
            RETURNING *
            """,
            (redeemed_at, redeemed_at, request_id, token, redeemed_at),
        ).fetchone()

    def redeem_invite_token(
        self, request_id: int, token: str, account_id: int, redeemed_at: datetime
    ) -> Optional[Account]:
        row = None
        with self._connect() as conn, conn.transaction() as tx:
            locked = conn.execute(
                "SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not locked:
                return None
            invite_row = self._consume_invite_token(conn, request_id, token, redeemed_at)
            if not invite_row or parse_role(invite_row.get("role")) is None:
                raise Rollback(tx)
            row = conn.execute(
                "UPDATE account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (invite_row["role"], account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def create_account_with_invite(
        self,
        name: str,
        email: str,
        password_hash: str,
        request_id: int,
        token: str,
        redeemed_at: datetime,
    ) -> Optional[Account]:
        row = None
        try:
            with self._connect() as conn, conn.transaction() as tx:
                invite_row = self._consume_invite_token(conn, request_id, token, redeemed_at)
                if not invite_row or parse_role(invite_row.get("role")) is None:
                    raise Rollback(tx)
                row = conn.execute(
                    """
                    INSERT INTO account (name, email, password_hash, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, email, password_hash, invite_row["role"]),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row) if row else None

    # -- incidents --------------------------------------------------------

    def create_incident(
        self,
        description: str,
        reported_by: Optional[int] = None,
        status: IncidentStatus = IncidentStatus.OPEN,
    ) -> Incident:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO incident (description, status, reported_by)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (description, status.value, reported_by),
            ).fetchone()
        return self._row_to_incident(row)

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM incident WHERE id = %s", (incident_id,)
            ).fetchone()
        return self._row_to_incident(row) if row else None

    def list_incidents(self, limit: int = 100) -> List[Incident]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM incident ORDER BY created_at DESC, id DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._row_to_incident(row) for row in rows]

    def update_incident_status(
        self, incident_id: int, status: IncidentStatus
    ) -> Optional[Incident]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE incident SET status = %s WHERE id = %s RETURNING *",
                (status.value, incident_id),
            ).fetchone()
        return self._row_to_incident(row) if row else None

    # -- audit ------------------------------------------------------------

    def append_audit_entry(self, user_id: Optional[int], action: str) -> AuditEntry:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO audit_log (user_id, action) VALUES (%s, %s) RETURNING *",
                (user_id, action),
            ).fetchone()
        return self._row_to_audit(row)

    def list_audit_entries(self, limit: int = 100) -> List[AuditEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT l.*, a.name AS user_name, a.email AS user_email
                FROM audit_log l
                LEFT JOIN account a ON a.id = l.user_id
                ORDER BY l.created_at DESC, l.id DESC
                LIMIT %s
                """,
                (limit,),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]
