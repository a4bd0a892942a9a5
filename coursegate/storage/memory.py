from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

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

_SEQUENCES = ("accounts", "invite_requests", "incidents", "audit_entries")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-memory credential store snapshotted to ``fs_root/state`` as JSON.

    Used for development and tests. Every public method takes ``_data_lock``;
    multi-step mutations run inside ``_transaction`` which restores the prior
    state when any step raises.
    """

    def __init__(self, fs_root: str = "/tmp/coursegate") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.invite_requests: Dict[int, InviteRequest] = {}
        self.incidents: Dict[int, Incident] = {}
        self.audit_entries: List[AuditEntry] = []
        self._sequences: Dict[str, int] = {name: 0 for name in _SEQUENCES}
        self._seq_lock = threading.Lock()
        # RLock so transactional helpers can call the single-row methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_id(self, sequence: str) -> int:
        with self._seq_lock:
            self._sequences[sequence] += 1
            return self._sequences[sequence]

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = copy.deepcopy(
                (self.accounts, self.invite_requests, self.incidents, self.audit_entries, self._sequences)
            )
            try:
                yield
                self._persist_state()
            except Exception:
                (
                    self.accounts,
                    self.invite_requests,
                    self.incidents,
                    self.audit_entries,
                    self._sequences,
                ) = snapshot
                raise

    def ping(self) -> bool:
        return self._state_path().parent.is_dir()

    # -- accounts ---------------------------------------------------------

    def create_account(
        self, name: str, email: str, password_hash: str, role: Role
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=self._next_id("accounts"),
                name=name,
                email=email,
                role=role,
                password_hash=password_hash,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(
                self.accounts.values(), key=lambda a: (a.created_at, a.id), reverse=True
            )
            return ordered[:limit]

    def update_role(self, account_id: int, role: Role) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return account

    def update_password_hash(self, account_id: int, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            self._persist_state()
            return True

    def set_backup_code(self, account_id: int, code: str, generated_at: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.backup_code = code
            account.backup_code_generated_at = generated_at
            self._persist_state()
            return True

    def clear_backup_code(self, account_id: int) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.backup_code = None
            account.backup_code_generated_at = None
            self._persist_state()
            return True

    def reset_password(self, account_id: int, password_hash: str) -> bool:
        with self._transaction():
            if not self.update_password_hash(account_id, password_hash):
                return False
            return self.clear_backup_code(account_id)

    def delete_account(self, account_id: int) -> bool:
        with self._transaction():
            if self.accounts.pop(account_id, None) is None:
                return False
            for entry in self.audit_entries:
                if entry.user_id == account_id:
                    entry.user_id = None
            for request in self.invite_requests.values():
                if request.requested_by == account_id:
                    request.requested_by = None
                if request.processed_by == account_id:
                    request.processed_by = None
            for incident in self.incidents.values():
                if incident.reported_by == account_id:
                    incident.reported_by = None
            return True

    def repair_missing_roles(self, role: Role) -> List[int]:
        with self._data_lock:
            repaired = [a.id for a in self.accounts.values() if a.role is None]
            for account_id in repaired:
                self.accounts[account_id].role = role
            if repaired:
                self._persist_state()
            return repaired

    # -- invite requests --------------------------------------------------

    def create_invite_request(
        self,
        name: str,
        email: str,
        role: Role,
        message: Optional[str] = None,
        requested_by: Optional[int] = None,
    ) -> InviteRequest:
        with self._data_lock:
            request = InviteRequest(
                id=self._next_id("invite_requests"),
                name=name,
                email=email,
                role=role,
                message=message,
                requested_by=requested_by,
            )
            self.invite_requests[request.id] = request
            self._persist_state()
            return request

    def get_invite_request(self, request_id: int) -> Optional[InviteRequest]:
        with self._data_lock:
            return self.invite_requests.get(request_id)

    def list_invite_requests(self, limit: int = 100) -> List[InviteRequest]:
        with self._data_lock:
            ordered = sorted(
                self.invite_requests.values(), key=lambda r: (r.created_at, r.id), reverse=True
            )
            return ordered[:limit]

    def find_invite_by_token(self, token: str) -> Optional[InviteRequest]:
        with self._data_lock:
            return next(
                (r for r in self.invite_requests.values() if r.token is not None and r.token == token),
                None,
            )

    def approve_invite_request(
        self,
        request_id: int,
        processed_by: int,
        token: str,
        token_expires_at: datetime,
        processed_at: datetime,
    ) -> Optional[InviteRequest]:
        """Move a pending request to approved; ``None`` when it is not pending."""
        with self._transaction():
            request = self.invite_requests.get(request_id)
            if not request or request.status != InviteStatus.PENDING:
                return None
            request.status = InviteStatus.APPROVED
            request.token = token
            request.token_expires_at = token_expires_at
            request.processed_by = processed_by
            request.processed_at = processed_at
            return request

    def reject_invite_request(
        self, request_id: int, processed_by: int, processed_at: datetime
    ) -> Optional[InviteRequest]:
        with self._transaction():
            request = self.invite_requests.get(request_id)
            if not request or request.status != InviteStatus.PENDING:
                return None
            request.status = InviteStatus.REJECTED
            request.token = None
            request.token_expires_at = None
            request.processed_by = processed_by
            request.processed_at = processed_at
            return request

    def _consume_invite_token(
        self, request_id: int, token: str, redeemed_at: datetime
    ) -> Optional[InviteRequest]:
        request = self.invite_requests.get(request_id)
        if (
            not request
            or request.role is None
            or request.token != token
            or not request.is_redeemable(redeemed_at)
        ):
            return None
        request.token = None
        request.token_expires_at = redeemed_at
        request.processed_at = redeemed_at
        return request

    def redeem_invite_token(
        self, request_id: int, token: str, account_id: int, redeemed_at: datetime
    ) -> Optional[Account]:
        """Clear the token and apply its role to ``account_id`` together."""
        with self._transaction():
            account = self.accounts.get(account_id)
            if not account:
                return None
            request = self._consume_invite_token(request_id, token, redeemed_at)
            if not request:
                return None
            account.role = request.role
            return account

    def create_account_with_invite(
        self,
        name: str,
        email: str,
        password_hash: str,
        request_id: int,
        token: str,
        redeemed_at: datetime,
    ) -> Optional[Account]:
        with self._transaction():
            request = self._consume_invite_token(request_id, token, redeemed_at)
            if not request:
                return None
            return self.create_account(name, email, password_hash, request.role)

    # -- incidents --------------------------------------------------------

    def create_incident(
        self,
        description: str,
        reported_by: Optional[int] = None,
        status: IncidentStatus = IncidentStatus.OPEN,
    ) -> Incident:
        with self._data_lock:
            incident = Incident(
                id=self._next_id("incidents"),
                description=description,
                status=status,
                reported_by=reported_by,
            )
            self.incidents[incident.id] = incident
            self._persist_state()
            return incident

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        with self._data_lock:
            return self.incidents.get(incident_id)

    def list_incidents(self, limit: int = 100) -> List[Incident]:
        with self._data_lock:
            ordered = sorted(
                self.incidents.values(), key=lambda i: (i.created_at, i.id), reverse=True
            )
            return ordered[:limit]

    def update_incident_status(
        self, incident_id: int, status: IncidentStatus
    ) -> Optional[Incident]:
        with self._data_lock:
            incident = self.incidents.get(incident_id)
            if not incident:
                return None
            incident.status = status
            self._persist_state()
            return incident

    # -- audit ------------------------------------------------------------

    def append_audit_entry(self, user_id: Optional[int], action: str) -> AuditEntry:
        with self._data_lock:
            entry = AuditEntry(id=self._next_id("audit_entries"), user_id=user_id, action=action)
            self.audit_entries.append(entry)
            self._persist_state()
            return entry

    def list_audit_entries(self, limit: int = 100) -> List[AuditEntry]:
        with self._data_lock:
            ordered = sorted(
                self.audit_entries, key=lambda e: (e.created_at, e.id), reverse=True
            )[:limit]
            results = []
            for entry in ordered:
                actor = self.accounts.get(entry.user_id) if entry.user_id else None
                results.append(
                    replace(
                        entry,
                        user_name=actor.name if actor else None,
                        user_email=actor.email if actor else None,
                    )
                )
            return results

    # -- persistence ------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _persist_state(self) -> None:
        state = {
            "sequences": self._sequences,
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "invite_requests": [
                self._serialize_invite(r) for r in self.invite_requests.values()
            ],
            "incidents": [self._serialize_incident(i) for i in self.incidents.values()],
            "audit_entries": [self._serialize_audit(e) for e in self.audit_entries],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.invite_requests = {
            r["id"]: self._deserialize_invite(r) for r in data.get("invite_requests", [])
        }
        self.incidents = {
            i["id"]: self._deserialize_incident(i) for i in data.get("incidents", [])
        }
        self.audit_entries = [
            self._deserialize_audit(e) for e in data.get("audit_entries", [])
        ]
        persisted_seq = data.get("sequences", {})
        self._sequences = {
            "accounts": max([persisted_seq.get("accounts", 0), *self.accounts.keys()]),
            "invite_requests": max(
                [persisted_seq.get("invite_requests", 0), *self.invite_requests.keys()]
            ),
            "incidents": max([persisted_seq.get("incidents", 0), *self.incidents.keys()]),
            "audit_entries": max(
                [persisted_seq.get("audit_entries", 0), *(e.id for e in self.audit_entries)]
            ),
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "name": account.name,
            "email": account.email,
            "role": account.role.value if account.role else None,
            "password_hash": account.password_hash,
            "backup_code": account.backup_code,
            "backup_code_generated_at": self._serialize_datetime(
                account.backup_code_generated_at
            ),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=int(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            role=parse_role(data.get("role")),
            password_hash=data.get("password_hash", ""),
            backup_code=data.get("backup_code"),
            backup_code_generated_at=self._deserialize_datetime(
                data.get("backup_code_generated_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
        )

    def _serialize_invite(self, request: InviteRequest) -> dict:
        return {
            "id": request.id,
            "name": request.name,
            "email": request.email,
            "role": request.role.value if request.role else None,
            "message": request.message,
            "status": request.status.value,
            "token": request.token,
            "token_expires_at": self._serialize_datetime(request.token_expires_at),
            "requested_by": request.requested_by,
            "processed_by": request.processed_by,
            "processed_at": self._serialize_datetime(request.processed_at),
            "created_at": self._serialize_datetime(request.created_at),
        }

    def _deserialize_invite(self, data: dict) -> InviteRequest:
        return InviteRequest(
            id=int(data["id"]),
            name=data.get("name", ""),
            email=data.get("email", ""),
            role=parse_role(data.get("role")),
            message=data.get("message"),
            status=InviteStatus(data.get("status", InviteStatus.PENDING.value)),
            token=data.get("token"),
            token_expires_at=self._deserialize_datetime(data.get("token_expires_at")),
            requested_by=data.get("requested_by"),
            processed_by=data.get("processed_by"),
            processed_at=self._deserialize_datetime(data.get("processed_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
        )

    def _serialize_incident(self, incident: Incident) -> dict:
        return {
            "id": incident.id,
            "description": incident.description,
            "status": incident.status.value,
            "reported_by": incident.reported_by,
            "created_at": self._serialize_datetime(incident.created_at),
        }

    def _deserialize_incident(self, data: dict) -> Incident:
        return Incident(
            id=int(data["id"]),
            description=data.get("description", ""),
            status=IncidentStatus(data.get("status", IncidentStatus.OPEN.value)),
            reported_by=data.get("reported_by"),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
        )

    def _serialize_audit(self, entry: AuditEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditEntry:
        return AuditEntry(
            id=int(data["id"]),
            user_id=data.get("user_id"),
            action=data.get("action", ""),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
        )
