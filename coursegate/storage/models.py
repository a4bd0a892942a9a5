from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from coursegate.service.roles import Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InviteStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class IncidentStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    UNDER_INVESTIGATION = "under_investigation"
    RESOLVED = "resolved"


@dataclass
class Account:
    id: int
    name: str
    email: str
    role: Optional[Role]
    password_hash: str = field(default="", repr=False)
    backup_code: Optional[str] = field(default=None, repr=False)
    backup_code_generated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class InviteRequest:
    id: int
    name: str
    email: str
    role: Optional[Role]
    message: Optional[str] = None
    status: InviteStatus = InviteStatus.PENDING
    token: Optional[str] = field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    requested_by: Optional[int] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_redeemable(self, now: datetime) -> bool:
        return (
            self.status == InviteStatus.APPROVED
            and self.token is not None
            and self.token_expires_at is not None
            and self.token_expires_at > now
        )

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "message": self.message,
            "status": self.status.value,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "requested_by": self.requested_by,
            "processed_by": self.processed_by,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Incident:
    id: int
    description: str
    status: IncidentStatus = IncidentStatus.OPEN
    reported_by: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "reported_by": self.reported_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AuditEntry:
    id: int
    user_id: Optional[int]
    action: str
    created_at: datetime = field(default_factory=_utcnow)
    # populated by listings that join the actor account
    user_name: Optional[str] = None
    user_email: Optional[str] = None

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "created_at": self.created_at.isoformat(),
            "user_name": self.user_name,
            "user_email": self.user_email,
        }
