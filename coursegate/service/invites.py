from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.errors import (
    AlreadyProcessedError,
    ForbiddenError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from coursegate.service.guard import Principal
from coursegate.service.roles import Role, parse_role, role_values
from coursegate.service.tokens import TokenService
from coursegate.storage.models import Account, InviteRequest, InviteStatus

logger = get_logger(__name__)

INVITE_TOKEN_BYTES = 24

# Target roles an approved invite may grant
REDEEMABLE_ROLES = frozenset(Role)


class InviteStore(Protocol):
    def create_invite_request(
        self,
        name: str,
        email: str,
        role: Role,
        message: Optional[str] = None,
        requested_by: Optional[int] = None,
    ) -> InviteRequest:
        ...

    def get_invite_request(self, request_id: int) -> Optional[InviteRequest]:
        ...

    def list_invite_requests(self, limit: int = 100) -> List[InviteRequest]:
        ...

    def find_invite_by_token(self, token: str) -> Optional[InviteRequest]:
        ...

    def approve_invite_request(
        self,
        request_id: int,
        processed_by: int,
        token: str,
        token_expires_at: datetime,
        processed_at: datetime,
    ) -> Optional[InviteRequest]:
        ...

    def reject_invite_request(
        self, request_id: int, processed_by: int, processed_at: datetime
    ) -> Optional[InviteRequest]:
        ...

    def redeem_invite_token(
        self, request_id: int, token: str, account_id: int, redeemed_at: datetime
    ) -> Optional[Account]:
        ...

    def create_account_with_invite(
        self,
        name: str,
        email: str,
        password_hash: str,
        request_id: int,
        token: str,
        redeemed_at: datetime,
    ) -> Optional[Account]:
        ...


class InviteService:
    """Request, approval and redemption of role-elevation invites.

    ``pending`` moves to ``approved`` or ``rejected`` exactly once; an approved
    request carries a single-use token until it is redeemed. The store applies
    each transition as a conditional update, so two racing approvals or
    redemptions cannot both succeed.
    """

    def __init__(
        self,
        store: InviteStore,
        tokens: TokenService,
        audit: AuditSink,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _require_admin(principal: Principal) -> None:
        if principal.role != Role.ADMIN:
            raise ForbiddenError(
                "access denied: insufficient permissions",
                detail={"required": [Role.ADMIN.value], "current": principal.role.value},
            )

    def request(
        self,
        *,
        name: str,
        email: str,
        role: str | Role,
        message: Optional[str] = None,
        requested_by: Optional[int] = None,
    ) -> InviteRequest:
        target_role = parse_role(role)
        if target_role is None:
            raise ValidationError(
                "invalid role", detail={"field": "role", "allowed": role_values(Role)}
            )
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        request = self.store.create_invite_request(
            name=name,
            email=(email or "").strip().lower(),
            role=target_role,
            message=message,
            requested_by=requested_by,
        )
        self.audit.record(
            requested_by,
            f"Invite request created id={request.id} name={request.name} "
            f"email={request.email} role={target_role.value}",
        )
        logger.info("invite_requested", request_id=request.id, role=target_role.value)
        return request

    def list_requests(self, limit: int = 100) -> List[InviteRequest]:
        return self.store.list_invite_requests(limit=limit)

    def _pending_request(self, request_id: int) -> InviteRequest:
        request = self.store.get_invite_request(request_id)
        if not request:
            raise NotFoundError("request not found", detail={"request_id": request_id})
        if request.status != InviteStatus.PENDING:
            raise AlreadyProcessedError(
                "request has already been processed",
                detail={"request_id": request_id, "status": request.status.value},
            )
        return request

    def approve(self, request_id: int, approver: Principal) -> InviteRequest:
        self._require_admin(approver)
        self._pending_request(request_id)
        now = self._now()
        expires_at = now + timedelta(days=self.settings.invite_token_ttl_days)
        approved = self.store.approve_invite_request(
            request_id,
            processed_by=approver.id,
            token=secrets.token_hex(INVITE_TOKEN_BYTES),
            token_expires_at=expires_at,
            processed_at=now,
        )
        if not approved:
            raise AlreadyProcessedError(
                "request has already been processed", detail={"request_id": request_id}
            )
        self.audit.record(approver.id, f"Approved invite request id={request_id}")
        logger.info("invite_approved", request_id=request_id, approver_id=approver.id)
        return approved

    def reject(self, request_id: int, approver: Principal) -> InviteRequest:
        self._require_admin(approver)
        self._pending_request(request_id)
        rejected = self.store.reject_invite_request(
            request_id, processed_by=approver.id, processed_at=self._now()
        )
        if not rejected:
            raise AlreadyProcessedError(
                "request has already been processed", detail={"request_id": request_id}
            )
        self.audit.record(approver.id, f"Rejected invite request id={request_id}")
        logger.info("invite_rejected", request_id=request_id, approver_id=approver.id)
        return rejected

    def _redeemable(self, token: str, now: datetime) -> Optional[InviteRequest]:
        if not token:
            return None
        request = self.store.find_invite_by_token(token)
        if not request or not request.is_redeemable(now):
            return None
        if request.role not in REDEEMABLE_ROLES:
            logger.warning("invite_role_invalid", request_id=request.id)
            return None
        return request

    def redeem(self, token: str, principal: Principal) -> Tuple[Account, str]:
        """Apply an approved invite to the caller and return a fresh access token."""
        token = (token or "").strip()
        if not token:
            raise ValidationError("token is required", detail={"field": "token"})
        now = self._now()
        request = self._redeemable(token, now)
        account = (
            self.store.redeem_invite_token(request.id, token, principal.id, now)
            if request
            else None
        )
        if not account or account.role is None:
            raise InvalidOrExpiredTokenError("invalid or expired token")

        self.audit.record(
            principal.id,
            f"Applied invite token request_id={request.id} role={account.role.value}",
        )
        logger.info(
            "invite_redeemed", request_id=request.id, account_id=account.id, role=account.role.value
        )
        return account, self.tokens.issue_access(account)

    def register_with_token(
        self, *, name: str, email: str, password_hash: str, role: Role, token: str
    ) -> Account:
        """Create the account and consume the invite in one transaction.

        The invite's role must equal ``role``; any mismatch is refused without
        creating an account.
        """
        now = self._now()
        token = (token or "").strip()
        request = self._redeemable(token, now)
        if not request or request.role != role:
            raise ForbiddenError("invalid or expired invite token for requested role")
        account = self.store.create_account_with_invite(
            name=name,
            email=email,
            password_hash=password_hash,
            request_id=request.id,
            token=token,
            redeemed_at=now,
        )
        if not account:
            raise ForbiddenError("invalid or expired invite token for requested role")
        self.audit.record(
            account.id,
            f"Consumed invite token on registration request_id={request.id} role={role.value}",
        )
        logger.info("invite_redeemed_at_registration", request_id=request.id, account_id=account.id)
        return account
