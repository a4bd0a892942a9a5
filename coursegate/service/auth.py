from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from coursegate.service.guard import Principal
from coursegate.service.incidents import IncidentService
from coursegate.service.invites import InviteService
from coursegate.service.login_attempts import LoginAttemptTracker
from coursegate.service.migrations import repair_account_role
from coursegate.service.passwords import PasswordService, validate_new_password
from coursegate.service.recovery import BackupCode, RecoveryService
from coursegate.service.roles import ELEVATED_ROLES, Role, parse_role, role_values
from coursegate.service.tokens import TokenService
from coursegate.storage.models import Account

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_account(
        self, name: str, email: str, password_hash: str, role: Role
    ) -> Account:
        ...

    def get_account(self, account_id: int) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def list_accounts(self, limit: int = 100) -> List[Account]:
        ...

    def update_role(self, account_id: int, role: Role) -> Optional[Account]:
        ...

    def reset_password(self, account_id: int, password_hash: str) -> bool:
        ...

    def delete_account(self, account_id: int) -> bool:
        ...


@dataclass
class Registration:
    account: Account
    token: str
    backup_code: BackupCode


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Account lifecycle: registration, login, password change and admin actions."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        passwords: PasswordService,
        attempts: LoginAttemptTracker,
        invites: InviteService,
        recovery: RecoveryService,
        incidents: IncidentService,
        audit: AuditSink,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.attempts = attempts
        self.invites = invites
        self.recovery = recovery
        self.incidents = incidents
        self.audit = audit
        self.settings = settings

    def _static_secret_matches(self, role: Role, invite_code: Optional[str]) -> bool:
        expected = self.settings.invite_secret_for(role)
        if not expected or not invite_code:
            return False
        return hmac.compare_digest(expected.encode(), invite_code.encode())

    def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        role: str | Role = Role.STUDENT,
        invite_code: Optional[str] = None,
        invite_token: Optional[str] = None,
    ) -> Registration:
        """Create an account and hand back its first access token and backup code.

        ``admin`` and ``security_analyst`` need either the static per-role
        secret or an approved invite token for that role. Without one the
        request is refused before anything is written.

        Raises:
            ValidationError: bad name, role or password.
            ForbiddenError: elevated role without a valid secret or invite.
            ConstraintViolation: the email is already registered.
        """
        target_role = parse_role(role)
        if target_role is None:
            raise ValidationError(
                "invalid role", detail={"field": "role", "allowed": role_values(Role)}
            )
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        email = normalize_email(email)
        validate_new_password(password)

        if target_role in ELEVATED_ROLES:
            if self._static_secret_matches(target_role, invite_code):
                account = self.store.create_account(
                    name, email, self.passwords.hash(password), target_role
                )
                self.audit.record(
                    account.id, f"Registered with static invite code role={target_role.value}"
                )
            elif invite_token:
                account = self.invites.register_with_token(
                    name=name,
                    email=email,
                    password_hash=self.passwords.hash(password),
                    role=target_role,
                    token=invite_token,
                )
            else:
                logger.warning("registration_elevation_denied", role=target_role.value)
                raise ForbiddenError(
                    "invalid or missing invite code for requested role",
                    detail={"role": target_role.value},
                )
        else:
            account = self.store.create_account(
                name, email, self.passwords.hash(password), target_role
            )

        backup = self.recovery.issue_backup_code(
            account.id, action="Generated backup code at registration"
        )
        logger.info("account_registered", account_id=account.id, role=target_role.value)
        return Registration(account=account, token=self.tokens.issue_access(account), backup_code=backup)

    def login(
        self, email: str, password: str, *, origin: Optional[str] = None
    ) -> Tuple[Account, str]:
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if not account:
            self.passwords.burn(password)
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError("invalid email or password")
        if not self.passwords.verify(account.password_hash, password):
            self.attempts.record_failure(email, origin)
            logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError("invalid email or password")

        self.attempts.record_success(email)
        if account.role is None:
            repair_account_role(
                self.store, account, self.settings.default_repair_role, source="login"
            )
        logger.info("login_succeeded", account_id=account.id)
        return account, self.tokens.issue_access(account)

    def current_account(self, principal: Principal) -> Account:
        account = self.store.get_account(principal.id)
        if not account:
            raise AuthenticationError("user no longer exists")
        return account

    def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> str:
        account = self.current_account(principal)
        if not self.passwords.verify(account.password_hash, current_password or ""):
            raise InvalidCredentialsError("current password is incorrect")
        validate_new_password(new_password)
        self.store.reset_password(account.id, self.passwords.hash(new_password))
        self.audit.record(account.id, "Changed password")
        logger.info("password_changed", account_id=account.id)
        return self.tokens.issue_access(account)

    def view_account(self, principal: Principal, account_id: int) -> Account:
        """Return ``account_id`` to its owner or an admin; anyone else opens an incident."""
        if not principal.is_self_or(account_id):
            incident = self.incidents.record_unauthorized_access(
                target_id=account_id, actor_id=principal.id
            )
            raise ForbiddenError(
                "access denied", detail={"incident_id": incident.id}
            )
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("user not found", detail={"user_id": account_id})
        return account

    def list_accounts(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)

    def set_role(
        self, admin: Principal, account_id: int, role: str | Role
    ) -> Tuple[Account, str]:
        new_role = parse_role(role)
        if new_role is None:
            raise ValidationError(
                "invalid role", detail={"field": "role", "allowed": role_values(Role)}
            )
        account = self.store.update_role(account_id, new_role)
        if not account:
            raise NotFoundError("user not found", detail={"user_id": account_id})
        self.audit.record(admin.id, f"Admin set role for user_id={account_id} to {new_role.value}")
        logger.info("user_role_updated", account_id=account_id, role=new_role.value, admin_id=admin.id)
        return account, self.tokens.issue_access(account)

    def delete_account(self, admin: Principal, account_id: int) -> None:
        if admin.id == account_id:
            raise BadRequestError("cannot delete your own account")
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("user not found", detail={"user_id": account_id})
        if account.role == Role.ADMIN:
            raise ForbiddenError("cannot delete another admin account")
        if not self.store.delete_account(account_id):
            raise NotFoundError("user not found", detail={"user_id": account_id})
        role = account.role.value if account.role else None
        self.audit.record(admin.id, f"Deleted user_id={account_id} role={role}")
        logger.info("user_deleted", account_id=account_id, admin_id=admin.id)
