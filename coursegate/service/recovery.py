from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.errors import (
    ExpiredError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from coursegate.service.passwords import PasswordService, validate_new_password
from coursegate.service.tokens import TokenPurpose, TokenService
from coursegate.storage.models import Account

logger = get_logger(__name__)

BACKUP_CODE_DIGITS = 6
_BACKUP_CODE_SPACE = 10 ** BACKUP_CODE_DIGITS


def generate_backup_code() -> str:
    """Uniform over [0, 1_000_000), zero-padded to six digits."""
    return str(secrets.randbelow(_BACKUP_CODE_SPACE)).zfill(BACKUP_CODE_DIGITS)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class BackupCode:
    code: str
    generated_at: datetime


class RecoveryStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def set_backup_code(self, account_id: int, code: str, generated_at: datetime) -> bool:
        ...

    def reset_password(self, account_id: int, password_hash: str) -> bool:
        ...


class RecoveryService:
    """Backup-code password recovery.

    The three steps share no server-side session: ``start`` reports whether
    the email is known, ``verify`` trades a valid backup code for a
    short-lived reset token, and ``reset`` spends that token on a new
    password. Resetting clears the backup code, so the account must generate
    a fresh one before it can recover again.
    """

    def __init__(
        self,
        store: RecoveryStore,
        tokens: TokenService,
        passwords: PasswordService,
        audit: AuditSink,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def issue_backup_code(
        self, account_id: int, *, action: str = "Regenerated backup code"
    ) -> BackupCode:
        backup = BackupCode(code=generate_backup_code(), generated_at=self._now())
        if not self.store.set_backup_code(account_id, backup.code, backup.generated_at):
            raise NotFoundError("user not found", detail={"user_id": account_id})
        self.audit.record(account_id, action)
        logger.info("backup_code_issued", account_id=account_id)
        return backup

    def start(self, email: str) -> bool:
        # discloses existence by design; callers always get a 200
        found = self.store.get_account_by_email(_normalize_email(email)) is not None
        logger.info("recovery_started", found=found)
        return found

    def verify(self, email: str, code: str) -> str:
        """Exchange a backup code for a password-reset token.

        Raises:
            ValidationError: ``code`` is not six ASCII digits.
            InvalidCredentialsError: unknown email or wrong code.
            ExpiredError: the code is older than the configured lifetime.
        """
        code = (code or "").strip()
        if len(code) != BACKUP_CODE_DIGITS or not (code.isascii() and code.isdigit()):
            raise ValidationError(
                f"backup code must be {BACKUP_CODE_DIGITS} digits", detail={"field": "code"}
            )

        account = self.store.get_account_by_email(_normalize_email(email))
        if (
            not account
            or not account.backup_code
            or not hmac.compare_digest(account.backup_code.encode(), code.encode())
        ):
            raise InvalidCredentialsError("invalid email or code")

        generated_at = account.backup_code_generated_at
        max_age = timedelta(seconds=self.settings.backup_code_ttl_seconds)
        if generated_at is None or self._now() - generated_at > max_age:
            logger.info("backup_code_expired", account_id=account.id)
            raise ExpiredError("backup code expired, generate a new code")

        reset_token = self.tokens.issue_reset(account.id)
        self.audit.record(account.id, "Completed backup code verification for password reset")
        return reset_token

    def reset(self, reset_token: str, new_password: str) -> Account:
        try:
            claims = self.tokens.verify(reset_token, purpose=TokenPurpose.PASSWORD_RESET)
        except InvalidTokenError as exc:
            logger.info("reset_token_rejected", reason=exc.reason)
            raise InvalidOrExpiredTokenError("invalid or expired reset token") from exc

        validate_new_password(new_password)

        account = self.store.get_account(claims.subject_id)
        if not account:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        if not self.store.reset_password(account.id, self.passwords.hash(new_password)):
            raise InvalidOrExpiredTokenError("invalid or expired reset token")

        self.audit.record(account.id, "Password reset via backup code flow")
        logger.info("password_reset_completed", account_id=account.id)
        return account
