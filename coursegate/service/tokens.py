from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.errors import InvalidTokenError, TokenExpiredError
from coursegate.service.roles import Role, parse_role
from coursegate.storage.models import Account

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class TokenPurpose(str, Enum):
    ACCESS = "access"
    PASSWORD_RESET = "password-reset"


# Purpose spellings issued by earlier deployments
_PURPOSE_ALIASES = {"pwd_reset": TokenPurpose.PASSWORD_RESET}


@dataclass(frozen=True)
class TokenClaims:
    subject_id: int
    purpose: TokenPurpose
    expires_at: datetime
    email: Optional[str] = None
    role: Optional[Role] = None
    name: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _subject_from_payload(payload: dict[str, Any]) -> int:
    """Normalize the subject claim; ``user_id`` is the legacy spelling of ``id``."""
    raw = payload.get("id")
    if raw is None:
        raw = payload.get("user_id")
    if raw is None or isinstance(raw, bool):
        raise InvalidTokenError(reason="missing subject claim")
    if isinstance(raw, int):
        subject = raw
    elif isinstance(raw, str) and raw.isascii() and raw.isdigit():
        subject = int(raw)
    else:
        raise InvalidTokenError(reason="malformed subject claim")
    if subject <= 0:
        raise InvalidTokenError(reason="malformed subject claim")
    return subject


def _purpose_from_payload(payload: dict[str, Any]) -> TokenPurpose:
    raw = payload.get("purpose")
    if raw is None:
        return TokenPurpose.ACCESS
    if raw in _PURPOSE_ALIASES:
        return _PURPOSE_ALIASES[raw]
    try:
        return TokenPurpose(raw)
    except ValueError:
        raise InvalidTokenError(reason="unknown token purpose")


class TokenService:
    """Issues and verifies HS256-signed identity tokens.

    Verification is purely cryptographic and temporal; it never consults the
    store. Callers that need the live account go through ``AccessGuard``.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError(reason="malformed token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise InvalidTokenError(reason="malformed token header")
        # pinning the algorithm blocks alg=none and key-confusion tokens
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError(reason="unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise InvalidTokenError(reason="invalid signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError(reason="malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidTokenError(reason="malformed token payload")
        return payload

    def issue(
        self,
        subject_id: int,
        *,
        email: Optional[str] = None,
        role: Optional[Role] = None,
        name: Optional[str] = None,
        purpose: TokenPurpose = TokenPurpose.ACCESS,
        ttl: Optional[timedelta] = None,
    ) -> str:
        if ttl is None:
            ttl_seconds = (
                self.settings.reset_token_ttl_seconds
                if purpose == TokenPurpose.PASSWORD_RESET
                else self.settings.access_token_ttl_seconds
            )
            ttl = timedelta(seconds=ttl_seconds)
        now = self._now()
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "id": int(subject_id),
            "purpose": purpose.value,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        # reset tokens authorize one password change and carry nothing else
        if purpose == TokenPurpose.ACCESS:
            payload["email"] = email
            payload["role"] = role.value if role else None
            payload["name"] = name
        return self._encode(payload)

    def issue_access(self, account: Account) -> str:
        return self.issue(
            account.id, email=account.email, role=account.role, name=account.name
        )

    def issue_reset(self, account_id: int) -> str:
        return self.issue(account_id, purpose=TokenPurpose.PASSWORD_RESET)

    def verify(
        self, token: str, *, purpose: Optional[TokenPurpose] = None
    ) -> TokenClaims:
        """Return the claims of ``token``.

        Raises:
            TokenExpiredError: ``exp`` is in the past (beyond the configured leeway).
            InvalidTokenError: the token is malformed, tampered with, issued for
                another issuer/audience, or has an unexpected purpose.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError(reason="empty token")
        if not token.isascii():
            raise InvalidTokenError(reason="malformed token")
        payload = self._decode(token)

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError(reason="issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError(reason="audience mismatch")

        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            raise InvalidTokenError(reason="missing expiry")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError(reason="malformed expiry")
        if exp_ts <= self._now().timestamp() - self._leeway.total_seconds():
            raise TokenExpiredError()

        claims = TokenClaims(
            subject_id=_subject_from_payload(payload),
            purpose=_purpose_from_payload(payload),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            email=payload.get("email"),
            role=parse_role(payload.get("role")),
            name=payload.get("name"),
        )
        if purpose is not None and claims.purpose != purpose:
            raise InvalidTokenError(reason="unexpected token purpose")
        return claims
