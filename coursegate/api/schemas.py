from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from coursegate.logging import get_correlation_id
from coursegate.service.passwords import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH
from coursegate.service.roles import Role, parse_role, role_values

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 4000
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "expired",
    "invalid_token",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value or "").strip()
    if not cleaned:
        raise ValueError("name is required")
    return cleaned


def _validate_role(value: str) -> str:
    role = parse_role(value)
    if role is None:
        raise ValueError(f"role must be one of: {', '.join(role_values(Role))}")
    return role.value


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str
    password: str
    role: str = Role.STUDENT.value
    invite_code: Optional[str] = Field(default=None, max_length=256)
    invite_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _validate_register_role(cls, value: str) -> str:
        return _validate_role(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RecoveryStartRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_recovery_email(cls, value: str) -> str:
        return _validate_email(value)


class RecoveryVerifyRequest(BaseModel):
    email: str
    # digit format is checked by the recovery service
    code: str = Field(..., max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_recovery_email(cls, value: str) -> str:
        return _validate_email(value)


class RecoveryResetRequest(BaseModel):
    reset_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class InviteRequestCreate(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str
    role: str
    message: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_invite_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _validate_invite_role(cls, value: str) -> str:
        return _validate_role(value)


class RedeemRequest(BaseModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class SetRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_new_role(cls, value: str) -> str:
        return _validate_role(value)


class IncidentCreate(BaseModel):
    description: str = Field(..., max_length=MAX_DESCRIPTION_LENGTH)


class IncidentStatusUpdate(BaseModel):
    # normalized and checked by parse_incident_status
    status: str = Field(..., max_length=64)
