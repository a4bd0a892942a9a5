from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by a coursegate service and rendered as an error envelope.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:

    - unauthorized (401)
    - forbidden (403)
    - validation_error, expired, invalid_token (400)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)

    Unexpected failures (500) come from the catch-all handler instead.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state changed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is well-formed but not acceptable in the current state (400)."""
    pass


class ExpiredError(ServiceError):
    """A time-limited credential such as a backup code has lapsed (400)."""
    status_code = 400
    error_code = "expired"


class InvalidOrExpiredTokenError(ServiceError):
    """A one-time invite or reset token is unknown, used, or lapsed (400)."""
    status_code = 400
    error_code = "invalid_token"


class AuthenticationError(ServiceError):
    """Caller could not be identified (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Bearer token failed signature, format, or claim checks (401)."""

    def __init__(
        self,
        message: str = "token verification failed",
        *,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.reason = reason or message


class TokenExpiredError(InvalidTokenError):
    """Bearer token is past its expiry (401)."""

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message, reason="token expired")


class InvalidCredentialsError(AuthenticationError):
    """Email, password, or backup code did not match (401)."""
    pass


class ForbiddenError(ServiceError):
    """Caller is identified but their role does not allow the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Account, invite request or incident id does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Write collides with existing state (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyProcessedError(ConflictError):
    """Invite request has already left the pending state (409)."""
    pass


class RateLimitedError(ServiceError):
    """Per-address throttle on the auth endpoints tripped (429).

    ``headers`` carries ``Retry-After`` through to the response.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = max(1, retry_after)
        self.headers = {"Retry-After": str(self.retry_after)}


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "ExpiredError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyProcessedError",
    "RateLimitedError",
]
