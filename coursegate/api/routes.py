from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from coursegate.api.schemas import (
    Envelope,
    IncidentCreate,
    IncidentStatusUpdate,
    InviteRequestCreate,
    LoginRequest,
    PasswordChangeRequest,
    RecoveryResetRequest,
    RecoveryStartRequest,
    RecoveryVerifyRequest,
    RedeemRequest,
    RegisterRequest,
    SetRoleRequest,
)
from coursegate.logging import get_logger
from coursegate.service.errors import RateLimitedError
from coursegate.service.guard import Principal
from coursegate.service.roles import SECURITY_VIEW_ROLES, Role
from coursegate.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LIST_LIMIT_MAX = 100
RATE_LIMIT_WINDOW_SECONDS = 60


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> int:
    """Consume one token from ``key``'s bucket.

    Returns:
        Remaining tokens in the current window.

    Raises:
        RateLimitedError: the bucket is empty; rendered as 429 with ``Retry-After``
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0])
        raise RateLimitedError(retry_after=reset_seconds)
    return remaining


async def get_principal(request: Request, authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the caller from the ``Authorization`` header.

    Raises 401 when the header is missing, the token fails verification, or
    the account no longer exists.
    """
    runtime = get_runtime()
    principal = runtime.guard.authenticate(authorization)
    if runtime.settings.audit_requests:
        runtime.audit.record(principal.id, f"{request.method} {request.url.path}")
    return principal


async def get_optional_principal(authorization: Optional[str] = Header(None)) -> Optional[Principal]:
    if not authorization:
        return None
    return get_runtime().guard.authenticate(authorization)


def require_roles(*roles: Role) -> Callable:
    """Dependency factory: authenticate, then require one of ``roles``."""
    allowed = frozenset(roles)

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        return get_runtime().guard.authorize(principal, allowed)

    return _dependency


get_admin = require_roles(Role.ADMIN)
get_security_viewer = require_roles(*SECURITY_VIEW_ROLES)


# -- auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account.

    ``admin`` and ``security_analyst`` registrations need ``invite_code``
    (the static secret for that role) or ``invite_token`` (an approved
    invite for that role). The backup code is returned once, here.

    Raises:
        400: invalid payload
        403: elevated role without a valid secret or invite
        409: email already registered
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_address(request)}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    registration = runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        invite_code=body.invite_code,
        invite_token=body.invite_token,
    )
    return Envelope(
        status="ok",
        message="user registered",
        data={
            "token": registration.token,
            "user": registration.account.public_dict(),
            "backup_code": registration.backup_code.code,
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this client address
    """
    runtime = get_runtime()
    origin = _client_address(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{origin}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    account, token = runtime.auth.login(body.email, body.password, origin=origin)
    return Envelope(
        status="ok",
        message="login successful",
        data={"token": token, "user": account.public_dict()},
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: Principal = Depends(get_principal)):
    account = get_runtime().auth.current_account(principal)
    return Envelope(status="ok", data=account.public_dict())


@router.post("/me/password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: Principal = Depends(get_principal)):
    token = get_runtime().auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", message="password changed", data={"token": token})


@router.post("/me/backup-code", response_model=Envelope, tags=["auth"])
async def regenerate_backup_code(principal: Principal = Depends(get_principal)):
    """Issue a fresh backup code, replacing any previous one."""
    backup = get_runtime().recovery.issue_backup_code(principal.id)
    return Envelope(
        status="ok",
        message="backup code generated",
        data={"backup_code": backup.code, "generated_at": backup.generated_at.isoformat()},
    )


# -- recovery -----------------------------------------------------------------


@router.post("/auth/recovery/start", response_model=Envelope, tags=["recovery"])
async def recovery_start(body: RecoveryStartRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recovery:{_client_address(request)}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    found = runtime.recovery.start(body.email)
    message = "account found, enter your backup code" if found else "no account with that email"
    return Envelope(status="ok", message=message, data={"found": found})


@router.post("/auth/recovery/verify", response_model=Envelope, tags=["recovery"])
async def recovery_verify(body: RecoveryVerifyRequest, request: Request):
    """Trade a six-digit backup code for a short-lived reset token.

    Raises:
        400: malformed or expired code
        401: unknown email or wrong code
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recovery:{_client_address(request)}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    reset_token = runtime.recovery.verify(body.email, body.code)
    return Envelope(
        status="ok",
        message="backup code verified",
        data={
            "reset_token": reset_token,
            "expires_in": runtime.settings.reset_token_ttl_seconds,
        },
    )


@router.post("/auth/recovery/reset", response_model=Envelope, tags=["recovery"])
async def recovery_reset(body: RecoveryResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recovery:{_client_address(request)}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    account = runtime.recovery.reset(body.reset_token, body.new_password)
    return Envelope(
        status="ok",
        message="password reset, generate a new backup code after logging in",
        data={"user_id": account.id},
    )


# -- invites ------------------------------------------------------------------


@router.post("/invites", response_model=Envelope, status_code=201, tags=["invites"])
async def create_invite_request(
    body: InviteRequestCreate,
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    """File a role-elevation request; callers may be anonymous."""
    invite = get_runtime().invites.request(
        name=body.name,
        email=body.email,
        role=body.role,
        message=body.message,
        requested_by=principal.id if principal else None,
    )
    return Envelope(status="ok", message="request submitted", data=invite.public_dict())


@router.get("/invites", response_model=Envelope, tags=["invites"])
async def list_invite_requests(
    limit: int = Query(LIST_LIMIT_MAX, ge=1, le=LIST_LIMIT_MAX),
    principal: Principal = Depends(get_admin),
):
    requests = get_runtime().invites.list_requests(limit=limit)
    return Envelope(status="ok", data={"items": [r.public_dict() for r in requests]})


@router.post("/invites/{request_id}/approve", response_model=Envelope, tags=["invites"])
async def approve_invite_request(
    request_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_admin),
):
    """Approve a pending request and return its one-time token.

    The token is shown only in this response; the admin passes it on to the
    requester out of band.
    """
    approved = get_runtime().invites.approve(request_id, principal)
    return Envelope(
        status="ok",
        message="approved",
        data={
            "request": approved.public_dict(),
            "token": approved.token,
            "expires_at": approved.token_expires_at.isoformat(),
        },
    )


@router.post("/invites/{request_id}/reject", response_model=Envelope, tags=["invites"])
async def reject_invite_request(
    request_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_admin),
):
    rejected = get_runtime().invites.reject(request_id, principal)
    return Envelope(status="ok", message="rejected", data=rejected.public_dict())


@router.post("/invites/redeem", response_model=Envelope, tags=["invites"])
async def redeem_invite(body: RedeemRequest, principal: Principal = Depends(get_principal)):
    account, token = get_runtime().invites.redeem(body.token, principal)
    return Envelope(
        status="ok",
        message="role updated",
        data={"token": token, "user": account.public_dict()},
    )


# -- users --------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(LIST_LIMIT_MAX, ge=1, le=LIST_LIMIT_MAX),
    principal: Principal = Depends(get_admin),
):
    accounts = get_runtime().auth.list_accounts(limit=limit)
    return Envelope(status="ok", data={"items": [a.public_dict() for a in accounts]})


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: int = Path(..., ge=1), principal: Principal = Depends(get_principal)):
    """Owner or admin only; other callers trigger an unauthorized-access incident."""
    account = get_runtime().auth.view_account(principal, user_id)
    return Envelope(status="ok", data=account.public_dict())


@router.post("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def set_user_role(
    body: SetRoleRequest,
    user_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_admin),
):
    account, token = get_runtime().auth.set_role(principal, user_id, body.role)
    return Envelope(
        status="ok",
        message="role updated",
        data={"user": account.public_dict(), "token": token},
    )


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: int = Path(..., ge=1), principal: Principal = Depends(get_admin)):
    get_runtime().auth.delete_account(principal, user_id)
    return Envelope(status="ok", message="user deleted", data={"deleted": True, "user_id": user_id})


# -- incidents and audit ------------------------------------------------------


@router.post("/incidents", response_model=Envelope, status_code=201, tags=["security"])
async def report_incident(body: IncidentCreate, principal: Principal = Depends(get_principal)):
    incident = get_runtime().incidents.report(principal.id, body.description)
    return Envelope(status="ok", message="incident reported", data={"incident_id": incident.id})


@router.get("/incidents", response_model=Envelope, tags=["security"])
async def list_incidents(
    limit: int = Query(LIST_LIMIT_MAX, ge=1, le=LIST_LIMIT_MAX),
    principal: Principal = Depends(get_security_viewer),
):
    incidents = get_runtime().incidents.list_recent(limit=limit)
    return Envelope(status="ok", data={"items": [i.public_dict() for i in incidents]})


@router.patch("/incidents/{incident_id}", response_model=Envelope, tags=["security"])
async def update_incident(
    body: IncidentStatusUpdate,
    incident_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_security_viewer),
):
    incident = get_runtime().incidents.update_status(incident_id, body.status, actor_id=principal.id)
    return Envelope(status="ok", message="incident updated", data=incident.public_dict())


@router.get("/audit-logs", response_model=Envelope, tags=["security"])
async def list_audit_logs(
    limit: int = Query(LIST_LIMIT_MAX, ge=1, le=LIST_LIMIT_MAX),
    principal: Principal = Depends(get_security_viewer),
):
    entries = get_runtime().audit.recent(limit=limit)
    return Envelope(status="ok", data={"items": [e.public_dict() for e in entries]})
