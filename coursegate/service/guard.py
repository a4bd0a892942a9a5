from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from coursegate.service.migrations import repair_account_role
from coursegate.service.roles import Role, role_values
from coursegate.service.tokens import TokenPurpose, TokenService
from coursegate.storage.models import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, with the role read from the store."""

    id: int
    role: Role
    email: str
    name: str

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles

    def is_self_or(self, account_id: int, roles: Iterable[Role] = (Role.ADMIN,)) -> bool:
        """Ownership check: the caller is ``account_id`` or holds one of ``roles``."""
        return self.id == account_id or self.role in set(roles)

    def as_dict(self) -> dict:
        return {"id": self.id, "role": self.role.value, "email": self.email, "name": self.name}


class GuardStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]:
        ...

    def update_role(self, account_id: int, role: Role) -> Optional[Account]:
        ...


class AccessGuard:
    """Resolves bearer tokens to live accounts and checks role membership.

    ``authenticate`` never trusts the role embedded in the token; it re-reads
    the account on every call so role changes and deletions apply at once.
    """

    def __init__(self, store: GuardStore, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings

    @staticmethod
    def extract_token(header: Optional[str]) -> Optional[str]:
        """Accept ``Bearer <token>`` or the bare token value."""
        if not header:
            return None
        value = header.strip()
        scheme, _, rest = value.partition(" ")
        if rest and scheme.lower() == "bearer":
            value = rest.strip()
        return value or None

    def authenticate(self, authorization: Optional[str]) -> Principal:
        token = self.extract_token(authorization)
        if not token:
            raise AuthenticationError("no token provided")

        try:
            claims = self.tokens.verify(token)
            if claims.purpose != TokenPurpose.ACCESS:
                raise InvalidTokenError(reason="token is not an access token")
        except InvalidTokenError as exc:
            logger.info("token_rejected", reason=exc.reason)
            detail = {"reason": exc.reason} if self.settings.expose_error_details else None
            raise InvalidTokenError(reason=exc.reason, detail=detail) from exc

        account = self.store.get_account(claims.subject_id)
        if not account:
            raise AuthenticationError("user no longer exists")

        role = account.role
        if role is None:
            role = repair_account_role(
                self.store, account, self.settings.default_repair_role, source="guard"
            )

        return Principal(id=account.id, role=role, email=account.email, name=account.name)

    def authorize(self, principal: Principal, allowed: Iterable[Role]) -> Principal:
        allowed_set = frozenset(allowed)
        if principal.role not in allowed_set:
            raise ForbiddenError(
                "access denied: insufficient permissions",
                detail={"required": role_values(allowed_set), "current": principal.role.value},
            )
        return principal
