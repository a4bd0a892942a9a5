from __future__ import annotations

from typing import List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.roles import Role
from coursegate.storage.models import Account

logger = get_logger(__name__)


class RoleRepairStore(Protocol):
    def repair_missing_roles(self, role: Role) -> List[int]:
        ...

    def update_role(self, account_id: int, role: Role) -> Optional[Account]:
        ...


def repair_missing_roles(store: RoleRepairStore, role: Role) -> List[int]:
    """Assign ``role`` to every account stored without one.

    Runs once when the runtime is built, before any request is served.
    """
    repaired = store.repair_missing_roles(role)
    if repaired:
        logger.warning(
            "role_repair_migration",
            repaired=len(repaired),
            account_ids=repaired,
            role=role.value,
        )
    else:
        logger.info("role_repair_migration_clean")
    return repaired


def repair_account_role(
    store: RoleRepairStore, account: Account, role: Role, *, source: str
) -> Role:
    """Repair a single account that gained an empty role after start-up."""
    store.update_role(account.id, role)
    account.role = role
    logger.warning("role_repaired", account_id=account.id, role=role.value, source=source)
    return role
