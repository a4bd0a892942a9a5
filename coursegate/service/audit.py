from __future__ import annotations

from typing import List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.storage.models import AuditEntry

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_entry(self, user_id: Optional[int], action: str) -> AuditEntry:
        ...

    def list_audit_entries(self, limit: int = 100) -> List[AuditEntry]:
        ...


class AuditSink:
    """Append-only audit trail.

    Writes never block the operation being audited: a failed insert is logged
    and ``record`` returns ``None``.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(self, actor_id: Optional[int], action: str) -> Optional[AuditEntry]:
        try:
            return self.store.append_audit_entry(actor_id, action)
        except Exception as exc:
            logger.error(
                "audit_write_failed", actor_id=actor_id, action=action, error=str(exc)
            )
            return None

    def recent(self, limit: int = 100) -> List[AuditEntry]:
        return self.store.list_audit_entries(limit=limit)
