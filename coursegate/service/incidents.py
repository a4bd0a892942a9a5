from __future__ import annotations

from typing import List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.audit import AuditSink
from coursegate.service.errors import NotFoundError, ValidationError
from coursegate.storage.models import Incident, IncidentStatus

logger = get_logger(__name__)

_MAX_DESCRIPTION_LENGTH = 4000


class IncidentStore(Protocol):
    def create_incident(
        self,
        description: str,
        reported_by: Optional[int] = None,
        status: IncidentStatus = IncidentStatus.OPEN,
    ) -> Incident:
        ...

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        ...

    def list_incidents(self, limit: int = 100) -> List[Incident]:
        ...

    def update_incident_status(
        self, incident_id: int, status: IncidentStatus
    ) -> Optional[Incident]:
        ...


def parse_incident_status(value: str) -> IncidentStatus:
    """Accept ``under_investigation`` as well as display forms like ``Under Investigation``."""
    normalized = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return IncidentStatus(normalized)
    except ValueError:
        raise ValidationError(
            "invalid incident status",
            detail={"allowed": [status.value for status in IncidentStatus]},
        )


class IncidentService:
    def __init__(self, store: IncidentStore, audit: AuditSink) -> None:
        self.store = store
        self.audit = audit

    def open_incident(self, description: str, *, reported_by: Optional[int] = None) -> Incident:
        incident = self.store.create_incident(description, reported_by=reported_by)
        logger.warning(
            "incident_opened", incident_id=incident.id, reported_by=reported_by
        )
        return incident

    def report(self, reporter_id: int, description: str) -> Incident:
        text = (description or "").strip()
        if not text:
            raise ValidationError("description is required", detail={"field": "description"})
        if len(text) > _MAX_DESCRIPTION_LENGTH:
            raise ValidationError("description is too long", detail={"field": "description"})
        incident = self.open_incident(text, reported_by=reporter_id)
        self.audit.record(reporter_id, f"Reported incident ID: {incident.id}")
        return incident

    def list_recent(self, limit: int = 100) -> List[Incident]:
        return self.store.list_incidents(limit=limit)

    def update_status(self, incident_id: int, status: str, *, actor_id: int) -> Incident:
        new_status = parse_incident_status(status)
        incident = self.store.update_incident_status(incident_id, new_status)
        if not incident:
            raise NotFoundError("incident not found", detail={"incident_id": incident_id})
        self.audit.record(actor_id, f"Updated incident {incident_id} status to {new_status.value}")
        logger.info("incident_status_updated", incident_id=incident_id, status=new_status.value)
        return incident

    def record_unauthorized_access(self, *, target_id: int, actor_id: int) -> Incident:
        incident = self.open_incident(
            f"Unauthorized profile access attempt: target_user_id={target_id} by_user_id={actor_id}",
            reported_by=actor_id,
        )
        self.audit.record(
            actor_id,
            f"Unauthorized access attempt recorded incident_id={incident.id} target_user_id={target_id}",
        )
        return incident
