"""Domain events produced by lifecycle transitions and delegation changes.

The core only produces event values; persisting them to an audit trail or
fanning them out as notifications is done by an ``EventSink`` supplied by
the host.
"""
import enum
import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("qms-core.events")


class EventKind(str, enum.Enum):
    """Domain event kinds."""

    # Delegation
    PERMISSION_DELEGATED = "permission_delegated"
    DELEGATION_REVOKED = "delegation_revoked"

    # CAPA
    CAPA_STATUS_CHANGED = "capa_status_changed"
    CAPA_VERIFIED = "capa_verified"
    CAPA_CLOSED = "capa_closed"

    # Document
    DOCUMENT_STATUS_CHANGED = "document_status_changed"
    DOCUMENT_SUBMITTED = "document_submitted"
    DOCUMENT_APPROVED = "document_approved"
    DOCUMENT_REJECTED = "document_rejected"
    DOCUMENT_ARCHIVED = "document_archived"

    # Task
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    TASK_CANCELLED = "task_cancelled"
    TASK_OVERDUE = "task_overdue"


class DomainEvent(BaseModel):
    """Immutable record of something that happened to an entity."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    entity_id: UUID
    tenant_id: UUID
    actor_id: Optional[UUID] = None
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    """Receives events after the transition that produced them is committed."""

    def publish(self, events: Iterable[DomainEvent]) -> None:
        ...


class LoggingEventSink:
    """Event sink that writes every event to the ``qms-core.events`` logger."""

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            logger.info(
                f"{event.kind.value} entity={event.entity_id} tenant={event.tenant_id} "
                f"actor={event.actor_id} payload={event.payload}"
            )
