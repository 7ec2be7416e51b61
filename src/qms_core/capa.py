"""CAPA lifecycle operations.

Strict chain, one step at a time:
draft → under_investigation → actions_defined → actions_implemented
→ effectiveness_verified → closed

Rollback moves exactly one step back, except from closed which is terminal.
The person verifying effectiveness must not be the person who raised the CAPA;
``verify_effectiveness`` re-checks this itself, whatever the caller checked.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from .errors import ErrorKind, Result
from .events import DomainEvent, EventKind
from .models import Capa, CapaPriority, CapaStatus, CapaType, utcnow
from .state_machine import StateMachine

logger = logging.getLogger("qms-core.capa")

CAPA_MACHINE: StateMachine[CapaStatus] = StateMachine(
    "capa",
    CapaStatus,
    forward={
        CapaStatus.DRAFT: CapaStatus.UNDER_INVESTIGATION,
        CapaStatus.UNDER_INVESTIGATION: CapaStatus.ACTIONS_DEFINED,
        CapaStatus.ACTIONS_DEFINED: CapaStatus.ACTIONS_IMPLEMENTED,
        CapaStatus.ACTIONS_IMPLEMENTED: CapaStatus.EFFECTIVENESS_VERIFIED,
        CapaStatus.EFFECTIVENESS_VERIFIED: CapaStatus.CLOSED,
    },
    backward={
        CapaStatus.UNDER_INVESTIGATION: CapaStatus.DRAFT,
        CapaStatus.ACTIONS_DEFINED: CapaStatus.UNDER_INVESTIGATION,
        CapaStatus.ACTIONS_IMPLEMENTED: CapaStatus.ACTIONS_DEFINED,
        CapaStatus.EFFECTIVENESS_VERIFIED: CapaStatus.ACTIONS_IMPLEMENTED,
    },
    terminal=[CapaStatus.CLOSED],
)

# Status sort order for list queries
# Lower number = higher priority (shown first)
STATUS_SORT_ORDER: dict[CapaStatus, int] = {
    CapaStatus.ACTIONS_IMPLEMENTED: 1,     # Waiting for verification
    CapaStatus.ACTIONS_DEFINED: 2,         # Actions being carried out
    CapaStatus.UNDER_INVESTIGATION: 3,
    CapaStatus.EFFECTIVENESS_VERIFIED: 4,  # Ready to close
    CapaStatus.DRAFT: 5,
    CapaStatus.CLOSED: 6,
}


def create_capa(
    db: Session,
    tenant_id: UUID,
    created_by_id: UUID,
    title: str,
    capa_number: str,
    capa_type: CapaType = CapaType.CORRECTIVE,
    priority: CapaPriority = CapaPriority.MEDIUM,
    description: Optional[str] = None,
    owner_id: Optional[UUID] = None,
    source_audit_id: Optional[UUID] = None,
    target_completion_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Capa:
    """Create a CAPA in draft status and add it to the session."""
    now = now or utcnow()
    capa = Capa(
        id=uuid4(),
        tenant_id=tenant_id,
        capa_number=capa_number,
        title=title,
        description=description,
        capa_type=capa_type,
        priority=priority,
        status=CapaStatus.DRAFT,
        owner_id=owner_id,
        source_audit_id=source_audit_id,
        target_completion_date=target_completion_date,
        created_by_id=created_by_id,
        created_at=now,
        updated_at=now,
    )
    db.add(capa)
    logger.info(f"Created CAPA {capa_number} for tenant {tenant_id}")
    return capa


def can_be_deleted(capa: Capa) -> bool:
    """Only CAPAs that have not been verified or closed can be deleted."""
    return capa.status not in (CapaStatus.EFFECTIVENESS_VERIFIED, CapaStatus.CLOSED)


def _status_event(capa: Capa, previous: CapaStatus, actor_id: Optional[UUID], now: datetime) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.CAPA_STATUS_CHANGED,
        entity_id=capa.id,
        tenant_id=capa.tenant_id,
        actor_id=actor_id,
        occurred_at=now,
        payload={"from": previous.value, "to": capa.status.value},
    )


def _move(
    capa: Capa,
    target: CapaStatus,
    actor_id: Optional[UUID],
    now: Optional[datetime],
    **fields,
) -> Result[Capa]:
    """Check the edge, then apply status and side fields together."""
    check = CAPA_MACHINE.check_transition(capa.status, target)
    if not check:
        return check

    now = now or utcnow()
    previous = capa.status
    for name, value in fields.items():
        setattr(capa, name, value)
    capa.status = target
    capa.updated_at = now

    logger.info(f"CAPA {capa.capa_number}: {previous.value} → {target.value}")
    return Result.success(capa, events=[_status_event(capa, previous, actor_id, now)])


def start_investigation(capa: Capa, actor_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Result[Capa]:
    return _move(capa, CapaStatus.UNDER_INVESTIGATION, actor_id, now)


def define_actions(
    capa: Capa,
    actor_id: Optional[UUID] = None,
    root_cause_analysis: Optional[str] = None,
    corrective_actions: Optional[str] = None,
    preventive_actions: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Capa]:
    fields = {}
    if root_cause_analysis is not None:
        fields["root_cause_analysis"] = root_cause_analysis
    if corrective_actions is not None:
        fields["corrective_actions"] = corrective_actions
    if preventive_actions is not None:
        fields["preventive_actions"] = preventive_actions
    return _move(capa, CapaStatus.ACTIONS_DEFINED, actor_id, now, **fields)


def implement_actions(
    capa: Capa,
    actor_id: Optional[UUID] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Capa]:
    fields = {}
    if notes is not None:
        fields["implementation_notes"] = notes
    return _move(capa, CapaStatus.ACTIONS_IMPLEMENTED, actor_id, now, **fields)


def verify_effectiveness(
    capa: Capa,
    verified_by_id: UUID,
    notes: Optional[str],
    is_effective: bool,
    now: Optional[datetime] = None,
) -> Result[Capa]:
    """
    Record the effectiveness check (actions_implemented → effectiveness_verified).

    Args:
        capa: CAPA to verify
        verified_by_id: Verifier, must differ from the CAPA creator
        notes: Verification notes
        is_effective: Verification outcome
        now: Timestamp override

    Returns:
        Result with the CAPA and CAPA_STATUS_CHANGED + CAPA_VERIFIED events;
        FORBIDDEN when the creator tries to verify (whatever the status),
        VALIDATION when not in actions_implemented
    """
    if capa.created_by_id is not None and verified_by_id == capa.created_by_id:
        logger.warning(f"CAPA {capa.capa_number}: creator {verified_by_id} cannot verify own CAPA")
        return Result.failure(ErrorKind.FORBIDDEN, reason="self_verification")

    now = now or utcnow()
    result = _move(
        capa,
        CapaStatus.EFFECTIVENESS_VERIFIED,
        verified_by_id,
        now,
        verified_by_id=verified_by_id,
        verification_notes=notes,
        is_effective=is_effective,
        verified_at=now,
    )
    if not result:
        return result

    verified = DomainEvent(
        kind=EventKind.CAPA_VERIFIED,
        entity_id=capa.id,
        tenant_id=capa.tenant_id,
        actor_id=verified_by_id,
        occurred_at=now,
        payload={"verified_by_id": str(verified_by_id), "is_effective": is_effective},
    )
    return Result.success(capa, events=[*result.events, verified])


def close(capa: Capa, actor_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Result[Capa]:
    """Close a verified CAPA and stamp the actual completion date."""
    now = now or utcnow()
    result = _move(capa, CapaStatus.CLOSED, actor_id, now, actual_completion_date=now)
    if not result:
        return result

    closed = DomainEvent(
        kind=EventKind.CAPA_CLOSED,
        entity_id=capa.id,
        tenant_id=capa.tenant_id,
        actor_id=actor_id,
        occurred_at=now,
        payload={"is_effective": capa.is_effective},
    )
    return Result.success(capa, events=[*result.events, closed])


def advance(capa: Capa, actor_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Result[Capa]:
    """
    Move to the next status.

    The verification edge is refused: it needs verifier data, use
    ``verify_effectiveness``.
    """
    target = CAPA_MACHINE.next_state(capa.status)
    if target is None:
        return CAPA_MACHINE.check_transition(capa.status, capa.status)
    if target == CapaStatus.EFFECTIVENESS_VERIFIED:
        return Result.failure(
            ErrorKind.VALIDATION,
            reason="verification_required",
            current=capa.status.value,
            requested=target.value,
        )
    if target == CapaStatus.CLOSED:
        return close(capa, actor_id, now)
    return _move(capa, target, actor_id, now)


def roll_back(capa: Capa, actor_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Result[Capa]:
    """Move one step back. Leaving effectiveness_verified clears the verification."""
    target = CAPA_MACHINE.previous_state(capa.status)
    if target is None:
        return CAPA_MACHINE.check_transition(capa.status, capa.status)

    fields = {}
    if capa.status == CapaStatus.EFFECTIVENESS_VERIFIED:
        fields = {
            "verified_by_id": None,
            "verification_notes": None,
            "is_effective": None,
            "verified_at": None,
        }
    return _move(capa, target, actor_id, now, **fields)
