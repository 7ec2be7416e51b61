"""Document approval workflow.

draft → submitted → approved → archived, with submitted → rejected as the
side exit. Withdrawing (submitted → draft) and revising (rejected → draft)
are the rollback edges; a rejected document can also be resubmitted as is.

Approval and rejection are only valid for the document's current approver.
No permission overrides that check.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from .errors import ErrorKind, Result
from .events import DomainEvent, EventKind
from .models import Document, DocumentApproval, DocumentStatus, DocumentVersion, utcnow
from .state_machine import StateMachine

logger = logging.getLogger("qms-core.document")

DOCUMENT_MACHINE: StateMachine[DocumentStatus] = StateMachine(
    "document",
    DocumentStatus,
    forward={
        DocumentStatus.DRAFT: DocumentStatus.SUBMITTED,
        DocumentStatus.SUBMITTED: DocumentStatus.APPROVED,
        DocumentStatus.REJECTED: DocumentStatus.SUBMITTED,
        DocumentStatus.APPROVED: DocumentStatus.ARCHIVED,
    },
    backward={
        DocumentStatus.SUBMITTED: DocumentStatus.DRAFT,  # Withdraw
        DocumentStatus.REJECTED: DocumentStatus.DRAFT,   # Revise
    },
    branches={
        DocumentStatus.SUBMITTED: [DocumentStatus.REJECTED],
    },
    terminal=[DocumentStatus.ARCHIVED],
)

EDITABLE_STATUSES = frozenset({DocumentStatus.DRAFT, DocumentStatus.REJECTED})

STATUS_SORT_ORDER: dict[DocumentStatus, int] = {
    DocumentStatus.SUBMITTED: 1,  # Waiting for a decision
    DocumentStatus.REJECTED: 2,   # Needs rework
    DocumentStatus.DRAFT: 3,
    DocumentStatus.APPROVED: 4,
    DocumentStatus.ARCHIVED: 5,
}


def create_document(
    db: Session,
    tenant_id: UUID,
    created_by_id: UUID,
    title: str,
    document_number: str,
    content: Optional[str] = None,
    description: Optional[str] = None,
    target_department_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Document:
    """Create a draft document at version 1 and add it to the session."""
    now = now or utcnow()
    document = Document(
        id=uuid4(),
        tenant_id=tenant_id,
        document_number=document_number,
        title=title,
        description=description,
        content=content,
        status=DocumentStatus.DRAFT,
        current_version=1,
        target_department_id=target_department_id,
        created_by_id=created_by_id,
        created_at=now,
        updated_at=now,
    )
    db.add(document)
    logger.info(f"Created document {document_number} for tenant {tenant_id}")
    return document


def is_editable(document: Document) -> bool:
    return document.status in EDITABLE_STATUSES


def _event(kind: EventKind, document: Document, actor_id: Optional[UUID], now: datetime, **payload) -> DomainEvent:
    return DomainEvent(
        kind=kind,
        entity_id=document.id,
        tenant_id=document.tenant_id,
        actor_id=actor_id,
        occurred_at=now,
        payload=payload,
    )


def _apply(document: Document, target: DocumentStatus, actor_id: UUID, now: datetime) -> DomainEvent:
    """Set status and audit fields. Callers have already checked the edge."""
    previous = document.status
    document.status = target
    document.updated_at = now
    document.updated_by_id = actor_id
    logger.info(f"Document {document.document_number}: {previous.value} → {target.value}")
    return _event(
        EventKind.DOCUMENT_STATUS_CHANGED, document, actor_id, now,
        **{"from": previous.value, "to": target.value},
    )


def update_content(
    document: Document,
    actor_id: UUID,
    title: Optional[str] = None,
    content: Optional[str] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Document]:
    """Edit title/content/description. Only draft and rejected documents are editable."""
    if not is_editable(document):
        return Result.failure(ErrorKind.VALIDATION, reason="not_editable", current=document.status.value)
    if title is not None and not title.strip():
        return Result.failure(ErrorKind.VALIDATION, reason="empty_title")

    now = now or utcnow()
    if title is not None:
        document.title = title
    if content is not None:
        document.content = content
    if description is not None:
        document.description = description
    document.updated_at = now
    document.updated_by_id = actor_id
    return Result.success(document)


def submit(
    document: Document,
    actor_id: UUID,
    approver_id: Optional[UUID],
    change_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Document]:
    """
    Submit a draft or rejected document for approval.

    Every submission snapshots the content as a DocumentVersion; a
    resubmission bumps the version number first.

    Args:
        document: Document to submit
        actor_id: Submitter, must be the creator
        approver_id: Approver, required and different from the submitter
        change_notes: Notes stored on the version snapshot
        now: Timestamp override

    Returns:
        Result with the document and DOCUMENT_STATUS_CHANGED + DOCUMENT_SUBMITTED events
    """
    if actor_id != document.created_by_id:
        return Result.failure(ErrorKind.FORBIDDEN, reason="not_creator")

    check = DOCUMENT_MACHINE.check_transition(document.status, DocumentStatus.SUBMITTED)
    if not check:
        return check

    if approver_id is None:
        return Result.failure(ErrorKind.VALIDATION, reason="approver_required")
    if approver_id == actor_id:
        return Result.failure(ErrorKind.VALIDATION, reason="self_approval")

    now = now or utcnow()
    if document.versions:
        document.current_version += 1
    document.versions.append(
        DocumentVersion(
            id=uuid4(),
            version_number=document.current_version,
            content=document.content,
            change_notes=change_notes,
            created_at=now,
            created_by_id=actor_id,
        )
    )
    document.submitted_at = now
    document.current_approver_id = approver_id

    status_event = _apply(document, DocumentStatus.SUBMITTED, actor_id, now)
    submitted = _event(
        EventKind.DOCUMENT_SUBMITTED, document, actor_id, now,
        approver_id=str(approver_id), version=document.current_version,
    )
    return Result.success(document, events=[status_event, submitted])


def _decide(
    document: Document,
    actor_id: UUID,
    target: DocumentStatus,
) -> Optional[Result]:
    """Shared approve/reject preconditions. Returns a failure or None."""
    check = DOCUMENT_MACHINE.check_transition(document.status, target)
    if not check:
        return check
    if document.current_approver_id is None or actor_id != document.current_approver_id:
        logger.warning(
            f"Document {document.document_number}: {actor_id} is not the current approver"
        )
        return Result.failure(ErrorKind.FORBIDDEN, reason="not_current_approver")
    return None


def approve(
    document: Document,
    actor_id: UUID,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Document]:
    failure = _decide(document, actor_id, DocumentStatus.APPROVED)
    if failure is not None:
        return failure

    now = now or utcnow()
    document.approvals.append(
        DocumentApproval(id=uuid4(), approver_id=actor_id, is_approved=True, comments=comments, decided_at=now)
    )
    document.approved_at = now
    document.approved_by_id = actor_id
    document.current_approver_id = None

    status_event = _apply(document, DocumentStatus.APPROVED, actor_id, now)
    approved = _event(EventKind.DOCUMENT_APPROVED, document, actor_id, now, version=document.current_version)
    return Result.success(document, events=[status_event, approved])


def reject(
    document: Document,
    actor_id: UUID,
    reason: Optional[str],
    now: Optional[datetime] = None,
) -> Result[Document]:
    """Reject a submitted document. A non-blank reason is mandatory."""
    failure = _decide(document, actor_id, DocumentStatus.REJECTED)
    if failure is not None:
        return failure
    if not reason or not reason.strip():
        return Result.failure(ErrorKind.VALIDATION, reason="reason_required")

    now = now or utcnow()
    document.approvals.append(
        DocumentApproval(id=uuid4(), approver_id=actor_id, is_approved=False, comments=reason, decided_at=now)
    )
    document.current_approver_id = None

    status_event = _apply(document, DocumentStatus.REJECTED, actor_id, now)
    rejected = _event(EventKind.DOCUMENT_REJECTED, document, actor_id, now, reason=reason)
    return Result.success(document, events=[status_event, rejected])


def _back_to_draft(
    document: Document,
    actor_id: UUID,
    expected: DocumentStatus,
    now: Optional[datetime],
) -> Result[Document]:
    if actor_id != document.created_by_id:
        return Result.failure(ErrorKind.FORBIDDEN, reason="not_creator")
    if document.status != expected:
        return Result.failure(
            ErrorKind.VALIDATION,
            reason="invalid_transition",
            current=document.status.value,
            requested=DocumentStatus.DRAFT.value,
            allowed=[s.value for s in DOCUMENT_MACHINE.allowed_transitions(document.status)],
        )

    now = now or utcnow()
    document.current_approver_id = None
    return Result.success(document, events=[_apply(document, DocumentStatus.DRAFT, actor_id, now)])


def withdraw(document: Document, actor_id: UUID, now: Optional[datetime] = None) -> Result[Document]:
    """Pull a submitted document back to draft (creator only)."""
    return _back_to_draft(document, actor_id, DocumentStatus.SUBMITTED, now)


def revise(document: Document, actor_id: UUID, now: Optional[datetime] = None) -> Result[Document]:
    """Move a rejected document back to draft (creator only)."""
    return _back_to_draft(document, actor_id, DocumentStatus.REJECTED, now)


def archive(
    document: Document,
    actor_id: UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Document]:
    """Retire an approved document."""
    check = DOCUMENT_MACHINE.check_transition(document.status, DocumentStatus.ARCHIVED)
    if not check:
        return check

    now = now or utcnow()
    document.archived_at = now
    document.archived_by_id = actor_id
    document.archive_reason = reason

    status_event = _apply(document, DocumentStatus.ARCHIVED, actor_id, now)
    archived = _event(EventKind.DOCUMENT_ARCHIVED, document, actor_id, now, reason=reason)
    return Result.success(document, events=[status_event, archived])
