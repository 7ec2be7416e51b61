"""Task lifecycle operations.

open → in_progress → awaiting_approval → completed, with the reviewer able
to send work back (awaiting_approval → rejected → in_progress). Any task
that is not finished can be cancelled.

Overdue is observed, never chosen: ``effective_status`` derives it from the
due date, and ``mark_overdue`` is the only way to record it.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from .errors import ErrorKind, Result
from .events import DomainEvent, EventKind
from .models import Task, TaskPriority, TaskStatus, utcnow
from .persistence import infrastructure_guard
from .state_machine import StateMachine

logger = logging.getLogger("qms-core.task")

# Statuses from which a past-due task is considered overdue
OVERDUE_ELIGIBLE = frozenset({TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.REJECTED})

# Statuses from which assigning also starts the work
ASSIGN_STARTS_WORK = frozenset({TaskStatus.OPEN, TaskStatus.REJECTED})

TASK_MACHINE: StateMachine[TaskStatus] = StateMachine(
    "task",
    TaskStatus,
    forward={
        TaskStatus.OPEN: TaskStatus.IN_PROGRESS,
        TaskStatus.IN_PROGRESS: TaskStatus.AWAITING_APPROVAL,
        TaskStatus.AWAITING_APPROVAL: TaskStatus.COMPLETED,
        TaskStatus.REJECTED: TaskStatus.IN_PROGRESS,
        TaskStatus.OVERDUE: TaskStatus.AWAITING_APPROVAL,
    },
    backward={
        TaskStatus.IN_PROGRESS: TaskStatus.OPEN,
    },
    branches={
        TaskStatus.OPEN: [TaskStatus.CANCELLED, TaskStatus.OVERDUE],
        TaskStatus.IN_PROGRESS: [TaskStatus.CANCELLED, TaskStatus.OVERDUE],
        TaskStatus.AWAITING_APPROVAL: [TaskStatus.REJECTED, TaskStatus.CANCELLED],
        TaskStatus.REJECTED: [TaskStatus.CANCELLED, TaskStatus.OVERDUE],
        TaskStatus.OVERDUE: [TaskStatus.CANCELLED],
    },
    terminal=[TaskStatus.COMPLETED, TaskStatus.CANCELLED],
)

STATUS_SORT_ORDER: dict[TaskStatus, int] = {
    TaskStatus.OVERDUE: 1,
    TaskStatus.IN_PROGRESS: 2,
    TaskStatus.REJECTED: 3,            # Needs rework
    TaskStatus.AWAITING_APPROVAL: 4,
    TaskStatus.OPEN: 5,
    TaskStatus.COMPLETED: 6,
    TaskStatus.CANCELLED: 7,
}


def create_task(
    db: Session,
    tenant_id: UUID,
    created_by_id: UUID,
    title: str,
    task_number: str,
    description: Optional[str] = None,
    priority: TaskPriority = TaskPriority.MEDIUM,
    due_date: Optional[datetime] = None,
    linked_document_id: Optional[UUID] = None,
    linked_capa_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Task:
    """Create an open, unassigned task and add it to the session."""
    now = now or utcnow()
    task = Task(
        id=uuid4(),
        tenant_id=tenant_id,
        task_number=task_number,
        title=title,
        description=description,
        status=TaskStatus.OPEN,
        priority=priority,
        due_date=due_date,
        linked_document_id=linked_document_id,
        linked_capa_id=linked_capa_id,
        created_by_id=created_by_id,
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    logger.info(f"Created task {task_number} for tenant {tenant_id}")
    return task


def effective_status(task: Task, now: Optional[datetime] = None) -> TaskStatus:
    """Stored status, or OVERDUE when a still-open task is past its due date."""
    now = now or utcnow()
    if task.status in OVERDUE_ELIGIBLE and task.due_date is not None and task.due_date < now:
        return TaskStatus.OVERDUE
    return task.status


def is_overdue(task: Task, now: Optional[datetime] = None) -> bool:
    return effective_status(task, now) == TaskStatus.OVERDUE


def _event(kind: EventKind, task: Task, actor_id: Optional[UUID], now: datetime, **payload) -> DomainEvent:
    return DomainEvent(
        kind=kind,
        entity_id=task.id,
        tenant_id=task.tenant_id,
        actor_id=actor_id,
        occurred_at=now,
        payload=payload,
    )


def _set_status(task: Task, target: TaskStatus, now: datetime) -> TaskStatus:
    previous = task.status
    task.status = target
    task.updated_at = now
    logger.info(f"Task {task.task_number}: {previous.value} → {target.value}")
    return previous


def assign(
    task: Task,
    actor_id: UUID,
    assignee_id: Optional[UUID],
    now: Optional[datetime] = None,
) -> Result[Task]:
    """
    Assign a task.

    The assignee is always updated. Work only starts (→ in_progress) when the
    task is open or rejected; any other status, terminal ones included, is
    left as it is.
    """
    if assignee_id is None:
        return Result.failure(ErrorKind.VALIDATION, reason="assignee_required")

    now = now or utcnow()
    previous = task.status
    task.assigned_to_id = assignee_id
    task.updated_at = now
    if task.status in ASSIGN_STARTS_WORK:
        _set_status(task, TaskStatus.IN_PROGRESS, now)

    logger.info(f"Task {task.task_number} assigned to {assignee_id}")
    return Result.success(task, events=[
        _event(
            EventKind.TASK_ASSIGNED, task, actor_id, now,
            assignee_id=str(assignee_id), **{"from": previous.value, "to": task.status.value},
        )
    ])


def complete(
    task: Task,
    actor_id: UUID,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Task]:
    """Hand in the work for review (→ awaiting_approval). Assignee only."""
    if task.assigned_to_id is None or actor_id != task.assigned_to_id:
        return Result.failure(ErrorKind.FORBIDDEN, reason="not_assignee")

    check = TASK_MACHINE.check_transition(task.status, TaskStatus.AWAITING_APPROVAL)
    if not check:
        return check

    now = now or utcnow()
    task.completed_at = now
    task.completed_by_id = actor_id
    task.completion_notes = notes
    previous = _set_status(task, TaskStatus.AWAITING_APPROVAL, now)
    return Result.success(task, events=[
        _event(EventKind.TASK_COMPLETED, task, actor_id, now, **{"from": previous.value}, notes=notes)
    ])


def approve(task: Task, actor_id: UUID, now: Optional[datetime] = None) -> Result[Task]:
    """Accept completed work (awaiting_approval → completed)."""
    check = TASK_MACHINE.check_transition(task.status, TaskStatus.COMPLETED)
    if not check:
        return check

    now = now or utcnow()
    _set_status(task, TaskStatus.COMPLETED, now)
    return Result.success(task, events=[_event(EventKind.TASK_APPROVED, task, actor_id, now)])


def reject(
    task: Task,
    actor_id: UUID,
    remarks: Optional[str],
    now: Optional[datetime] = None,
) -> Result[Task]:
    """Send work back (awaiting_approval → rejected). Remarks are mandatory."""
    check = TASK_MACHINE.check_transition(task.status, TaskStatus.REJECTED)
    if not check:
        return check
    if not remarks or not remarks.strip():
        return Result.failure(ErrorKind.VALIDATION, reason="remarks_required")

    now = now or utcnow()
    task.reviewer_remarks = remarks
    _set_status(task, TaskStatus.REJECTED, now)
    return Result.success(task, events=[_event(EventKind.TASK_REJECTED, task, actor_id, now, remarks=remarks)])


def cancel(
    task: Task,
    actor_id: UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result[Task]:
    check = TASK_MACHINE.check_transition(task.status, TaskStatus.CANCELLED)
    if not check:
        return check

    now = now or utcnow()
    previous = _set_status(task, TaskStatus.CANCELLED, now)
    return Result.success(task, events=[
        _event(EventKind.TASK_CANCELLED, task, actor_id, now, reason=reason, **{"from": previous.value})
    ])


def mark_overdue(task: Task, now: Optional[datetime] = None) -> Result[Task]:
    """
    Record an observed overdue status.

    Returns:
        Result with the task and a TASK_OVERDUE event; VALIDATION when the
        task is not past due or its status cannot become overdue
    """
    now = now or utcnow()
    check = TASK_MACHINE.check_transition(task.status, TaskStatus.OVERDUE)
    if not check:
        return check
    if not is_overdue(task, now):
        return Result.failure(ErrorKind.VALIDATION, reason="not_past_due", current=task.status.value)

    previous = _set_status(task, TaskStatus.OVERDUE, now)
    return Result.success(task, events=[
        _event(
            EventKind.TASK_OVERDUE, task, None, now,
            due_date=task.due_date.isoformat(), **{"from": previous.value},
        )
    ])


def find_overdue_candidates(db: Session, tenant_id: UUID, now: Optional[datetime] = None) -> list[Task]:
    """Tasks of a tenant whose effective status is overdue but not yet recorded."""
    now = now or utcnow()
    with infrastructure_guard("loading overdue tasks"):
        return (
            db.query(Task)
            .filter(
                Task.tenant_id == tenant_id,
                Task.status.in_(list(OVERDUE_ELIGIBLE)),
                Task.due_date.isnot(None),
                Task.due_date < now,
            )
            .order_by(Task.due_date)
            .all()
        )
