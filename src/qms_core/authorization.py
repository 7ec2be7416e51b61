"""Authorization engine.

Effective permissions of a user = permissions of their roles (from the
catalog) ∪ permissions delegated to them and still active.

Every check returns a bool or a ``Result``; denial is an expected outcome
and is never raised. Database faults surface as ``InfrastructureError``.

An engine memoizes per instance. Build one per request.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from . import models
from .capa import CAPA_MACHINE, can_be_deleted
from .config import DelegationPolicy
from .delegation import DelegationStore
from .document import EDITABLE_STATUSES
from .errors import ErrorKind, Result
from .events import DomainEvent, EventKind
from .hierarchy import HierarchyResolver
from .models import CapaStatus, DocumentStatus, TaskStatus, utcnow
from .permissions import Capa, Documents, Operation, PermissionCatalog, PermissionMode, Tasks, Users, required_permissions
from .persistence import infrastructure_guard
from .task import TASK_MACHINE

logger = logging.getLogger("qms-core.authorization")

DocumentRef = Union[models.Document, UUID, None]
TaskRef = Union[models.Task, UUID, None]
CapaRef = Union[models.Capa, UUID, None]


class AuthorizationEngine:
    """
    Answers "may this actor do that?" questions.

    Args:
        db: Database session (users, roles, delegations, entities)
        catalog: Immutable role → permission catalog
        delegations: Delegation store, defaults to one on ``db``
        hierarchy: Fixed hierarchy resolver, defaults to loading per tenant
        policy: Delegation expiry defaults and rules
        clock: Time source for delegation expiry
    """

    def __init__(
        self,
        db: Session,
        catalog: PermissionCatalog,
        delegations: Optional[DelegationStore] = None,
        hierarchy: Optional[HierarchyResolver] = None,
        policy: Optional[DelegationPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog
        self.clock = clock
        self.delegations = delegations or DelegationStore(db, clock=clock)
        self.policy = policy or DelegationPolicy()
        self._fixed_hierarchy = hierarchy
        self._hierarchies: dict[UUID, HierarchyResolver] = {}
        self._users: dict[UUID, Optional[models.User]] = {}
        self._role_permissions: dict[UUID, frozenset[str]] = {}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _user(self, user_id: Optional[UUID]) -> Optional[models.User]:
        if user_id is None:
            return None
        if user_id not in self._users:
            with infrastructure_guard("loading user"):
                self._users[user_id] = (
                    self.db.query(models.User).filter(models.User.id == user_id).first()
                )
        return self._users[user_id]

    def _active_user(self, user_id: Optional[UUID]) -> Optional[models.User]:
        user = self._user(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def hierarchy_for(self, tenant_id: UUID) -> HierarchyResolver:
        if self._fixed_hierarchy is not None:
            return self._fixed_hierarchy
        if tenant_id not in self._hierarchies:
            self._hierarchies[tenant_id] = HierarchyResolver.from_session(self.db, tenant_id)
        return self._hierarchies[tenant_id]

    def _load(self, model, entity_or_id):
        """Accept an entity or its id."""
        if entity_or_id is None or isinstance(entity_or_id, model):
            return entity_or_id
        with infrastructure_guard(f"loading {model.__tablename__}"):
            return self.db.query(model).filter(model.id == entity_or_id).first()

    def _tenant_member(self, actor_id: Optional[UUID], entity) -> Optional[models.User]:
        """Active actor from the entity's tenant, or None."""
        user = self._active_user(actor_id)
        if user is None or entity is None or entity.tenant_id != user.tenant_id:
            return None
        return user

    def reset_cache(self) -> None:
        self._users.clear()
        self._role_permissions.clear()
        self._hierarchies.clear()

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def role_permissions(self, actor_id: Optional[UUID]) -> frozenset[str]:
        """Union of the catalog permissions of the actor's roles, memoized per engine."""
        if actor_id is None:
            return frozenset()
        if actor_id not in self._role_permissions:
            user = self._active_user(actor_id)
            self._role_permissions[actor_id] = (
                frozenset() if user is None
                else self.catalog.permissions_for_roles(role.name for role in user.roles)
            )
        return self._role_permissions[actor_id]

    def effective_permissions(self, actor_id: Optional[UUID]) -> frozenset[str]:
        """
        Role permissions plus active delegated permissions.

        Delegations are read from the store on every call, so a revoke made
        through any path is honoured by the next check.
        """
        if actor_id is None or self._active_user(actor_id) is None:
            return frozenset()
        return self.role_permissions(actor_id) | self.delegations.delegated_permissions(actor_id)

    def has_permission(self, actor_id: Optional[UUID], permission: str) -> bool:
        allowed = permission in self.effective_permissions(actor_id)
        logger.debug(f"has_permission({actor_id}, {permission}) = {allowed}")
        return allowed

    def has_any_permission(self, actor_id: Optional[UUID], permissions: Iterable[str]) -> bool:
        effective = self.effective_permissions(actor_id)
        return any(p in effective for p in permissions)

    def has_all_permissions(self, actor_id: Optional[UUID], permissions: Iterable[str]) -> bool:
        effective = self.effective_permissions(actor_id)
        return all(p in effective for p in permissions)

    def authorize(
        self,
        actor_id: Optional[UUID],
        operation: Operation,
        tenant_id: Optional[UUID] = None,
    ) -> Result[None]:
        """
        Gate a host operation by its required permissions.

        Args:
            actor_id: Authenticated actor, None when there is none
            operation: Operation identifier
            tenant_id: Tenant of the request; must match the actor's when given

        Returns:
            Success, UNAUTHORIZED without an actor, FORBIDDEN when denied
        """
        if actor_id is None:
            return Result.failure(ErrorKind.UNAUTHORIZED)

        user = self._active_user(actor_id)
        if user is None or (tenant_id is not None and user.tenant_id != tenant_id):
            logger.warning(f"Denied {operation.value} for {actor_id}: unknown, inactive or foreign actor")
            return Result.failure(ErrorKind.FORBIDDEN, operation=operation.value)

        required = required_permissions(operation)
        if required.mode == PermissionMode.ALL:
            allowed = self.has_all_permissions(actor_id, required.permissions)
        else:
            allowed = self.has_any_permission(actor_id, required.permissions)

        if not allowed:
            logger.warning(
                f"Denied {operation.value} for {actor_id}: requires "
                f"{required.mode.value} of {', '.join(required.permissions)}"
            )
            return Result.failure(ErrorKind.FORBIDDEN, operation=operation.value)

        logger.debug(f"Allowed {operation.value} for {actor_id}")
        return Result.success()

    # ------------------------------------------------------------------
    # Hierarchy-scoped visibility
    # ------------------------------------------------------------------

    def visible_user_ids(self, actor_id: Optional[UUID]) -> set[UUID]:
        user = self._active_user(actor_id)
        if user is None:
            return set()
        return self.hierarchy_for(user.tenant_id).visible_user_ids(user.id)

    def _is_subordinate(self, user: models.User, target_id: Optional[UUID]) -> bool:
        if target_id is None:
            return False
        return self.hierarchy_for(user.tenant_id).is_subordinate(user.id, target_id)

    def can_view_user(self, actor_id: Optional[UUID], target_id: UUID) -> bool:
        """Self, holders of Users.ViewAll, or managers of the target."""
        user = self._tenant_member(actor_id, self._user(target_id))
        if user is None:
            return False
        if actor_id == target_id or self.has_permission(actor_id, Users.VIEW_ALL):
            return True
        return self._is_subordinate(user, target_id)

    def can_view_subordinate(self, actor_id: Optional[UUID], target_id: UUID) -> bool:
        """Self, or Users.ViewAll holders looking at their own reports."""
        user = self._tenant_member(actor_id, self._user(target_id))
        if user is None:
            return False
        if actor_id == target_id:
            return True
        return self.has_permission(actor_id, Users.VIEW_ALL) and self._is_subordinate(user, target_id)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def can_view_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        document = self._load(models.Document, document)
        user = self._tenant_member(actor_id, document)
        if user is None:
            return False
        if actor_id in (document.created_by_id, document.current_approver_id):
            return True
        if self.has_permission(actor_id, Documents.VIEW_ALL):
            return True
        return (
            self.has_permission(actor_id, Documents.VIEW)
            and document.created_by_id in self.visible_user_ids(actor_id)
        )

    def can_create_document(self, actor_id: Optional[UUID]) -> bool:
        return self.has_permission(actor_id, Documents.CREATE)

    def can_edit_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        """
        Creator, or a Documents.ViewAll holder, and only while draft or rejected.

        Submitted, approved and archived documents are never editable.
        """
        document = self._load(models.Document, document)
        if self._tenant_member(actor_id, document) is None:
            return False
        if document.status not in EDITABLE_STATUSES:
            return False
        return actor_id == document.created_by_id or self.has_permission(actor_id, Documents.VIEW_ALL)

    def can_submit_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        document = self._load(models.Document, document)
        if self._tenant_member(actor_id, document) is None:
            return False
        return (
            actor_id == document.created_by_id
            and document.status in (DocumentStatus.DRAFT, DocumentStatus.REJECTED)
            and self.has_permission(actor_id, Documents.SUBMIT)
        )

    def can_approve_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        """Only the current approver of a submitted document. No permission overrides this."""
        document = self._load(models.Document, document)
        if self._tenant_member(actor_id, document) is None:
            return False
        return (
            document.current_approver_id is not None
            and actor_id == document.current_approver_id
            and document.status == DocumentStatus.SUBMITTED
        )

    def can_reject_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        return self.can_approve_document(actor_id, document)

    def can_archive_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        document = self._load(models.Document, document)
        if self._tenant_member(actor_id, document) is None:
            return False
        return document.status == DocumentStatus.APPROVED and self.has_permission(actor_id, Documents.ARCHIVE)

    def can_delete_document(self, actor_id: Optional[UUID], document: DocumentRef) -> bool:
        document = self._load(models.Document, document)
        if self._tenant_member(actor_id, document) is None:
            return False
        return (
            document.status not in (DocumentStatus.APPROVED, DocumentStatus.ARCHIVED)
            and self.has_permission(actor_id, Documents.DELETE)
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def can_view_task(self, actor_id: Optional[UUID], task: TaskRef) -> bool:
        task = self._load(models.Task, task)
        if self._tenant_member(actor_id, task) is None:
            return False
        if actor_id in (task.created_by_id, task.assigned_to_id):
            return True
        if self.has_permission(actor_id, Tasks.VIEW_ALL):
            return True
        if not self.has_permission(actor_id, Tasks.VIEW):
            return False
        visible = self.visible_user_ids(actor_id)
        return task.created_by_id in visible or task.assigned_to_id in visible

    def can_create_task(self, actor_id: Optional[UUID]) -> bool:
        return self.has_permission(actor_id, Tasks.CREATE)

    def can_assign_task(self, actor_id: Optional[UUID], task: TaskRef, assignee_id: UUID) -> bool:
        """Tasks.Assign, to self or a subordinate (anyone in the tenant with Tasks.ViewAll)."""
        task = self._load(models.Task, task)
        user = self._tenant_member(actor_id, task)
        if user is None or self._tenant_member(assignee_id, task) is None:
            return False
        if not self.has_permission(actor_id, Tasks.ASSIGN):
            return False
        return (
            assignee_id == actor_id
            or self.has_permission(actor_id, Tasks.VIEW_ALL)
            or self._is_subordinate(user, assignee_id)
        )

    def can_complete_task(self, actor_id: Optional[UUID], task: TaskRef) -> bool:
        task = self._load(models.Task, task)
        if self._tenant_member(actor_id, task) is None:
            return False
        return (
            task.assigned_to_id is not None
            and actor_id == task.assigned_to_id
            and TASK_MACHINE.can_transition_to(task.status, TaskStatus.AWAITING_APPROVAL)
            and self.has_permission(actor_id, Tasks.COMPLETE)
        )

    def can_review_task(self, actor_id: Optional[UUID], task: TaskRef) -> bool:
        """Task creator or a manager of the assignee, while awaiting approval."""
        task = self._load(models.Task, task)
        user = self._tenant_member(actor_id, task)
        if user is None or task.status != TaskStatus.AWAITING_APPROVAL:
            return False
        return actor_id == task.created_by_id or self._is_subordinate(user, task.assigned_to_id)

    # ------------------------------------------------------------------
    # CAPA
    # ------------------------------------------------------------------

    def can_view_capa(self, actor_id: Optional[UUID], capa: CapaRef) -> bool:
        capa = self._load(models.Capa, capa)
        if self._tenant_member(actor_id, capa) is None:
            return False
        if actor_id in (capa.created_by_id, capa.owner_id):
            return True
        if self.has_permission(actor_id, Capa.VIEW_ALL):
            return True
        if not self.has_permission(actor_id, Capa.VIEW):
            return False
        visible = self.visible_user_ids(actor_id)
        return capa.created_by_id in visible or capa.owner_id in visible

    def can_edit_capa(self, actor_id: Optional[UUID], capa: CapaRef) -> bool:
        capa = self._load(models.Capa, capa)
        if self._tenant_member(actor_id, capa) is None:
            return False
        return not CAPA_MACHINE.is_terminal(capa.status) and self.has_permission(actor_id, Capa.EDIT)

    def can_verify_capa(self, actor_id: Optional[UUID], capa: CapaRef) -> bool:
        capa = self._load(models.Capa, capa)
        if self._tenant_member(actor_id, capa) is None:
            return False
        return (
            actor_id != capa.created_by_id
            and capa.status == CapaStatus.ACTIONS_IMPLEMENTED
            and self.has_permission(actor_id, Capa.VERIFY)
        )

    def can_close_capa(self, actor_id: Optional[UUID], capa: CapaRef) -> bool:
        capa = self._load(models.Capa, capa)
        if self._tenant_member(actor_id, capa) is None:
            return False
        return capa.status == CapaStatus.EFFECTIVENESS_VERIFIED and self.has_permission(actor_id, Capa.CLOSE)

    def can_delete_capa(self, actor_id: Optional[UUID], capa: CapaRef) -> bool:
        capa = self._load(models.Capa, capa)
        if self._tenant_member(actor_id, capa) is None:
            return False
        return can_be_deleted(capa) and self.has_permission(actor_id, Capa.DELETE)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    def _resolve_expiry(self, expires_after_days: Optional[int]) -> Result[Optional[int]]:
        days = expires_after_days if expires_after_days is not None else self.policy.default_expiry_days
        maximum = self.policy.max_expiry_days
        if maximum is not None:
            if days is None:
                days = maximum
            elif days > maximum:
                return Result.failure(
                    ErrorKind.VALIDATION, reason="expiry_exceeds_maximum",
                    expires_after_days=days, max_expiry_days=maximum,
                )
        return Result.success(days)

    def delegate_permission(
        self,
        actor_id: Optional[UUID],
        delegatee_id: UUID,
        permission: str,
        expires_after_days: Optional[int] = None,
    ) -> Result[models.PermissionDelegation]:
        """
        Lend one of the actor's role permissions to a subordinate.

        Delegated permissions cannot be passed on: only permissions the actor
        holds through a role can be delegated.

        Returns:
            Result with the delegation and a PERMISSION_DELEGATED event;
            UNAUTHORIZED, VALIDATION, NOT_FOUND or FORBIDDEN otherwise
        """
        actor = self._active_user(actor_id)
        if actor is None:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        if actor_id == delegatee_id:
            return Result.failure(ErrorKind.VALIDATION, reason="self_delegation")

        delegatee = self._user(delegatee_id)
        if delegatee is None or delegatee.tenant_id != actor.tenant_id:
            return Result.failure(ErrorKind.NOT_FOUND, entity="user", id=delegatee_id)

        if permission not in self.role_permissions(actor_id):
            logger.warning(f"Refused delegation of {permission} by {actor_id}: not held through a role")
            return Result.failure(ErrorKind.FORBIDDEN, reason="permission_not_held")

        if self.policy.require_subordinate and not self._is_subordinate(actor, delegatee_id):
            logger.warning(f"Refused delegation of {permission} by {actor_id}: {delegatee_id} is not a subordinate")
            return Result.failure(ErrorKind.FORBIDDEN, reason="not_subordinate")

        expiry = self._resolve_expiry(expires_after_days)
        if not expiry:
            return expiry

        result = self.delegations.delegate(actor.tenant_id, actor_id, delegatee_id, permission, expiry.value)
        if not result:
            return result

        delegation = result.value
        event = DomainEvent(
            kind=EventKind.PERMISSION_DELEGATED,
            entity_id=delegation.id,
            tenant_id=delegation.tenant_id,
            actor_id=actor_id,
            occurred_at=self.clock(),
            payload={
                "permission": permission,
                "delegatee_id": str(delegatee_id),
                "expires_at": delegation.expires_at.isoformat() if delegation.expires_at else None,
            },
        )
        return Result.success(delegation, events=[event])

    def revoke_delegation(self, actor_id: Optional[UUID], delegation_id: UUID) -> Result[models.PermissionDelegation]:
        """
        Revoke a delegation. Only its delegator may do so.

        Revoking twice succeeds; only the first revoke produces an event.
        """
        actor = self._active_user(actor_id)
        if actor is None:
            return Result.failure(ErrorKind.UNAUTHORIZED)

        delegation = self.delegations.get(delegation_id)
        if delegation is None or delegation.tenant_id != actor.tenant_id:
            return Result.failure(ErrorKind.NOT_FOUND, entity="delegation", id=delegation_id)
        if delegation.delegator_id != actor_id:
            logger.warning(f"Refused revoke of delegation {delegation_id} by non-delegator {actor_id}")
            return Result.failure(ErrorKind.FORBIDDEN, reason="not_delegator")

        already_revoked = delegation.revoked
        result = self.delegations.revoke(delegation_id, revoked_by_id=actor_id)
        if not result:
            return result

        if already_revoked:
            return result

        event = DomainEvent(
            kind=EventKind.DELEGATION_REVOKED,
            entity_id=delegation.id,
            tenant_id=delegation.tenant_id,
            actor_id=actor_id,
            occurred_at=self.clock(),
            payload={"permission": delegation.permission, "delegatee_id": str(delegation.delegatee_id)},
        )
        return Result.success(delegation, events=[event])
