"""Permission delegation records.

A delegation is a time-bounded loan of one permission from a delegator to a
delegatee. Rows are never deleted: expiry is evaluated when reading and
revocation is the only mutation.

The store does not check that the delegator holds the permission; that
check belongs to the authorization engine, which is the only caller allowed
to grant.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models
from .errors import ErrorKind, Result
from .models import utcnow
from .persistence import infrastructure_guard
from .schemas import DelegationSummary

logger = logging.getLogger("qms-core.delegation")


class DelegationStore:
    """Reads and writes PermissionDelegation rows through a session."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _active_filter(self, now: datetime):
        return (
            models.PermissionDelegation.revoked.is_(False),
            or_(
                models.PermissionDelegation.expires_at.is_(None),
                models.PermissionDelegation.expires_at > now,
            ),
        )

    def delegate(
        self,
        tenant_id: UUID,
        delegator_id: UUID,
        delegatee_id: UUID,
        permission: str,
        expires_after_days: Optional[int] = None,
    ) -> Result[models.PermissionDelegation]:
        """
        Record a delegation, or refresh the active one for the same triple.

        Args:
            tenant_id: Tenant both users belong to
            delegator_id: User lending the permission
            delegatee_id: User receiving it
            permission: Permission string
            expires_after_days: Days from now until expiry, None = no expiry

        Returns:
            Result with the delegation row, VALIDATION for bad input
        """
        if not permission or not permission.strip():
            return Result.failure(ErrorKind.VALIDATION, reason="empty_permission")
        if delegator_id == delegatee_id:
            logger.warning(f"Rejected self-delegation of {permission} by {delegator_id}")
            return Result.failure(ErrorKind.VALIDATION, reason="self_delegation")
        if expires_after_days is not None and expires_after_days < 1:
            return Result.failure(
                ErrorKind.VALIDATION, reason="invalid_expiry", expires_after_days=expires_after_days
            )

        now = self.clock()
        expires_at = now + timedelta(days=expires_after_days) if expires_after_days is not None else None

        with infrastructure_guard("recording delegation"):
            existing = (
                self.db.query(models.PermissionDelegation)
                .filter(
                    models.PermissionDelegation.tenant_id == tenant_id,
                    models.PermissionDelegation.delegator_id == delegator_id,
                    models.PermissionDelegation.delegatee_id == delegatee_id,
                    models.PermissionDelegation.permission == permission,
                    *self._active_filter(now),
                )
                .first()
            )

            if existing is not None:
                existing.expires_at = expires_at
                self.db.flush()
                logger.info(f"Refreshed delegation {existing.id} of {permission} to {delegatee_id}")
                return Result.success(existing)

            delegation = models.PermissionDelegation(
                tenant_id=tenant_id,
                delegator_id=delegator_id,
                delegatee_id=delegatee_id,
                permission=permission,
                granted_at=now,
                expires_at=expires_at,
                revoked=False,
            )
            self.db.add(delegation)
            self.db.flush()

        logger.info(f"Delegated {permission} from {delegator_id} to {delegatee_id} (expires {expires_at})")
        return Result.success(delegation)

    def revoke(
        self, delegation_id: UUID, revoked_by_id: Optional[UUID] = None
    ) -> Result[models.PermissionDelegation]:
        """
        Revoke a delegation. Permanent; revoking twice is a successful no-op.

        Returns:
            Result with the delegation row, NOT_FOUND if it does not exist
        """
        with infrastructure_guard("revoking delegation"):
            delegation = self.get(delegation_id)
            if delegation is None:
                return Result.failure(ErrorKind.NOT_FOUND, entity="delegation", id=delegation_id)

            if delegation.revoked:
                logger.debug(f"Delegation {delegation_id} already revoked")
                return Result.success(delegation)

            delegation.revoked = True
            delegation.revoked_at = self.clock()
            delegation.revoked_by_id = revoked_by_id
            self.db.flush()

        logger.info(f"Revoked delegation {delegation_id} ({delegation.permission})")
        return Result.success(delegation)

    def get(self, delegation_id: UUID) -> Optional[models.PermissionDelegation]:
        with infrastructure_guard("loading delegation"):
            return (
                self.db.query(models.PermissionDelegation)
                .filter(models.PermissionDelegation.id == delegation_id)
                .first()
            )

    def active_delegations_for(self, delegatee_id: UUID) -> list[models.PermissionDelegation]:
        """Active delegations received by a user."""
        with infrastructure_guard("loading received delegations"):
            return (
                self.db.query(models.PermissionDelegation)
                .filter(
                    models.PermissionDelegation.delegatee_id == delegatee_id,
                    *self._active_filter(self.clock()),
                )
                .order_by(models.PermissionDelegation.granted_at)
                .all()
            )

    def active_delegations_from(self, delegator_id: UUID) -> list[models.PermissionDelegation]:
        """Active delegations granted by a user."""
        with infrastructure_guard("loading granted delegations"):
            return (
                self.db.query(models.PermissionDelegation)
                .filter(
                    models.PermissionDelegation.delegator_id == delegator_id,
                    *self._active_filter(self.clock()),
                )
                .order_by(models.PermissionDelegation.granted_at)
                .all()
            )

    def delegations_for_tenant(
        self, tenant_id: UUID, include_inactive: bool = True
    ) -> list[models.PermissionDelegation]:
        with infrastructure_guard("loading tenant delegations"):
            query = self.db.query(models.PermissionDelegation).filter(
                models.PermissionDelegation.tenant_id == tenant_id
            )
            if not include_inactive:
                query = query.filter(*self._active_filter(self.clock()))
            return query.order_by(models.PermissionDelegation.granted_at).all()

    def delegated_permissions(self, delegatee_id: UUID) -> frozenset[str]:
        return frozenset(d.permission for d in self.active_delegations_for(delegatee_id))

    def _summaries(self, column, user_id: UUID) -> list[DelegationSummary]:
        now = self.clock()
        with infrastructure_guard("listing delegations"):
            rows = (
                self.db.query(models.PermissionDelegation)
                .filter(column == user_id)
                .order_by(models.PermissionDelegation.granted_at.desc())
                .all()
            )
        return [
            DelegationSummary.model_validate(row).model_copy(update={"is_active": row.is_active_at(now)})
            for row in rows
        ]

    def my_delegations(self, delegator_id: UUID) -> list[DelegationSummary]:
        """Every delegation a user has granted, newest first, including inactive ones."""
        return self._summaries(models.PermissionDelegation.delegator_id, delegator_id)

    def received_delegations(self, delegatee_id: UUID) -> list[DelegationSummary]:
        """Every delegation a user has received, newest first, including inactive ones."""
        return self._summaries(models.PermissionDelegation.delegatee_id, delegatee_id)
