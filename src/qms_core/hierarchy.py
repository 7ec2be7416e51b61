"""Reporting hierarchy resolution (who reports to whom).

The manager links form a forest, but stored data is not trusted to be
acyclic: every traversal tracks visited nodes and terminates on a cycle.
Writes through ``assign_manager`` reject links that would create one.
"""
import logging
from collections import deque
from typing import Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from . import models
from .errors import ErrorKind, Result
from .persistence import infrastructure_guard

logger = logging.getLogger("qms-core.hierarchy")


class HierarchyResolver:
    """
    Read-only view over a snapshot of user → manager links.

    Build one per request (``from_session``) or from a plain mapping in tests.
    """

    def __init__(
        self,
        manager_of: Mapping[UUID, Optional[UUID]],
        org_unit_of: Optional[Mapping[UUID, Optional[UUID]]] = None,
    ):
        self._manager_of = dict(manager_of)
        self._org_unit_of = dict(org_unit_of or {})
        self._reports: dict[UUID, list[UUID]] = {}
        for user_id, manager_id in self._manager_of.items():
            if manager_id is not None:
                self._reports.setdefault(manager_id, []).append(user_id)

    @classmethod
    def from_session(cls, db: Session, tenant_id: UUID) -> "HierarchyResolver":
        """Load the manager links and departments of one tenant."""
        with infrastructure_guard("loading reporting hierarchy"):
            rows = (
                db.query(models.User.id, models.User.manager_id, models.User.org_unit_id)
                .filter(models.User.tenant_id == tenant_id)
                .all()
            )
        return cls(
            {row.id: row.manager_id for row in rows},
            {row.id: row.org_unit_id for row in rows},
        )

    @property
    def manager_links(self) -> Mapping[UUID, Optional[UUID]]:
        return self._manager_of

    def manager_of(self, user_id: UUID) -> Optional[UUID]:
        return self._manager_of.get(user_id)

    def is_subordinate(self, actor_id: UUID, target_id: UUID, recursive: bool = True) -> bool:
        """
        Check whether target reports to actor.

        Args:
            actor_id: Prospective manager
            target_id: Prospective subordinate
            recursive: False = direct reports only, True = any depth

        Returns:
            True if target's manager chain reaches actor
        """
        if actor_id == target_id:
            return False
        if not recursive:
            return self._manager_of.get(target_id) == actor_id
        return actor_id in self.manager_chain(target_id)

    def subordinate_ids(self, actor_id: UUID, recursive: bool = True) -> set[UUID]:
        """Subordinates of actor, excluding actor."""
        if not recursive:
            return {u for u in self._reports.get(actor_id, []) if u != actor_id}

        visited: set[UUID] = {actor_id}
        queue = deque([actor_id])
        while queue:
            current = queue.popleft()
            for report in self._reports.get(current, []):
                if report not in visited:
                    visited.add(report)
                    queue.append(report)

        visited.discard(actor_id)
        return visited

    def visible_user_ids(self, actor_id: UUID) -> set[UUID]:
        """Actor plus every transitive subordinate."""
        return {actor_id} | self.subordinate_ids(actor_id, recursive=True)

    def is_manager(self, user_id: UUID) -> bool:
        return bool(self._reports.get(user_id))

    def manager_chain(self, user_id: UUID) -> list[UUID]:
        """Managers of user, nearest first. Stops on the first repeated node."""
        chain: list[UUID] = []
        seen: set[UUID] = {user_id}
        current = self._manager_of.get(user_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self._manager_of.get(current)
        return chain

    def department_user_ids(self, org_unit_id: UUID) -> set[UUID]:
        return {u for u, unit in self._org_unit_of.items() if unit == org_unit_id}


def find_manager_cycle(
    manager_of: Mapping[UUID, Optional[UUID]],
    user_id: UUID,
    new_manager_id: Optional[UUID],
) -> Optional[list[UUID]]:
    """
    Detect if making new_manager_id the manager of user_id would create a cycle.

    Args:
        manager_of: Current user → manager links
        user_id: User whose manager changes
        new_manager_id: Proposed manager (None clears the link)

    Returns:
        The cycle path starting and ending at user_id, or None
    """
    if new_manager_id is None:
        return None
    if new_manager_id == user_id:
        return [user_id, user_id]

    path = [user_id, new_manager_id]
    visited = {new_manager_id}
    current = manager_of.get(new_manager_id)
    while current is not None:
        if current == user_id:
            path.append(user_id)
            return path
        if current in visited:
            # Pre-existing cycle above the new manager that does not include user
            return None
        visited.add(current)
        path.append(current)
        current = manager_of.get(current)
    return None


def assign_manager(db: Session, user: models.User, manager_id: Optional[UUID]) -> Result:
    """
    Set a user's manager after rejecting unknown managers and cycles.

    The change is staged in the session; the caller commits.

    Returns:
        Result with the user on success, NOT_FOUND for an unknown or
        cross-tenant manager, VALIDATION (detail ``cycle``) for a cycle
    """
    if manager_id is None:
        user.manager_id = None
        return Result.success(user)

    if manager_id == user.id:
        logger.warning(f"Rejected self-management for user {user.id}")
        return Result.failure(ErrorKind.VALIDATION, reason="self_manager", cycle=[user.id, user.id])

    with infrastructure_guard("assigning manager"):
        manager = db.query(models.User).filter(models.User.id == manager_id).first()
        if manager is None or manager.tenant_id != user.tenant_id:
            return Result.failure(ErrorKind.NOT_FOUND, entity="user", id=manager_id)

        resolver = HierarchyResolver.from_session(db, user.tenant_id)

    cycle = find_manager_cycle(resolver.manager_links, user.id, manager_id)
    if cycle:
        logger.warning(f"Rejected manager assignment creating cycle: {' -> '.join(str(u) for u in cycle)}")
        return Result.failure(ErrorKind.VALIDATION, reason="manager_cycle", cycle=cycle)

    user.manager_id = manager_id
    logger.info(f"Manager of user {user.id} set to {manager_id}")
    return Result.success(user)
