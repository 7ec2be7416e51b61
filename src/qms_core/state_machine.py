"""Finite state machines for entity lifecycle status transitions.

Each lifecycle entity (CAPA, document, task) declares:
- forward edges (the single ``next_state`` of each status),
- backward edges (single-step rollback, never out of a terminal status),
- branch edges (side exits such as reject / cancel),
- terminal statuses, which have no outgoing edge at all.

Guards return ``Result`` values; a blocked transition is an expected outcome,
not an exception.
"""
import enum
import logging
from typing import Generic, Iterable, Mapping, Optional, TypeVar

from .errors import ErrorKind, Result

logger = logging.getLogger("qms-core.state_machine")

S = TypeVar("S", bound=enum.Enum)


class StateMachine(Generic[S]):
    """Transition rules for one status enum."""

    def __init__(
        self,
        name: str,
        states: type[S],
        forward: Mapping[S, S],
        backward: Optional[Mapping[S, S]] = None,
        branches: Optional[Mapping[S, Iterable[S]]] = None,
        terminal: Iterable[S] = (),
    ):
        self.name = name
        self.states = states
        self.terminal = frozenset(terminal)
        self._forward = dict(forward)
        self._backward = dict(backward or {})
        self._branches = {state: tuple(targets) for state, targets in (branches or {}).items()}

        for state in self.terminal:
            if state in self._forward or state in self._backward or self._branches.get(state):
                raise ValueError(f"{name}: terminal status {state.value} cannot have outgoing edges")

    def is_terminal(self, current: S) -> bool:
        return current in self.terminal

    def next_state(self, current: S) -> Optional[S]:
        """Forward edge from current, None at terminal statuses."""
        if self.is_terminal(current):
            return None
        return self._forward.get(current)

    def previous_state(self, current: S) -> Optional[S]:
        """Single-step rollback edge from current, None at terminal statuses."""
        if self.is_terminal(current):
            return None
        return self._backward.get(current)

    def branch_states(self, current: S) -> tuple[S, ...]:
        if self.is_terminal(current):
            return ()
        return self._branches.get(current, ())

    def can_transition_to(self, current: S, target: S) -> bool:
        if self.is_terminal(current) or current == target:
            return False
        return (
            target == self.next_state(current)
            or target == self.previous_state(current)
            or target in self.branch_states(current)
        )

    def allowed_transitions(self, current: S) -> list[S]:
        """
        Get list of allowed transitions from current status.

        Args:
            current: Current status

        Returns:
            Next status first, then rollback, then branches (no duplicates)
        """
        candidates = [self.next_state(current), self.previous_state(current), *self.branch_states(current)]
        allowed: list[S] = []
        for state in candidates:
            if state is not None and state != current and state not in allowed:
                allowed.append(state)
        return allowed

    def check_transition(self, current: S, target: S) -> Result:
        """
        Validate a status transition.

        A no-op (current == target) is not a transition and is rejected.

        Returns:
            Success, or VALIDATION with ``current``, ``requested`` and ``allowed``
        """
        if self.can_transition_to(current, target):
            logger.debug(f"Valid {self.name} transition: {current.value} → {target.value}")
            return Result.success()

        allowed = [s.value for s in self.allowed_transitions(current)]
        if self.is_terminal(current):
            logger.warning(
                f"Blocked {self.name} transition: {current.value} → {target.value}. "
                f"{current.value} is terminal."
            )
        else:
            logger.warning(
                f"Blocked {self.name} transition: {current.value} → {target.value}. "
                f"From {current.value}, you can only transition to: {', '.join(allowed) or 'nothing'}."
            )
        return Result.failure(
            ErrorKind.VALIDATION,
            reason="invalid_transition",
            current=current.value,
            requested=target.value,
            allowed=allowed,
        )

    def transition_matrix(self) -> dict[S, list[S]]:
        """Status → allowed next statuses, for every status."""
        return {state: self.allowed_transitions(state) for state in self.states}
