"""Transition tables for the Task, Escrow and Proof state machines.

This is the "trust code" layer: no matter what the service layer or an
outer API asks for, an edge that is not listed here is refused. The tables
are pure data; persistence, guards and audit logging live in the services.

Task:
    open            -> accepted | cancelled | expired
    accepted        -> proof_submitted | disputed | cancelled
    proof_submitted -> completed | disputed
    disputed        -> completed | cancelled
    completed, cancelled, expired are terminal.

Escrow:
    pending         -> funded | refunded
    funded          -> released | refunded | locked_dispute
    locked_dispute  -> released | refunded | partial_refund
    released, refunded, partial_refund are terminal.

Proof:
    pending         -> reviewing | accepted | rejected | expired
    reviewing       -> accepted | rejected
    accepted, expired are terminal. rejected has no outgoing edges but is
    not terminal: it lets the worker submit a new proof for the task.

Fail-closed: the terminal check runs before the edge check, and unknown
state strings are rejected by decode().
"""

from __future__ import annotations

import enum
from typing import Generic, TypeVar

from gigflow.domain.enums import EscrowState, ProofState, TaskState
from gigflow.domain.exceptions import (
    InvalidTransitionError,
    TerminalStateViolationError,
    UnknownStateError,
)

StateT = TypeVar("StateT", bound=enum.Enum)


class TransitionTable(Generic[StateT]):
    """Validates transitions against a fixed adjacency table."""

    def __init__(
        self,
        entity: str,
        state_type: type[StateT],
        edges: dict[StateT, frozenset[StateT]],
        terminal: frozenset[StateT],
    ) -> None:
        missing = set(state_type) - set(edges)
        if missing:
            names = sorted(s.value for s in missing)
            raise ValueError(f"{entity} table is missing states: {names}")
        self.entity = entity
        self.state_type = state_type
        self._edges = edges
        self._terminal = terminal

    def decode(self, raw: object) -> StateT:
        """Turn a stored value into a state, rejecting unknown values."""
        if isinstance(raw, self.state_type):
            return raw
        try:
            return self.state_type(raw)
        except ValueError as err:
            raise UnknownStateError(self.entity, raw) from err

    def is_terminal(self, state: StateT) -> bool:
        return state in self._terminal

    def allowed_targets(self, state: StateT) -> frozenset[StateT]:
        """Return the set of valid target states from the given state."""
        return self._edges.get(state, frozenset())

    def can_transition(self, current: StateT, target: StateT) -> bool:
        return target in self.allowed_targets(current)

    def validate(self, current: StateT, target: StateT) -> None:
        """Raise if current -> target is not allowed.

        Raises:
            TerminalStateViolationError: current is terminal, whatever the target.
            InvalidTransitionError: the edge is not in the table.
        """
        if self.is_terminal(current):
            raise TerminalStateViolationError(self.entity, current.value, target.value)
        if not self.can_transition(current, target):
            raise InvalidTransitionError(self.entity, current.value, target.value)

    def coerce_target(self, current: StateT, target: object) -> StateT:
        """Turn a caller-supplied target into a state.

        An unknown target is reported as an illegal edge from the current
        state rather than as a store corruption.
        """
        if isinstance(target, self.state_type):
            return target
        try:
            return self.state_type(target)
        except ValueError as err:
            if self.is_terminal(current):
                raise TerminalStateViolationError(self.entity, current.value, str(target)) from err
            raise InvalidTransitionError(self.entity, current.value, str(target)) from err


TASK_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.OPEN: frozenset({TaskState.ACCEPTED, TaskState.CANCELLED, TaskState.EXPIRED}),
    TaskState.ACCEPTED: frozenset(
        {TaskState.PROOF_SUBMITTED, TaskState.DISPUTED, TaskState.CANCELLED}
    ),
    TaskState.PROOF_SUBMITTED: frozenset({TaskState.COMPLETED, TaskState.DISPUTED}),
    TaskState.DISPUTED: frozenset({TaskState.COMPLETED, TaskState.CANCELLED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.CANCELLED: frozenset(),
    TaskState.EXPIRED: frozenset(),
}

ESCROW_TRANSITIONS: dict[EscrowState, frozenset[EscrowState]] = {
    EscrowState.PENDING: frozenset({EscrowState.FUNDED, EscrowState.REFUNDED}),
    EscrowState.FUNDED: frozenset(
        {EscrowState.RELEASED, EscrowState.REFUNDED, EscrowState.LOCKED_DISPUTE}
    ),
    EscrowState.LOCKED_DISPUTE: frozenset(
        {EscrowState.RELEASED, EscrowState.REFUNDED, EscrowState.PARTIAL_REFUND}
    ),
    EscrowState.RELEASED: frozenset(),
    EscrowState.REFUNDED: frozenset(),
    EscrowState.PARTIAL_REFUND: frozenset(),
}

PROOF_TRANSITIONS: dict[ProofState, frozenset[ProofState]] = {
    ProofState.PENDING: frozenset(
        {ProofState.REVIEWING, ProofState.ACCEPTED, ProofState.REJECTED, ProofState.EXPIRED}
    ),
    ProofState.REVIEWING: frozenset({ProofState.ACCEPTED, ProofState.REJECTED}),
    ProofState.ACCEPTED: frozenset(),
    ProofState.REJECTED: frozenset(),
    ProofState.EXPIRED: frozenset(),
}

TASK_MACHINE = TransitionTable(
    "task",
    TaskState,
    TASK_TRANSITIONS,
    terminal=frozenset({TaskState.COMPLETED, TaskState.CANCELLED, TaskState.EXPIRED}),
)

ESCROW_MACHINE = TransitionTable(
    "escrow",
    EscrowState,
    ESCROW_TRANSITIONS,
    terminal=frozenset(
        {EscrowState.RELEASED, EscrowState.REFUNDED, EscrowState.PARTIAL_REFUND}
    ),
)

PROOF_MACHINE = TransitionTable(
    "proof",
    ProofState,
    PROOF_TRANSITIONS,
    terminal=frozenset({ProofState.ACCEPTED, ProofState.EXPIRED}),
)

ACTIVE_PROOF_STATES: frozenset[ProofState] = frozenset({ProofState.PENDING, ProofState.REVIEWING})
