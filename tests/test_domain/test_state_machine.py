"""Tests for the Task, Escrow and Proof transition tables.

These tests verify that:
    1. Every listed edge is allowed and nothing else is.
    2. Terminal states refuse every target, including unknown ones.
    3. Unknown stored values fail closed.
"""

from __future__ import annotations

import pytest

from gigflow.domain.enums import EscrowState, ProofState, TaskState
from gigflow.domain.exceptions import (
    InvalidTransitionError,
    TerminalStateViolationError,
    UnknownStateError,
)
from gigflow.domain.state_machine import (
    ESCROW_MACHINE,
    ESCROW_TRANSITIONS,
    PROOF_MACHINE,
    TASK_MACHINE,
    TransitionTable,
)


class TestTaskMachine:
    def test_happy_path_edges(self) -> None:
        path = [
            TaskState.OPEN,
            TaskState.ACCEPTED,
            TaskState.PROOF_SUBMITTED,
            TaskState.COMPLETED,
        ]
        for current, target in zip(path, path[1:]):
            TASK_MACHINE.validate(current, target)

    def test_dispute_resolution_edges(self) -> None:
        TASK_MACHINE.validate(TaskState.ACCEPTED, TaskState.DISPUTED)
        TASK_MACHINE.validate(TaskState.PROOF_SUBMITTED, TaskState.DISPUTED)
        TASK_MACHINE.validate(TaskState.DISPUTED, TaskState.COMPLETED)
        TASK_MACHINE.validate(TaskState.DISPUTED, TaskState.CANCELLED)

    def test_open_cannot_skip_to_completed(self) -> None:
        with pytest.raises(InvalidTransitionError):
            TASK_MACHINE.validate(TaskState.OPEN, TaskState.COMPLETED)

    def test_open_cannot_be_disputed(self) -> None:
        assert not TASK_MACHINE.can_transition(TaskState.OPEN, TaskState.DISPUTED)

    @pytest.mark.parametrize(
        "terminal", [TaskState.COMPLETED, TaskState.CANCELLED, TaskState.EXPIRED]
    )
    def test_terminal_states_refuse_everything(self, terminal: TaskState) -> None:
        assert TASK_MACHINE.is_terminal(terminal)
        assert TASK_MACHINE.allowed_targets(terminal) == frozenset()
        for target in TaskState:
            with pytest.raises(TerminalStateViolationError):
                TASK_MACHINE.validate(terminal, target)

    def test_unknown_target_from_terminal_is_terminal_violation(self) -> None:
        with pytest.raises(TerminalStateViolationError):
            TASK_MACHINE.coerce_target(TaskState.COMPLETED, "reopened")

    def test_unknown_target_is_invalid_transition(self) -> None:
        with pytest.raises(InvalidTransitionError):
            TASK_MACHINE.coerce_target(TaskState.OPEN, "reopened")

    def test_string_targets_are_coerced(self) -> None:
        assert TASK_MACHINE.coerce_target(TaskState.OPEN, "accepted") is TaskState.ACCEPTED


class TestEscrowMachine:
    def test_release_from_funded_or_dispute(self) -> None:
        ESCROW_MACHINE.validate(EscrowState.FUNDED, EscrowState.RELEASED)
        ESCROW_MACHINE.validate(EscrowState.LOCKED_DISPUTE, EscrowState.RELEASED)

    def test_pending_cannot_release(self) -> None:
        with pytest.raises(InvalidTransitionError):
            ESCROW_MACHINE.validate(EscrowState.PENDING, EscrowState.RELEASED)

    def test_partial_refund_only_from_dispute(self) -> None:
        assert not ESCROW_MACHINE.can_transition(EscrowState.FUNDED, EscrowState.PARTIAL_REFUND)
        assert ESCROW_MACHINE.can_transition(
            EscrowState.LOCKED_DISPUTE, EscrowState.PARTIAL_REFUND
        )

    def test_refunded_after_release_is_refused(self) -> None:
        with pytest.raises(TerminalStateViolationError):
            ESCROW_MACHINE.validate(EscrowState.RELEASED, EscrowState.REFUNDED)

    def test_terminal_states_have_no_edges(self) -> None:
        for state, targets in ESCROW_TRANSITIONS.items():
            assert ESCROW_MACHINE.is_terminal(state) == (not targets)


class TestProofMachine:
    def test_pending_can_be_reviewed_or_decided(self) -> None:
        assert PROOF_MACHINE.allowed_targets(ProofState.PENDING) == frozenset(
            {ProofState.REVIEWING, ProofState.ACCEPTED, ProofState.REJECTED, ProofState.EXPIRED}
        )

    def test_reviewing_cannot_expire(self) -> None:
        with pytest.raises(InvalidTransitionError):
            PROOF_MACHINE.validate(ProofState.REVIEWING, ProofState.EXPIRED)

    def test_rejected_is_a_dead_end_but_not_terminal(self) -> None:
        assert not PROOF_MACHINE.is_terminal(ProofState.REJECTED)
        with pytest.raises(InvalidTransitionError):
            PROOF_MACHINE.validate(ProofState.REJECTED, ProofState.ACCEPTED)

    def test_accepted_is_terminal(self) -> None:
        with pytest.raises(TerminalStateViolationError):
            PROOF_MACHINE.validate(ProofState.ACCEPTED, ProofState.REJECTED)


class TestDecode:
    def test_decodes_stored_values(self) -> None:
        assert TASK_MACHINE.decode("proof_submitted") is TaskState.PROOF_SUBMITTED
        assert ESCROW_MACHINE.decode(EscrowState.FUNDED) is EscrowState.FUNDED

    @pytest.mark.parametrize("raw", ["FAILED", "Open", "", None, 3])
    def test_unknown_values_fail_closed(self, raw: object) -> None:
        with pytest.raises(UnknownStateError, match="Unknown task state"):
            TASK_MACHINE.decode(raw)

    def test_table_must_cover_every_state(self) -> None:
        with pytest.raises(ValueError, match="missing states"):
            TransitionTable(
                "task",
                TaskState,
                {TaskState.OPEN: frozenset()},
                terminal=frozenset(),
            )
