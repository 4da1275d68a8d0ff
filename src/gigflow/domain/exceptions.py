"""Domain exceptions for the gigflow workflow core.

These exceptions are framework-agnostic and represent business rule violations.
They are raised inside a service's transaction (which rolls it back) and are
translated into a failed OperationResult at the service boundary, so they
never reach the caller of a public operation.
"""

from __future__ import annotations

from gigflow.domain.enums import ErrorKind


class GigflowError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.INVARIANT_VIOLATION

    def __init__(self, message: str, current_state: str | None = None) -> None:
        self.message = message
        self.code = self.kind.value
        self.current_state = current_state
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidTransitionError(GigflowError):
    """Raised when the requested edge is not in the legal transition table."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, entity: str, current_state: str, attempted_state: str) -> None:
        super().__init__(
            f"Invalid {entity} transition: {current_state} -> {attempted_state}"
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_state = attempted_state


class TerminalStateViolationError(GigflowError):
    """Raised on any transition attempt against a row in a terminal state."""

    kind = ErrorKind.TERMINAL_STATE_VIOLATION

    def __init__(self, entity: str, current_state: str, attempted_state: str) -> None:
        super().__init__(
            f"Cannot modify {entity} in terminal state: {current_state} "
            f"(attempted {attempted_state})"
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_state = attempted_state


class NotFoundError(GigflowError):
    """Raised when a referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")
        self.entity = entity
        self.entity_id = str(entity_id)


class InvariantViolationError(GigflowError):
    """Raised when a guard refuses an otherwise legal transition."""

    kind = ErrorKind.INVARIANT_VIOLATION

    def __init__(
        self,
        message: str,
        invariant: str | None = None,
        current_state: str | None = None,
    ) -> None:
        super().__init__(message, current_state=current_state)
        self.invariant = invariant


class UnknownStateError(InvariantViolationError):
    """Raised when the store holds a state value outside the known enum."""

    def __init__(self, entity: str, raw_state: object) -> None:
        super().__init__(f"Unknown {entity} state in store: {raw_state!r}")
        self.entity = entity


# --- Proof Errors ---


class DuplicateActiveProofError(GigflowError):
    """Raised when a task already has a pending or reviewing proof."""

    kind = ErrorKind.DUPLICATE_ACTIVE_PROOF

    def __init__(self, task_id: object, proof_id: object | None = None) -> None:
        super().__init__(f"Proof already pending review for task: {task_id}")
        self.task_id = str(task_id)
        self.proof_id = str(proof_id) if proof_id is not None else None


class AlreadyAcceptedError(GigflowError):
    """Raised when a task already has an accepted proof."""

    kind = ErrorKind.ALREADY_ACCEPTED

    def __init__(self, task_id: object, proof_id: object) -> None:
        super().__init__(f"Proof already accepted for task: {task_id}")
        self.task_id = str(task_id)
        self.proof_id = str(proof_id)


# --- Concurrency Errors ---


class ConflictRetryError(GigflowError):
    """Raised when a concurrent writer won the race for the same row."""

    kind = ErrorKind.CONFLICT_RETRY

    def __init__(
        self,
        entity: str,
        entity_id: object,
        detail: str = "",
        current_state: str | None = None,
    ) -> None:
        message = f"Concurrent update on {entity} {entity_id}; retry the operation"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, current_state=current_state)
        self.entity = entity
        self.entity_id = str(entity_id)


# --- Job Errors ---


class HandlerFailureError(GigflowError):
    """Raised inside the job queue when a handler throws.

    Never surfaced to the code that enqueued the job; recorded as the
    job's last_error.
    """

    kind = ErrorKind.HANDLER_FAILURE

    def __init__(self, job_type: str, job_id: str, cause: BaseException) -> None:
        super().__init__(f"{job_type} job {job_id} failed: {type(cause).__name__}: {cause}")
        self.job_type = job_type
        self.job_id = job_id
        self.cause = cause


class SideEffectError(GigflowError):
    """Raised by a collaborator whose precondition is not met yet.

    The job queue treats it like any other handler exception and retries.
    """
