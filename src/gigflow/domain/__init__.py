"""Domain layer — pure business logic with zero framework dependencies."""

from gigflow.domain.enums import (
    ErrorKind,
    EscrowState,
    JobStatus,
    JobType,
    ProofQuality,
    ProofState,
    TaskState,
    TrustTier,
)
from gigflow.domain.exceptions import (
    AlreadyAcceptedError,
    ConflictRetryError,
    DuplicateActiveProofError,
    GigflowError,
    HandlerFailureError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    SideEffectError,
    TerminalStateViolationError,
    UnknownStateError,
)
from gigflow.domain.job_protocol import ClaimedJob, JobHandler
from gigflow.domain.results import DrainReport, OperationResult
from gigflow.domain.state_machine import (
    ESCROW_MACHINE,
    PROOF_MACHINE,
    TASK_MACHINE,
    TransitionTable,
)

__all__ = [
    "ErrorKind",
    "EscrowState",
    "JobStatus",
    "JobType",
    "ProofQuality",
    "ProofState",
    "TaskState",
    "TrustTier",
    "AlreadyAcceptedError",
    "ConflictRetryError",
    "DuplicateActiveProofError",
    "GigflowError",
    "HandlerFailureError",
    "InvalidTransitionError",
    "InvariantViolationError",
    "NotFoundError",
    "SideEffectError",
    "TerminalStateViolationError",
    "UnknownStateError",
    "ClaimedJob",
    "JobHandler",
    "DrainReport",
    "OperationResult",
    "ESCROW_MACHINE",
    "PROOF_MACHINE",
    "TASK_MACHINE",
    "TransitionTable",
]
