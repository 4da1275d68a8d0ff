"""Database infrastructure — engine, ORM models, and repositories."""

from gigflow.infrastructure.database.engine import (
    create_all,
    create_engine,
    create_session_factory,
    dispose,
    session_scope,
)
from gigflow.infrastructure.database.orm_models import (
    Base,
    EscrowLock,
    EscrowTransition,
    Job,
    Notification,
    PayoutTransfer,
    ProofSubmission,
    ProofTransition,
    RewardLedgerEntry,
    Task,
    TaskTransition,
    WorkerTrust,
)
from gigflow.infrastructure.database.repositories import (
    EscrowRepository,
    JobRepository,
    LedgerRepository,
    ProofRepository,
    TaskRepository,
)

__all__ = [
    "Base",
    "EscrowLock",
    "EscrowTransition",
    "Job",
    "Notification",
    "PayoutTransfer",
    "ProofSubmission",
    "ProofTransition",
    "RewardLedgerEntry",
    "Task",
    "TaskTransition",
    "WorkerTrust",
    "EscrowRepository",
    "JobRepository",
    "LedgerRepository",
    "ProofRepository",
    "TaskRepository",
    "create_all",
    "create_engine",
    "create_session_factory",
    "dispose",
    "session_scope",
]
