"""Domain enumerations for the gigflow workflow core.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no pydantic imports). Values are
the lowercase strings persisted in the store.
"""

import enum


class TaskState(enum.StrEnum):
    """Lifecycle states of a task. See domain/state_machine.py for the edges."""

    OPEN = "open"
    ACCEPTED = "accepted"
    PROOF_SUBMITTED = "proof_submitted"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EscrowState(enum.StrEnum):
    """Custody states of the money held for a task."""

    PENDING = "pending"
    FUNDED = "funded"
    LOCKED_DISPUTE = "locked_dispute"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"


class ProofState(enum.StrEnum):
    """Review states of a single proof submission.

    REJECTED has no outgoing edges but is not terminal for the task: it
    frees the task for a brand-new submission.
    """

    PENDING = "pending"
    REVIEWING = "reviewing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ProofQuality(enum.StrEnum):
    """Advisory quality tier derived from the submitted evidence."""

    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class JobStatus(enum.StrEnum):
    """Status of a row in the durable job queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class JobType(enum.StrEnum):
    """Side effects the job queue knows how to execute.

    Every handler registered for one of these types must be idempotent:
    the queue delivers at-least-once.
    """

    AWARD_REWARD = "award_reward"
    PROCESS_PAYOUT = "process_payout"
    SEND_NOTIFICATION = "send_notification"
    RECOMPUTE_TRUST = "recompute_trust"
    EXPIRE_PROOFS = "expire_proofs"


class TrustTier(enum.IntEnum):
    """Worker trust tiers. Tiers only move upward through recompute."""

    ROOKIE = 1
    VERIFIED = 2
    TRUSTED = 3
    ELITE = 4


class ErrorKind(enum.StrEnum):
    """Discriminator carried by every failed OperationResult."""

    INVALID_TRANSITION = "INVALID_TRANSITION"
    TERMINAL_STATE_VIOLATION = "TERMINAL_STATE_VIOLATION"
    NOT_FOUND = "NOT_FOUND"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    DUPLICATE_ACTIVE_PROOF = "DUPLICATE_ACTIVE_PROOF"
    ALREADY_ACCEPTED = "ALREADY_ACCEPTED"
    CONFLICT_RETRY = "CONFLICT_RETRY"
    HANDLER_FAILURE = "HANDLER_FAILURE"
