"""SQLAlchemy 2.0 ORM models for the gigflow workflow core.

Entity tables:
    1. tasks              — Task lifecycle rows.
    2. escrow_locks       — One custody row per task (primary key = task id).
    3. proof_submissions  — Completion evidence, at most one active per task.
    4. jobs               — Durable side-effect queue.

Append-only transition logs (one per state machine):
    5. task_transitions, 6. escrow_transitions, 7. proof_transitions

Collaborator tables written by job handlers:
    8. reward_ledger, 9. payout_transfers, 10. notifications, 11. worker_trust

Design decisions:
    - UUIDs as primary keys for entities; the caller-supplied string key for jobs.
    - Integer minor units (cents) for money; no floating point anywhere.
    - State columns are non-native Enums: the CHECK constraint guards writes and
      an unknown value read back raises LookupError (fail closed).
    - Mutable entity rows carry a version counter (optimistic guard on top of
      SELECT ... FOR UPDATE).
    - Transition logs are append-only: flush-time listeners refuse UPDATE and DELETE.
    - JSON columns become JSONB on PostgreSQL.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gigflow.domain.enums import EscrowState, JobStatus, ProofQuality, ProofState, TaskState
from gigflow.domain.exceptions import InvariantViolationError

JSONType = JSON().with_variant(JSONB(), "postgresql")
LogId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _now() -> datetime:
    return datetime.now(UTC)


def _state_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Non-native enum column storing the lowercase member values."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


# ---------------------------------------------------------------------------
# 1. tasks
# ---------------------------------------------------------------------------
class Task(Base):
    """A unit of paid work posted by a poster and performed by one worker."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    poster_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_worker_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Set when the task moves to accepted",
    )

    # --- Definition ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # --- Status ---
    state: Mapped[TaskState] = mapped_column(
        _state_enum(TaskState, "task_state"),
        nullable=False,
        default=TaskState.OPEN,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Timestamps ---
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_task_positive_amount"),
        Index("idx_task_state", "state"),
        Index("idx_task_worker", "assigned_worker_id"),
        Index("idx_task_poster", "poster_id"),
    )

    def __repr__(self) -> str:
        return f"<Task id={self.id} state={self.state} amount={self.amount_cents}>"


# ---------------------------------------------------------------------------
# 2. escrow_locks
# ---------------------------------------------------------------------------
class EscrowLock(Base):
    """Custody state of the money held for a task.

    amount_cents is fixed at creation; a before_update listener refuses any
    flush that changes it.
    """

    __tablename__ = "escrow_locks"

    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    state: Mapped[EscrowState] = mapped_column(
        _state_enum(EscrowState, "escrow_state"),
        nullable=False,
        default=EscrowState.PENDING,
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Payment processor references ---
    payment_intent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # --- Saga recovery bookkeeping ---
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_recovery_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_escrow_positive_amount"),
        CheckConstraint(
            "refund_amount_cents IS NULL OR "
            "(refund_amount_cents > 0 AND refund_amount_cents < amount_cents)",
            name="ck_escrow_partial_refund_bounds",
        ),
        CheckConstraint("recovery_attempts >= 0", name="ck_escrow_recovery_attempts"),
        Index("idx_escrow_state", "state"),
        Index("idx_escrow_released_at", "released_at"),
    )

    def __repr__(self) -> str:
        return f"<EscrowLock task={self.task_id} state={self.state} amount={self.amount_cents}>"


# ---------------------------------------------------------------------------
# 3. proof_submissions
# ---------------------------------------------------------------------------
class ProofSubmission(Base):
    """One instance of completion evidence submitted for review."""

    __tablename__ = "proof_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Evidence ---
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    has_before_after: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quality: Mapped[ProofQuality] = mapped_column(
        _state_enum(ProofQuality, "proof_quality"),
        nullable=False,
    )

    # --- Review ---
    state: Mapped[ProofState] = mapped_column(
        _state_enum(ProofState, "proof_state"),
        nullable=False,
        default=ProofState.PENDING,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # At most one pending/reviewing submission per task
        Index(
            "uq_proof_active_per_task",
            "task_id",
            unique=True,
            postgresql_where=text("state IN ('pending', 'reviewing')"),
            sqlite_where=text("state IN ('pending', 'reviewing')"),
        ),
        Index("idx_proof_task_created", "task_id", "created_at"),
        Index("idx_proof_state_expires", "state", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<ProofSubmission id={self.id} task={self.task_id} state={self.state}>"


# ---------------------------------------------------------------------------
# 4. jobs
# ---------------------------------------------------------------------------
class Job(Base):
    """A durable unit of side-effect work, deduplicated by its id."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[JobStatus] = mapped_column(
        _state_enum(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the job reached completed or dead",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_job_attempts_non_negative"),
        CheckConstraint("max_attempts >= 1", name="ck_job_max_attempts_positive"),
        Index("idx_job_due", "status", "scheduled_at"),
        Index("idx_job_priority", "priority"),
        Index("idx_job_type", "type"),
    )

    def __repr__(self) -> str:
        return f"<Job id={self.id} type={self.type} status={self.status} attempts={self.attempts}>"


# ---------------------------------------------------------------------------
# 5-7. Append-only transition logs
# ---------------------------------------------------------------------------
class TaskTransition(Base):
    """Immutable audit record of a task state change."""

    __tablename__ = "task_transitions"

    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    from_state: Mapped[str | None] = mapped_column(
        String(20), nullable=True, comment="Null for the creation row"
    )
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        Index("idx_task_transition_task", "task_id", "id"),
        Index("idx_task_transition_to_state", "to_state"),
    )

    def __repr__(self) -> str:
        return f"<TaskTransition task={self.task_id} {self.from_state}->{self.to_state}>"


class EscrowTransition(Base):
    """Immutable audit record of an escrow state change."""

    __tablename__ = "escrow_transitions"

    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_locks.task_id", ondelete="CASCADE"), nullable=False
    )
    from_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_escrow_transition_task", "task_id", "id"),)

    def __repr__(self) -> str:
        return f"<EscrowTransition task={self.task_id} {self.from_state}->{self.to_state}>"


class ProofTransition(Base):
    """Immutable audit record of a proof state change."""

    __tablename__ = "proof_transitions"

    id: Mapped[int] = mapped_column(LogId, primary_key=True, autoincrement=True)
    proof_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("proof_submissions.id", ondelete="CASCADE"), nullable=False
    )
    task_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        Index("idx_proof_transition_proof", "proof_id", "id"),
        Index("idx_proof_transition_task", "task_id"),
    )

    def __repr__(self) -> str:
        return f"<ProofTransition proof={self.proof_id} {self.from_state}->{self.to_state}>"


# ---------------------------------------------------------------------------
# 8-11. Collaborator tables
# ---------------------------------------------------------------------------
class RewardLedgerEntry(Base):
    """Reward points credited to a worker; one entry per task, ever."""

    __tablename__ = "reward_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_reward_worker", "worker_id"),)


class PayoutTransfer(Base):
    """Outbound transfer initiated with the payment processor; one per escrow."""

    __tablename__ = "payout_transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gross_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transfer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


class Notification(Base):
    """A user-facing notification, deduplicated by dedupe_key."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (Index("idx_notification_recipient", "recipient_id"),)


class WorkerTrust(Base):
    """Current trust tier of a worker, recomputed after completions."""

    __tablename__ = "worker_trust"

    worker_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputed_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recomputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (CheckConstraint("tier BETWEEN 1 AND 4", name="ck_worker_trust_tier"),)


# ---------------------------------------------------------------------------
# Flush-time guards
# ---------------------------------------------------------------------------
def _refuse_amount_change(mapper, connection, target):  # noqa: ANN001
    """Escrow amounts are fixed at creation."""
    history = inspect(target).attrs.amount_cents.history
    if history.deleted and history.added and history.deleted[0] != history.added[0]:
        raise InvariantViolationError(
            f"Escrow amount is immutable: {history.deleted[0]} -> {history.added[0]}",
            invariant="escrow_amount_immutable",
        )


def _refuse_log_mutation(mapper, connection, target):  # noqa: ANN001
    raise InvariantViolationError(
        f"{type(target).__tablename__} is append-only",
        invariant="transition_log_append_only",
    )


event.listen(EscrowLock, "before_update", _refuse_amount_change)
for _log_model in (TaskTransition, EscrowTransition, ProofTransition):
    event.listen(_log_model, "before_update", _refuse_log_mutation)
    event.listen(_log_model, "before_delete", _refuse_log_mutation)
