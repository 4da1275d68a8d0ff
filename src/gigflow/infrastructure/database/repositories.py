"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Row locks: the *_for_update methods issue SELECT ... FOR UPDATE and
refresh any instance already in the identity map, so the caller always
validates against the committed row it now holds. SQLite ignores FOR
UPDATE; there the version_id_col guard on the mapped classes catches
the lost race at flush time instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, distinct, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite

from gigflow.domain.enums import EscrowState, JobStatus, ProofState, TaskState
from gigflow.domain.state_machine import ACTIVE_PROOF_STATES
from gigflow.infrastructure.database.orm_models import (
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

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncSession

    from gigflow.domain.enums import TrustTier


async def insert_ignore(
    session: AsyncSession,
    table: Table,
    values: dict[str, Any],
    conflict_columns: Iterable[str],
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when a row was inserted."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table)
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    stmt = stmt.values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = await session.execute(stmt)
    return result.rowcount == 1


class TaskRepository:
    """Data access for tasks and their transition log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, task: Task) -> Task:
        """Insert a new task."""
        self._session.add(task)
        await self._session.flush()
        return task

    async def get_by_id(self, task_id: uuid.UUID) -> Task | None:
        """Fetch a task by its UUID."""
        result = await self._session.execute(select(Task).where(Task.id == task_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, task_id: uuid.UUID, *, nowait: bool = False) -> Task | None:
        """Fetch and row-lock a task for the rest of the transaction."""
        result = await self._session.execute(
            select(Task)
            .where(Task.id == task_id)
            .with_for_update(nowait=nowait)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def log_transition(
        self,
        task_id: uuid.UUID,
        from_state: TaskState | None,
        to_state: TaskState,
        *,
        actor: str,
        context: dict | None,
        created_at: datetime,
    ) -> TaskTransition:
        """Append an immutable transition row."""
        row = TaskTransition(
            task_id=task_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            actor=actor,
            context=context or None,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_history(self, task_id: uuid.UUID) -> list[TaskTransition]:
        """All transitions for a task, oldest first."""
        result = await self._session.execute(
            select(TaskTransition)
            .where(TaskTransition.task_id == task_id)
            .order_by(TaskTransition.id.asc())
        )
        return list(result.scalars().all())

    async def count_completed_for_worker(self, worker_id: str) -> int:
        result = await self._session.execute(
            select(func.count(Task.id)).where(
                Task.assigned_worker_id == worker_id,
                Task.state == TaskState.COMPLETED,
            )
        )
        return int(result.scalar_one())

    async def count_disputed_for_worker(self, worker_id: str) -> int:
        """Tasks assigned to the worker that were ever disputed."""
        result = await self._session.execute(
            select(func.count(distinct(TaskTransition.task_id)))
            .join(Task, Task.id == TaskTransition.task_id)
            .where(
                Task.assigned_worker_id == worker_id,
                TaskTransition.to_state == TaskState.DISPUTED.value,
            )
        )
        return int(result.scalar_one())


class EscrowRepository:
    """Data access for escrow locks and their transition log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_if_absent(self, task_id: uuid.UUID, amount_cents: int) -> bool:
        """Insert a pending lock unless one already exists for the task."""
        return await insert_ignore(
            self._session,
            EscrowLock.__table__,
            {
                "task_id": task_id,
                "state": EscrowState.PENDING,
                "amount_cents": amount_cents,
                "version": 1,
                "recovery_attempts": 0,
            },
            conflict_columns=["task_id"],
        )

    async def get_by_task(self, task_id: uuid.UUID) -> EscrowLock | None:
        result = await self._session.execute(
            select(EscrowLock).where(EscrowLock.task_id == task_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(
        self, task_id: uuid.UUID, *, nowait: bool = False
    ) -> EscrowLock | None:
        result = await self._session.execute(
            select(EscrowLock)
            .where(EscrowLock.task_id == task_id)
            .with_for_update(nowait=nowait)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def log_transition(
        self,
        task_id: uuid.UUID,
        from_state: EscrowState | None,
        to_state: EscrowState,
        *,
        actor: str,
        context: dict | None,
        created_at: datetime,
    ) -> EscrowTransition:
        row = EscrowTransition(
            task_id=task_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            actor=actor,
            context=context or None,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_history(self, task_id: uuid.UUID) -> list[EscrowTransition]:
        result = await self._session.execute(
            select(EscrowTransition)
            .where(EscrowTransition.task_id == task_id)
            .order_by(EscrowTransition.id.asc())
        )
        return list(result.scalars().all())

    async def released_without_transfer(
        self, released_before: datetime, limit: int
    ) -> list[EscrowLock]:
        """Released locks whose payout never recorded a transfer id.

        Only locks with someone to pay qualify: the task has an assignee or
        an accepted proof.
        """
        has_accepted_proof = (
            select(ProofSubmission.id)
            .where(
                ProofSubmission.task_id == EscrowLock.task_id,
                ProofSubmission.state == ProofState.ACCEPTED,
            )
            .exists()
        )
        result = await self._session.execute(
            select(EscrowLock)
            .join(Task, Task.id == EscrowLock.task_id)
            .where(
                EscrowLock.state == EscrowState.RELEASED,
                EscrowLock.transfer_id.is_(None),
                EscrowLock.released_at <= released_before,
                or_(Task.assigned_worker_id.is_not(None), has_accepted_proof),
            )
            .order_by(EscrowLock.released_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True, of=EscrowLock)
        )
        return list(result.scalars().all())


class ProofRepository:
    """Data access for proof submissions and their transition log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, proof: ProofSubmission) -> ProofSubmission:
        """Insert a new submission. The partial unique index may raise IntegrityError."""
        self._session.add(proof)
        await self._session.flush()
        return proof

    async def get_by_id(self, proof_id: uuid.UUID) -> ProofSubmission | None:
        result = await self._session.execute(
            select(ProofSubmission).where(ProofSubmission.id == proof_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(
        self, proof_id: uuid.UUID, *, nowait: bool = False
    ) -> ProofSubmission | None:
        result = await self._session.execute(
            select(ProofSubmission)
            .where(ProofSubmission.id == proof_id)
            .with_for_update(nowait=nowait)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_task(self, task_id: uuid.UUID) -> ProofSubmission | None:
        result = await self._session.execute(
            select(ProofSubmission)
            .where(ProofSubmission.task_id == task_id)
            .order_by(ProofSubmission.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_for_task(self, task_id: uuid.UUID) -> ProofSubmission | None:
        """The pending or reviewing submission for a task, if any."""
        result = await self._session.execute(
            select(ProofSubmission).where(
                ProofSubmission.task_id == task_id,
                ProofSubmission.state.in_(list(ACTIVE_PROOF_STATES)),
            )
        )
        return result.scalars().first()

    async def get_accepted_for_task(self, task_id: uuid.UUID) -> ProofSubmission | None:
        result = await self._session.execute(
            select(ProofSubmission).where(
                ProofSubmission.task_id == task_id,
                ProofSubmission.state == ProofState.ACCEPTED,
            )
        )
        return result.scalars().first()

    async def get_overdue_pending(self, now: datetime, limit: int) -> list[ProofSubmission]:
        """Pending submissions whose review window has closed."""
        result = await self._session.execute(
            select(ProofSubmission)
            .where(
                ProofSubmission.state == ProofState.PENDING,
                ProofSubmission.expires_at < now,
            )
            .order_by(ProofSubmission.expires_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def log_transition(
        self,
        proof: ProofSubmission,
        from_state: ProofState | None,
        to_state: ProofState,
        *,
        actor: str,
        context: dict | None,
        created_at: datetime,
    ) -> ProofTransition:
        row = ProofTransition(
            proof_id=proof.id,
            task_id=proof.task_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            actor=actor,
            context=context or None,
            created_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_history(self, proof_id: uuid.UUID) -> list[ProofTransition]:
        result = await self._session.execute(
            select(ProofTransition)
            .where(ProofTransition.proof_id == proof_id)
            .order_by(ProofTransition.id.asc())
        )
        return list(result.scalars().all())


class JobRepository:
    """Data access for the durable job queue."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert a job unless its id already exists."""
        return await insert_ignore(self._session, Job.__table__, values, conflict_columns=["id"])

    async def get_by_id(self, job_id: str) -> Job | None:
        result = await self._session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: str) -> Job | None:
        result = await self._session.execute(
            select(Job)
            .where(Job.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_due(self, now: datetime, limit: int) -> list[Job]:
        """Lock up to `limit` due jobs, skipping rows another worker holds."""
        result = await self._session.execute(
            select(Job)
            .where(
                Job.status.in_([JobStatus.PENDING, JobStatus.FAILED]),
                Job.scheduled_at <= now,
                Job.attempts < Job.max_attempts,
            )
            .order_by(Job.priority.desc(), Job.scheduled_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[JobStatus, int]:
        result = await self._session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def get_retryable(self, limit: int) -> list[Job]:
        """Failed and dead jobs, oldest first."""
        result = await self._session.execute(
            select(Job)
            .where(Job.status.in_([JobStatus.FAILED, JobStatus.DEAD]))
            .order_by(Job.updated_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_stale_processing(self, started_before: datetime) -> list[Job]:
        result = await self._session.execute(
            select(Job)
            .where(Job.status == JobStatus.PROCESSING, Job.started_at < started_before)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def delete_finished_before(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(Job).where(
                Job.status.in_([JobStatus.COMPLETED, JobStatus.DEAD]),
                Job.completed_at < cutoff,
            )
        )
        return result.rowcount or 0


class LedgerRepository:
    """Data access for the collaborator tables (rewards, payouts, notifications, trust)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_reward_if_absent(self, values: dict[str, Any]) -> bool:
        return await insert_ignore(
            self._session, RewardLedgerEntry.__table__, values, conflict_columns=["task_id"]
        )

    async def get_reward(self, task_id: uuid.UUID) -> RewardLedgerEntry | None:
        result = await self._session.execute(
            select(RewardLedgerEntry).where(RewardLedgerEntry.task_id == task_id)
        )
        return result.scalar_one_or_none()

    async def total_points(self, worker_id: str) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(RewardLedgerEntry.points), 0)).where(
                RewardLedgerEntry.worker_id == worker_id
            )
        )
        return int(result.scalar_one())

    async def add_transfer_if_absent(self, values: dict[str, Any]) -> bool:
        return await insert_ignore(
            self._session, PayoutTransfer.__table__, values, conflict_columns=["escrow_id"]
        )

    async def get_transfer(self, escrow_id: uuid.UUID) -> PayoutTransfer | None:
        result = await self._session.execute(
            select(PayoutTransfer).where(PayoutTransfer.escrow_id == escrow_id)
        )
        return result.scalar_one_or_none()

    async def add_notification_if_absent(self, values: dict[str, Any]) -> bool:
        return await insert_ignore(
            self._session, Notification.__table__, values, conflict_columns=["dedupe_key"]
        )

    async def get_notifications(self, recipient_id: str) -> list[Notification]:
        result = await self._session.execute(
            select(Notification)
            .where(Notification.recipient_id == recipient_id)
            .order_by(Notification.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_trust(self, worker_id: str) -> WorkerTrust | None:
        result = await self._session.execute(
            select(WorkerTrust)
            .where(WorkerTrust.worker_id == worker_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_trust(
        self,
        worker_id: str,
        *,
        tier: TrustTier,
        completed: int,
        disputed: int,
        at: datetime,
    ) -> WorkerTrust:
        row = await self.get_trust(worker_id)
        if row is None:
            row = WorkerTrust(worker_id=worker_id)
            self._session.add(row)
        row.tier = int(tier)
        row.completed_tasks = completed
        row.disputed_tasks = disputed
        row.recomputed_at = at
        await self._session.flush()
        return row
