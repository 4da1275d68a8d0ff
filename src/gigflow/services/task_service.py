"""Task Service — lifecycle of a posted task.

Coordinates between:
    - TASK_MACHINE (legal edges, terminal states)
    - Escrow and proof rows (completion gates)
    - The task transition log (audit trail)
    - The job queue (trust recompute and poster notification on completion)

Every public mutation runs in one transaction with the task row locked
(SELECT ... FOR UPDATE) and returns an OperationResult.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from gigflow.domain.enums import EscrowState, JobType, TaskState
from gigflow.domain.exceptions import (
    ConflictRetryError,
    InvariantViolationError,
    NotFoundError,
)
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.results import OperationResult
from gigflow.domain.state_machine import TASK_MACHINE
from gigflow.infrastructure.database.orm_models import Task
from gigflow.infrastructure.database.repositories import (
    EscrowRepository,
    ProofRepository,
    TaskRepository,
)
from gigflow.logging_config import get_logger
from gigflow.schemas.views import TaskView, TransitionView
from gigflow.services.base import TransactionalService, jsonable, parse_id

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings
    from gigflow.jobs.queue import JobQueue
    from gigflow.services.base import Clock

logger = get_logger(__name__)


class TaskService(TransactionalService):
    """Manages the task lifecycle."""

    entity = "task"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        queue: JobQueue,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(session_factory, settings, clock)
        self._queue = queue

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_task(
        self,
        poster_id: str,
        amount_cents: int,
        title: str,
        description: str | None = None,
        deadline_at: datetime | None = None,
        *,
        task_id: uuid.UUID | None = None,
    ) -> OperationResult:
        """Create a task in the open state."""
        new_id = task_id or uuid.uuid4()

        async def work(session: AsyncSession) -> OperationResult:
            if amount_cents <= 0:
                raise InvariantViolationError(
                    f"Task amount must be positive, got {amount_cents}",
                    invariant="positive_amount",
                )
            now = self._now()
            repo = TaskRepository(session)
            task = await repo.create(
                Task(
                    id=new_id,
                    poster_id=poster_id,
                    title=title,
                    description=description,
                    amount_cents=amount_cents,
                    state=TaskState.OPEN,
                    deadline_at=deadline_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            await repo.log_transition(
                task.id,
                None,
                TaskState.OPEN,
                actor=poster_id,
                context={"amount_cents": amount_cents},
                created_at=now,
            )
            logger.info(
                "task.created",
                task_id=str(task.id),
                poster_id=poster_id,
                amount_cents=amount_cents,
            )
            return OperationResult.success(task.id, None, TaskState.OPEN.value)

        return await self._run("create", new_id, work)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        task_id: uuid.UUID | str,
        target: TaskState | str,
        context: dict[str, Any] | None = None,
        *,
        actor: str = "SYSTEM",
        expected_state: TaskState | str | None = None,
    ) -> OperationResult:
        """Move a task along a legal edge.

        Context keys consulted by the guards:
            worker_id   required for open -> accepted
            reason      required for -> disputed
            admin_id    required for disputed -> completed

        When expected_state is given and the row has moved on, the call
        returns CONFLICT_RETRY instead of validating against the new state.
        """
        ctx = jsonable(context)

        async def work(session: AsyncSession) -> OperationResult:
            tid = parse_id("task", task_id)
            repo = TaskRepository(session)
            task = await repo.get_for_update(tid, nowait=self._settings.db_row_lock_nowait)
            if task is None:
                raise NotFoundError("task", tid)

            current = TASK_MACHINE.decode(task.state)
            if expected_state is not None and current != expected_state:
                raise ConflictRetryError(
                    "task",
                    tid,
                    detail=f"expected {expected_state}, found {current.value}",
                    current_state=current.value,
                )
            new_state = TASK_MACHINE.coerce_target(current, target)
            TASK_MACHINE.validate(current, new_state)
            await self._check_guards(session, task, current, new_state, ctx)

            now = self._now()
            if new_state is TaskState.ACCEPTED:
                task.assigned_worker_id = str(ctx["worker_id"])
                task.accepted_at = now
            elif new_state is TaskState.COMPLETED:
                task.completed_at = now
            task.state = new_state
            task.updated_at = now
            await session.flush()

            await repo.log_transition(
                task.id, current, new_state, actor=actor, context=ctx, created_at=now
            )
            job_ids: list[str] = []
            if new_state is TaskState.COMPLETED:
                job_ids = await self._enqueue_completion_jobs(session, task)

            logger.info(
                "task.transitioned",
                task_id=str(task.id),
                from_state=current.value,
                to_state=new_state.value,
                actor=actor,
            )
            return OperationResult.success(
                task.id, current.value, new_state.value, job_ids=job_ids
            )

        return await self._run("transition", task_id, work)

    async def _check_guards(
        self,
        session: AsyncSession,
        task: Task,
        current: TaskState,
        target: TaskState,
        ctx: dict[str, Any],
    ) -> None:
        state = current.value
        if target is TaskState.ACCEPTED:
            if not ctx.get("worker_id"):
                raise InvariantViolationError(
                    "cannot accept: worker_id required",
                    invariant="worker_assigned",
                    current_state=state,
                )
            escrow = await EscrowRepository(session).get_by_task(task.id)
            if escrow is None or escrow.state is not EscrowState.FUNDED:
                raise InvariantViolationError(
                    "cannot accept: escrow not funded",
                    invariant="escrow_funded",
                    current_state=state,
                )

        elif target is TaskState.PROOF_SUBMITTED:
            proofs = ProofRepository(session)
            active = await proofs.get_active_for_task(task.id)
            if active is None and await proofs.get_accepted_for_task(task.id) is None:
                raise InvariantViolationError(
                    "cannot mark proof submitted: no proof on file",
                    invariant="proof_on_file",
                    current_state=state,
                )

        elif target is TaskState.DISPUTED:
            if not str(ctx.get("reason") or "").strip():
                raise InvariantViolationError(
                    "cannot dispute: reason required",
                    invariant="dispute_reason",
                    current_state=state,
                )

        elif target is TaskState.COMPLETED:
            if current is TaskState.DISPUTED and not ctx.get("admin_id"):
                raise InvariantViolationError(
                    "cannot resolve dispute: admin_id required",
                    invariant="admin_resolution",
                    current_state=state,
                )
            if await ProofRepository(session).get_accepted_for_task(task.id) is None:
                raise InvariantViolationError(
                    "cannot complete: proof not yet accepted",
                    invariant="completion_requires_accepted_proof",
                    current_state=state,
                )
            escrow = await EscrowRepository(session).get_by_task(task.id)
            if escrow is None or escrow.state is not EscrowState.RELEASED:
                raise InvariantViolationError(
                    "cannot complete: escrow not released",
                    invariant="completion_requires_released_escrow",
                    current_state=state,
                )

    async def _enqueue_completion_jobs(self, session: AsyncSession, task: Task) -> list[str]:
        job_ids: list[str] = []
        if task.assigned_worker_id:
            job_id, _ = await self._queue.enqueue_in(
                session,
                JobType.RECOMPUTE_TRUST,
                {"worker_id": task.assigned_worker_id},
                job_id=f"recompute_trust:{task.id}",
            )
            job_ids.append(job_id)
        dedupe_key = f"task_completed:{task.id}"
        job_id, _ = await self._queue.enqueue_in(
            session,
            JobType.SEND_NOTIFICATION,
            {
                "recipient_id": task.poster_id,
                "type": "task_completed",
                "title": "Task completed",
                "body": f"'{task.title}' has been completed.",
                "data": {"task_id": str(task.id)},
                "dedupe_key": dedupe_key,
            },
            job_id=f"send_notification:{dedupe_key}",
        )
        job_ids.append(job_id)
        return job_ids

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self, task_id: uuid.UUID | str) -> TaskState | None:
        async def work(session: AsyncSession) -> TaskState | None:
            task = await TaskRepository(session).get_by_id(parse_id("task", task_id))
            return TASK_MACHINE.decode(task.state) if task is not None else None

        return await self._read("get_state", task_id, work, None)

    async def get_task(self, task_id: uuid.UUID | str) -> TaskView | None:
        async def work(session: AsyncSession) -> TaskView | None:
            task = await TaskRepository(session).get_by_id(parse_id("task", task_id))
            return TaskView.model_validate(task) if task is not None else None

        return await self._read("get_task", task_id, work, None)

    async def get_history(self, task_id: uuid.UUID | str) -> list[TransitionView]:
        async def work(session: AsyncSession) -> list[TransitionView]:
            rows = await TaskRepository(session).get_history(parse_id("task", task_id))
            return [TransitionView.model_validate(row) for row in rows]

        return await self._read("get_history", task_id, work, [])

    @staticmethod
    def allowed_targets(state: TaskState | str) -> frozenset[TaskState]:
        return TASK_MACHINE.allowed_targets(TASK_MACHINE.decode(state))
