"""Escrow Service — custody of the money held for a task.

Coordinates between:
    - ESCROW_MACHINE (legal edges, terminal states)
    - The escrow transition log (audit trail)
    - The job queue (reward, payout and notifications on release/refund)

The held amount is fixed when the lock is created. Release and its
side-effect jobs commit in the same transaction; recover_released() is
the saga sweep that re-arms those jobs for releases whose payout
never recorded a transfer.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError

from gigflow.domain.enums import EscrowState, JobType
from gigflow.domain.exceptions import InvariantViolationError, NotFoundError
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.money import PayoutSplit, split_payout
from gigflow.domain.results import OperationResult
from gigflow.domain.state_machine import ESCROW_MACHINE
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import (
    EscrowRepository,
    ProofRepository,
    TaskRepository,
)
from gigflow.logging_config import get_logger
from gigflow.schemas.views import EscrowView, TransitionView
from gigflow.services.base import TransactionalService, is_lock_conflict, jsonable, parse_id

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings
    from gigflow.infrastructure.database.orm_models import EscrowLock, Task
    from gigflow.jobs.queue import JobQueue
    from gigflow.services.base import Clock

logger = get_logger(__name__)


class EscrowService(TransactionalService):
    """Manages escrow locks."""

    entity = "escrow"

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

    async def initialize(self, task_id: uuid.UUID | str, amount_cents: int) -> OperationResult:
        """Create the pending lock for a task; a no-op if one already exists."""

        async def work(session: AsyncSession) -> OperationResult:
            tid = parse_id("task", task_id)
            if amount_cents <= 0:
                raise InvariantViolationError(
                    f"Escrow amount must be positive, got {amount_cents}",
                    invariant="positive_amount",
                )
            if await TaskRepository(session).get_by_id(tid) is None:
                raise NotFoundError("task", tid)

            repo = EscrowRepository(session)
            created = await repo.create_if_absent(tid, amount_cents)
            lock = await repo.get_by_task(tid)
            state = ESCROW_MACHINE.decode(lock.state)
            if not created:
                logger.info(
                    "escrow.already_initialized",
                    task_id=str(tid),
                    state=state.value,
                    amount_cents=lock.amount_cents,
                )
                return OperationResult.success(
                    tid, state.value, state.value, created=False, amount_cents=lock.amount_cents
                )

            await repo.log_transition(
                tid,
                None,
                EscrowState.PENDING,
                actor="SYSTEM",
                context={"amount_cents": amount_cents},
                created_at=self._now(),
            )
            logger.info("escrow.initialized", task_id=str(tid), amount_cents=amount_cents)
            return OperationResult.success(
                tid, None, EscrowState.PENDING.value, created=True, amount_cents=amount_cents
            )

        return await self._run("initialize", task_id, work)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        task_id: uuid.UUID | str,
        target: EscrowState | str,
        context: dict[str, Any] | None = None,
        *,
        actor: str = "SYSTEM",
    ) -> OperationResult:
        """Move an escrow lock along a legal edge.

        Context keys recorded on the lock:
            payment_intent_id     into funded
            refund_id             into refunded / partial_refund
            refund_amount_cents   required for partial_refund, 0 < x < amount
        """
        ctx = jsonable(context)

        async def work(session: AsyncSession) -> OperationResult:
            tid = parse_id("escrow", task_id)
            repo = EscrowRepository(session)
            lock = await repo.get_for_update(tid, nowait=self._settings.db_row_lock_nowait)
            if lock is None:
                raise NotFoundError("escrow", tid)

            current = ESCROW_MACHINE.decode(lock.state)
            new_state = ESCROW_MACHINE.coerce_target(current, target)
            ESCROW_MACHINE.validate(current, new_state)

            now = self._now()
            self._apply_context(lock, current, new_state, ctx)
            if new_state is EscrowState.RELEASED:
                lock.released_at = now
            lock.state = new_state
            lock.updated_at = now
            await session.flush()

            await repo.log_transition(
                tid, current, new_state, actor=actor, context=ctx, created_at=now
            )

            job_ids: list[str] = []
            if new_state is EscrowState.RELEASED:
                job_ids = await self._enqueue_release_jobs(session, lock)
            elif new_state in (EscrowState.REFUNDED, EscrowState.PARTIAL_REFUND):
                job_ids = await self._enqueue_refund_notice(session, lock)

            logger.info(
                "escrow.transitioned",
                task_id=str(tid),
                from_state=current.value,
                to_state=new_state.value,
                amount_cents=lock.amount_cents,
                actor=actor,
            )
            return OperationResult.success(tid, current.value, new_state.value, job_ids=job_ids)

        return await self._run("transition", task_id, work)

    @staticmethod
    def _apply_context(
        lock: EscrowLock,
        current: EscrowState,
        target: EscrowState,
        ctx: dict[str, Any],
    ) -> None:
        if target is EscrowState.FUNDED and ctx.get("payment_intent_id"):
            lock.payment_intent_id = str(ctx["payment_intent_id"])
        if target in (EscrowState.REFUNDED, EscrowState.PARTIAL_REFUND) and ctx.get("refund_id"):
            lock.refund_id = str(ctx["refund_id"])
        if target is EscrowState.PARTIAL_REFUND:
            refund = ctx.get("refund_amount_cents")
            if not isinstance(refund, int) or isinstance(refund, bool):
                raise InvariantViolationError(
                    "cannot partially refund: refund_amount_cents required",
                    invariant="partial_refund_amount",
                    current_state=current.value,
                )
            if not 0 < refund < lock.amount_cents:
                raise InvariantViolationError(
                    f"cannot partially refund: {refund} not within (0, {lock.amount_cents})",
                    invariant="partial_refund_amount",
                    current_state=current.value,
                )
            lock.refund_amount_cents = refund

    async def _resolve_worker(self, session: AsyncSession, task: Task) -> str | None:
        """Worker credited on release: the assignee, else the accepted proof's author."""
        if task.assigned_worker_id:
            return task.assigned_worker_id
        accepted = await ProofRepository(session).get_accepted_for_task(task.id)
        return accepted.worker_id if accepted is not None else None

    async def _release_jobs(
        self, session: AsyncSession, lock: EscrowLock
    ) -> list[tuple[JobType, dict[str, Any], str, int]]:
        """(type, payload, job id, priority) of each side effect owed on release."""
        task = await TaskRepository(session).get_by_id(lock.task_id)
        worker_id = await self._resolve_worker(session, task) if task is not None else None
        if worker_id is None:
            return []

        payload = {"task_id": str(lock.task_id), "worker_id": worker_id}
        split = split_payout(lock.amount_cents, self._settings.platform_fee_bps)
        dedupe_key = f"escrow_released:{lock.task_id}"
        notice = {
            "recipient_id": worker_id,
            "type": "escrow_released",
            "title": "Payment released",
            "body": f"{split.net_cents} is on its way to you.",
            "data": {"task_id": str(lock.task_id), "net_cents": split.net_cents},
            "dedupe_key": dedupe_key,
        }
        return [
            (JobType.AWARD_REWARD, payload, f"award_reward:{lock.task_id}", 10),
            (JobType.PROCESS_PAYOUT, payload, f"process_payout:{lock.task_id}", 10),
            (JobType.SEND_NOTIFICATION, notice, f"send_notification:{dedupe_key}", 0),
        ]

    async def _enqueue_release_jobs(self, session: AsyncSession, lock: EscrowLock) -> list[str]:
        jobs = await self._release_jobs(session, lock)
        if not jobs:
            logger.warning("escrow.reward_skipped", task_id=str(lock.task_id), reason="no worker")
        for job_type, payload, job_id, priority in jobs:
            await self._queue.enqueue_in(
                session, job_type, payload, job_id=job_id, priority=priority
            )
        return [job_id for _, _, job_id, _ in jobs]

    async def _enqueue_refund_notice(self, session: AsyncSession, lock: EscrowLock) -> list[str]:
        task = await TaskRepository(session).get_by_id(lock.task_id)
        if task is None:
            return []
        refunded = lock.refund_amount_cents or lock.amount_cents
        dedupe_key = f"escrow_refunded:{lock.task_id}"
        job_id, _ = await self._queue.enqueue_in(
            session,
            JobType.SEND_NOTIFICATION,
            {
                "recipient_id": task.poster_id,
                "type": "escrow_refunded",
                "title": "Escrow refunded",
                "body": f"{refunded} has been refunded.",
                "data": {"task_id": str(lock.task_id), "refund_cents": refunded},
                "dedupe_key": dedupe_key,
            },
            job_id=f"send_notification:{dedupe_key}",
        )
        return [job_id]

    # ------------------------------------------------------------------
    # Saga recovery
    # ------------------------------------------------------------------

    async def recover_released(self, now: datetime | None = None, limit: int = 50) -> int:
        """Re-arm failed or dead release jobs for stuck releases.

        A lock counts as re-armed only when at least one of its release jobs
        was actually reset or re-inserted; locks whose jobs are still queued
        or running are left for the worker. Returns the number re-armed.
        """
        now = now or self._now()
        cutoff = now - timedelta(minutes=self._settings.escrow_recovery_after_minutes)
        ceiling = self._settings.escrow_max_recovery_attempts
        rearmed = 0
        try:
            async with session_scope(self._session_factory) as session:
                locks = await EscrowRepository(session).released_without_transfer(cutoff, limit)
                for lock in locks:
                    if lock.recovery_attempts >= ceiling:
                        logger.error(
                            "escrow.recovery_exhausted",
                            task_id=str(lock.task_id),
                            recovery_attempts=lock.recovery_attempts,
                        )
                        continue
                    job_ids = [
                        job_id
                        for job_type, payload, job_id, priority in await self._release_jobs(
                            session, lock
                        )
                        if await self._queue.rearm_in(
                            session, job_type, payload, job_id=job_id, priority=priority
                        )
                    ]
                    if not job_ids:
                        logger.debug("escrow.recovery_in_flight", task_id=str(lock.task_id))
                        continue
                    lock.recovery_attempts += 1
                    lock.last_recovery_at = now
                    rearmed += 1
                    logger.warning(
                        "escrow.recovery_enqueued",
                        task_id=str(lock.task_id),
                        recovery_attempts=lock.recovery_attempts,
                        job_ids=job_ids,
                    )
        except StaleDataError as err:
            logger.warning("escrow.recovery_conflict", detail=str(err))
            return 0
        except DBAPIError as err:
            if not is_lock_conflict(err):
                raise
            logger.warning("escrow.recovery_conflict", detail=str(err.orig))
            return 0
        return rearmed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self, task_id: uuid.UUID | str) -> EscrowState | None:
        async def work(session: AsyncSession) -> EscrowState | None:
            lock = await EscrowRepository(session).get_by_task(parse_id("escrow", task_id))
            return ESCROW_MACHINE.decode(lock.state) if lock is not None else None

        return await self._read("get_state", task_id, work, None)

    async def get_details(self, task_id: uuid.UUID | str) -> EscrowView | None:
        async def work(session: AsyncSession) -> EscrowView | None:
            lock = await EscrowRepository(session).get_by_task(parse_id("escrow", task_id))
            return EscrowView.model_validate(lock) if lock is not None else None

        return await self._read("get_details", task_id, work, None)

    async def get_history(self, task_id: uuid.UUID | str) -> list[TransitionView]:
        async def work(session: AsyncSession) -> list[TransitionView]:
            rows = await EscrowRepository(session).get_history(parse_id("escrow", task_id))
            return [TransitionView.model_validate(row) for row in rows]

        return await self._read("get_history", task_id, work, [])

    def split_payout(self, amount_cents: int) -> PayoutSplit:
        """Fee and worker share at the configured platform rate."""
        return split_payout(amount_cents, self._settings.platform_fee_bps)
