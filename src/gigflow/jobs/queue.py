r"""Durable, at-least-once job queue backed by the jobs table.

Lifecycle of a row:

    pending --claim--> processing --ok--> completed
                          |
                          +--error--> failed (rescheduled with backoff)
                          |              \--claim again--> processing ...
                          +--error, attempts exhausted--> dead

The claim is a single transaction (SELECT ... FOR UPDATE SKIP LOCKED plus
a compare-and-set UPDATE per row) so concurrent workers never hold the
same job. Handlers then run outside that transaction and each job is
finalised in its own transaction.

Enqueue is idempotent on the job id: a second insert with the same id is
ignored. State machines call enqueue_in() with their own session so the
transition and its side-effect jobs commit together.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from gigflow.domain.enums import JobStatus, JobType
from gigflow.domain.exceptions import HandlerFailureError, InvariantViolationError
from gigflow.domain.job_protocol import ClaimedJob, utc_now
from gigflow.domain.results import DrainReport, OperationResult
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.orm_models import Job
from gigflow.infrastructure.database.repositories import JobRepository
from gigflow.logging_config import get_logger
from gigflow.schemas.jobs import validate_payload
from gigflow.schemas.views import JobStats, JobView
from gigflow.services.base import TransactionalService, is_lock_conflict

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings
    from gigflow.jobs.handlers import HandlerRegistry
    from gigflow.services.base import Clock

logger = get_logger(__name__)

MAX_ERROR_CHARS = 2000


def default_job_id(job_type: JobType) -> str:
    return f"{job_type.value}-{uuid.uuid4().hex}"


def backoff_delay(attempts: int, base_ms: int) -> timedelta:
    """Delay before the next attempt: base * 2^(attempts-1)."""
    return timedelta(milliseconds=base_ms * 2 ** max(attempts - 1, 0))


def _as_delay(delay: timedelta | float | None) -> timedelta:
    if delay is None:
        return timedelta(0)
    if isinstance(delay, timedelta):
        return delay
    return timedelta(seconds=delay)


class JobQueue(TransactionalService):
    """Enqueue, claim, dispatch and finalise side-effect jobs."""

    entity = "job"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        registry: HandlerRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(session_factory, settings, clock)
        self._registry = registry

    def bind_registry(self, registry: HandlerRegistry) -> None:
        """Attach the handler registry (handlers may themselves need the queue)."""
        self._registry = registry

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict | BaseModel,
        *,
        job_id: str | None = None,
        delay: timedelta | float | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> OperationResult:
        """Insert a job unless one with the same id already exists.

        Returns a result whose data carries `inserted` (False for a duplicate).
        """
        async def work(session: AsyncSession) -> OperationResult:
            resolved_id, inserted = await self.enqueue_in(
                session,
                job_type,
                payload,
                job_id=job_id,
                delay=delay,
                priority=priority,
                max_attempts=max_attempts,
            )
            return OperationResult.success(
                resolved_id, None, JobStatus.PENDING.value, inserted=inserted
            )

        return await self._run("enqueue", job_id, work)

    async def enqueue_in(
        self,
        session: AsyncSession,
        job_type: JobType | str,
        payload: dict | BaseModel,
        *,
        job_id: str | None = None,
        delay: timedelta | float | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> tuple[str, bool]:
        """Enqueue inside the caller's transaction. Returns (job_id, inserted)."""
        try:
            kind = JobType(job_type)
        except ValueError as err:
            raise InvariantViolationError(
                f"Unknown job type: {job_type}", invariant="known_job_type"
            ) from err
        try:
            body = validate_payload(kind, payload)
        except ValidationError as err:
            raise InvariantViolationError(
                f"Invalid {kind.value} payload: {err.error_count()} error(s)",
                invariant="job_payload_schema",
            ) from err

        resolved_id = job_id or default_job_id(kind)
        now = self._now()
        inserted = await JobRepository(session).create_if_absent(
            {
                "id": resolved_id,
                "type": kind.value,
                "payload": body,
                "status": JobStatus.PENDING,
                "attempts": 0,
                "max_attempts": max_attempts or self._settings.job_max_attempts,
                "priority": priority,
                "scheduled_at": now + _as_delay(delay),
                "created_at": now,
                "updated_at": now,
            }
        )
        if inserted:
            logger.info("job.enqueued", job_id=resolved_id, job_type=kind.value, priority=priority)
        else:
            logger.debug("job.duplicate_ignored", job_id=resolved_id, job_type=kind.value)
        return resolved_id, inserted

    async def rearm_in(
        self,
        session: AsyncSession,
        job_type: JobType | str,
        payload: dict | BaseModel,
        *,
        job_id: str,
        priority: int = 0,
    ) -> bool:
        """Make a keyed job runnable again inside the caller's transaction.

        A failed or dead row is reset to pending with a fresh attempt budget;
        a missing row (cleaned up) is inserted. Pending, processing and
        completed rows are left alone. Returns True when the job was re-armed.
        """
        row = await JobRepository(session).get_for_update(job_id)
        if row is None:
            _, inserted = await self.enqueue_in(
                session, job_type, payload, job_id=job_id, priority=priority
            )
            return inserted
        if row.status not in (JobStatus.FAILED, JobStatus.DEAD):
            return False

        now = self._now()
        previous = row.status
        row.status = JobStatus.PENDING
        row.attempts = 0
        row.scheduled_at = now
        row.locked_by = None
        row.started_at = None
        row.completed_at = None
        row.last_error = None
        row.updated_at = now
        logger.info("job.rearmed", job_id=job_id, job_type=row.type, previous=previous.value)
        return True

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, limit: int | None = None, worker_id: str | None = None) -> DrainReport:
        """Claim up to `limit` due jobs and run each through its handler."""
        limit = limit or self._settings.job_drain_limit
        worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

        with structlog.contextvars.bound_contextvars(worker_id=worker_id):
            claimed = await self._claim(limit, worker_id)
            completed = failed = dead = unrecorded = 0
            for job in claimed:
                try:
                    outcome = await self._execute(job)
                except (SQLAlchemyError, OSError):
                    # the row stays processing; recover_stale hands it back later
                    logger.error("job.finalise_failed", job_id=job.id, exc_info=True)
                    outcome = None
                if outcome is JobStatus.COMPLETED:
                    completed += 1
                elif outcome is JobStatus.DEAD:
                    dead += 1
                elif outcome is JobStatus.FAILED:
                    failed += 1
                else:
                    unrecorded += 1

            if claimed:
                logger.info(
                    "job.drain_finished",
                    claimed=len(claimed),
                    completed=completed,
                    failed=failed,
                    dead=dead,
                    unrecorded=unrecorded,
                )
        return DrainReport(
            claimed=len(claimed),
            completed=completed,
            failed=failed,
            dead=dead,
            unrecorded=unrecorded,
            job_ids=tuple(job.id for job in claimed),
        )

    async def _claim(self, limit: int, worker_id: str) -> list[ClaimedJob]:
        now = self._now()
        claimed: list[ClaimedJob] = []
        try:
            async with session_scope(self._session_factory) as session:
                rows = await JobRepository(session).claim_due(now, limit)
                for row in rows:
                    result = await session.execute(
                        update(Job)
                        .where(
                            Job.id == row.id,
                            Job.status == row.status,
                            Job.attempts == row.attempts,
                        )
                        .values(
                            status=JobStatus.PROCESSING,
                            attempts=row.attempts + 1,
                            started_at=now,
                            locked_by=worker_id,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue
                    claimed.append(
                        ClaimedJob(
                            id=row.id,
                            type=row.type,
                            payload=dict(row.payload or {}),
                            attempts=row.attempts + 1,
                            max_attempts=row.max_attempts,
                            locked_by=worker_id,
                        )
                    )
        except DBAPIError as err:
            if not is_lock_conflict(err):
                raise
            logger.warning("job.claim_conflict", detail=str(err.orig))
            return []
        return claimed

    async def _execute(self, job: ClaimedJob) -> JobStatus | None:
        log = logger.bind(job_id=job.id, job_type=job.type, attempt=job.attempts)
        handler = self._registry.get(job.type) if self._registry is not None else None
        try:
            if handler is None:
                raise LookupError(f"No handler registered for job type {job.type!r}")
            await handler.handle(job)
        except Exception as exc:  # handler failures are contained by the retry policy
            failure = HandlerFailureError(job.type, job.id, exc)
            log.warning("job.handler_failed", error=failure.code, reason=failure.message)
            return await self._finalise(job, failure)
        return await self._finalise(job, None)

    async def _finalise(
        self, job: ClaimedJob, failure: HandlerFailureError | None
    ) -> JobStatus | None:
        now = self._now()
        async with session_scope(self._session_factory) as session:
            row = await JobRepository(session).get_for_update(job.id)
            if row is None:
                logger.warning("job.vanished", job_id=job.id)
                return None
            if (
                row.status is not JobStatus.PROCESSING
                or row.locked_by != job.locked_by
                or row.attempts != job.attempts
            ):
                # recovered and re-claimed (or finished) by someone else meanwhile
                logger.warning(
                    "job.finalise_lost",
                    job_id=job.id,
                    job_type=job.type,
                    attempt=job.attempts,
                    status=row.status.value,
                    locked_by=row.locked_by,
                    current_attempts=row.attempts,
                )
                return None
            row.locked_by = None
            row.updated_at = now
            if failure is None:
                row.status = JobStatus.COMPLETED
                row.completed_at = now
                row.last_error = None
                logger.info(
                    "job.completed", job_id=job.id, job_type=job.type, attempts=row.attempts
                )
            elif row.attempts >= row.max_attempts:
                row.status = JobStatus.DEAD
                row.completed_at = now
                row.last_error = failure.message[:MAX_ERROR_CHARS]
                logger.error(
                    "job.dead",
                    job_id=job.id,
                    job_type=job.type,
                    attempts=row.attempts,
                    last_error=row.last_error,
                )
            else:
                row.status = JobStatus.FAILED
                row.last_error = failure.message[:MAX_ERROR_CHARS]
                row.scheduled_at = now + backoff_delay(
                    row.attempts, self._settings.job_backoff_base_ms
                )
                logger.warning(
                    "job.failed",
                    job_id=job.id,
                    job_type=job.type,
                    attempts=row.attempts,
                    next_attempt_at=row.scheduled_at.isoformat(),
                )
            return row.status

    # ------------------------------------------------------------------
    # Operator maintenance
    # ------------------------------------------------------------------

    async def retry_failed(self, limit: int = 100) -> int:
        """Move failed and dead jobs back to pending; dead jobs get a fresh budget."""
        now = self._now()
        async with session_scope(self._session_factory) as session:
            rows = await JobRepository(session).get_retryable(limit)
            for row in rows:
                if row.status is JobStatus.DEAD:
                    row.attempts = 0
                    row.completed_at = None
                row.status = JobStatus.PENDING
                row.scheduled_at = now
                row.locked_by = None
                row.updated_at = now
        if rows:
            logger.info("job.retry_requeued", count=len(rows))
        return len(rows)

    async def recover_stale(self, now: datetime | None = None) -> int:
        """Return jobs stuck in processing (crashed worker) to pending."""
        now = now or self._now()
        cutoff = now - timedelta(seconds=self._settings.job_stale_after_seconds)
        try:
            async with session_scope(self._session_factory) as session:
                rows = await JobRepository(session).get_stale_processing(cutoff)
                for row in rows:
                    row.locked_by = None
                    row.updated_at = now
                    if row.attempts >= row.max_attempts:
                        row.status = JobStatus.DEAD
                        row.completed_at = now
                        row.last_error = "Worker lost while processing; attempts exhausted"
                    else:
                        row.status = JobStatus.PENDING
                        row.scheduled_at = now
                    logger.warning(
                        "job.stale_recovered",
                        job_id=row.id,
                        job_type=row.type,
                        status=row.status.value,
                    )
        except DBAPIError as err:
            if not is_lock_conflict(err):
                raise
            logger.warning("job.stale_recovery_conflict", detail=str(err.orig))
            return 0
        return len(rows)

    async def cleanup(self, older_than_days: int | None = None) -> int:
        """Delete completed and dead jobs finished before the cutoff."""
        days = self._settings.job_cleanup_after_days if older_than_days is None else older_than_days
        cutoff = self._now() - timedelta(days=days)
        async with session_scope(self._session_factory) as session:
            deleted = await JobRepository(session).delete_finished_before(cutoff)
        logger.info("job.cleanup", deleted=deleted, older_than_days=days)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> JobView | None:
        async with self._session_factory() as session:
            row = await JobRepository(session).get_by_id(job_id)
            return JobView.model_validate(row) if row is not None else None

    async def get_stats(self) -> JobStats:
        async with self._session_factory() as session:
            counts = await JobRepository(session).count_by_status()
        values = {status.value: counts.get(status, 0) for status in JobStatus}
        return JobStats(**values, total=sum(values.values()))
