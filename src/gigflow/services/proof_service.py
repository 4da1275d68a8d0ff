"""Proof Service — submission and review of completion evidence.

A task has at most one pending/reviewing submission at a time (enforced
by a check under the task row lock and by a partial unique index). A
rejected submission frees the task for a new one; an accepted submission
closes it for good.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError

from gigflow.domain.enums import JobType, ProofState
from gigflow.domain.evidence import calculate_quality
from gigflow.domain.exceptions import (
    AlreadyAcceptedError,
    DuplicateActiveProofError,
    InvariantViolationError,
    NotFoundError,
    TerminalStateViolationError,
)
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.results import OperationResult
from gigflow.domain.state_machine import PROOF_MACHINE, TASK_MACHINE
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.orm_models import ProofSubmission
from gigflow.infrastructure.database.repositories import ProofRepository, TaskRepository
from gigflow.logging_config import get_logger
from gigflow.schemas.evidence import ProofEvidence
from gigflow.schemas.views import ProofView, TransitionView
from gigflow.services.base import TransactionalService, is_lock_conflict, jsonable, parse_id

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.exc import IntegrityError
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings
    from gigflow.jobs.queue import JobQueue
    from gigflow.services.base import Clock

logger = get_logger(__name__)


class ProofService(TransactionalService):
    """Manages proof submissions."""

    entity = "proof"

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
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        task_id: uuid.UUID | str,
        worker_id: str,
        evidence: ProofEvidence | dict[str, Any] | None = None,
    ) -> OperationResult:
        """Record a new submission for review.

        Refuses with DUPLICATE_ACTIVE_PROOF while another submission is
        pending or reviewing, and with ALREADY_ACCEPTED once one has been
        accepted. The result data carries proof_id and quality.
        """

        async def work(session: AsyncSession) -> OperationResult:
            tid = parse_id("task", task_id)
            parsed = self._parse_evidence(evidence)

            task = await TaskRepository(session).get_for_update(
                tid, nowait=self._settings.db_row_lock_nowait
            )
            if task is None:
                raise NotFoundError("task", tid)
            task_state = TASK_MACHINE.decode(task.state)
            if TASK_MACHINE.is_terminal(task_state):
                raise TerminalStateViolationError("task", task_state.value, "proof_submitted")
            if task.assigned_worker_id and task.assigned_worker_id != worker_id:
                raise InvariantViolationError(
                    f"Worker {worker_id} is not assigned to task {tid}",
                    invariant="submitter_is_assignee",
                )

            repo = ProofRepository(session)
            accepted = await repo.get_accepted_for_task(tid)
            if accepted is not None:
                raise AlreadyAcceptedError(tid, accepted.id)
            active = await repo.get_active_for_task(tid)
            if active is not None:
                raise DuplicateActiveProofError(tid, active.id)

            now = self._now()
            quality = calculate_quality(
                parsed.description,
                parsed.media_count,
                parsed.has_before_after,
                detail_threshold=self._settings.proof_detailed_description_chars,
            )
            proof = await repo.create(
                ProofSubmission(
                    task_id=tid,
                    worker_id=worker_id,
                    description=parsed.description,
                    media_urls=list(parsed.media_urls),
                    has_before_after=parsed.has_before_after,
                    quality=quality,
                    state=ProofState.PENDING,
                    expires_at=now + timedelta(hours=self._settings.proof_review_window_hours),
                    created_at=now,
                    updated_at=now,
                )
            )
            await repo.log_transition(
                proof,
                None,
                ProofState.PENDING,
                actor=worker_id,
                context={"quality": quality.value, "media_count": parsed.media_count},
                created_at=now,
            )
            logger.info(
                "proof.submitted",
                proof_id=str(proof.id),
                task_id=str(tid),
                worker_id=worker_id,
                quality=quality.value,
            )
            return OperationResult.success(
                proof.id,
                None,
                ProofState.PENDING.value,
                proof_id=str(proof.id),
                task_id=str(tid),
                quality=quality.value,
            )

        def on_integrity_error(err: IntegrityError) -> DuplicateActiveProofError:
            # Lost the race on the partial unique index
            return DuplicateActiveProofError(task_id)

        return await self._run("submit", task_id, work, on_integrity_error=on_integrity_error)

    @staticmethod
    def _parse_evidence(evidence: ProofEvidence | dict[str, Any] | None) -> ProofEvidence:
        if isinstance(evidence, ProofEvidence):
            return evidence
        try:
            return ProofEvidence.model_validate(evidence or {})
        except ValidationError as err:
            raise InvariantViolationError(
                f"Invalid evidence: {err.error_count()} error(s)",
                invariant="evidence_schema",
            ) from err

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def transition(
        self,
        proof_id: uuid.UUID | str,
        target: ProofState | str,
        context: dict[str, Any] | None = None,
        *,
        actor: str = "SYSTEM",
    ) -> OperationResult:
        """Move a submission along a legal edge."""
        ctx = jsonable(context)

        async def work(session: AsyncSession) -> OperationResult:
            pid = parse_id("proof", proof_id)
            repo = ProofRepository(session)
            proof = await repo.get_for_update(pid, nowait=self._settings.db_row_lock_nowait)
            if proof is None:
                raise NotFoundError("proof", pid)

            current = PROOF_MACHINE.decode(proof.state)
            new_state = PROOF_MACHINE.coerce_target(current, target)
            PROOF_MACHINE.validate(current, new_state)

            now = self._now()
            if new_state is ProofState.REJECTED:
                reason = str(ctx.get("reason") or "").strip()
                if not reason:
                    raise InvariantViolationError(
                        "cannot reject: reason required",
                        invariant="rejection_reason",
                        current_state=current.value,
                    )
                proof.rejection_reason = reason
            if new_state in (ProofState.REVIEWING, ProofState.ACCEPTED, ProofState.REJECTED):
                reviewer = ctx.get("reviewer_id")
                if reviewer:
                    proof.reviewed_by = str(reviewer)
                if new_state is not ProofState.REVIEWING:
                    proof.reviewed_at = now
            proof.state = new_state
            proof.updated_at = now
            await session.flush()

            await repo.log_transition(
                proof, current, new_state, actor=actor, context=ctx, created_at=now
            )
            if new_state is ProofState.EXPIRED:
                await self._enqueue_expiry_notice(session, proof)

            logger.info(
                "proof.transitioned",
                proof_id=str(proof.id),
                task_id=str(proof.task_id),
                from_state=current.value,
                to_state=new_state.value,
                actor=actor,
            )
            return OperationResult.success(
                proof.id, current.value, new_state.value, task_id=str(proof.task_id)
            )

        return await self._run("transition", proof_id, work)

    async def start_review(
        self, proof_id: uuid.UUID | str, reviewer_id: str | None = None
    ) -> OperationResult:
        return await self.transition(
            proof_id,
            ProofState.REVIEWING,
            {"reviewer_id": reviewer_id},
            actor=reviewer_id or "SYSTEM",
        )

    async def accept(
        self, proof_id: uuid.UUID | str, reviewer_id: str | None = None
    ) -> OperationResult:
        return await self.transition(
            proof_id,
            ProofState.ACCEPTED,
            {"reviewer_id": reviewer_id},
            actor=reviewer_id or "SYSTEM",
        )

    async def reject(
        self,
        proof_id: uuid.UUID | str,
        reason: str,
        reviewer_id: str | None = None,
    ) -> OperationResult:
        """Reject a submission; the worker may then submit a new one."""
        return await self.transition(
            proof_id,
            ProofState.REJECTED,
            {"reason": reason, "reviewer_id": reviewer_id},
            actor=reviewer_id or "SYSTEM",
        )

    async def expire(self, proof_id: uuid.UUID | str) -> OperationResult:
        return await self.transition(
            proof_id, ProofState.EXPIRED, {"reason": "review window closed"}
        )

    async def _enqueue_expiry_notice(self, session: AsyncSession, proof: ProofSubmission) -> None:
        dedupe_key = f"proof_expired:{proof.id}"
        await self._queue.enqueue_in(
            session,
            JobType.SEND_NOTIFICATION,
            {
                "recipient_id": proof.worker_id,
                "type": "proof_expired",
                "title": "Proof expired",
                "body": "Your proof was not reviewed in time. Please resubmit.",
                "data": {"task_id": str(proof.task_id), "proof_id": str(proof.id)},
                "dedupe_key": dedupe_key,
            },
            job_id=f"send_notification:{dedupe_key}",
        )

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def expire_overdue(self, now: datetime | None = None, batch_size: int = 100) -> int:
        """Expire pending submissions whose review window has closed."""
        now = now or self._now()
        expired = 0
        try:
            async with session_scope(self._session_factory) as session:
                repo = ProofRepository(session)
                for proof in await repo.get_overdue_pending(now, batch_size):
                    proof.state = ProofState.EXPIRED
                    proof.updated_at = now
                    await session.flush()
                    await repo.log_transition(
                        proof,
                        ProofState.PENDING,
                        ProofState.EXPIRED,
                        actor="SYSTEM",
                        context={"reason": "review window closed"},
                        created_at=now,
                    )
                    await self._enqueue_expiry_notice(session, proof)
                    expired += 1
                    logger.info(
                        "proof.expired",
                        proof_id=str(proof.id),
                        task_id=str(proof.task_id),
                        worker_id=proof.worker_id,
                    )
        except StaleDataError as err:
            logger.warning("proof.expiry_conflict", detail=str(err))
            return 0
        except DBAPIError as err:
            if not is_lock_conflict(err):
                raise
            logger.warning("proof.expiry_conflict", detail=str(err.orig))
            return 0
        if expired:
            logger.info("proof.expiry_sweep", expired=expired)
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_accepted_proof(self, task_id: uuid.UUID | str) -> bool:
        async def work(session: AsyncSession) -> bool:
            accepted = await ProofRepository(session).get_accepted_for_task(
                parse_id("task", task_id)
            )
            return accepted is not None

        return await self._read("has_accepted_proof", task_id, work, False)

    async def get_task_proof(self, task_id: uuid.UUID | str) -> ProofView | None:
        """Latest submission for a task."""

        async def work(session: AsyncSession) -> ProofView | None:
            proof = await ProofRepository(session).get_latest_for_task(parse_id("task", task_id))
            return ProofView.model_validate(proof) if proof is not None else None

        return await self._read("get_task_proof", task_id, work, None)

    async def get_proof(self, proof_id: uuid.UUID | str) -> ProofView | None:
        async def work(session: AsyncSession) -> ProofView | None:
            proof = await ProofRepository(session).get_by_id(parse_id("proof", proof_id))
            return ProofView.model_validate(proof) if proof is not None else None

        return await self._read("get_proof", proof_id, work, None)

    async def get_history(self, proof_id: uuid.UUID | str) -> list[TransitionView]:
        async def work(session: AsyncSession) -> list[TransitionView]:
            rows = await ProofRepository(session).get_history(parse_id("proof", proof_id))
            return [TransitionView.model_validate(row) for row in rows]

        return await self._read("get_history", proof_id, work, [])
