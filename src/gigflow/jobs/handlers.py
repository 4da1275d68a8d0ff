"""Job handlers and the registry the queue dispatches through.

Five handlers, one per JobType:
    - AwardRewardHandler:       RewardLedger.credit (unique per task)
    - ProcessPayoutHandler:     PayoutService.process (unique per escrow)
    - SendNotificationHandler:  NotificationDispatcher.dispatch (unique per dedupe key)
    - RecomputeTrustHandler:    TrustTierService.recompute (upgrade-only, cooldown)
    - ExpireProofsHandler:      ProofService.expire_overdue (sweep)

Each handler parses its payload with the schema it was enqueued with and
raises on failure; the queue owns retries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from gigflow.domain.enums import JobType
from gigflow.domain.job_protocol import ClaimedJob, JobHandler
from gigflow.schemas.jobs import (
    AwardRewardPayload,
    ExpireProofsPayload,
    ProcessPayoutPayload,
    RecomputeTrustPayload,
    SendNotificationPayload,
)

if TYPE_CHECKING:
    from gigflow.collaborators.notifications import NotificationDispatcher
    from gigflow.collaborators.payments import PayoutService
    from gigflow.collaborators.rewards import RewardLedger
    from gigflow.collaborators.trust import TrustTierService
    from gigflow.services.proof_service import ProofService


class AwardRewardHandler:
    def __init__(self, ledger: RewardLedger) -> None:
        self._ledger = ledger

    async def handle(self, job: ClaimedJob) -> None:
        payload = AwardRewardPayload.model_validate(job.payload)
        await self._ledger.credit(payload.task_id, payload.worker_id)


class ProcessPayoutHandler:
    def __init__(self, payouts: PayoutService) -> None:
        self._payouts = payouts

    async def handle(self, job: ClaimedJob) -> None:
        payload = ProcessPayoutPayload.model_validate(job.payload)
        await self._payouts.process(payload.task_id, payload.worker_id)


class SendNotificationHandler:
    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def handle(self, job: ClaimedJob) -> None:
        payload = SendNotificationPayload.model_validate(job.payload)
        await self._dispatcher.dispatch(
            recipient_id=payload.recipient_id,
            type=payload.type,
            dedupe_key=payload.dedupe_key,
            title=payload.title,
            body=payload.body,
            data=payload.data,
        )


class RecomputeTrustHandler:
    def __init__(self, trust: TrustTierService) -> None:
        self._trust = trust

    async def handle(self, job: ClaimedJob) -> None:
        payload = RecomputeTrustPayload.model_validate(job.payload)
        await self._trust.recompute(payload.worker_id)


class ExpireProofsHandler:
    def __init__(self, proofs: ProofService) -> None:
        self._proofs = proofs

    async def handle(self, job: ClaimedJob) -> None:
        payload = ExpireProofsPayload.model_validate(job.payload)
        await self._proofs.expire_overdue(batch_size=payload.batch_size)


class HandlerRegistry:
    """Maps job types to handler instances.

    Usage:
        registry = HandlerRegistry()
        registry.register(JobType.AWARD_REWARD, AwardRewardHandler(ledger))
        handler = registry.get("award_reward")
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: JobType | str, handler: JobHandler) -> None:
        if not isinstance(handler, JobHandler):
            raise TypeError(f"{type(handler).__name__} does not implement handle(job)")
        self._handlers[JobType(job_type).value] = handler

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    def get_supported_types(self) -> list[str]:
        return list(self._handlers.keys())

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers
