"""Composition root: wires services, queue, collaborators and handlers.

Every component receives the session factory, Settings and clock
explicitly; nothing here is cached at module level.

Usage:
    engine = create_engine(settings)
    workflow = build_workflow(settings, create_session_factory(engine))
    await workflow.tasks.create_task(...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from gigflow.collaborators.notifications import NotificationDispatcher
from gigflow.collaborators.payments import PayoutService, SimulatedPaymentProcessor
from gigflow.collaborators.rewards import RewardLedger
from gigflow.collaborators.trust import TrustTierService
from gigflow.domain.enums import JobType
from gigflow.domain.job_protocol import utc_now
from gigflow.jobs.handlers import (
    AwardRewardHandler,
    ExpireProofsHandler,
    HandlerRegistry,
    ProcessPayoutHandler,
    RecomputeTrustHandler,
    SendNotificationHandler,
)
from gigflow.jobs.queue import JobQueue
from gigflow.services.escrow_service import EscrowService
from gigflow.services.proof_service import ProofService
from gigflow.services.task_service import TaskService

if TYPE_CHECKING:
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.collaborators.payments import PaymentProcessor
    from gigflow.config import Settings
    from gigflow.services.base import Clock


@dataclass
class Workflow:
    """Everything an entry point needs to drive the workflow core."""

    settings: Settings
    tasks: TaskService
    escrow: EscrowService
    proofs: ProofService
    queue: JobQueue
    registry: HandlerRegistry
    rewards: RewardLedger
    payouts: PayoutService
    notifications: NotificationDispatcher
    trust: TrustTierService
    clock: Clock


def build_workflow(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    redis: aioredis.Redis | None = None,
    payment_processor: PaymentProcessor | None = None,
    clock: Clock = utc_now,
) -> Workflow:
    registry = HandlerRegistry()
    queue = JobQueue(session_factory, settings, registry, clock=clock)

    tasks = TaskService(session_factory, settings, queue, clock=clock)
    escrow = EscrowService(session_factory, settings, queue, clock=clock)
    proofs = ProofService(session_factory, settings, queue, clock=clock)

    rewards = RewardLedger(session_factory, clock=clock)
    payouts = PayoutService(
        session_factory,
        settings,
        payment_processor or SimulatedPaymentProcessor(),
        clock=clock,
    )
    notifications = NotificationDispatcher(session_factory, clock=clock)
    trust = TrustTierService(session_factory, settings, redis=redis, clock=clock)

    registry.register(JobType.AWARD_REWARD, AwardRewardHandler(rewards))
    registry.register(JobType.PROCESS_PAYOUT, ProcessPayoutHandler(payouts))
    registry.register(JobType.SEND_NOTIFICATION, SendNotificationHandler(notifications))
    registry.register(JobType.RECOMPUTE_TRUST, RecomputeTrustHandler(trust))
    registry.register(JobType.EXPIRE_PROOFS, ExpireProofsHandler(proofs))

    return Workflow(
        settings=settings,
        tasks=tasks,
        escrow=escrow,
        proofs=proofs,
        queue=queue,
        registry=registry,
        rewards=rewards,
        payouts=payouts,
        notifications=notifications,
        trust=trust,
        clock=clock,
    )
