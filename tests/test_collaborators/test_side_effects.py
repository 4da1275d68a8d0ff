"""Tests for the side-effect collaborators behind the job handlers."""

from __future__ import annotations

import uuid

import pytest
from conftest import POSTER, WORKER, proof_accepted_task
from sqlalchemy.exc import InterfaceError

from gigflow.app import build_workflow
from gigflow.collaborators.payments import SimulatedPaymentProcessor
from gigflow.collaborators.trust import TrustTierService
from gigflow.domain.enums import EscrowState, JobStatus, TaskState, TrustTier
from gigflow.domain.exceptions import SideEffectError
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import LedgerRepository
from gigflow.infrastructure.redis_client import cooldown_key, release_cooldown


async def released_task(workflow, amount_cents: int = 5000) -> uuid.UUID:
    task_id, _ = await proof_accepted_task(workflow, amount_cents)
    assert (await workflow.escrow.transition(task_id, EscrowState.RELEASED)).ok
    return uuid.UUID(task_id)


async def completed_task(workflow) -> uuid.UUID:
    task_id = await released_task(workflow)
    assert (await workflow.tasks.transition(task_id, TaskState.COMPLETED)).ok
    return task_id


class FlakyProcessor(SimulatedPaymentProcessor):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def create_transfer(self, *, destination, amount_cents, idempotency_key) -> str:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("gateway timeout")
        return await super().create_transfer(
            destination=destination, amount_cents=amount_cents, idempotency_key=idempotency_key
        )


class TestRewards:
    async def test_credit_once_per_task(self, workflow) -> None:
        task_id = await released_task(workflow)

        first = await workflow.rewards.credit(task_id, WORKER)
        second = await workflow.rewards.credit(task_id, WORKER)

        assert first.points == 50 and not first.already_awarded
        assert second.already_awarded
        assert await workflow.rewards.balance(WORKER) == 50

    async def test_requires_released_escrow(self, workflow) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        with pytest.raises(SideEffectError):
            await workflow.rewards.credit(uuid.UUID(task_id), WORKER)
        assert await workflow.rewards.balance(WORKER) == 0


class TestPayouts:
    async def test_pays_net_amount_once(self, workflow, processor) -> None:
        task_id = await released_task(workflow)

        first = await workflow.payouts.process(task_id, WORKER)
        second = await workflow.payouts.process(task_id, WORKER)

        assert first.net_cents == 4250
        assert first.fee_cents == 750
        assert second.already_paid
        assert second.transfer_id == first.transfer_id
        assert processor.calls == 1
        assert (await workflow.escrow.get_details(task_id)).transfer_id == first.transfer_id

    async def test_requires_released_escrow(self, workflow) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        with pytest.raises(SideEffectError, match="not released"):
            await workflow.payouts.process(uuid.UUID(task_id), WORKER)

    async def test_payout_job_retries_through_outage(
        self, settings, session_factory, clock, redis
    ) -> None:
        flaky = FlakyProcessor(failures=2)
        workflow = build_workflow(
            settings, session_factory, redis=redis, payment_processor=flaky, clock=clock
        )
        task_id = await released_task(workflow)
        job_id = f"process_payout:{task_id}"

        await workflow.queue.drain()
        clock.advance(seconds=2)
        await workflow.queue.drain()
        clock.advance(seconds=3)
        await workflow.queue.drain()

        job = await workflow.queue.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 3
        assert flaky.calls == 1


class TestNotifications:
    async def test_dedupe_key(self, workflow) -> None:
        sent = await workflow.notifications.dispatch(
            recipient_id=POSTER, type="test", dedupe_key="k", title="Hi"
        )
        repeated = await workflow.notifications.dispatch(
            recipient_id=POSTER, type="test", dedupe_key="k", title="Hi again"
        )

        assert sent is True
        assert repeated is False
        rows = await workflow.notifications.list_for(POSTER)
        assert [row.title for row in rows] == ["Hi"]


class TestTrust:
    async def test_cooldown_skips_repeat_recompute(self, workflow, redis) -> None:
        first = await workflow.trust.recompute(WORKER)
        second = await workflow.trust.recompute(WORKER)

        assert first.data["skipped"] is False
        assert second.data["skipped"] is True
        assert await redis.ttl(cooldown_key("trust", WORKER)) > 0

        await release_cooldown(redis, cooldown_key("trust", WORKER))
        assert (await workflow.trust.recompute(WORKER)).data["skipped"] is False

    async def test_failed_recount_releases_cooldown(
        self, settings, session_factory, redis, clock
    ) -> None:
        calls = []

        def unreachable_once():
            calls.append(1)
            if len(calls) == 1:
                raise InterfaceError("SELECT 1", {}, ConnectionResetError("reset"))
            return session_factory()

        trust = TrustTierService(unreachable_once, settings, redis=redis, clock=clock)

        with pytest.raises(InterfaceError):
            await trust.recompute(WORKER)
        assert await redis.exists(cooldown_key("trust", WORKER)) == 0

        retried = await trust.recompute(WORKER)
        assert retried.data["skipped"] is False
        assert await redis.ttl(cooldown_key("trust", WORKER)) > 0

    async def test_five_completions_reach_verified(
        self, workflow, settings, session_factory
    ) -> None:
        for _ in range(5):
            await completed_task(workflow)
        trust = TrustTierService(session_factory, settings)

        result = await trust.recompute(WORKER)

        assert result.data["completed"] == 5
        assert result.data["upgraded"] is True
        assert result.new_state == "verified"

    async def test_tier_never_downgrades(self, settings, session_factory, clock) -> None:
        async with session_scope(session_factory) as session:
            await LedgerRepository(session).upsert_trust(
                WORKER, tier=TrustTier.ELITE, completed=150, disputed=0, at=clock()
            )
        trust = TrustTierService(session_factory, settings, clock=clock)

        result = await trust.recompute(WORKER)

        assert result.data["upgraded"] is False
        assert result.new_state == "elite"
        async with session_factory() as session:
            row = await LedgerRepository(session).get_trust(WORKER)
            assert row.tier == TrustTier.ELITE
            assert row.completed_tasks == 0


class TestEndToEnd:
    async def test_release_and_completion_side_effects(self, workflow, processor) -> None:
        task_id = await completed_task(workflow)

        report = await workflow.queue.drain()

        assert report.claimed == 5
        assert report.completed == 5
        assert await workflow.rewards.balance(WORKER) == 50
        assert (await workflow.escrow.get_details(task_id)).transfer_id is not None
        worker_types = {n.type for n in await workflow.notifications.list_for(WORKER)}
        poster_types = {n.type for n in await workflow.notifications.list_for(POSTER)}
        assert worker_types == {"escrow_released"}
        assert poster_types == {"task_completed"}
        stats = await workflow.queue.get_stats()
        assert stats.completed == stats.total == 5
