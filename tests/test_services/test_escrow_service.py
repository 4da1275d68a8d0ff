"""Tests for EscrowService: custody transitions, refunds, release jobs, recovery."""

from __future__ import annotations

import uuid

import pytest
from conftest import POSTER, WORKER, accepted_task, open_task, proof_accepted_task

from gigflow.domain.enums import ErrorKind, EscrowState, JobStatus, JobType, TaskState
from gigflow.domain.exceptions import InvariantViolationError
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import EscrowRepository


class TestInitialize:
    async def test_initialize_is_idempotent(self, workflow) -> None:
        created = await workflow.tasks.create_task(POSTER, 5000, "Mow the lawn")
        task_id = created.entity_id

        first = await workflow.escrow.initialize(task_id, 5000)
        second = await workflow.escrow.initialize(task_id, 9999)

        assert first.ok and first.data["created"] is True
        assert second.ok and second.data["created"] is False
        assert second.data["amount_cents"] == 5000
        assert len(await workflow.escrow.get_history(task_id)) == 1

    async def test_unknown_task(self, workflow) -> None:
        result = await workflow.escrow.initialize(uuid.uuid4(), 5000)
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_non_positive_amount(self, workflow) -> None:
        created = await workflow.tasks.create_task(POSTER, 5000, "Mow the lawn")
        result = await workflow.escrow.initialize(created.entity_id, -1)
        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert await workflow.escrow.get_state(created.entity_id) is None


class TestTransitions:
    async def test_fund_records_payment_intent(self, workflow) -> None:
        task_id = await open_task(workflow)
        result = await workflow.escrow.transition(
            task_id, EscrowState.FUNDED, {"payment_intent_id": "pi_123"}
        )
        assert result.ok
        details = await workflow.escrow.get_details(task_id)
        assert details.state is EscrowState.FUNDED
        assert details.payment_intent_id == "pi_123"

    async def test_pending_cannot_release(self, workflow) -> None:
        task_id = await open_task(workflow)
        result = await workflow.escrow.transition(task_id, EscrowState.RELEASED)
        assert result.kind is ErrorKind.INVALID_TRANSITION
        assert result.new_state == "pending"

    async def test_released_is_terminal(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        assert (await workflow.escrow.transition(task_id, EscrowState.RELEASED)).ok

        result = await workflow.escrow.transition(task_id, EscrowState.REFUNDED)

        assert result.kind is ErrorKind.TERMINAL_STATE_VIOLATION
        assert await workflow.escrow.get_state(task_id) is EscrowState.RELEASED

    async def test_amount_cannot_change(self, workflow, session_factory) -> None:
        task_id = await open_task(workflow, amount_cents=5000)

        with pytest.raises(InvariantViolationError, match="immutable"):
            async with session_scope(session_factory) as session:
                lock = await EscrowRepository(session).get_for_update(uuid.UUID(task_id))
                lock.amount_cents = 1

        details = await workflow.escrow.get_details(task_id)
        assert details.amount_cents == 5000

    async def test_release_enqueues_side_effects(self, workflow) -> None:
        task_id, _ = await proof_accepted_task(workflow)

        result = await workflow.escrow.transition(task_id, EscrowState.RELEASED, actor=POSTER)

        assert result.ok
        assert result.data["job_ids"] == [
            f"award_reward:{task_id}",
            f"process_payout:{task_id}",
            f"send_notification:escrow_released:{task_id}",
        ]
        details = await workflow.escrow.get_details(task_id)
        assert details.released_at is not None
        job = await workflow.queue.get_job(f"process_payout:{task_id}")
        assert job.payload == {"task_id": task_id, "worker_id": WORKER}
        assert job.priority == 10

    async def test_release_without_worker_enqueues_nothing(self, workflow) -> None:
        task_id = await open_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.FUNDED)

        result = await workflow.escrow.transition(task_id, EscrowState.RELEASED)

        assert result.ok
        assert result.data["job_ids"] == []
        assert (await workflow.queue.get_stats()).total == 0

    async def test_refund_notifies_poster(self, workflow) -> None:
        task_id = await open_task(workflow)
        result = await workflow.escrow.transition(
            task_id, EscrowState.REFUNDED, {"refund_id": "re_1"}
        )
        assert result.ok
        job = await workflow.queue.get_job(f"send_notification:escrow_refunded:{task_id}")
        assert job.payload["recipient_id"] == POSTER
        assert (await workflow.escrow.get_details(task_id)).refund_id == "re_1"


class TestPartialRefund:
    async def _locked(self, workflow) -> str:
        task_id = await accepted_task(workflow, amount_cents=8000)
        await workflow.tasks.transition(task_id, TaskState.DISPUTED, {"reason": "half done"})
        assert (await workflow.escrow.transition(task_id, EscrowState.LOCKED_DISPUTE)).ok
        return task_id

    @pytest.mark.parametrize("refund", [None, 0, 8000, 9000, "4000", True])
    async def test_refund_amount_bounds(self, workflow, refund) -> None:
        task_id = await self._locked(workflow)
        context = {} if refund is None else {"refund_amount_cents": refund}

        result = await workflow.escrow.transition(task_id, EscrowState.PARTIAL_REFUND, context)

        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert result.new_state == "locked_dispute"

    async def test_partial_refund(self, workflow) -> None:
        task_id = await self._locked(workflow)

        result = await workflow.escrow.transition(
            task_id,
            EscrowState.PARTIAL_REFUND,
            {"refund_amount_cents": 4000, "refund_id": "re_2"},
            actor="admin-1",
        )

        assert result.ok
        details = await workflow.escrow.get_details(task_id)
        assert details.refund_amount_cents == 4000
        assert details.amount_cents == 8000
        job = await workflow.queue.get_job(f"send_notification:escrow_refunded:{task_id}")
        assert job.payload["data"]["refund_cents"] == 4000


class AlwaysFails:
    async def handle(self, job) -> None:
        raise ConnectionError("payment gateway down")


async def kill_payout(workflow, clock, task_id) -> None:
    """Run the release jobs with the payout handler failing until it dead-letters."""
    payout_handler = workflow.registry.get(JobType.PROCESS_PAYOUT.value)
    workflow.registry.register(JobType.PROCESS_PAYOUT, AlwaysFails())
    for _ in range(workflow.settings.job_max_attempts):
        await workflow.queue.drain()
        clock.advance(seconds=30)
    workflow.registry.register(JobType.PROCESS_PAYOUT, payout_handler)
    job = await workflow.queue.get_job(f"process_payout:{task_id}")
    assert job.status is JobStatus.DEAD


class TestRecovery:
    async def test_rearms_dead_payout_until_transfer_recorded(self, workflow, clock) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.RELEASED)
        await kill_payout(workflow, clock, task_id)

        assert await workflow.escrow.recover_released() == 0

        clock.advance(minutes=16)
        assert await workflow.escrow.recover_released() == 1

        job = await workflow.queue.get_job(f"process_payout:{task_id}")
        assert job.status is JobStatus.PENDING
        assert job.attempts == 0
        # the reward and notification already ran; only the payout is re-armed
        assert (await workflow.queue.get_job(f"award_reward:{task_id}")).attempts == 1

        report = await workflow.queue.drain()
        assert report.job_ids == (f"process_payout:{task_id}",)
        details = await workflow.escrow.get_details(task_id)
        assert details.transfer_id.startswith("tr_sim_")
        assert details.recovery_attempts == 1
        assert await workflow.escrow.recover_released() == 0

    async def test_queued_release_jobs_are_not_counted(self, workflow, clock) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.RELEASED)

        clock.advance(minutes=16)

        assert await workflow.escrow.recover_released() == 0
        assert (await workflow.escrow.get_details(task_id)).recovery_attempts == 0

    async def test_gives_up_after_ceiling(self, workflow, clock, settings) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.RELEASED)

        for _ in range(settings.escrow_max_recovery_attempts):
            await kill_payout(workflow, clock, task_id)
            clock.advance(minutes=16)
            assert await workflow.escrow.recover_released() == 1

        await kill_payout(workflow, clock, task_id)
        clock.advance(minutes=16)
        assert await workflow.escrow.recover_released() == 0
        job = await workflow.queue.get_job(f"process_payout:{task_id}")
        assert job.status is JobStatus.DEAD

    async def test_release_without_worker_is_not_swept(self, workflow, clock) -> None:
        task_id = await open_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.FUNDED)
        await workflow.escrow.transition(task_id, EscrowState.RELEASED)

        clock.advance(minutes=16)

        assert await workflow.escrow.recover_released() == 0
        assert (await workflow.escrow.get_details(task_id)).recovery_attempts == 0

    async def test_paid_release_is_left_alone(self, workflow, clock) -> None:
        task_id, _ = await proof_accepted_task(workflow)
        await workflow.escrow.transition(task_id, EscrowState.RELEASED)
        for _ in range(3):
            await workflow.queue.drain()

        clock.advance(minutes=16)
        assert await workflow.escrow.recover_released() == 0
        assert (await workflow.escrow.get_details(task_id)).transfer_id.startswith("tr_sim_")


async def test_split_payout_uses_configured_fee(workflow) -> None:
    split = workflow.escrow.split_payout(10_000)
    assert split.fee_cents == 1500
    assert split.net_cents == 8500
