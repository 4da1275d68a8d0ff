"""Tests for the worker loop."""

from __future__ import annotations

import asyncio

from conftest import WORKER, proof_accepted_task
from sqlalchemy.exc import InterfaceError

from gigflow.app import build_workflow
from gigflow.domain.enums import EscrowState
from gigflow.worker import run_worker


class FailingOnce:
    """Session factory whose first session cannot reach the database."""

    def __init__(self, factory) -> None:
        self._factory = factory
        self.failed = False

    def __call__(self):
        if not self.failed:
            self.failed = True
            raise InterfaceError(
                "SELECT 1", {}, ConnectionResetError("server closed the connection")
            )
        return self._factory()


async def test_single_cycle_drains_release_jobs_and_sweeps(workflow) -> None:
    task_id, _ = await proof_accepted_task(workflow)
    await workflow.escrow.transition(task_id, EscrowState.RELEASED)

    processed = await run_worker(workflow, worker_id="w-test", max_cycles=1)

    # three release jobs plus the proof-expiry sweep
    assert processed == 4
    stats = await workflow.queue.get_stats()
    assert stats.completed == 4
    assert await workflow.rewards.balance(WORKER) == 50


async def test_stop_event_halts_before_first_cycle(workflow) -> None:
    stop = asyncio.Event()
    stop.set()

    assert await run_worker(workflow, stop_event=stop) == 0
    assert (await workflow.queue.get_stats()).total == 0


async def test_store_error_skips_one_cycle(
    workflow, settings, session_factory, redis, processor, clock
) -> None:
    task_id, _ = await proof_accepted_task(workflow)
    await workflow.escrow.transition(task_id, EscrowState.RELEASED)
    flaky = FailingOnce(session_factory)
    worker_flow = build_workflow(
        settings.model_copy(update={"worker_poll_interval_seconds": 0}),
        flaky,
        redis=redis,
        payment_processor=processor,
        clock=clock,
    )

    processed = await run_worker(worker_flow, worker_id="w-test", max_cycles=2)

    assert flaky.failed
    assert processed == 4
    assert (await workflow.queue.get_stats()).completed == 4
    assert await workflow.rewards.balance(WORKER) == 50
