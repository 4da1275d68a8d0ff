"""Shared test fixtures for the gigflow test suite.

Provides:
    - Settings pointing at a throwaway SQLite file per test
    - An engine with the schema created, and its session factory
    - A controllable clock and an in-memory Redis (fakeredis)
    - A fully wired Workflow plus helpers that drive a task to a given point
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fakeredis import aioredis as fake_aioredis

from gigflow.app import build_workflow
from gigflow.collaborators.payments import SimulatedPaymentProcessor
from gigflow.config import Settings
from gigflow.domain.enums import EscrowState, TaskState
from gigflow.infrastructure.database.engine import (
    create_all,
    create_engine,
    create_session_factory,
    dispose,
)

POSTER = "poster-1"
WORKER = "worker-1"
REVIEWER = "reviewer-1"


class FakeClock:
    """Wall-clock time shifted by an adjustable offset.

    Stays monotonic between calls so created_at ordering is unambiguous,
    while advance() lets a test jump past backoff delays and review windows.
    """

    def __init__(self) -> None:
        self._offset = timedelta(0)

    def __call__(self) -> datetime:
        return datetime.now(UTC) + self._offset

    def advance(self, **kwargs: float) -> None:
        self._offset += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        db_pool_timeout=5,
        job_backoff_base_ms=1000,
        job_max_attempts=5,
        trust_recompute_cooldown_seconds=300,
    )


@pytest.fixture
async def engine(settings: Settings):
    engine = create_engine(settings)
    await create_all(engine)
    yield engine
    await dispose(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def processor() -> SimulatedPaymentProcessor:
    return SimulatedPaymentProcessor()


@pytest.fixture
def workflow(settings, session_factory, clock, redis, processor):
    return build_workflow(
        settings,
        session_factory,
        redis=redis,
        payment_processor=processor,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


async def open_task(workflow, amount_cents: int = 5000) -> str:
    """Create a task with a pending escrow lock."""
    created = await workflow.tasks.create_task(POSTER, amount_cents, "Assemble a bookshelf")
    assert created.ok, created.message
    initialized = await workflow.escrow.initialize(created.entity_id, amount_cents)
    assert initialized.ok, initialized.message
    return created.entity_id


async def accepted_task(workflow, amount_cents: int = 5000) -> str:
    """Create a task, fund its escrow and assign WORKER."""
    task_id = await open_task(workflow, amount_cents)
    funded = await workflow.escrow.transition(
        task_id, EscrowState.FUNDED, {"payment_intent_id": "pi_test"}, actor=POSTER
    )
    assert funded.ok, funded.message
    accepted = await workflow.tasks.transition(
        task_id, TaskState.ACCEPTED, {"worker_id": WORKER}, actor=WORKER
    )
    assert accepted.ok, accepted.message
    return task_id


async def proof_accepted_task(workflow, amount_cents: int = 5000) -> tuple[str, str]:
    """Drive a task up to proof_submitted with an accepted proof. Returns (task_id, proof_id)."""
    task_id = await accepted_task(workflow, amount_cents)
    submitted = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
    assert submitted.ok, submitted.message
    moved = await workflow.tasks.transition(task_id, TaskState.PROOF_SUBMITTED, actor=WORKER)
    assert moved.ok, moved.message
    reviewed = await workflow.proofs.accept(submitted.entity_id, REVIEWER)
    assert reviewed.ok, reviewed.message
    return task_id, submitted.entity_id
