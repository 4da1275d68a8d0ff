#!/usr/bin/env python3
"""gigflow — End-to-End Simulation.

Drives the Task, Escrow and Proof state machines and the job queue
through four scenarios with a Poster and a Worker:

    Scenario 1: Happy Path
        - Poster creates a 5000-cent task and funds the escrow
        - Worker accepts, submits proof, proof is accepted
        - Completing before release is refused; release, then completion succeeds
        - The worker drains reward, payout and notification jobs

    Scenario 2: Duplicate and Rejected Proof
        - A second submission while the first is pending is refused
        - The first is rejected; a resubmission is accepted

    Scenario 3: Flaky Payment Processor
        - The processor fails twice; the payout job retries with backoff
          and completes on the third attempt

    Scenario 4: Dispute With Partial Refund
        - Worker disputes, escrow locks, an admin partially refunds

Usage:
    # Option A: Against the configured database (DATABASE_URL):
    python simulation.py

    # Option B: Without Docker (SQLite file in a temp directory):
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 1
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from gigflow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from gigflow.app import build_workflow  # noqa: E402
from gigflow.collaborators.payments import SimulatedPaymentProcessor  # noqa: E402
from gigflow.config import get_settings  # noqa: E402
from gigflow.domain.enums import EscrowState, ProofState, TaskState  # noqa: E402
from gigflow.infrastructure.database.engine import (  # noqa: E402
    create_all,
    create_engine,
    create_session_factory,
    dispose,
)

if TYPE_CHECKING:
    from gigflow.app import Workflow
    from gigflow.domain.results import OperationResult

POSTER = "poster-alice"
WORKER = "worker-bob"
ADMIN = "admin-carol"


class FlakyPaymentProcessor(SimulatedPaymentProcessor):
    """Fails the first `failures` transfer attempts, then behaves."""

    def __init__(self, failures: int = 2) -> None:
        super().__init__()
        self._remaining_failures = failures

    async def create_transfer(
        self, *, destination: str, amount_cents: int, idempotency_key: str
    ) -> str:
        if self._remaining_failures > 0:
            self._remaining_failures -= 1
            raise ConnectionError("payment gateway timed out")
        return await super().create_transfer(
            destination=destination, amount_cents=amount_cents, idempotency_key=idempotency_key
        )


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_result(label: str, result: OperationResult) -> None:
    icon = "✅" if result.ok else "❌"
    transition = f"{result.previous_state or '—'} → {result.new_state or '—'}"
    print(f"  {icon} {label}: {transition}")
    if not result.ok:
        print(f"     {result.kind.value}: {result.message}")


async def print_audit_trail(workflow: Workflow, task_id: str) -> None:
    """Print the task and escrow transition logs."""
    print("\n  📜 Audit Trail:")
    for name, rows in (
        ("task", await workflow.tasks.get_history(task_id)),
        ("escrow", await workflow.escrow.get_history(task_id)),
    ):
        for i, row in enumerate(rows, 1):
            print(f"    {name}.{i} {row.from_state or '—'} → {row.to_state} (by {row.actor})")
    print()


async def drain_all(workflow: Workflow, rounds: int = 5) -> None:
    for _ in range(rounds):
        report = await workflow.queue.drain(worker_id="simulation")
        if report.claimed:
            print(
                f"  ⚙️  drained {report.claimed}: {report.completed} completed, "
                f"{report.failed} failed, {report.dead} dead"
            )


async def open_funded_task(workflow: Workflow, title: str, amount_cents: int = 5000) -> str:
    created = await workflow.tasks.create_task(POSTER, amount_cents, title)
    print_result("create task", created)
    task_id = created.entity_id
    print_result("escrow initialize", await workflow.escrow.initialize(task_id, amount_cents))
    print_result(
        "escrow fund",
        await workflow.escrow.transition(
            task_id, EscrowState.FUNDED, {"payment_intent_id": "pi_sim_001"}, actor=POSTER
        ),
    )
    print_result(
        "task accept",
        await workflow.tasks.transition(
            task_id, TaskState.ACCEPTED, {"worker_id": WORKER}, actor=WORKER
        ),
    )
    return task_id


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_happy_path(workflow: Workflow) -> None:
    banner("SCENARIO 1: Happy Path — release gates completion")

    section("Step 1: Poster opens and funds the task; worker accepts")
    task_id = await open_funded_task(workflow, "Assemble a bookshelf")

    section("Step 2: Worker submits proof; reviewer accepts it")
    submitted = await workflow.proofs.submit(
        task_id,
        WORKER,
        {
            "description": "Assembled and anchored to the wall, photos of every step attached.",
            "media_urls": ["s3://proofs/before.jpg", "s3://proofs/after.jpg"],
            "has_before_after": True,
        },
    )
    print_result("proof submit", submitted)
    print(f"     quality: {submitted.data.get('quality')}")
    print_result(
        "task proof_submitted",
        await workflow.tasks.transition(task_id, TaskState.PROOF_SUBMITTED, actor=WORKER),
    )
    print_result("proof accept", await workflow.proofs.accept(submitted.entity_id, "reviewer-1"))

    section("Step 3: Completing before release is refused")
    print_result("task complete", await workflow.tasks.transition(task_id, TaskState.COMPLETED))

    section("Step 4: Release, then complete")
    released = await workflow.escrow.transition(task_id, EscrowState.RELEASED, actor=POSTER)
    print_result("escrow release", released)
    print(f"     jobs: {released.data.get('job_ids')}")
    print_result("task complete", await workflow.tasks.transition(task_id, TaskState.COMPLETED))

    section("Step 5: Worker drains the side effects")
    await drain_all(workflow)
    details = await workflow.escrow.get_details(task_id)
    print(f"  💸 transfer: {details.transfer_id}")
    print(f"  🏅 reward balance: {await workflow.rewards.balance(WORKER)} points")
    print(f"  📊 queue: {(await workflow.queue.get_stats()).model_dump()}")

    await print_audit_trail(workflow, task_id)


async def scenario_2_duplicate_and_rejected(workflow: Workflow) -> None:
    banner("SCENARIO 2: Duplicate and Rejected Proof")
    task_id = await open_funded_task(workflow, "Paint the fence")

    section("Step 1: Two submissions in a row")
    first = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
    print_result("proof submit #1", first)
    duplicate = await workflow.proofs.submit(task_id, WORKER, {"description": "done!"})
    print_result("proof submit #2", duplicate)

    section("Step 2: Rejection frees the task for a new submission")
    rejected = await workflow.proofs.reject(first.entity_id, "no photos", "reviewer-1")
    print_result("proof reject", rejected)
    second = await workflow.proofs.submit(
        task_id, WORKER, {"description": "done", "media_urls": ["s3://proofs/fence.jpg"]}
    )
    print_result("proof resubmit", second)
    print(f"     quality: {second.data.get('quality')}")
    latest = await workflow.proofs.get_task_proof(task_id)
    print(f"  🔎 latest proof state: {latest.state.value if latest else None}")
    if latest is not None and latest.state is ProofState.PENDING:
        print_result("proof accept", await workflow.proofs.accept(latest.id))


async def scenario_3_flaky_processor(workflow: Workflow) -> None:
    banner("SCENARIO 3: Flaky Payment Processor — retry with backoff")
    task_id = await open_funded_task(workflow, "Fix the sink")
    submitted = await workflow.proofs.submit(task_id, WORKER, {"description": "fixed"})
    await workflow.tasks.transition(task_id, TaskState.PROOF_SUBMITTED)
    await workflow.proofs.accept(submitted.entity_id)
    print_result("escrow release", await workflow.escrow.transition(task_id, EscrowState.RELEASED))

    section("Draining while the processor fails twice")
    for _ in range(6):
        await drain_all(workflow, rounds=1)
        await asyncio.sleep(workflow.settings.job_backoff_base_ms * 4 / 1000)
    job = await workflow.queue.get_job(f"process_payout:{task_id}")
    print(f"  🔁 payout job: {job.status.value} after {job.attempts} attempt(s)")


async def scenario_4_dispute(workflow: Workflow) -> None:
    banner("SCENARIO 4: Dispute With Partial Refund")
    task_id = await open_funded_task(workflow, "Clean the garage", amount_cents=8000)
    print_result(
        "task dispute",
        await workflow.tasks.transition(
            task_id, TaskState.DISPUTED, {"reason": "half the garage untouched"}, actor=POSTER
        ),
    )
    print_result(
        "escrow lock",
        await workflow.escrow.transition(task_id, EscrowState.LOCKED_DISPUTE, actor=ADMIN),
    )
    print_result(
        "escrow partial refund",
        await workflow.escrow.transition(
            task_id,
            EscrowState.PARTIAL_REFUND,
            {"refund_amount_cents": 4000, "refund_id": "re_sim_001"},
            actor=ADMIN,
        ),
    )
    print_result(
        "task cancel",
        await workflow.tasks.transition(
            task_id, TaskState.CANCELLED, {"admin_id": ADMIN}, actor=ADMIN
        ),
    )
    print_result(
        "escrow release after refund",
        await workflow.escrow.transition(task_id, EscrowState.RELEASED),
    )
    await drain_all(workflow)
    await print_audit_trail(workflow, task_id)


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_duplicate_and_rejected,
    3: scenario_3_flaky_processor,
    4: scenario_4_dispute,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    settings = get_settings()
    if use_sqlite:
        db_path = Path(tempfile.mkdtemp(prefix="gigflow-")) / "simulation.db"
        settings = settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{db_path}", "job_backoff_base_ms": 50}
        )
    engine = create_engine(settings)
    await create_all(engine)
    workflow = build_workflow(
        settings,
        create_session_factory(engine),
        payment_processor=FlakyPaymentProcessor(failures=2 if scenario in (0, 3) else 0),
    )

    print("\n" + "🚀" * 35)
    print("  GIGFLOW — SIMULATION")
    print(f"  Database: {'SQLite (temp file)' if use_sqlite else settings.database_url}")
    print("🚀" * 35 + "\n")

    try:
        if scenario == 0:
            # Flaky processor first so its failures land on the scenario that expects them
            await scenario_3_flaky_processor(workflow)
            for num in (1, 2, 4):
                await SCENARIOS[num](workflow)
        elif scenario in SCENARIOS:
            await SCENARIOS[scenario](workflow)
        else:
            print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        print("\n" + "=" * 70)
        print("  ✅ SIMULATION FINISHED")
        print("=" * 70 + "\n")
    finally:
        await dispose(engine)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="gigflow simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of DATABASE_URL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
