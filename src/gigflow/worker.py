"""Job worker entry point.

Each cycle:
    1. Return jobs orphaned by a crashed worker to pending.
    2. Every sweep interval, enqueue the proof-expiry sweep (one job per
       minute key) and re-arm stuck escrow releases.
    3. Drain due jobs; sleep for the poll interval when nothing was due.

A store or network error aborts only the current cycle: it is logged as
worker.cycle_failed and the next cycle starts after the poll interval.

Run with:
    python -m gigflow.worker
    python -m gigflow.worker --sqlite --max-cycles 10
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from typing import TYPE_CHECKING

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from gigflow.app import build_workflow
from gigflow.config import Settings, get_settings
from gigflow.domain.enums import JobType
from gigflow.infrastructure.database.engine import (
    create_all,
    create_engine,
    create_session_factory,
    dispose,
)
from gigflow.infrastructure.redis_client import close_redis, create_redis
from gigflow.logging_config import configure_logging, get_logger

if TYPE_CHECKING:
    from gigflow.app import Workflow

logger = get_logger(__name__)


async def run_worker(
    workflow: Workflow,
    *,
    worker_id: str | None = None,
    max_cycles: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> int:
    """Run drain cycles until stopped. Returns the number of jobs processed."""
    settings = workflow.settings
    worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
    loop = asyncio.get_running_loop()
    next_sweep = loop.time()
    cycles = processed = 0

    logger.info("worker.started", worker_id=worker_id, max_cycles=max_cycles)
    while max_cycles is None or cycles < max_cycles:
        if stop_event is not None and stop_event.is_set():
            break
        cycles += 1

        try:
            await workflow.queue.recover_stale()

            if loop.time() >= next_sweep:
                minute_key = workflow.clock().strftime("%Y%m%d%H%M")
                await workflow.queue.enqueue(
                    JobType.EXPIRE_PROOFS,
                    {},
                    job_id=f"expire_proofs:{minute_key}",
                )
                await workflow.escrow.recover_released()
                next_sweep = loop.time() + settings.worker_expiry_sweep_interval_seconds

            report = await workflow.queue.drain(worker_id=worker_id)
        except (SQLAlchemyError, OSError):
            logger.error("worker.cycle_failed", worker_id=worker_id, cycle=cycles, exc_info=True)
            await asyncio.sleep(settings.worker_poll_interval_seconds)
            continue

        processed += report.claimed
        if report.claimed == 0 and (max_cycles is None or cycles < max_cycles):
            await asyncio.sleep(settings.worker_poll_interval_seconds)

    logger.info("worker.stopped", worker_id=worker_id, cycles=cycles, processed=processed)
    return processed


async def _main(settings: Settings, args: argparse.Namespace) -> None:
    engine = create_engine(settings)
    if settings.is_development:
        await create_all(engine)

    redis = None
    try:
        redis = await create_redis(settings)
    except (RedisError, OSError) as exc:
        logger.warning("worker.redis_unavailable", error=str(exc), effect="trust cooldown disabled")

    workflow = build_workflow(settings, create_session_factory(engine), redis=redis)
    try:
        await run_worker(workflow, worker_id=args.worker_id, max_cycles=args.max_cycles)
    finally:
        if redis is not None:
            await close_redis(redis)
        await dispose(engine)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="gigflow job worker")
    parser.add_argument(
        "--sqlite",
        metavar="PATH",
        nargs="?",
        const="gigflow.db",
        help="Use a local SQLite database file instead of DATABASE_URL",
    )
    parser.add_argument("--worker-id", default=None, help="Identifier recorded on claimed jobs")
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Exit after this many drain cycles (default: run forever)",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.sqlite:
        settings = settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{args.sqlite}"}
        )
    configure_logging(settings)

    try:
        asyncio.run(_main(settings, args))
    except KeyboardInterrupt:
        logger.info("worker.interrupted")


if __name__ == "__main__":
    main()
