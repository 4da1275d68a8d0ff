"""Reward ledger: points credited to a worker for a released task.

credit() is the side effect behind the award_reward job. The ledger has a
unique row per task, so a repeated credit is a no-op.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gigflow.domain.enums import EscrowState
from gigflow.domain.exceptions import SideEffectError
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.money import base_reward_points
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import EscrowRepository, LedgerRepository
from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


@dataclass(frozen=True)
class RewardCredit:
    task_id: uuid.UUID
    worker_id: str
    points: int
    already_awarded: bool = False


class RewardLedger:
    """Credits reward points exactly once per task."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def credit(self, task_id: uuid.UUID, worker_id: str) -> RewardCredit:
        """Credit the worker for a task whose escrow has been released.

        Raises:
            SideEffectError: The escrow is missing or not released (the job retries).
        """
        async with session_scope(self._session_factory) as session:
            escrow = await EscrowRepository(session).get_by_task(task_id)
            if escrow is None or escrow.state is not EscrowState.RELEASED:
                raise SideEffectError(
                    f"Cannot award reward: escrow for task {task_id} not released"
                )

            points = base_reward_points(escrow.amount_cents)
            ledger = LedgerRepository(session)
            inserted = await ledger.add_reward_if_absent(
                {
                    "id": uuid.uuid4(),
                    "task_id": task_id,
                    "worker_id": worker_id,
                    "points": points,
                    "amount_cents": escrow.amount_cents,
                    "created_at": self._clock(),
                }
            )
            if not inserted:
                existing = await ledger.get_reward(task_id)
                logger.info("reward.already_awarded", task_id=str(task_id), worker_id=worker_id)
                return RewardCredit(
                    task_id=task_id,
                    worker_id=existing.worker_id if existing else worker_id,
                    points=existing.points if existing else points,
                    already_awarded=True,
                )

        logger.info("reward.credited", task_id=str(task_id), worker_id=worker_id, points=points)
        return RewardCredit(task_id=task_id, worker_id=worker_id, points=points)

    async def balance(self, worker_id: str) -> int:
        async with self._session_factory() as session:
            return await LedgerRepository(session).total_points(worker_id)
