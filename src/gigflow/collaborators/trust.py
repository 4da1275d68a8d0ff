"""Worker trust tiers.

Tier ladder by completed tasks:

    rookie   < 5
    verified >= 5
    trusted  >= 20
    elite    >= 100 with a dispute rate below 1%

Recompute is upgrade-only and rate-limited per worker by a Redis
cooldown key, so a burst of completions triggers one recount.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from gigflow.domain.enums import TrustTier
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.results import OperationResult
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import LedgerRepository, TaskRepository
from gigflow.infrastructure.redis_client import acquire_cooldown, cooldown_key, release_cooldown
from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings

logger = get_logger(__name__)

VERIFIED_MIN_COMPLETED = 5
TRUSTED_MIN_COMPLETED = 20
ELITE_MIN_COMPLETED = 100
ELITE_MAX_DISPUTE_RATE = 0.01


def compute_tier(completed: int, disputed: int) -> TrustTier:
    if completed >= ELITE_MIN_COMPLETED and disputed / completed < ELITE_MAX_DISPUTE_RATE:
        return TrustTier.ELITE
    if completed >= TRUSTED_MIN_COMPLETED:
        return TrustTier.TRUSTED
    if completed >= VERIFIED_MIN_COMPLETED:
        return TrustTier.VERIFIED
    return TrustTier.ROOKIE


class TrustTierService:
    """Recomputes a worker's tier from their task history."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        redis: aioredis.Redis | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._redis = redis
        self._clock = clock

    async def recompute(self, worker_id: str) -> OperationResult:
        """Recount and upgrade the worker's tier.

        data["skipped"] is True when the cooldown is live; data["upgraded"]
        is True when the stored tier moved up. A failed recount drops the
        cooldown again so the job's retry is not skipped.
        """
        cooldown = None
        if self._redis is not None:
            key = cooldown_key("trust", worker_id)
            ttl = self._settings.trust_recompute_cooldown_seconds
            if not await acquire_cooldown(self._redis, key, ttl):
                logger.info("trust.recompute_skipped", worker_id=worker_id, reason="cooldown")
                return OperationResult.success(worker_id, None, None, skipped=True, upgraded=False)
            cooldown = key

        try:
            current, new_tier, completed, disputed = await self._recount(worker_id)
        except Exception:
            if cooldown is not None:
                await release_cooldown(self._redis, cooldown)
                logger.warning("trust.cooldown_released", worker_id=worker_id)
            raise

        upgraded = new_tier > current
        if upgraded:
            logger.info(
                "trust.tier_upgraded",
                worker_id=worker_id,
                from_tier=current.name,
                to_tier=new_tier.name,
                completed=completed,
            )
        else:
            logger.debug("trust.tier_unchanged", worker_id=worker_id, tier=new_tier.name)
        return OperationResult.success(
            worker_id,
            current.name.lower(),
            new_tier.name.lower(),
            skipped=False,
            upgraded=upgraded,
            completed=completed,
            disputed=disputed,
        )

    async def _recount(self, worker_id: str) -> tuple[TrustTier, TrustTier, int, int]:
        async with session_scope(self._session_factory) as session:
            tasks = TaskRepository(session)
            completed = await tasks.count_completed_for_worker(worker_id)
            disputed = await tasks.count_disputed_for_worker(worker_id)
            computed = compute_tier(completed, disputed)

            ledger = LedgerRepository(session)
            current_row = await ledger.get_trust(worker_id)
            current = TrustTier(current_row.tier) if current_row else TrustTier.ROOKIE
            new_tier = max(current, computed)
            await ledger.upsert_trust(
                worker_id,
                tier=new_tier,
                completed=completed,
                disputed=disputed,
                at=self._clock(),
            )
        return current, new_tier, completed, disputed
