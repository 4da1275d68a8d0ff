"""Redis client for the trust-recompute cooldown guard.

Usage:
    from gigflow.infrastructure.redis_client import create_redis, acquire_cooldown

    redis = await create_redis(settings)
    if await acquire_cooldown(redis, f"trust:cooldown:{worker_id}", 300):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from gigflow.config import Settings

logger = get_logger(__name__)


async def create_redis(settings: Settings) -> aioredis.Redis:
    """Create a Redis client and verify connectivity."""
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return client


async def close_redis(client: aioredis.Redis) -> None:
    """Close the Redis connection. Called during worker shutdown."""
    await client.aclose()
    logger.info("redis.disconnected")


# --- Cooldown Helpers ---


def cooldown_key(scope: str, subject: str) -> str:
    return f"{scope}:cooldown:{subject}"


async def acquire_cooldown(client: aioredis.Redis, key: str, ttl_seconds: int) -> bool:
    """Atomically claim a cooldown window (SET NX EX).

    Returns True if the caller may proceed, False while a previous claim
    is still live.
    """
    return bool(await client.set(key, "1", nx=True, ex=ttl_seconds))


async def release_cooldown(client: aioredis.Redis, key: str) -> None:
    """Drop a cooldown claim so the next call may proceed immediately."""
    await client.delete(key)
