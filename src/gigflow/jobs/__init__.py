"""Durable job queue and the side-effect handlers it dispatches to."""

from gigflow.jobs.handlers import (
    AwardRewardHandler,
    ExpireProofsHandler,
    HandlerRegistry,
    ProcessPayoutHandler,
    RecomputeTrustHandler,
    SendNotificationHandler,
)
from gigflow.jobs.queue import JobQueue, backoff_delay, default_job_id

__all__ = [
    "AwardRewardHandler",
    "ExpireProofsHandler",
    "HandlerRegistry",
    "JobQueue",
    "ProcessPayoutHandler",
    "RecomputeTrustHandler",
    "SendNotificationHandler",
    "backoff_delay",
    "default_job_id",
]
