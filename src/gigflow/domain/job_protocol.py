"""Job Handler Protocol.

Defines the interface that every side-effect handler must implement.
This is a Protocol (structural subtyping) so concrete handlers don't need
to inherit from a base class; they just need to match the shape.

The domain layer has ZERO imports from SQLAlchemy, Redis or any
payment processor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


def utc_now() -> datetime:
    """Default clock used by every component."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job row taken at claim time.

    Attributes:
        id: Caller-supplied or derived dedupe key.
        type: JobType value.
        payload: JSON payload stored with the job.
        attempts: Attempt counter after the claim incremented it.
        max_attempts: Ceiling after which the job goes dead.
        locked_by: Worker that holds the claim.
    """

    id: str
    type: str
    payload: dict = field(default_factory=dict)
    attempts: int = 1
    max_attempts: int = 5
    locked_by: str | None = None


@runtime_checkable
class JobHandler(Protocol):
    """Protocol that all job handler implementations must satisfy.

    Concrete implementations live in gigflow/jobs/handlers.py. Every
    implementation must be safe to run more than once with the same
    payload: the queue is at-least-once.
    """

    async def handle(self, job: ClaimedJob) -> None:
        """Execute the side effect. Raising marks the attempt as failed."""
        ...
