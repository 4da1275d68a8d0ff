"""Read models returned by the pure-read operations.

These schemas are separate from the ORM models so callers never hold a
live mapped instance outside the session that loaded it.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from gigflow.domain.enums import (
    EscrowState,
    JobStatus,
    ProofQuality,
    ProofState,
    TaskState,
)


class TaskView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    poster_id: str
    assigned_worker_id: str | None
    title: str
    description: str | None
    amount_cents: int
    state: TaskState
    deadline_at: datetime | None
    accepted_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class EscrowView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: uuid.UUID
    state: EscrowState
    amount_cents: int
    version: int
    payment_intent_id: str | None
    transfer_id: str | None
    refund_id: str | None
    refund_amount_cents: int | None
    released_at: datetime | None
    recovery_attempts: int


class ProofView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    task_id: uuid.UUID
    worker_id: str
    state: ProofState
    quality: ProofQuality
    description: str
    media_urls: list[str]
    has_before_after: bool
    expires_at: datetime
    rejection_reason: str | None
    reviewed_by: str | None
    created_at: datetime


class TransitionView(BaseModel):
    """One row of a transition log."""

    model_config = ConfigDict(from_attributes=True)

    from_state: str | None
    to_state: str
    actor: str
    context: dict | None = None
    created_at: datetime


class JobView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    payload: dict
    status: JobStatus
    attempts: int
    max_attempts: int
    priority: int
    last_error: str | None
    scheduled_at: datetime
    completed_at: datetime | None


class JobStats(BaseModel):
    """Operator-facing queue counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    total: int = Field(default=0, description="Sum over all statuses")
