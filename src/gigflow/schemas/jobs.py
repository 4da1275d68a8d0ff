"""Pydantic payload schemas for each job type.

Payloads are validated when a job is enqueued and parsed again by the
handler, so a malformed payload is refused at the producer and never
reaches a worker.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field

from gigflow.domain.enums import JobType


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AwardRewardPayload(_Payload):
    task_id: uuid.UUID
    worker_id: str = Field(..., min_length=1)


class ProcessPayoutPayload(_Payload):
    task_id: uuid.UUID
    worker_id: str = Field(..., min_length=1)


class SendNotificationPayload(_Payload):
    recipient_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, max_length=40)
    title: str = Field(default="", max_length=200)
    body: str = ""
    data: dict = Field(default_factory=dict)
    dedupe_key: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="A second dispatch with the same key is ignored",
    )


class RecomputeTrustPayload(_Payload):
    worker_id: str = Field(..., min_length=1)


class ExpireProofsPayload(_Payload):
    batch_size: int = Field(default=100, ge=1, le=1000)


PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.AWARD_REWARD: AwardRewardPayload,
    JobType.PROCESS_PAYOUT: ProcessPayoutPayload,
    JobType.SEND_NOTIFICATION: SendNotificationPayload,
    JobType.RECOMPUTE_TRUST: RecomputeTrustPayload,
    JobType.EXPIRE_PROOFS: ExpireProofsPayload,
}


def validate_payload(job_type: JobType, payload: dict | BaseModel) -> dict:
    """Validate a payload for its job type and return its JSON form.

    Raises:
        pydantic.ValidationError: The payload does not match the schema.
    """
    model = PAYLOAD_MODELS[job_type]
    if isinstance(payload, model):
        return payload.model_dump(mode="json")
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return model.model_validate(payload).model_dump(mode="json")
