"""Pydantic schemas: evidence input, job payloads and read models."""

from gigflow.schemas.evidence import ProofEvidence
from gigflow.schemas.jobs import (
    PAYLOAD_MODELS,
    AwardRewardPayload,
    ExpireProofsPayload,
    ProcessPayoutPayload,
    RecomputeTrustPayload,
    SendNotificationPayload,
    validate_payload,
)
from gigflow.schemas.views import (
    EscrowView,
    JobStats,
    JobView,
    ProofView,
    TaskView,
    TransitionView,
)

__all__ = [
    "PAYLOAD_MODELS",
    "AwardRewardPayload",
    "EscrowView",
    "ExpireProofsPayload",
    "JobStats",
    "JobView",
    "ProcessPayoutPayload",
    "ProofEvidence",
    "ProofView",
    "RecomputeTrustPayload",
    "SendNotificationPayload",
    "TaskView",
    "TransitionView",
    "validate_payload",
]
