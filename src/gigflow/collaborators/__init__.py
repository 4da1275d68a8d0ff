"""Outbound collaborators called by job handlers. Each call is idempotent."""

from gigflow.collaborators.notifications import NotificationDispatcher
from gigflow.collaborators.payments import (
    PaymentProcessor,
    PayoutOutcome,
    PayoutService,
    SimulatedPaymentProcessor,
)
from gigflow.collaborators.rewards import RewardCredit, RewardLedger
from gigflow.collaborators.trust import TrustTierService, compute_tier

__all__ = [
    "NotificationDispatcher",
    "PaymentProcessor",
    "PayoutOutcome",
    "PayoutService",
    "RewardCredit",
    "RewardLedger",
    "SimulatedPaymentProcessor",
    "TrustTierService",
    "compute_tier",
]
