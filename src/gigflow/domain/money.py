"""Integer minor-unit money arithmetic.

Amounts are cents (or the currency's minor unit) held in plain ints, so
every fee and payout split is exact. Fees round down; the worker keeps
the remainder.
"""

from __future__ import annotations

from dataclasses import dataclass

BPS_DENOMINATOR = 10_000
MIN_REWARD_POINTS = 10


@dataclass(frozen=True)
class PayoutSplit:
    gross_cents: int
    fee_cents: int
    net_cents: int


def split_payout(amount_cents: int, fee_bps: int) -> PayoutSplit:
    """Split an escrowed amount into platform fee and worker payout."""
    if amount_cents <= 0:
        raise ValueError(f"amount_cents must be positive, got {amount_cents}")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be within 0..{BPS_DENOMINATOR}, got {fee_bps}")
    fee = amount_cents * fee_bps // BPS_DENOMINATOR
    return PayoutSplit(gross_cents=amount_cents, fee_cents=fee, net_cents=amount_cents - fee)


def base_reward_points(amount_cents: int) -> int:
    """Reward points for a released task: one per whole currency unit, minimum 10."""
    return max(MIN_REWARD_POINTS, amount_cents // 100)
