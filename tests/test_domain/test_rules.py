"""Tests for the pure business rules: money, evidence quality, trust tiers, backoff."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from gigflow.collaborators.trust import compute_tier
from gigflow.domain.enums import ErrorKind, JobType, ProofQuality, TrustTier
from gigflow.domain.evidence import calculate_quality
from gigflow.domain.exceptions import ConflictRetryError, DuplicateActiveProofError
from gigflow.domain.money import base_reward_points, split_payout
from gigflow.domain.results import OperationResult
from gigflow.jobs.queue import backoff_delay
from gigflow.schemas.jobs import validate_payload


class TestSplitPayout:
    def test_fee_and_net_sum_to_gross(self) -> None:
        split = split_payout(5000, 1500)
        assert split.fee_cents == 750
        assert split.net_cents == 4250
        assert split.fee_cents + split.net_cents == split.gross_cents

    def test_fee_rounds_down(self) -> None:
        split = split_payout(333, 1500)
        assert split.fee_cents == 49
        assert split.net_cents == 284

    def test_zero_fee(self) -> None:
        assert split_payout(100, 0).net_cents == 100

    @pytest.mark.parametrize("amount", [0, -5])
    def test_rejects_non_positive_amount(self, amount: int) -> None:
        with pytest.raises(ValueError, match="amount_cents"):
            split_payout(amount, 1500)

    def test_rejects_out_of_range_fee(self) -> None:
        with pytest.raises(ValueError, match="fee_bps"):
            split_payout(100, 10_001)


class TestRewardPoints:
    def test_one_point_per_unit(self) -> None:
        assert base_reward_points(5000) == 50

    def test_minimum(self) -> None:
        assert base_reward_points(150) == 10


class TestProofQuality:
    def test_text_only_is_basic(self) -> None:
        assert calculate_quality("done", 0) is ProofQuality.BASIC

    def test_one_photo_is_standard(self) -> None:
        assert calculate_quality("done", 1) is ProofQuality.STANDARD

    def test_before_after_with_detail_is_comprehensive(self) -> None:
        description = "x" * 51
        assert calculate_quality(description, 2, True) is ProofQuality.COMPREHENSIVE

    def test_short_description_caps_at_standard(self) -> None:
        assert calculate_quality("x" * 50, 2, True) is ProofQuality.STANDARD

    def test_threshold_is_configurable(self) -> None:
        assert calculate_quality("x" * 11, 2, True, detail_threshold=10) is (
            ProofQuality.COMPREHENSIVE
        )


class TestTrustTiers:
    @pytest.mark.parametrize(
        ("completed", "disputed", "tier"),
        [
            (0, 0, TrustTier.ROOKIE),
            (4, 0, TrustTier.ROOKIE),
            (5, 0, TrustTier.VERIFIED),
            (20, 3, TrustTier.TRUSTED),
            (100, 0, TrustTier.ELITE),
            (100, 1, TrustTier.TRUSTED),
            (200, 1, TrustTier.ELITE),
        ],
    )
    def test_ladder(self, completed: int, disputed: int, tier: TrustTier) -> None:
        assert compute_tier(completed, disputed) is tier


class TestBackoff:
    def test_doubles_per_attempt(self) -> None:
        assert backoff_delay(1, 1000) == timedelta(seconds=1)
        assert backoff_delay(2, 1000) == timedelta(seconds=2)
        assert backoff_delay(4, 1000) == timedelta(seconds=8)

    def test_zero_attempts_uses_base(self) -> None:
        assert backoff_delay(0, 250) == timedelta(milliseconds=250)


class TestOperationResult:
    def test_failure_carries_kind_and_state(self) -> None:
        result = OperationResult.failure(
            ConflictRetryError("task", "t-1", current_state="accepted"), "t-1"
        )
        assert not result.ok
        assert result.kind is ErrorKind.CONFLICT_RETRY
        assert result.previous_state == result.new_state == "accepted"

    def test_to_dict(self) -> None:
        result = OperationResult.failure(DuplicateActiveProofError("t-1"), "t-1")
        body = result.to_dict()
        assert body["error"] == "DUPLICATE_ACTIVE_PROOF"
        assert body["ok"] is False


class TestJobPayloads:
    def test_normalises_to_json(self) -> None:
        body = validate_payload(
            JobType.AWARD_REWARD,
            {"task_id": "12345678-1234-5678-1234-567812345678", "worker_id": "w"},
        )
        assert body == {"task_id": "12345678-1234-5678-1234-567812345678", "worker_id": "w"}

    def test_extra_fields_are_refused(self) -> None:
        with pytest.raises(ValidationError):
            validate_payload(JobType.RECOMPUTE_TRUST, {"worker_id": "w", "force": True})

    def test_expire_batch_defaults(self) -> None:
        assert validate_payload(JobType.EXPIRE_PROOFS, {}) == {"batch_size": 100}
