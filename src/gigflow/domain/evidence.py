"""Proof evidence quality tiers.

The tier is advisory metadata stored with the submission; it never gates
a transition.
"""

from __future__ import annotations

from gigflow.domain.enums import ProofQuality

DEFAULT_DETAIL_THRESHOLD = 50


def calculate_quality(
    description: str | None,
    media_count: int,
    has_before_after: bool = False,
    detail_threshold: int = DEFAULT_DETAIL_THRESHOLD,
) -> ProofQuality:
    """Derive the quality tier of a proof.

    comprehensive: before/after media, at least two media items and a
        description longer than detail_threshold characters.
    standard: at least one media item.
    basic: text only.
    """
    detailed = len(description or "") > detail_threshold
    if has_before_after and detailed and media_count >= 2:
        return ProofQuality.COMPREHENSIVE
    if media_count >= 1:
        return ProofQuality.STANDARD
    return ProofQuality.BASIC
