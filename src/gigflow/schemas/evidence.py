"""Pydantic schema for proof evidence submitted by a worker."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProofEvidence(BaseModel):
    """Completion evidence attached to a proof submission."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(
        default="",
        max_length=10_000,
        description="Free-text account of the work performed",
    )
    media_urls: list[str] = Field(
        default_factory=list,
        max_length=20,
        description="References to uploaded photos or videos",
    )
    has_before_after: bool = Field(
        default=False,
        description="Whether the media includes before and after shots",
    )

    @property
    def media_count(self) -> int:
        return len(self.media_urls)
