"""Candidate — an alternative reasoning state proposed by the path explorer."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from backtrack_reason.domain.enums import VariationStrategy


class Candidate(BaseModel):
    state: dict[str, Any]
    variation: VariationStrategy
    round: int = Field(default=0, ge=0, description="Variation round that produced it")
    diversity: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Minimum diversity from every failed path (1.0 if none failed)",
    )

    model_config = {"frozen": True}
