"""DeadEndDetection — verdict of the dead-end heuristics on one attempt."""

from __future__ import annotations

from pydantic import BaseModel, Field

from backtrack_reason.domain.enums import DeadEndReason


class DeadEndDetection(BaseModel):
    is_dead_end: bool = False
    reasons: tuple[DeadEndReason, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    model_config = {"frozen": True}
