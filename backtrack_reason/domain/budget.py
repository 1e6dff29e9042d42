"""Budget — the finite unit count shared by every exploration branch.

Units sit in exactly one of four pools: ``remaining`` (freely consumable),
``reserved_priority`` (only via priority draws), per-level earmarks in
``level_allocations``, or ``used``.  The pools never sum past ``total``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class Budget(BaseModel):
    """Immutable budget state; transitions live in core.budget_manager."""

    total: int = Field(..., ge=0, description="Units granted for the whole run")
    remaining: int = Field(..., ge=0, description="Units available to consume")
    reserved_priority: int = Field(default=0, ge=0, description="Units held back for priority draws")
    used: int = Field(default=0, ge=0, description="Units already consumed")
    level_allocations: dict[int, int] = Field(
        default_factory=dict,
        description="Units earmarked per search depth, not yet consumed",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _conserved(self) -> Budget:
        if self.accounted > self.total:
            raise ValueError(
                f"Budget pools ({self.accounted}) exceed total ({self.total})"
            )
        return self

    @property
    def allocated(self) -> int:
        return sum(self.level_allocations.values())

    @property
    def accounted(self) -> int:
        return self.remaining + self.used + self.reserved_priority + self.allocated
