"""Verdict — what a custom validator reports about one attempt.

A validator either accepts the result or rejects it with a reason and a
divergence level.  A rejection without a divergence means the validator
could not judge the result at all; the loop treats that as a
ValidationError.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from backtrack_reason.domain.enums import DivergenceLevel


class Verdict(BaseModel):
    ok: bool
    value: Any = None
    reason: str | None = None
    divergence: DivergenceLevel | None = None

    model_config = {"frozen": True}

    @classmethod
    def accept(cls, value: Any = None) -> Verdict:
        return cls(ok=True, value=value, divergence=DivergenceLevel.MATCH)

    @classmethod
    def reject(cls, reason: str, divergence: DivergenceLevel | None = None) -> Verdict:
        return cls(ok=False, reason=reason, divergence=divergence)
