"""Terminal results of a reasoning run.

Every loop ends in exactly one of Success, PartialSuccess or Failure.
Callers must handle all three; PartialSuccess is not a success.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from backtrack_reason.domain.enums import ErrorKind, OutcomeStatus


class Success(BaseModel):
    status: Literal[OutcomeStatus.SUCCESS] = OutcomeStatus.SUCCESS
    value: Any = None
    iterations: int = Field(default=0, ge=0, description="Attempts made before success")

    model_config = {"frozen": True}


class PartialSuccess(BaseModel):
    """Best candidate found when the run stopped short of success."""

    status: Literal[OutcomeStatus.PARTIAL] = OutcomeStatus.PARTIAL
    best: Any = None
    reason: str = Field(..., description="Why the run stopped, e.g. budget_exhausted")
    iterations: int = Field(default=0, ge=0)

    model_config = {"frozen": True}


class Failure(BaseModel):
    status: Literal[OutcomeStatus.FAILURE] = OutcomeStatus.FAILURE
    kind: ErrorKind
    context: dict[str, Any] = Field(default_factory=dict)
    iterations: int = Field(default=0, ge=0)

    model_config = {"frozen": True}


Outcome = Annotated[Union[Success, PartialSuccess, Failure], Field(discriminator="status")]


def is_success(outcome: Success | PartialSuccess | Failure) -> bool:
    return outcome.status is OutcomeStatus.SUCCESS


def is_partial(outcome: Success | PartialSuccess | Failure) -> bool:
    return outcome.status is OutcomeStatus.PARTIAL


def is_failure(outcome: Success | PartialSuccess | Failure) -> bool:
    return outcome.status is OutcomeStatus.FAILURE
