"""SelfCorrection — validation, divergence classification and strategy choice.

Divergence thresholds (on similarity in [0, 1]):
    MATCH     > 0.95
    MINOR     >= 0.8
    MODERATE  >= 0.5
    CRITICAL  otherwise

The thresholds are process-wide settings.  classify_divergence() takes no
per-call overrides, so every call site classifies the same score the
same way.

Strategy selection:
    MATCH                          → no correction (terminal success)
    iteration >= max_iterations-1  → ACCEPT_PARTIAL
    MINOR                          → RETRY_ADJUSTED
    MODERATE, first occurrence     → RETRY_ADJUSTED
    MODERATE, repeated             → BACKTRACK_ALTERNATIVE
    CRITICAL                       → CLARIFY_REQUIREMENTS if ambiguous,
                                     else BACKTRACK_ALTERNATIVE

The loop itself (iterative_execute) runs as a LangGraph graph; see
backtrack_reason.graph.runner.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from backtrack_reason.config import settings
from backtrack_reason.domain.enums import CorrectionStrategy, Criticality, DivergenceLevel
from backtrack_reason.domain.errors import CallTimeoutError, ValidationError
from backtrack_reason.domain.verdict import Verdict
from backtrack_reason.core.dead_end_detector import content_hash
from backtrack_reason.core.similarity import extract_answer, reported_confidence, similarity_score
from backtrack_reason.foundation.invoke import call_injected

logger = logging.getLogger(__name__)

# Sentinel for "no expected value"; None is a legitimate expectation.
MISSING = object()

Validator = Callable[[Any], Any]

_AMBIGUITY_MARKERS = ("unclear", "ambiguous", "undefined", "missing")

DEFAULT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class DivergenceThresholds:
    match: float = 0.95
    minor: float = 0.8
    moderate: float = 0.5


_THRESHOLDS = DivergenceThresholds(
    match=settings.match_threshold,
    minor=settings.minor_threshold,
    moderate=settings.moderate_threshold,
)


# ── Classification ───────────────────────────────────────────────────────────

def classify_divergence(score: float) -> DivergenceLevel:
    """Map a similarity score to a divergence level."""
    if score > _THRESHOLDS.match:
        return DivergenceLevel.MATCH
    if score >= _THRESHOLDS.minor:
        return DivergenceLevel.MINOR
    if score >= _THRESHOLDS.moderate:
        return DivergenceLevel.MODERATE
    return DivergenceLevel.CRITICAL


def quality_score(result: Any, expected: Any = MISSING) -> float:
    """Blend the result's own confidence with how well it matches *expected*.

    The reported confidence defaults to 0.5 when absent.  With an expected
    value the score is the mean of confidence and match similarity;
    without one it is the confidence alone.
    """
    confidence = reported_confidence(result)
    if confidence is None:
        confidence = DEFAULT_CONFIDENCE
    if expected is MISSING:
        return confidence
    return (confidence + similarity_score(expected, extract_answer(result))) / 2


def quality_threshold_met(score: float, threshold: float = 0.7) -> bool:
    return score >= threshold


def adapt_threshold(base_threshold: float, criticality: Criticality | str | None) -> float:
    """Loosen the bar for low-criticality work, tighten it for high."""
    if criticality is None:
        return base_threshold
    level = Criticality(criticality)
    if level is Criticality.LOW:
        return max(0.5, base_threshold - 0.2)
    if level is Criticality.HIGH:
        return min(0.95, base_threshold + 0.2)
    return base_threshold


# ── Validation ───────────────────────────────────────────────────────────────

def interpret_verdict(verdict: Any) -> tuple[DivergenceLevel, str | None]:
    """Turn a validator's return value into (divergence, reason).

    Accepted forms: Verdict, bool, DivergenceLevel.  False counts as a
    CRITICAL rejection.

    Raises:
        ValidationError: On a rejection without divergence or an
            unrecognised value.
    """
    if isinstance(verdict, Verdict):
        if verdict.ok:
            return DivergenceLevel.MATCH, None
        if verdict.divergence is None:
            raise ValidationError(verdict.reason or "rejected without divergence")
        return verdict.divergence, verdict.reason
    if isinstance(verdict, bool):
        return (DivergenceLevel.MATCH, None) if verdict else (DivergenceLevel.CRITICAL, "rejected")
    if isinstance(verdict, DivergenceLevel):
        return verdict, None
    raise ValidationError(f"unrecognised validator result {verdict!r}")


def validate_outcome(
    expected: Any,
    actual: Any,
    validator: Validator | None = None,
) -> DivergenceLevel:
    """Classify how far *actual* diverges from *expected*.

    A custom *validator* replaces the default comparison.  It must be
    synchronous here; the loops accept coroutine validators too.

    Raises:
        ValidationError: If the validator raises or cannot judge the result.
    """
    if validator is None:
        return _default_divergence(expected, actual)
    try:
        verdict = validator(actual)
    except ValidationError:
        raise
    except Exception as exc:
        raise ValidationError(f"{type(exc).__name__}: {exc}") from exc
    if inspect.isawaitable(verdict):
        verdict.close()
        raise ValidationError("coroutine validator used in synchronous validation")
    divergence, _ = interpret_verdict(verdict)
    return divergence


def _default_divergence(expected: Any, actual: Any) -> DivergenceLevel:
    if expected is MISSING:
        return classify_divergence(quality_score(actual))
    return classify_divergence(similarity_score(expected, extract_answer(actual)))


# ── Strategy selection ───────────────────────────────────────────────────────

def ambiguous_requirements(reasons: Sequence[str | None]) -> bool:
    """True when any failure reason suggests the task itself is unclear."""
    for reason in reasons:
        if reason and any(marker in reason.lower() for marker in _AMBIGUITY_MARKERS):
            return True
    return False


def choose_strategy(
    divergence: DivergenceLevel,
    iteration: int,
    max_iterations: int,
    repeated: bool,
    ambiguous: bool,
) -> CorrectionStrategy | None:
    """Deterministic core of strategy selection (zero-based *iteration*)."""
    if divergence is DivergenceLevel.MATCH:
        return None
    if iteration >= max_iterations - 1:
        return CorrectionStrategy.ACCEPT_PARTIAL
    if divergence is DivergenceLevel.MINOR:
        return CorrectionStrategy.RETRY_ADJUSTED
    if divergence is DivergenceLevel.MODERATE:
        return CorrectionStrategy.BACKTRACK_ALTERNATIVE if repeated else CorrectionStrategy.RETRY_ADJUSTED
    if ambiguous:
        return CorrectionStrategy.CLARIFY_REQUIREMENTS
    return CorrectionStrategy.BACKTRACK_ALTERNATIVE


def select_correction_strategy(
    divergence: DivergenceLevel,
    history: Sequence[Any] = (),
    *,
    iteration: int | None = None,
    max_iterations: int = 3,
    reason: str | None = None,
    ambiguous: bool | None = None,
) -> CorrectionStrategy | None:
    """Pick the next correction from the divergence and prior attempts.

    *history* holds earlier attempt records (mappings with ``divergence``
    and optionally ``reason``), oldest first, excluding the current one.
    *iteration* defaults to the number of earlier attempts.
    """
    records = [h for h in history if isinstance(h, Mapping)]
    if iteration is None:
        iteration = len(records)
    prior_levels = [_as_level(r.get("divergence")) for r in records]
    prior_reasons = [r.get("reason") for r in records]
    repeated = DivergenceLevel.MODERATE in prior_levels or (
        reason is not None and reason in prior_reasons
    )
    if ambiguous is None:
        ambiguous = ambiguous_requirements([*prior_reasons, reason])
    return choose_strategy(divergence, iteration, max_iterations, repeated, ambiguous)


def _as_level(value: Any) -> DivergenceLevel | None:
    if value is None:
        return None
    try:
        return DivergenceLevel(value)
    except ValueError:
        return None


# ── Attempt evaluation ───────────────────────────────────────────────────────

async def evaluate_attempt(
    generate_fn: Callable[..., Any],
    state: Mapping[str, Any],
    opts: Mapping[str, Any],
    *,
    attempt: int,
    expected: Any = MISSING,
    validator: Validator | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Run one generation and judge it.

    Returns an attempt record.  A timed-out generation is recorded as a
    CRITICAL divergence without a result, so it can be retried.

    Raises:
        ValidationError: If the validator raises or cannot judge the result.
    """
    try:
        result = await call_injected(generate_fn, dict(state), dict(opts), timeout=timeout, label="generate_fn")
    except CallTimeoutError:
        return {
            "attempt": attempt,
            "produced": False,
            "result": None,
            "divergence": DivergenceLevel.CRITICAL,
            "quality": 0.0,
            "reason": "timeout",
            "error": "timeout",
            "state_hash": None,
        }

    if validator is None:
        divergence = _default_divergence(expected, result)
        reason = None
    else:
        try:
            verdict = await call_injected(validator, result, label="validator")
        except ValidationError:
            raise
        except Exception as exc:
            raise ValidationError(f"{type(exc).__name__}: {exc}") from exc
        divergence, reason = interpret_verdict(verdict)

    record: dict[str, Any] = {
        "attempt": attempt,
        "produced": True,
        "result": result,
        "divergence": divergence,
        "quality": quality_score(result, expected),
        "reason": reason,
        "state_hash": content_hash(result),
    }
    if isinstance(result, Mapping):
        for key in ("confidence", "progress", "failure_signature", "error", "constraint_violated"):
            if key in result:
                record[key] = result[key]
    logger.debug(
        "Attempt %d: divergence=%s quality=%.3f",
        attempt, divergence.value, record["quality"],
    )
    return record


def is_success(record: Mapping[str, Any], threshold: float) -> bool:
    """An attempt succeeds on MATCH, or on quality unless a validator rejected it."""
    if not record.get("produced"):
        return False
    if record["divergence"] is DivergenceLevel.MATCH:
        return True
    return record.get("reason") is None and quality_threshold_met(record["quality"], threshold)


class SelfCorrection:
    """Convenience facade binding loop defaults to the correction functions."""

    def __init__(
        self,
        max_iterations: int | None = None,
        quality_threshold: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self.max_iterations = max_iterations or settings.max_iterations
        self.quality_threshold = quality_threshold if quality_threshold is not None else settings.quality_threshold
        self.timeout = timeout if timeout is not None else settings.call_timeout_seconds

    validate_outcome = staticmethod(validate_outcome)
    classify_divergence = staticmethod(classify_divergence)
    quality_score = staticmethod(quality_score)
    adapt_threshold = staticmethod(adapt_threshold)

    def select_correction_strategy(
        self,
        divergence: DivergenceLevel,
        history: Sequence[Any] = (),
        **kwargs: Any,
    ) -> CorrectionStrategy | None:
        kwargs.setdefault("max_iterations", self.max_iterations)
        return select_correction_strategy(divergence, history, **kwargs)

    async def iterative_execute(self, generate_fn: Callable[..., Any], **kwargs: Any):
        from backtrack_reason.graph.runner import iterative_execute

        kwargs.setdefault("max_iterations", self.max_iterations)
        kwargs.setdefault("quality_threshold", self.quality_threshold)
        kwargs.setdefault("timeout", self.timeout)
        return await iterative_execute(generate_fn, **kwargs)
