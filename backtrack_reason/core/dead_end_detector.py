"""DeadEndDetector — decides when a reasoning branch cannot recover.

Heuristics (each toggleable through DetectionOptions):
    - Repeated failure:   the same failure signature appears at least
                          ``repeat_threshold`` times in the recent window.
    - Circular reasoning: the current state hash was already seen two or
                          more steps back (needs three or more entries).
    - Low confidence:     the reported confidence is below
                          ``confidence_threshold``.  No confidence, no flag.
    - Stalled progress:   the progress metric over the last
                          ``stall_window`` attempts never beats the value
                          seen just before the window.
    - Constraint violation: ``constraint_violated`` is truthy.
    - Custom predicate:   caller-supplied, OR'd with the built-ins.

History is chronological, oldest first.  Entries that are not mappings
are dropped before any comparison.

Detection confidence:
    confidence = min(0.25 * triggered, 1.0)
               + 0.2 if a constraint, circularity or custom flag fired
    capped at 1.0.  Adding triggered heuristics never lowers it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from backtrack_reason.domain.detection import DeadEndDetection
from backtrack_reason.domain.enums import DeadEndReason
from backtrack_reason.foundation.hashing import state_hash

logger = logging.getLogger(__name__)

ProgressFn = Callable[[Mapping[str, Any]], "float | None"]
DeadEndPredicate = Callable[[Any, Sequence[Mapping[str, Any]]], bool]

_CRITICAL_REASONS = frozenset({
    DeadEndReason.CONSTRAINT_VIOLATION,
    DeadEndReason.CIRCULAR_REASONING,
    DeadEndReason.CUSTOM_PREDICATE,
})

# Keys describing an attempt rather than the reasoning state itself.
_BOOKKEEPING_KEYS = frozenset({
    "confidence",
    "progress",
    "error",
    "failure_signature",
    "constraint_violated",
    "state_hash",
    "attempt",
    "divergence",
    "quality",
})


def _default_progress(entry: Mapping[str, Any]) -> float | None:
    value = entry.get("progress")
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


@dataclass(frozen=True)
class DetectionOptions:
    """Thresholds and toggles for dead-end detection."""

    repeat_threshold: int = 3
    history_window: int = 10
    confidence_threshold: float = 0.3
    stall_window: int = 5
    check_repetition: bool = True
    check_circularity: bool = True
    check_confidence: bool = True
    check_stall: bool = True
    check_constraints: bool = True
    progress_fn: ProgressFn = _default_progress
    custom_predicate: DeadEndPredicate | None = None


def failure_signature(entry: Any) -> str:
    """Identify the way an attempt failed.

    An explicit ``failure_signature`` wins, then ``error``, then the hash
    of the attempt's reasoning content.
    """
    if isinstance(entry, Mapping):
        if entry.get("failure_signature") is not None:
            return str(entry["failure_signature"])
        if entry.get("error") is not None:
            return f"error:{entry['error']}"
        if entry.get("state_hash") is not None:
            return str(entry["state_hash"])
    return content_hash(entry)


def content_hash(entry: Any) -> str:
    """Hash of an attempt's reasoning content, ignoring bookkeeping keys.

    A precomputed ``state_hash`` on the entry is trusted as-is.
    """
    if isinstance(entry, Mapping):
        if entry.get("state_hash") is not None:
            return str(entry["state_hash"])
        return state_hash({k: v for k, v in entry.items() if k not in _BOOKKEEPING_KEYS})
    return state_hash(entry)


class DeadEndDetector:
    """Applies dead-end heuristics to the latest attempt and its history."""

    def __init__(self, options: DetectionOptions | None = None) -> None:
        self._options = options or DetectionOptions()

    @property
    def options(self) -> DetectionOptions:
        return self._options

    # ── Public API ───────────────────────────────────────────────────────

    def detect(
        self,
        result: Any,
        history: Sequence[Any],
        options: DetectionOptions | None = None,
    ) -> bool:
        return self.detect_with_reasons(result, history, options).is_dead_end

    def detect_with_reasons(
        self,
        result: Any,
        history: Sequence[Any],
        options: DetectionOptions | None = None,
    ) -> DeadEndDetection:
        opts = options or self._options
        entries = [h for h in history if isinstance(h, Mapping)]
        window = entries[-opts.history_window:] if opts.history_window > 0 else entries
        current = result if isinstance(result, Mapping) else {}

        reasons: list[DeadEndReason] = []

        if opts.check_repetition and self._repeated_failures(result, window, opts):
            reasons.append(DeadEndReason.REPEATED_FAILURES)
        if opts.check_circularity and self._circular(result, window):
            reasons.append(DeadEndReason.CIRCULAR_REASONING)
        if opts.check_confidence and self._low_confidence(current, opts):
            reasons.append(DeadEndReason.LOW_CONFIDENCE)
        if opts.check_stall and self._stalled(current, entries, opts):
            reasons.append(DeadEndReason.STALLED_PROGRESS)
        if opts.check_constraints and bool(current.get("constraint_violated")):
            reasons.append(DeadEndReason.CONSTRAINT_VIOLATION)
        if opts.custom_predicate is not None and opts.custom_predicate(result, entries):
            reasons.append(DeadEndReason.CUSTOM_PREDICATE)

        detection = DeadEndDetection(
            is_dead_end=bool(reasons),
            reasons=tuple(reasons),
            confidence=detection_confidence(reasons),
        )
        if detection.is_dead_end:
            logger.info(
                "Dead end detected: reasons=%s confidence=%.2f",
                [r.value for r in reasons], detection.confidence,
            )
        return detection

    # ── Heuristics ───────────────────────────────────────────────────────

    @staticmethod
    def _repeated_failures(
        result: Any,
        window: Sequence[Mapping[str, Any]],
        opts: DetectionOptions,
    ) -> bool:
        signature = failure_signature(result)
        count = sum(1 for entry in window if failure_signature(entry) == signature)
        # The current attempt is one more occurrence unless it already heads the history.
        if not window or window[-1] is not result:
            count += 1
        return count >= opts.repeat_threshold

    @staticmethod
    def _circular(result: Any, window: Sequence[Mapping[str, Any]]) -> bool:
        if len(window) < 3:
            return False
        earlier = window[:-2] if window[-1] is result else window[:-1]
        current = content_hash(result)
        return any(content_hash(entry) == current for entry in earlier)

    @staticmethod
    def _low_confidence(current: Mapping[str, Any], opts: DetectionOptions) -> bool:
        confidence = current.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            return False
        return confidence < opts.confidence_threshold

    @staticmethod
    def _stalled(
        current: Mapping[str, Any],
        entries: Sequence[Mapping[str, Any]],
        opts: DetectionOptions,
    ) -> bool:
        if opts.stall_window <= 0:
            return False
        series = list(entries)
        if not series or series[-1] is not current:
            series.append(current)
        values = [v for v in (opts.progress_fn(e) for e in series) if v is not None]
        if len(values) <= opts.stall_window:
            return False
        baseline = values[-opts.stall_window - 1]
        return max(values[-opts.stall_window:]) <= baseline


def detection_confidence(reasons: Sequence[DeadEndReason]) -> float:
    """Confidence that a branch is dead given the heuristics that fired."""
    if not reasons:
        return 0.0
    base = min(len(reasons) * 0.25, 1.0)
    if any(r in _CRITICAL_REASONS for r in reasons):
        base += 0.2
    return min(base, 1.0)
