"""Similarity between an expected and an actual answer, in [0, 1].

    - equal values                → 1.0
    - numbers                     → 1 - |e - a| / max(|e|, |a|)
    - strings                     → difflib ratio
    - lists, tuples, sets         → Jaccard over elements
    - mappings                    → mean similarity over the key union
    - anything else               → 0.0
"""

from __future__ import annotations

import difflib
from typing import Any, Mapping

from backtrack_reason.foundation.hashing import state_hash


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def similarity_score(expected: Any, actual: Any) -> float:
    if expected == actual:
        return 1.0
    if _is_number(expected) and _is_number(actual):
        scale = max(abs(expected), abs(actual))
        if scale == 0:
            return 1.0
        return max(0.0, 1.0 - abs(expected - actual) / scale)
    if isinstance(expected, str) and isinstance(actual, str):
        return difflib.SequenceMatcher(None, expected, actual).ratio()
    if isinstance(expected, (list, tuple, set, frozenset)) and isinstance(actual, (list, tuple, set, frozenset)):
        left = {state_hash(v) for v in expected}
        right = {state_hash(v) for v in actual}
        union = left | right
        return len(left & right) / len(union) if union else 1.0
    if isinstance(expected, Mapping) and isinstance(actual, Mapping):
        keys = set(expected) | set(actual)
        if not keys:
            return 1.0
        scores = [
            similarity_score(expected[k], actual[k]) if k in expected and k in actual else 0.0
            for k in keys
        ]
        return sum(scores) / len(scores)
    return 0.0


def extract_answer(result: Any) -> Any:
    """The comparable part of a result: its ``answer`` key when it has one."""
    if isinstance(result, Mapping) and "answer" in result:
        return result["answer"]
    return result


def reported_confidence(result: Any) -> float | None:
    if isinstance(result, Mapping):
        value = result.get("confidence")
        if _is_number(value):
            return max(0.0, min(float(value), 1.0))
    return None
