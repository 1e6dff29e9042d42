"""PathExplorer — proposes alternative reasoning states after a failure.

Variation strategies:
    - parameter_adjustment: step ``reasoning_params.temperature`` (default
      0.7) by a bounded amount that grows with the round.
    - strategy_change: move ``strategy`` along analytical → creative →
      systematic → intuitive, wrapping around.
    - backtrack_to_earlier: re-anchor on a mapping ancestor from history,
      most recent first.  Non-mapping ancestors are skipped.

Strategies are scheduled round-robin, or by smooth weighted round-robin
when weights are given.  Either way the order is deterministic: equal
inputs always yield the same candidates in the same order.

Diversity is the Jaccard distance between the (key, value) items of two
states.  A candidate is only offered when it was never attempted and its
diversity from every failed state reaches ``diversity_threshold``.  That
admission check compares only the keys a variation can move: the control
keys ``reasoning_params`` and ``strategy`` plus whatever the candidate
changed relative to its source.
"""

from __future__ import annotations

import logging
from typing import Any, Collection, Iterator, Mapping, Sequence

from backtrack_reason.domain.candidate import Candidate
from backtrack_reason.domain.enums import ReasoningStyle, VariationStrategy
from backtrack_reason.domain.errors import ExhaustedAlternativesError
from backtrack_reason.domain.snapshot import Snapshot
from backtrack_reason.foundation.hashing import state_hash

logger = logging.getLogger(__name__)

_ROUND_ROBIN = (
    VariationStrategy.PARAMETER_ADJUSTMENT,
    VariationStrategy.STRATEGY_CHANGE,
    VariationStrategy.BACKTRACK_TO_EARLIER,
)

_STYLE_ORDER = tuple(style.value for style in ReasoningStyle)

CONTROL_KEYS = frozenset({"reasoning_params", "strategy"})

_ABSENT = object()

DEFAULT_TEMPERATURE = 0.7


class FailedPathSet:
    """States already attempted and rejected during one run.

    Membership is by content hash, so lookups are O(1) on average.  The
    failed states themselves are kept for diversity checks.  The set only
    grows.
    """

    __slots__ = ("_hashes", "_states")

    def __init__(self) -> None:
        self._hashes: set[str] = set()
        self._states: list[Mapping[str, Any]] = []

    def add(self, state: Mapping[str, Any]) -> bool:
        """Record *state*; returns False if it was already present."""
        digest = state_hash(state)
        if digest in self._hashes:
            return False
        self._hashes.add(digest)
        self._states.append(dict(state))
        return True

    def __contains__(self, state: object) -> bool:
        return state_hash(state) in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)

    @property
    def states(self) -> tuple[Mapping[str, Any], ...]:
        return tuple(self._states)


def diversity_score(a: Any, b: Any, keys: Collection[Any] | None = None) -> float:
    """Jaccard distance between the (key, value) items of two states.

    Symmetric.  diversity_score(a, a) == 0.0.  Two empty mappings score 0.0.
    Non-mapping inputs score 0.0 when equal and 1.0 otherwise.  With *keys*
    only items under those keys are compared.
    """
    if not isinstance(a, Mapping) or not isinstance(b, Mapping):
        return 0.0 if state_hash(a) == state_hash(b) else 1.0
    items_a = {(state_hash(k), state_hash(v)) for k, v in a.items() if keys is None or k in keys}
    items_b = {(state_hash(k), state_hash(v)) for k, v in b.items() if keys is None or k in keys}
    union = items_a | items_b
    if not union:
        return 0.0
    return 1.0 - len(items_a & items_b) / len(union)


def varied_keys(candidate: Mapping[str, Any], source: Mapping[str, Any]) -> set[Any]:
    """Keys whose presence or value differs between *candidate* and *source*."""
    return {
        k for k in set(candidate) | set(source)
        if candidate.get(k, _ABSENT) is _ABSENT
        or source.get(k, _ABSENT) is _ABSENT
        or state_hash(candidate[k]) != state_hash(source[k])
    }


def _ancestor_states(history: Sequence[Any]) -> list[Mapping[str, Any]]:
    """Mapping ancestors from most recent to oldest."""
    ancestors = []
    for entry in reversed(history):
        if isinstance(entry, Snapshot):
            ancestors.append(entry.state)
        elif isinstance(entry, Mapping):
            ancestors.append(entry)
    return ancestors


def next_style(current: Any, rnd: int = 0) -> str:
    """The reasoning style *rnd* + 1 steps after *current*, never *current* itself.

    An unknown or missing style starts the cycle at position *rnd*.
    """
    if isinstance(current, ReasoningStyle):
        current = current.value
    if current in _STYLE_ORDER:
        offset = rnd % (len(_STYLE_ORDER) - 1)
        return _STYLE_ORDER[(_STYLE_ORDER.index(current) + 1 + offset) % len(_STYLE_ORDER)]
    return _STYLE_ORDER[rnd % len(_STYLE_ORDER)]


class PathExplorer:
    """Generates diverse alternatives that avoid previously failed paths."""

    def __init__(
        self,
        *,
        diversity_threshold: float = 0.3,
        max_attempts: int = 9,
        temperature_step: float = 0.2,
        min_temperature: float = 0.0,
        max_temperature: float = 2.0,
        weights: Mapping[VariationStrategy, int] | None = None,
        failed: FailedPathSet | None = None,
    ) -> None:
        if weights is not None and not any(w > 0 for w in weights.values()):
            raise ValueError("At least one variation strategy needs a positive weight")
        self._diversity_threshold = diversity_threshold
        self._max_attempts = max_attempts
        self._temperature_step = temperature_step
        self._min_temperature = min_temperature
        self._max_temperature = max_temperature
        self._weights = dict(weights) if weights is not None else None
        self._failed = failed if failed is not None else FailedPathSet()

    def fresh(self) -> PathExplorer:
        """A copy with the same configuration and an empty failed set."""
        return PathExplorer(
            diversity_threshold=self._diversity_threshold,
            max_attempts=self._max_attempts,
            temperature_step=self._temperature_step,
            min_temperature=self._min_temperature,
            max_temperature=self._max_temperature,
            weights=self._weights,
        )

    @property
    def failed(self) -> FailedPathSet:
        return self._failed

    @property
    def diversity_threshold(self) -> float:
        return self._diversity_threshold

    # ── Failed paths ─────────────────────────────────────────────────────

    def mark_path_failed(self, state: Mapping[str, Any]) -> None:
        if self._failed.add(state):
            logger.debug("Marked path failed (%d failed so far)", len(self._failed))

    def path_attempted(self, state: Mapping[str, Any]) -> bool:
        return state in self._failed

    def min_diversity_from_failed(
        self,
        state: Mapping[str, Any],
        keys: Collection[Any] | None = None,
    ) -> float:
        """Smallest diversity between *state* and any failed state (1.0 if none)."""
        failed = self._failed.states
        if not failed:
            return 1.0
        return min(diversity_score(state, f, keys) for f in failed)

    def admission_keys(self, candidate: Mapping[str, Any], source: Mapping[str, Any]) -> set[Any]:
        """Keys the admission check compares for *candidate* derived from *source*."""
        return set(CONTROL_KEYS) | varied_keys(candidate, source)

    # ── Generation ───────────────────────────────────────────────────────

    def generate_alternatives(
        self,
        state: Mapping[str, Any],
        history: Sequence[Any] = (),
        n: int = 3,
    ) -> list[Candidate]:
        """Up to *n* distinct variations of *state*, in schedule order.

        This does not consult the failed set; see generate_alternative and
        beam_search for the filtered forms.
        """
        candidates: list[Candidate] = []
        seen = {state_hash(state)}
        for candidate in self._variations(state, history, max(n * len(_ROUND_ROBIN), self._max_attempts)):
            digest = state_hash(candidate.state)
            if digest in seen:
                continue
            seen.add(digest)
            candidates.append(candidate)
            if len(candidates) >= n:
                break
        return candidates

    def generate_alternative(
        self,
        state: Mapping[str, Any],
        history: Sequence[Any] = (),
    ) -> Candidate:
        """One untried candidate at least ``diversity_threshold`` from every failure.

        Raises:
            ExhaustedAlternativesError: If ``max_attempts`` variations all
                fall short.
        """
        # Each further failure starts one step later in the order, so repeated
        # backtracking rotates through the variation strategies.
        start = max(len(self._failed) - 1, 0)
        for candidate in self._variations(state, history, self._max_attempts, start):
            accepted = self._admit(candidate, state)
            if accepted is not None:
                logger.debug(
                    "Alternative via %s (round %d, diversity %.2f)",
                    accepted.variation.value, accepted.round, accepted.diversity,
                )
                return accepted
        logger.info("No diverse alternative after %d attempts", self._max_attempts)
        raise ExhaustedAlternativesError(self._max_attempts)

    def beam_search(
        self,
        state: Mapping[str, Any],
        width: int,
        history: Sequence[Any] = (),
    ) -> list[Candidate]:
        """Up to *width* admissible candidates that are also diverse from each other."""
        picked: list[Candidate] = []
        attempts = max(width * len(_ROUND_ROBIN), self._max_attempts)
        for candidate in self._variations(state, history, attempts):
            accepted = self._admit(candidate, state)
            if accepted is None:
                continue
            if any(self._too_close(accepted.state, p.state, state) for p in picked):
                continue
            picked.append(accepted)
            if len(picked) >= width:
                break
        return picked

    def ensure_diversity(
        self,
        candidates: Sequence[Candidate],
        history: Sequence[Any],
        min_diversity: float | None = None,
        recent: int = 5,
    ) -> list[Candidate]:
        """Keep candidates whose mean diversity from recent history is high enough."""
        threshold = self._diversity_threshold if min_diversity is None else min_diversity
        ancestors = _ancestor_states(history)[:recent]
        if not ancestors:
            return list(candidates)
        kept = []
        for candidate in candidates:
            mean = sum(diversity_score(candidate.state, a) for a in ancestors) / len(ancestors)
            if mean >= threshold:
                kept.append(candidate)
        return kept

    # ── Internals ────────────────────────────────────────────────────────

    def _admit(self, candidate: Candidate, source: Mapping[str, Any]) -> Candidate | None:
        if self.path_attempted(candidate.state):
            return None
        diversity = self.min_diversity_from_failed(
            candidate.state, self.admission_keys(candidate.state, source),
        )
        if diversity < self._diversity_threshold:
            return None
        return candidate.model_copy(update={"diversity": diversity})

    def _too_close(self, a: Mapping[str, Any], b: Mapping[str, Any], source: Mapping[str, Any]) -> bool:
        keys = set(CONTROL_KEYS) | varied_keys(a, source) | varied_keys(b, source)
        return diversity_score(a, b, keys) < self._diversity_threshold

    def _order(self, length: int) -> list[VariationStrategy]:
        if self._weights is None:
            return [_ROUND_ROBIN[i % len(_ROUND_ROBIN)] for i in range(length)]

        # Smooth weighted round-robin.
        weights = {s: max(0, self._weights.get(s, 0)) for s in _ROUND_ROBIN}
        total = sum(weights.values())
        current = {s: 0 for s in _ROUND_ROBIN}
        order = []
        for _ in range(length):
            for s in _ROUND_ROBIN:
                current[s] += weights[s]
            strategy = max(_ROUND_ROBIN, key=lambda s: (current[s], -_ROUND_ROBIN.index(s)))
            current[strategy] -= total
            order.append(strategy)
        return order

    def _schedule(self, length: int, start: int = 0) -> Iterator[tuple[VariationStrategy, int]]:
        """Yield (strategy, round) pairs from position *start* of the order.

        The round counts earlier uses of the same strategy in this schedule.
        """
        uses = {s: 0 for s in _ROUND_ROBIN}
        for strategy in self._order(start + length)[start:]:
            yield strategy, uses[strategy]
            uses[strategy] += 1

    def _variations(
        self,
        state: Mapping[str, Any],
        history: Sequence[Any],
        attempts: int,
        start: int = 0,
    ) -> Iterator[Candidate]:
        for strategy, rnd in self._schedule(attempts, start):
            varied = self._vary(strategy, state, history, rnd)
            if varied is None or varied == dict(state):
                continue
            yield Candidate(state=varied, variation=strategy, round=rnd)

    def _vary(
        self,
        strategy: VariationStrategy,
        state: Mapping[str, Any],
        history: Sequence[Any],
        rnd: int,
    ) -> dict[str, Any] | None:
        if strategy is VariationStrategy.PARAMETER_ADJUSTMENT:
            return self._adjust_parameters(state, rnd)
        if strategy is VariationStrategy.STRATEGY_CHANGE:
            return self._change_strategy(state, rnd)
        if strategy is VariationStrategy.BACKTRACK_TO_EARLIER:
            return self._backtrack_to_earlier(state, history, rnd)
        raise ValueError(f"Unknown variation strategy: {strategy}")

    def _adjust_parameters(self, state: Mapping[str, Any], rnd: int) -> dict[str, Any]:
        params = state.get("reasoning_params")
        params = dict(params) if isinstance(params, Mapping) else {}
        temperature = params.get("temperature", DEFAULT_TEMPERATURE)
        if not isinstance(temperature, (int, float)) or isinstance(temperature, bool):
            temperature = DEFAULT_TEMPERATURE
        step = self._temperature_step * (rnd + 1)
        adjusted = temperature + step
        if adjusted > self._max_temperature:
            adjusted = max(self._min_temperature, temperature - step)
        params["temperature"] = round(adjusted, 4)
        return {**state, "reasoning_params": params}

    @staticmethod
    def _change_strategy(state: Mapping[str, Any], rnd: int) -> dict[str, Any]:
        return {**state, "strategy": next_style(state.get("strategy"), rnd)}

    @staticmethod
    def _backtrack_to_earlier(
        state: Mapping[str, Any],
        history: Sequence[Any],
        rnd: int,
    ) -> dict[str, Any] | None:
        ancestors = _ancestor_states(history)
        if rnd >= len(ancestors):
            return None
        return {**state, **ancestors[rnd]}
