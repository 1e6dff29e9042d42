"""ReasoningEngine — one entry point over the three reasoning modes.

    - iterative_execute:          linear self-correction loop
    - execute_with_backtracking:  correction plus snapshot/rollback/explore
    - tree_search:                branching search with beam and budget

Defaults come from Settings; every keyword passed to a method overrides
them for that call only.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from backtrack_reason.config import Settings, settings as default_settings
from backtrack_reason.core.backtracking import BacktrackingOrchestrator
from backtrack_reason.core.tree_search import (
    EvaluationFn,
    SearchOptions,
    SearchResult,
    SolutionCheck,
    ThoughtFn,
    TreeSearch,
)
from backtrack_reason.domain.enums import SearchStrategy
from backtrack_reason.graph.runner import execute_with_backtracking, iterative_execute


class ReasoningEngine:
    """Settings-bound facade; holds no per-run state."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings

    @property
    def config(self) -> Settings:
        return self._config

    async def iterative_execute(self, generate_fn: Callable[..., Any], **kwargs: Any):
        kwargs.setdefault("max_iterations", self._config.max_iterations)
        kwargs.setdefault("quality_threshold", self._config.quality_threshold)
        kwargs.setdefault("timeout", self._config.call_timeout_seconds)
        return await iterative_execute(generate_fn, **kwargs)

    async def execute_with_backtracking(self, generate_fn: Callable[..., Any], **kwargs: Any):
        kwargs.setdefault("budget_total", self._config.budget_total)
        kwargs.setdefault("priority_reserve_fraction", self._config.priority_reserve_fraction)
        kwargs.setdefault("max_backtracks", self._config.max_backtracks)
        kwargs.setdefault("quality_threshold", self._config.quality_threshold)
        kwargs.setdefault("timeout", self._config.call_timeout_seconds)
        return await execute_with_backtracking(generate_fn, **kwargs)

    def orchestrator(self, **kwargs: Any) -> BacktrackingOrchestrator:
        kwargs.setdefault("budget_total", self._config.budget_total)
        kwargs.setdefault("priority_reserve_fraction", self._config.priority_reserve_fraction)
        kwargs.setdefault("max_backtracks", self._config.max_backtracks)
        return BacktrackingOrchestrator(**kwargs)

    def search_options(self, **overrides: Any) -> SearchOptions:
        values: dict[str, Any] = {
            "strategy": SearchStrategy(self._config.search_strategy),
            "beam_width": self._config.beam_width,
            "max_depth": self._config.max_depth,
            "budget": self._config.search_budget,
            "prune_threshold": self._config.prune_threshold,
            "max_concurrency": self._config.max_concurrency,
            "timeout": self._config.call_timeout_seconds,
        }
        values.update(overrides)
        values["strategy"] = SearchStrategy(values["strategy"])
        return SearchOptions(**values)

    async def tree_search(
        self,
        problem: str,
        thought_fn: ThoughtFn,
        evaluation_fn: EvaluationFn,
        *,
        solution_check: SolutionCheck | None = None,
        initial_state: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        **overrides: Any,
    ) -> SearchResult:
        search = TreeSearch(
            thought_fn,
            evaluation_fn,
            self.search_options(**overrides),
            solution_check=solution_check,
        )
        return await search.run(problem, initial_state, cancel_event)
