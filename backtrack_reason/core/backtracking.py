"""BacktrackingOrchestrator — composes the four backtracking collaborators.

One orchestrator owns one StateManager, PathExplorer, DeadEndDetector and
budget settings.  ``execute`` runs the LangGraph backtracking loop with
them; the helper methods expose the same collaborators for callers that
drive backtracking by hand.

Every ``execute`` call explores with a fresh copy of the orchestrator's
PathExplorer, so failed paths are discarded when the run ends.  The manual
helpers share ``self.explorer`` and its failed set until the caller
builds a new orchestrator.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Sequence

from backtrack_reason.config import settings
from backtrack_reason.core.budget_manager import BudgetManager
from backtrack_reason.core.dead_end_detector import DeadEndDetector, DetectionOptions
from backtrack_reason.core.path_explorer import PathExplorer
from backtrack_reason.core.state_manager import StateManager
from backtrack_reason.domain.candidate import Candidate
from backtrack_reason.domain.detection import DeadEndDetection
from backtrack_reason.domain.snapshot import Snapshot, StateStack

logger = logging.getLogger(__name__)


class BacktrackingOrchestrator:
    """Executes reasoning attempts with retry and backtrack semantics."""

    def __init__(
        self,
        *,
        budget_total: int | None = None,
        priority_reserve_fraction: float | None = None,
        max_backtracks: int | None = None,
        detection: DetectionOptions | None = None,
        explorer: PathExplorer | None = None,
        state_manager: StateManager | None = None,
    ) -> None:
        self.budget_total = budget_total if budget_total is not None else settings.budget_total
        self.priority_reserve_fraction = (
            priority_reserve_fraction
            if priority_reserve_fraction is not None
            else settings.priority_reserve_fraction
        )
        self.max_backtracks = max_backtracks if max_backtracks is not None else settings.max_backtracks
        self.detection = detection or DetectionOptions(
            repeat_threshold=settings.repeat_threshold,
            history_window=settings.history_window,
            confidence_threshold=settings.confidence_threshold,
            stall_window=settings.stall_window,
        )
        self.state_manager = state_manager or StateManager()
        self.explorer = explorer or PathExplorer(
            diversity_threshold=settings.diversity_threshold,
            max_attempts=settings.max_alternative_attempts,
        )
        self.detector = DeadEndDetector(self.detection)
        self.stack = StateStack()

    # ── Execution ────────────────────────────────────────────────────────

    async def execute(self, generate_fn: Callable[..., Any], **kwargs: Any):
        """Run the backtracking loop; returns Success, PartialSuccess or Failure.

        Keyword arguments go to execute_with_backtracking.  ``detection``,
        ``explorer`` and ``state_manager`` default to this orchestrator's own.
        """
        from backtrack_reason.graph.runner import execute_with_backtracking

        kwargs.setdefault("budget", BudgetManager.create(self.budget_total, self.priority_reserve_fraction))
        kwargs.setdefault("max_backtracks", self.max_backtracks)
        kwargs.setdefault("detection", self.detection)
        kwargs.setdefault("explorer", self.explorer)
        kwargs.setdefault("state_manager", self.state_manager)
        return await execute_with_backtracking(generate_fn, **kwargs)

    # ── Manual helpers ───────────────────────────────────────────────────

    def capture_state(self, state: Mapping[str, Any], metadata: dict[str, Any] | None = None) -> Snapshot:
        """Capture *state* and push it as a branch point."""
        snapshot = self.state_manager.capture(dict(state), metadata)
        self.stack = self.stack.push(snapshot)
        return snapshot

    def restore_state(self) -> dict[str, Any]:
        """Pop the latest branch point and return its state.

        Raises:
            EmptyStackError: If no branch point was captured.
        """
        snapshot, self.stack = self.stack.pop()
        return self.state_manager.restore(snapshot)

    def dead_end(self, result: Any, history: Sequence[Any]) -> DeadEndDetection:
        return self.detector.detect_with_reasons(result, history)

    def explore_alternative(self, state: Mapping[str, Any], history: Sequence[Any] = ()) -> Candidate:
        """Mark *state* failed and return a diverse alternative to it.

        Raises:
            ExhaustedAlternativesError: If no admissible alternative exists.
        """
        self.explorer.mark_path_failed(state)
        return self.explorer.generate_alternative(state, history)
