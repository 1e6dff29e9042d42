"""Loop states — the only objects LangGraph nodes read and write.

Every node receives the full state and returns a partial update.
Collaborators (generation function, budget, explorer, detector) are bound
into the node closures by the builder and never travel in the state.
"""

from __future__ import annotations

from typing import Any, TypedDict


class CorrectionState(TypedDict, total=False):
    """LangGraph state for the self-correction loop.

    Fields:
        current_state: Reasoning state handed to the next generate_fn call.
        initial_state: Reasoning state the run started from.
        iteration_count: Attempts made so far.
        max_iterations: Attempt cap; the last permitted attempt accepts partial.
        quality_threshold: Quality at or above which an attempt succeeds.
        history: Attempt records, oldest first.
        trail: Reasoning states attempted so far, oldest first.
        last_record: The most recent attempt record.
        best_result: Highest-quality result so far (latest wins ties).
        best_quality: Quality of best_result.
        has_result: Whether any attempt produced a result.
        strategy: Correction strategy chosen after the last attempt.
        clarification_requested: Set once CLARIFY_REQUIREMENTS was chosen.
        outcome: Terminal Success / PartialSuccess / Failure, once decided.
    """

    current_state: dict[str, Any]
    initial_state: dict[str, Any]
    iteration_count: int
    max_iterations: int
    quality_threshold: float
    history: list[dict[str, Any]]
    trail: list[dict[str, Any]]
    last_record: dict[str, Any]
    best_result: Any
    best_quality: float
    has_result: bool
    strategy: Any
    clarification_requested: bool
    outcome: Any


class BacktrackState(CorrectionState, total=False):
    """LangGraph state for the backtracking orchestrator.

    Additional fields:
        stack: StateStack of branch points.
        backtrack_count: Backtracks performed so far.
        max_backtracks: Backtrack cap.
        dead_end: DeadEndDetection for the last attempt.
        route: Next step chosen by assess: "refine", "backtrack" or "end".
    """

    stack: Any
    backtrack_count: int
    max_backtracks: int
    dead_end: Any
    route: str
