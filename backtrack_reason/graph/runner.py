"""Graph runners — the public entry points of both reasoning loops.

Usage:
    from backtrack_reason.graph.runner import execute_with_backtracking

    outcome = await execute_with_backtracking(generate_fn, expected="42")

A runner builds the graph, seeds the initial state, invokes LangGraph and
returns the terminal Outcome: Success, PartialSuccess or Failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from backtrack_reason.config import settings
from backtrack_reason.core.budget_manager import BudgetManager
from backtrack_reason.core.dead_end_detector import DeadEndDetector, DetectionOptions
from backtrack_reason.core.path_explorer import PathExplorer
from backtrack_reason.core.self_correction import MISSING, adapt_threshold
from backtrack_reason.core.state_manager import StateManager
from backtrack_reason.domain.enums import Criticality
from backtrack_reason.domain.errors import NotFoundError, PersistenceError
from backtrack_reason.domain.outcome import Failure
from backtrack_reason.domain.snapshot import StateStack
from backtrack_reason.graph.builder import build_backtracking_graph, build_correction_graph
from backtrack_reason.graph.nodes import BacktrackContext, GenerateFn, LoopContext
from backtrack_reason.graph.state import BacktrackState, CorrectionState

logger = logging.getLogger(__name__)

# Node executions per loop turn, plus slack for the entry step.
_CORRECTION_STEPS = 2
_BACKTRACK_STEPS = 3
_SLACK = 5


async def iterative_execute(
    generate_fn: GenerateFn,
    *,
    initial_state: dict[str, Any] | None = None,
    expected: Any = MISSING,
    validator: Callable[[Any], Any] | None = None,
    max_iterations: int | None = None,
    quality_threshold: float | None = None,
    criticality: Criticality | str | None = None,
    on_correction: Callable[..., Any] | None = None,
    budget: BudgetManager | None = None,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    generate_opts: dict[str, Any] | None = None,
):
    """Generate, validate and correct until success or the iteration cap.

    Args:
        generate_fn: ``(state, opts) -> result``; sync or async.
        initial_state: Reasoning state for the first attempt.
        expected: Value results are compared against; omit to rely on
                  reported confidence or a validator.
        validator: Optional override returning Verdict, bool or DivergenceLevel.
        max_iterations: Attempt cap (default from settings).
        quality_threshold: Success bar before criticality adjustment.
        criticality: Loosens (low) or tightens (high) the success bar.
        on_correction: Observer called with (iteration, strategy, quality).
        budget: Optional BudgetManager charged one unit per attempt.
        timeout: Per-call deadline for generate_fn in seconds.
        cancel_event: Checked before every attempt.
        generate_opts: Passed through to generate_fn.

    Returns:
        Success, PartialSuccess or Failure.
    """
    max_iter = max_iterations or settings.max_iterations
    threshold = adapt_threshold(
        quality_threshold if quality_threshold is not None else settings.quality_threshold,
        criticality,
    )
    ctx = LoopContext(
        generate_fn=generate_fn,
        expected=expected,
        validator=validator,
        timeout=timeout if timeout is not None else settings.call_timeout_seconds,
        cancel_event=cancel_event,
        budget=budget,
        generate_opts=dict(generate_opts or {}),
        on_correction=on_correction,
    )
    start = dict(initial_state or {})
    initial: CorrectionState = {
        "current_state": start,
        "initial_state": dict(start),
        "iteration_count": 0,
        "max_iterations": max_iter,
        "quality_threshold": threshold,
        "history": [],
        "trail": [],
        "has_result": False,
        "best_quality": 0.0,
        "clarification_requested": False,
        "outcome": None,
    }

    compiled_graph = build_correction_graph(ctx)
    logger.info("Running correction loop (max_iter=%d, threshold=%.2f)", max_iter, threshold)

    final_state = await compiled_graph.ainvoke(
        initial,
        config={"recursion_limit": _CORRECTION_STEPS * max_iter + _SLACK},
    )

    outcome = final_state["outcome"]
    logger.info(
        "Correction loop complete: status=%s iterations=%d",
        outcome.status.value, final_state.get("iteration_count", 0),
    )
    return outcome


async def execute_with_backtracking(
    generate_fn: GenerateFn,
    *,
    initial_state: dict[str, Any] | None = None,
    expected: Any = MISSING,
    validator: Callable[[Any], Any] | None = None,
    budget_total: int | None = None,
    priority_reserve_fraction: float | None = None,
    budget: BudgetManager | None = None,
    max_backtracks: int | None = None,
    max_iterations: int | None = None,
    quality_threshold: float | None = None,
    criticality: Criticality | str | None = None,
    detection: DetectionOptions | None = None,
    explorer: PathExplorer | None = None,
    state_manager: StateManager | None = None,
    session_key: str | None = None,
    resume: bool = False,
    on_backtrack: Callable[..., Any] | None = None,
    on_correction: Callable[..., Any] | None = None,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    generate_opts: dict[str, Any] | None = None,
):
    """Attempt, validate, refine or backtrack until success or exhaustion.

    Every attempt costs one budget unit, so the run always terminates.
    When ``remaining`` hits zero after a MINOR divergence, one unit is
    drawn from the priority reserve; otherwise the best result so far is
    returned as PartialSuccess.

    Args:
        generate_fn: ``(state, opts) -> result``; sync or async.
        budget_total: Units for the run (ignored when *budget* is given).
        max_backtracks: Cap on backtracks before settling.
        max_iterations: Attempt index at which partial results are accepted;
                        defaults to the budget total.
        detection: Dead-end heuristics configuration.
        explorer: Template PathExplorer; the run works on a fresh copy of it,
                  so failed paths never carry over between runs.
        state_manager: Owns snapshots and the persistence store.
        session_key: Persist the branch-point stack under this key.
        resume: Start from the top of a stack persisted under *session_key*.
        on_backtrack: Observer called with (backtrack_count, reason).
        on_correction: Observer called with (iteration, strategy, quality).

    Returns:
        Success, PartialSuccess or Failure.
    """
    if budget is None:
        budget = BudgetManager.create(
            budget_total if budget_total is not None else settings.budget_total,
            priority_reserve_fraction
            if priority_reserve_fraction is not None
            else settings.priority_reserve_fraction,
        )
    total = budget.budget.total
    max_iter = max_iterations or max(total, 1)
    backtracks = max_backtracks if max_backtracks is not None else settings.max_backtracks
    threshold = adapt_threshold(
        quality_threshold if quality_threshold is not None else settings.quality_threshold,
        criticality,
    )
    manager = state_manager or StateManager()

    ctx = BacktrackContext(
        generate_fn=generate_fn,
        expected=expected,
        validator=validator,
        timeout=timeout if timeout is not None else settings.call_timeout_seconds,
        cancel_event=cancel_event,
        budget=budget,
        priority_draw=True,
        generate_opts=dict(generate_opts or {}),
        on_correction=on_correction,
        state_manager=manager,
        explorer=explorer.fresh() if explorer is not None else PathExplorer(
            diversity_threshold=settings.diversity_threshold,
            max_attempts=settings.max_alternative_attempts,
        ),
        detector=DeadEndDetector(detection or DetectionOptions(
            repeat_threshold=settings.repeat_threshold,
            history_window=settings.history_window,
            confidence_threshold=settings.confidence_threshold,
            stall_window=settings.stall_window,
        )),
        on_backtrack=on_backtrack,
        lock=asyncio.Lock(),
    )

    start = dict(initial_state or {})
    stack = StateStack()
    if session_key is not None and resume:
        try:
            stack = await manager.load(session_key)
        except NotFoundError:
            logger.info("No persisted stack for '%s'; starting fresh", session_key)
        except PersistenceError as exc:
            return Failure(kind=exc.kind, context=exc.context())
        top = stack.peek()
        if top is not None:
            start = manager.restore(top)
            logger.info("Resuming '%s' from snapshot %s", session_key, top.id)

    initial: BacktrackState = {
        "current_state": start,
        "initial_state": dict(start),
        "iteration_count": 0,
        "max_iterations": max_iter,
        "quality_threshold": threshold,
        "history": [],
        "trail": [],
        "has_result": False,
        "best_quality": 0.0,
        "clarification_requested": False,
        "outcome": None,
        "stack": stack,
        "backtrack_count": 0,
        "max_backtracks": backtracks,
        "route": "attempt",
    }

    compiled_graph = build_backtracking_graph(ctx)
    logger.info(
        "Running backtracking loop (budget=%d, max_backtracks=%d, threshold=%.2f)",
        total, backtracks, threshold,
    )

    final_state = await compiled_graph.ainvoke(
        initial,
        config={"recursion_limit": _BACKTRACK_STEPS * (total + 1) + _SLACK},
    )

    outcome = final_state["outcome"]
    if session_key is not None:
        try:
            await manager.persist(final_state.get("stack", stack), session_key)
        except PersistenceError as exc:
            logger.error("Could not persist stack for '%s': %s", session_key, exc)
            return Failure(kind=exc.kind, context=exc.context(), iterations=final_state.get("iteration_count", 0))

    logger.info(
        "Backtracking loop complete: status=%s attempts=%d backtracks=%d budget=%s",
        outcome.status.value,
        final_state.get("iteration_count", 0),
        final_state.get("backtrack_count", 0),
        budget.report(),
    )
    return outcome