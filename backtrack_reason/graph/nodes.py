"""LangGraph nodes for the correction loop and the backtracking orchestrator.

Each node:
    - Receives the full loop state
    - Returns a partial dict update
    - Reaches collaborators only through the run context bound by its factory

Correction loop:    attempt → decide → (loop | end)
Orchestrator:       attempt → assess → (refine | backtrack | end)
                    refine → attempt,  backtrack → (attempt | end)

Terminal results are written to ``outcome``; a set outcome routes to END.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from backtrack_reason.core.budget_manager import BudgetManager
from backtrack_reason.core.dead_end_detector import DeadEndDetector
from backtrack_reason.core.path_explorer import PathExplorer, next_style
from backtrack_reason.core.self_correction import (
    MISSING,
    evaluate_attempt,
    is_success,
    select_correction_strategy,
)
from backtrack_reason.core.state_manager import StateManager
from backtrack_reason.domain.enums import CorrectionStrategy, DivergenceLevel, ErrorKind
from backtrack_reason.domain.errors import (
    EmptyStackError,
    ExhaustedAlternativesError,
    PersistenceError,
    ValidationError,
)
from backtrack_reason.domain.outcome import Failure, PartialSuccess, Success
from backtrack_reason.foundation.invoke import call_injected
from backtrack_reason.graph.state import BacktrackState, CorrectionState

logger = logging.getLogger(__name__)

GenerateFn = Callable[[dict[str, Any], dict[str, Any]], Any]

MAX_TEMPERATURE = 2.0
TEMPERATURE_NUDGE = 0.1

# Keys a refinement adds to a reasoning state; dropped when re-anchoring.
_REFINEMENT_KEYS = frozenset({
    "iteration",
    "correction_strategy",
    "previous_result",
    "feedback",
    "clarification_requested",
})


# ── Run context ──────────────────────────────────────────────────────────────

@dataclass
class LoopContext:
    """Collaborators and options shared by the nodes of one run."""

    generate_fn: GenerateFn
    expected: Any = MISSING
    validator: Callable[[Any], Any] | None = None
    timeout: float | None = None
    cancel_event: asyncio.Event | None = None
    budget: BudgetManager | None = None
    priority_draw: bool = False
    generate_opts: dict[str, Any] = field(default_factory=dict)
    on_correction: Callable[..., Any] | None = None


@dataclass
class BacktrackContext(LoopContext):
    state_manager: StateManager = field(default_factory=StateManager)
    explorer: PathExplorer = field(default_factory=PathExplorer)
    detector: DeadEndDetector = field(default_factory=DeadEndDetector)
    on_backtrack: Callable[..., Any] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ── Shared helpers ───────────────────────────────────────────────────────────

def settle(state: Mapping[str, Any], reason: str, kind: ErrorKind):
    """PartialSuccess with the best result, or Failure if none ever existed."""
    n = state.get("iteration_count", 0)
    if state.get("has_result"):
        return PartialSuccess(best=state.get("best_result"), reason=reason, iterations=n)
    return Failure(kind=kind, context={"reason": reason}, iterations=n)


def failure_from(exc: Exception, state: Mapping[str, Any]) -> Failure:
    return Failure(
        kind=getattr(exc, "kind", ErrorKind.VALIDATION_ERROR),
        context=exc.context() if hasattr(exc, "context") else {"message": str(exc)},
        iterations=state.get("iteration_count", 0),
    )


async def notify(callback: Callable[..., Any] | None, *args: Any, label: str) -> None:
    """Invoke an observer callback; its failures are logged, never raised."""
    if callback is None:
        return
    try:
        await call_injected(callback, *args, label=label)
    except Exception as exc:
        logger.error("%s callback failed: %s", label, exc)


def corrected_state(
    current: Mapping[str, Any],
    initial: Mapping[str, Any],
    record: Mapping[str, Any],
    strategy: CorrectionStrategy,
    iteration: int,
) -> dict[str, Any]:
    """The reasoning state for the next attempt under *strategy*."""
    divergence = record.get("divergence")
    feedback = record.get("reason") or f"divergence: {getattr(divergence, 'value', divergence)}"

    if strategy is CorrectionStrategy.RETRY_ADJUSTED:
        params = current.get("reasoning_params")
        params = dict(params) if isinstance(params, Mapping) else {}
        temperature = params.get("temperature", 0.7)
        if isinstance(temperature, (int, float)) and not isinstance(temperature, bool):
            params["temperature"] = round(min(MAX_TEMPERATURE, temperature + TEMPERATURE_NUDGE), 4)
        return {
            **current,
            "iteration": iteration,
            "correction_strategy": strategy.value,
            "previous_result": record.get("result"),
            "feedback": feedback,
            "reasoning_params": params,
        }
    if strategy is CorrectionStrategy.BACKTRACK_ALTERNATIVE:
        return {
            **initial,
            "iteration": iteration,
            "correction_strategy": strategy.value,
            "strategy": next_style(current.get("strategy")),
        }
    if strategy is CorrectionStrategy.CLARIFY_REQUIREMENTS:
        return {
            **current,
            "iteration": iteration,
            "correction_strategy": strategy.value,
            "clarification_requested": True,
            "feedback": feedback,
        }
    return dict(current)


def anchor_of(state: Mapping[str, Any]) -> dict[str, Any]:
    """A reasoning state stripped of refinement bookkeeping."""
    return {k: v for k, v in state.items() if k not in _REFINEMENT_KEYS}


# ── attempt ──────────────────────────────────────────────────────────────────

def make_attempt(ctx: LoopContext):
    """Create the attempt node: budget check, generation, validation."""

    async def attempt(state: CorrectionState) -> dict:
        n = state.get("iteration_count", 0)

        if ctx.cancel_event is not None and ctx.cancel_event.is_set():
            logger.info("Run cancelled before attempt %d", n + 1)
            return {"outcome": settle(state, "cancelled", ErrorKind.CANCELLED)}

        if ctx.budget is not None:
            if not ctx.budget.has_budget():
                last = state.get("last_record") or {}
                reserve = ctx.budget.budget.reserved_priority
                if ctx.priority_draw and reserve > 0 and last.get("divergence") is DivergenceLevel.MINOR:
                    await ctx.budget.allocate_priority(1)
                else:
                    logger.info("Budget exhausted after %d attempts", n)
                    best = state.get("best_result") if state.get("has_result") else None
                    return {"outcome": _exhaustion(ctx.budget, state, best, n)}
            if not await ctx.budget.try_consume(1):
                best = state.get("best_result") if state.get("has_result") else None
                return {"outcome": _exhaustion(ctx.budget, state, best, n)}

        opts = {**ctx.generate_opts, "iteration": n}
        try:
            record = await evaluate_attempt(
                ctx.generate_fn,
                state.get("current_state", {}),
                opts,
                attempt=n + 1,
                expected=ctx.expected,
                validator=ctx.validator,
                timeout=ctx.timeout,
            )
        except ValidationError as exc:
            logger.error("Validator failed on attempt %d: %s", n + 1, exc)
            return {
                "iteration_count": n + 1,
                "outcome": Failure(kind=exc.kind, context=exc.context(), iterations=n + 1),
            }

        update: dict[str, Any] = {
            "iteration_count": n + 1,
            "history": [*state.get("history", []), record],
            "trail": [*state.get("trail", []), dict(state.get("current_state", {}))],
            "last_record": record,
        }
        if record["produced"] and (
            not state.get("has_result") or record["quality"] >= state.get("best_quality", 0.0)
        ):
            update.update(best_result=record["result"], best_quality=record["quality"], has_result=True)
        return update

    return attempt


def _exhaustion(budget: BudgetManager, state: Mapping[str, Any], best: Any, n: int):
    if state.get("has_result"):
        return PartialSuccess(best=best, reason="budget_exhausted", iterations=n)
    return budget.handle_exhaustion(None, n)


# ── decide (correction loop) ─────────────────────────────────────────────────

def make_decide(ctx: LoopContext):
    """Create the decide node: success check, strategy choice, next state."""

    async def decide(state: CorrectionState) -> dict:
        if state.get("outcome") is not None:
            return {}

        n = state["iteration_count"]
        record = state["last_record"]
        max_iterations = state["max_iterations"]

        if is_success(record, state["quality_threshold"]):
            logger.info("Converged after %d iterations (quality %.3f)", n, record["quality"])
            return {"outcome": Success(value=record["result"], iterations=n)}

        strategy = select_correction_strategy(
            record["divergence"],
            state.get("history", [])[:-1],
            iteration=n - 1,
            max_iterations=max_iterations,
            reason=record.get("reason"),
        )
        if strategy is None:
            return {"outcome": Success(value=record["result"], iterations=n)}

        await notify(ctx.on_correction, n, strategy, record["quality"], label="on_correction")

        if strategy is CorrectionStrategy.ACCEPT_PARTIAL or n >= max_iterations:
            logger.info("Accepting partial result after %d iterations", n)
            return {"strategy": strategy, "outcome": settle(state, "max_iterations", ErrorKind.MAX_ITERATIONS)}

        logger.debug("Iteration %d: %s → %s", n, record["divergence"].value, strategy.value)
        return {
            "strategy": strategy,
            "current_state": corrected_state(
                state.get("current_state", {}), state.get("initial_state", {}), record, strategy, n,
            ),
            "clarification_requested": state.get("clarification_requested", False)
            or strategy is CorrectionStrategy.CLARIFY_REQUIREMENTS,
        }

    return decide


def check_done(state: CorrectionState) -> str:
    """Conditional edge: 'end' once an outcome exists, else 'loop'."""
    return "end" if state.get("outcome") is not None else "loop"


# ── assess / refine / backtrack (orchestrator) ───────────────────────────────

def make_assess(ctx: BacktrackContext):
    """Create the assess node: success, dead-end detection and routing."""

    async def assess(state: BacktrackState) -> dict:
        if state.get("outcome") is not None:
            return {"route": "end"}

        n = state["iteration_count"]
        record = state["last_record"]

        if is_success(record, state["quality_threshold"]):
            logger.info(
                "Backtracking run succeeded after %d attempts and %d backtracks",
                n, state.get("backtrack_count", 0),
            )
            return {"route": "end", "outcome": Success(value=record["result"], iterations=n)}

        prior = state.get("history", [])[:-1]
        strategy = select_correction_strategy(
            record["divergence"],
            prior,
            iteration=n - 1,
            max_iterations=state["max_iterations"],
            reason=record.get("reason"),
        )
        detection = ctx.detector.detect_with_reasons(record, prior)

        if strategy is None:
            return {"route": "end", "outcome": Success(value=record["result"], iterations=n)}

        await notify(ctx.on_correction, n, strategy, record["quality"], label="on_correction")

        if strategy is CorrectionStrategy.ACCEPT_PARTIAL:
            return {
                "route": "end",
                "strategy": strategy,
                "dead_end": detection,
                "outcome": settle(state, "max_iterations", ErrorKind.MAX_ITERATIONS),
            }
        if detection.is_dead_end or strategy is CorrectionStrategy.BACKTRACK_ALTERNATIVE:
            return {"route": "backtrack", "strategy": strategy, "dead_end": detection}
        return {"route": "refine", "strategy": strategy, "dead_end": detection}

    return assess


def route_after_assess(state: BacktrackState) -> str:
    return state.get("route", "end")


def refine(state: BacktrackState) -> dict:
    """Adjust the current state in place for RETRY_ADJUSTED or CLARIFY_REQUIREMENTS."""
    strategy = state["strategy"]
    return {
        "current_state": corrected_state(
            state.get("current_state", {}),
            state.get("initial_state", {}),
            state["last_record"],
            strategy,
            state["iteration_count"],
        ),
        "clarification_requested": state.get("clarification_requested", False)
        or strategy is CorrectionStrategy.CLARIFY_REQUIREMENTS,
    }


def make_backtrack(ctx: BacktrackContext):
    """Create the backtrack node: mark failed, push a branch point, explore."""

    async def backtrack(state: BacktrackState) -> dict:
        n = state.get("iteration_count", 0)
        count = state.get("backtrack_count", 0)
        detection = state.get("dead_end")
        if detection is not None and detection.is_dead_end:
            reason = ",".join(r.value for r in detection.reasons)
        else:
            reason = CorrectionStrategy.BACKTRACK_ALTERNATIVE.value

        if count >= state.get("max_backtracks", 0):
            logger.info("Backtrack limit (%d) reached", count)
            return {"route": "end", "outcome": settle(state, "max_backtracks", ErrorKind.EXHAUSTED_ALTERNATIVES)}

        try:
            async with ctx.lock:
                current = state.get("current_state", {})
                ctx.explorer.mark_path_failed(current)
                snapshot = ctx.state_manager.capture(current, {"reason": reason, "attempt": n})
                stack = state["stack"].push(snapshot)
                trail = state.get("trail", [])
                anchor = anchor_of(current)
                while True:
                    try:
                        candidate = ctx.explorer.generate_alternative(anchor, trail)
                        break
                    except ExhaustedAlternativesError:
                        # Abandon this branch point and retry from the one below it.
                        _, stack = stack.pop()
                        below = stack.peek()
                        if below is None:
                            logger.info("No alternatives left after %d backtracks", count)
                            return {
                                "route": "end",
                                "stack": stack,
                                "outcome": settle(state, "no_alternatives", ErrorKind.EXHAUSTED_ALTERNATIVES),
                            }
                        anchor = anchor_of(ctx.state_manager.restore(below))
        except (EmptyStackError, PersistenceError) as exc:
            logger.error("Backtracking aborted: %s", exc)
            return {"route": "end", "outcome": failure_from(exc, state)}

        count += 1
        logger.info(
            "Backtrack %d (%s) via %s, diversity %.2f",
            count, reason, candidate.variation.value, candidate.diversity,
        )
        await notify(ctx.on_backtrack, count, reason, label="on_backtrack")
        return {
            "route": "attempt",
            "current_state": candidate.state,
            "stack": stack,
            "backtrack_count": count,
        }

    return backtrack


def route_after_backtrack(state: BacktrackState) -> str:
    return "end" if state.get("outcome") is not None else "attempt"
