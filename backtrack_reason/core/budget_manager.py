"""BudgetManager — finite exploration budget with level and priority pools.

Pure transitions:
    Every function below takes a Budget and returns a new one; none
    mutates its input.  Conservation holds after every transition:

        remaining + used + reserved_priority + sum(level_allocations) <= total

Concurrent use:
    BudgetManager wraps the current Budget behind an asyncio.Lock so
    branches exploring in parallel consume and reallocate atomically.

Defaults:
    - init reserves floor(total * 0.2) for priority draws.
    - allocate_for_level earmarks floor(remaining * 0.4) for a depth level.
    - adjust_by_success_rate moves ceil(20%) of ``remaining`` between the
      reserve and ``remaining`` when the success rate is above 0.7 or
      below 0.3.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Iterable

from backtrack_reason.config import settings
from backtrack_reason.domain.budget import Budget
from backtrack_reason.domain.enums import ErrorKind
from backtrack_reason.domain.errors import (
    InsufficientBudgetError,
    InsufficientPriorityBudgetError,
)
from backtrack_reason.domain.outcome import Failure, PartialSuccess

logger = logging.getLogger(__name__)

HIGH_SUCCESS_RATE = 0.7
LOW_SUCCESS_RATE = 0.3
ADJUSTMENT_FRACTION = 0.2


def _evolve(budget: Budget, **changes: Any) -> Budget:
    """Build the next Budget; validation re-checks conservation."""
    data = budget.model_dump()
    data.update(changes)
    return Budget(**data)


# ── Pure transitions ─────────────────────────────────────────────────────────

def init_budget(total: int, priority_reserve_fraction: float = 0.2) -> Budget:
    if total < 0:
        raise ValueError("Budget total must be non-negative")
    if not 0.0 <= priority_reserve_fraction <= 1.0:
        raise ValueError("priority_reserve_fraction must be within [0, 1]")
    reserve = math.floor(total * priority_reserve_fraction)
    return Budget(total=total, remaining=total - reserve, reserved_priority=reserve)


def has_budget(budget: Budget) -> bool:
    return budget.remaining > 0


def is_exhausted(budget: Budget) -> bool:
    """No free units and no priority reserve left."""
    return budget.remaining == 0 and budget.reserved_priority == 0


def consume(budget: Budget, amount: int = 1, level: int | None = None) -> Budget:
    """Spend *amount* units, from a level's earmark when *level* is given.

    Raises:
        InsufficientBudgetError: If the pool cannot cover *amount*.
    """
    if amount < 0:
        raise ValueError("Cannot consume a negative amount")
    if level is not None:
        earmarked = budget.level_allocations.get(level, 0)
        if earmarked < amount:
            raise InsufficientBudgetError(amount, earmarked)
        allocations = dict(budget.level_allocations)
        allocations[level] = earmarked - amount
        return _evolve(budget, used=budget.used + amount, level_allocations=allocations)
    if budget.remaining < amount:
        raise InsufficientBudgetError(amount, budget.remaining)
    return _evolve(budget, remaining=budget.remaining - amount, used=budget.used + amount)


def allocate_for_level(budget: Budget, level: int, fraction: float = 0.4) -> tuple[int, Budget]:
    """Earmark floor(remaining * fraction) units for depth *level*.

    Levels draw from the shared non-reserved pool, so each allocation
    shrinks what later levels can get.
    """
    if not 0.0 <= fraction <= 1.0:
        raise ValueError("fraction must be within [0, 1]")
    allocation = math.floor(budget.remaining * fraction)
    allocations = dict(budget.level_allocations)
    allocations[level] = allocations.get(level, 0) + allocation
    return allocation, _evolve(
        budget,
        remaining=budget.remaining - allocation,
        level_allocations=allocations,
    )


def level_budget(budget: Budget, level: int) -> int:
    return budget.level_allocations.get(level, 0)


def allocate_priority(budget: Budget, amount: int) -> Budget:
    """Move *amount* units from the priority reserve into ``remaining``.

    Raises:
        InsufficientPriorityBudgetError: If the reserve is too small.
    """
    if amount < 0:
        raise ValueError("Cannot allocate a negative amount")
    if budget.reserved_priority < amount:
        raise InsufficientPriorityBudgetError(amount, budget.reserved_priority)
    return _evolve(
        budget,
        reserved_priority=budget.reserved_priority - amount,
        remaining=budget.remaining + amount,
    )


def reallocate_unused(budget: Budget, completed_levels: Iterable[int]) -> Budget:
    """Return the unspent earmarks of finished levels to ``remaining``."""
    allocations = dict(budget.level_allocations)
    reclaimed = 0
    for level in completed_levels:
        reclaimed += allocations.pop(level, 0)
    if reclaimed:
        logger.debug("Reclaimed %d units from completed levels", reclaimed)
    return _evolve(budget, remaining=budget.remaining + reclaimed, level_allocations=allocations)


def adjust_by_success_rate(budget: Budget, success_rate: float) -> Budget:
    """Widen ``remaining`` when exploration pays off, narrow it when it doesn't.

    Widening draws from the priority reserve; narrowing returns units to it
    and always leaves at least one unit in ``remaining``.  No unit is ever
    created, so the total bound holds.
    """
    step = math.ceil(budget.remaining * ADJUSTMENT_FRACTION) if budget.remaining else 0
    if success_rate > HIGH_SUCCESS_RATE:
        moved = min(max(step, 1), budget.reserved_priority)
        return _evolve(
            budget,
            remaining=budget.remaining + moved,
            reserved_priority=budget.reserved_priority - moved,
        )
    if success_rate < LOW_SUCCESS_RATE:
        moved = min(step, max(budget.remaining - 1, 0))
        return _evolve(
            budget,
            remaining=budget.remaining - moved,
            reserved_priority=budget.reserved_priority + moved,
        )
    return budget


def handle_exhaustion(budget: Budget, best_so_far: Any | None, iterations: int = 0):
    """Resolve a run that can no longer spend.

    Any candidate at all yields PartialSuccess; only a run that never
    produced one fails with INSUFFICIENT_BUDGET.
    """
    if best_so_far is not None:
        return PartialSuccess(best=best_so_far, reason="budget_exhausted", iterations=iterations)
    return Failure(
        kind=ErrorKind.INSUFFICIENT_BUDGET,
        context={"total": budget.total, "used": budget.used},
        iterations=iterations,
    )


def utilization(budget: Budget) -> float:
    if budget.total == 0:
        return 0.0
    return budget.used / budget.total


def estimate_required_budget(depth: int, branching_factor: int) -> int:
    """Node evaluations a full tree of the given shape costs."""
    return sum(branching_factor ** level for level in range(1, depth + 1))


def report(budget: Budget) -> dict[str, Any]:
    return {
        "total": budget.total,
        "remaining": budget.remaining,
        "used": budget.used,
        "reserved_priority": budget.reserved_priority,
        "allocated": budget.allocated,
        "level_allocations": dict(budget.level_allocations),
        "utilization": round(utilization(budget), 4),
        "exhausted": is_exhausted(budget),
    }


# ── Async-safe holder ────────────────────────────────────────────────────────

class BudgetManager:
    """Owns the current Budget for one run; all mutation is lock-protected."""

    def __init__(self, budget: Budget) -> None:
        self._budget = budget
        self._lock = asyncio.Lock()

    @classmethod
    def create(cls, total: int, priority_reserve_fraction: float = 0.2) -> BudgetManager:
        return cls(init_budget(total, priority_reserve_fraction))

    @property
    def budget(self) -> Budget:
        return self._budget

    def has_budget(self) -> bool:
        return has_budget(self._budget)

    def is_exhausted(self) -> bool:
        return is_exhausted(self._budget)

    async def consume(self, amount: int = 1, level: int | None = None) -> Budget:
        async with self._lock:
            self._budget = consume(self._budget, amount, level)
            return self._budget

    async def try_consume(self, amount: int = 1) -> bool:
        """Consume if affordable; returns False instead of raising."""
        async with self._lock:
            if self._budget.remaining < amount:
                return False
            self._budget = consume(self._budget, amount)
            return True

    async def consume_up_to(self, amount: int) -> int:
        """Consume as many of *amount* units as remain; returns the grant."""
        async with self._lock:
            granted = min(amount, self._budget.remaining)
            if granted > 0:
                self._budget = consume(self._budget, granted)
            return granted

    async def allocate_for_level(self, level: int, fraction: float | None = None) -> int:
        if fraction is None:
            fraction = settings.level_allocation_fraction
        async with self._lock:
            allocation, self._budget = allocate_for_level(self._budget, level, fraction)
            return allocation

    async def allocate_priority(self, amount: int) -> Budget:
        async with self._lock:
            self._budget = allocate_priority(self._budget, amount)
            logger.info("Drew %d units from priority reserve", amount)
            return self._budget

    async def reallocate_unused(self, completed_levels: Iterable[int]) -> Budget:
        async with self._lock:
            self._budget = reallocate_unused(self._budget, completed_levels)
            return self._budget

    async def adjust_by_success_rate(self, success_rate: float) -> Budget:
        async with self._lock:
            self._budget = adjust_by_success_rate(self._budget, success_rate)
            return self._budget

    def handle_exhaustion(self, best_so_far: Any | None, iterations: int = 0):
        return handle_exhaustion(self._budget, best_so_far, iterations)

    def report(self) -> dict[str, Any]:
        return report(self._budget)
