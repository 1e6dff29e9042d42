"""Tests for budget transitions and the lock-protected BudgetManager."""

from __future__ import annotations

import asyncio

import pydantic
import pytest

from backtrack_reason.core.budget_manager import (
    BudgetManager,
    adjust_by_success_rate,
    allocate_for_level,
    allocate_priority,
    consume,
    estimate_required_budget,
    handle_exhaustion,
    has_budget,
    init_budget,
    is_exhausted,
    level_budget,
    reallocate_unused,
    report,
    utilization,
)
from backtrack_reason.domain.budget import Budget
from backtrack_reason.domain.enums import ErrorKind, OutcomeStatus
from backtrack_reason.domain.errors import (
    InsufficientBudgetError,
    InsufficientPriorityBudgetError,
)


class TestBudgetModel:
    def test_pools_cannot_exceed_total(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            Budget(total=1, remaining=2)

    def test_negative_values_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            Budget(total=5, remaining=-1)


class TestInitAndConsume:
    def test_init_reserves_priority_fraction(self) -> None:
        budget = init_budget(10, 0.2)
        assert budget.remaining == 8
        assert budget.reserved_priority == 2
        assert budget.used == 0

    def test_init_rejects_bad_input(self) -> None:
        with pytest.raises(ValueError):
            init_budget(-1)
        with pytest.raises(ValueError):
            init_budget(10, 1.5)

    def test_consume_returns_new_budget(self) -> None:
        budget = init_budget(10)
        after = consume(budget, 3)
        assert after.remaining == 5
        assert after.used == 3
        assert budget.remaining == 8

    def test_consume_to_zero(self) -> None:
        budget = init_budget(10)
        for _ in range(8):
            budget = consume(budget)
        assert not has_budget(budget)
        assert not is_exhausted(budget)
        with pytest.raises(InsufficientBudgetError) as info:
            consume(budget)
        assert info.value.context() == {"requested": 1, "available": 0}
        assert info.value.kind is ErrorKind.INSUFFICIENT_BUDGET

    def test_zero_budget_is_exhausted(self) -> None:
        assert is_exhausted(init_budget(0))


class TestLevelAllocation:
    def test_allocations_shrink_shared_pool(self) -> None:
        budget = init_budget(10)
        first, budget = allocate_for_level(budget, 1)
        second, budget = allocate_for_level(budget, 2)
        assert (first, second) == (3, 2)
        assert budget.remaining == 3
        assert level_budget(budget, 1) == 3
        assert budget.accounted == budget.total

    def test_consume_from_level(self) -> None:
        _, budget = allocate_for_level(init_budget(10), 1)
        budget = consume(budget, 2, level=1)
        assert level_budget(budget, 1) == 1
        assert budget.used == 2
        with pytest.raises(InsufficientBudgetError):
            consume(budget, 2, level=1)

    def test_reallocate_unused_returns_earmarks(self) -> None:
        _, budget = allocate_for_level(init_budget(10), 1)
        budget = consume(budget, 1, level=1)
        budget = reallocate_unused(budget, [1])
        assert level_budget(budget, 1) == 0
        assert budget.remaining == 7
        assert budget.accounted == budget.total


class TestPriority:
    def test_priority_draw_moves_reserve(self) -> None:
        budget = allocate_priority(init_budget(10), 2)
        assert budget.reserved_priority == 0
        assert budget.remaining == 10

    def test_priority_draw_over_reserve_raises(self) -> None:
        with pytest.raises(InsufficientPriorityBudgetError) as info:
            allocate_priority(init_budget(10), 3)
        assert info.value.kind is ErrorKind.INSUFFICIENT_PRIORITY_BUDGET


class TestAdjustBySuccessRate:
    def test_high_rate_widens(self) -> None:
        budget = adjust_by_success_rate(init_budget(10), 0.9)
        assert (budget.remaining, budget.reserved_priority) == (10, 0)

    def test_low_rate_narrows(self) -> None:
        budget = adjust_by_success_rate(init_budget(10), 0.1)
        assert (budget.remaining, budget.reserved_priority) == (6, 4)

    def test_middle_rate_unchanged(self) -> None:
        budget = init_budget(10)
        assert adjust_by_success_rate(budget, 0.5) == budget

    def test_narrowing_keeps_one_unit(self) -> None:
        budget = adjust_by_success_rate(Budget(total=1, remaining=1), 0.0)
        assert budget.remaining == 1

    def test_total_bound_holds_across_transitions(self) -> None:
        budget = init_budget(20, 0.25)
        steps = [
            lambda b: consume(b, 2),
            lambda b: adjust_by_success_rate(b, 0.9),
            lambda b: allocate_for_level(b, 1)[1],
            lambda b: adjust_by_success_rate(b, 0.1),
            lambda b: consume(b, 1, level=1),
            lambda b: reallocate_unused(b, [1]),
        ]
        for step in steps:
            budget = step(budget)
            assert budget.accounted <= budget.total


class TestExhaustion:
    def test_best_so_far_gives_partial(self) -> None:
        outcome = handle_exhaustion(init_budget(0), {"answer": 41}, iterations=3)
        assert outcome.status is OutcomeStatus.PARTIAL
        assert outcome.best == {"answer": 41}
        assert outcome.reason == "budget_exhausted"

    def test_nothing_gives_failure(self) -> None:
        outcome = handle_exhaustion(init_budget(0), None)
        assert outcome.status is OutcomeStatus.FAILURE
        assert outcome.kind is ErrorKind.INSUFFICIENT_BUDGET


class TestReporting:
    def test_estimate_required_budget(self) -> None:
        assert estimate_required_budget(3, 2) == 14
        assert estimate_required_budget(0, 5) == 0

    def test_report_and_utilization(self) -> None:
        budget = consume(init_budget(10), 4)
        assert utilization(budget) == pytest.approx(0.4)
        summary = report(budget)
        assert summary["used"] == 4
        assert summary["exhausted"] is False

    def test_utilization_of_empty_budget(self) -> None:
        assert utilization(init_budget(0)) == 0.0


class TestBudgetManager:
    @pytest.mark.asyncio
    async def test_concurrent_try_consume_never_overspends(self) -> None:
        manager = BudgetManager.create(10, 0.0)
        granted = await asyncio.gather(*(manager.try_consume() for _ in range(20)))
        assert sum(granted) == 10
        assert manager.budget.remaining == 0
        assert manager.budget.used == 10

    @pytest.mark.asyncio
    async def test_consume_up_to_grants_what_remains(self) -> None:
        manager = BudgetManager.create(3, 0.0)
        assert await manager.consume_up_to(5) == 3
        assert await manager.consume_up_to(5) == 0

    @pytest.mark.asyncio
    async def test_consume_raises_when_short(self) -> None:
        manager = BudgetManager.create(1, 0.0)
        await manager.consume()
        with pytest.raises(InsufficientBudgetError):
            await manager.consume()

    @pytest.mark.asyncio
    async def test_level_and_priority_operations(self) -> None:
        manager = BudgetManager.create(10)
        assert await manager.allocate_for_level(1) == 3
        await manager.consume(1, level=1)
        await manager.reallocate_unused([1])
        await manager.allocate_priority(1)
        budget = await manager.adjust_by_success_rate(0.5)
        assert budget.accounted == 10
        assert budget.reserved_priority == 1
        assert manager.report()["used"] == 1
