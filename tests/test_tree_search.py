"""Tests for TreeSearch strategies, budget accounting and halting."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from backtrack_reason.core.budget_manager import BudgetManager, init_budget
from backtrack_reason.core.tree_search import (
    SearchOptions,
    TreeSearch,
    adaptive_beam_width,
    default_solution_check,
)
from backtrack_reason.domain.enums import ErrorKind, OutcomeStatus, SearchHaltReason, SearchStrategy
from backtrack_reason.domain.tree import NodeContext, ThoughtTree


# ── Helpers ──────────────────────────────────────────────────────────────────

def _numbered_thoughts(ctx: NodeContext, width: int, opts: dict) -> list[str]:
    """Children of "p.1" are "p.1.0", "p.1.1", ..."""
    return [f"{ctx.thought}.{i}" for i in range(width)]


def _constant(value: float):
    def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
        return value
    return evaluate


def _lookup(scores: dict[str, float], default: float = 0.1):
    def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
        return scores.get(thought, default)
    return evaluate


def _search(evaluation_fn, **opts: Any) -> TreeSearch:
    solution_check = opts.pop("solution_check", None)
    return TreeSearch(_numbered_thoughts, evaluation_fn, SearchOptions(**opts), solution_check=solution_check)


# ── Strategies ───────────────────────────────────────────────────────────────

class TestBreadthFirst:
    @pytest.mark.asyncio
    async def test_finds_solution_at_depth_two(self) -> None:
        def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            return 0.9 if ctx.depth == 2 else 0.5

        result = await _search(evaluate, beam_width=3, max_depth=3).run("p")
        assert result.success
        assert result.reason is SearchHaltReason.SOLUTION_FOUND
        assert result.solution.depth == 2
        assert result.solution.value == 0.9
        assert result.answer == "p.0.0"
        assert result.solution_path == ["p", "p.0", "p.0.0"]
        assert result.nodes_evaluated == 12
        assert result.search_steps == 2
        assert result.to_outcome().status is OutcomeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_fixed_thoughts_scored_only_at_depth_two(self) -> None:
        def thoughts(ctx: NodeContext, width: int, opts: dict) -> list[str]:
            return ["add", "multiply", "compare"]

        def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            return 0.9 if ctx.depth == 2 else 0.0

        search = TreeSearch(
            thoughts,
            evaluate,
            SearchOptions(strategy=SearchStrategy.BFS, beam_width=3, max_depth=3),
            solution_check=lambda node: node.depth == 2 and (node.value or 0.0) > 0.8,
        )
        result = await search.run("p")
        assert result.reason is SearchHaltReason.SOLUTION_FOUND
        assert result.solution.depth == 2
        assert result.solution.value == 0.9
        assert result.nodes_evaluated == 3 + 9
        assert result.tree.size == 1 + 3 + 9
        assert result.solution_path == ["p", "add", "add"]

    @pytest.mark.asyncio
    async def test_max_depth_reached(self) -> None:
        result = await _search(_constant(0.5), beam_width=2, max_depth=2).run("p")
        assert not result.success
        assert result.reason is SearchHaltReason.MAX_DEPTH_REACHED
        assert result.nodes_evaluated == 6
        assert result.tree.max_depth == 2
        assert result.metadata["max_depth_reached"] == 2

    @pytest.mark.asyncio
    async def test_frontier_exhausted_when_no_thoughts(self) -> None:
        search = TreeSearch(lambda ctx, width, opts: [], _constant(0.5), SearchOptions(max_depth=3))
        result = await search.run("p")
        assert result.reason is SearchHaltReason.FRONTIER_EXHAUSTED
        assert result.best is None
        assert result.tree.size == 1
        assert result.to_outcome().status is OutcomeStatus.FAILURE

    @pytest.mark.asyncio
    async def test_extra_thoughts_are_truncated_to_beam(self) -> None:
        search = TreeSearch(
            lambda ctx, width, opts: ["a", "b", "c", "d", "e"],
            _constant(0.5),
            SearchOptions(beam_width=2, max_depth=1),
        )
        result = await search.run("p")
        assert [n.thought for n in result.tree.children(result.tree.root_id)] == ["a", "b"]


class TestDepthFirst:
    @pytest.mark.asyncio
    async def test_follows_best_child(self) -> None:
        def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            return 0.9 if thought.endswith(".1") else 0.4

        result = await _search(
            evaluate,
            strategy=SearchStrategy.DFS,
            beam_width=2,
            max_depth=3,
            solution_check=lambda node: node.depth == 3,
        ).run("p")
        assert result.success
        assert result.solution_path == ["p", "p.1", "p.1.1", "p.1.1.1"]
        assert result.nodes_evaluated == 6
        assert result.search_steps == 3


class TestBestFirst:
    @pytest.mark.asyncio
    async def test_expands_globally_best_node(self) -> None:
        scores = {"p.0": 0.6, "p.1": 0.5, "p.1.0": 0.95}
        result = await _search(
            _lookup(scores),
            strategy=SearchStrategy.BEST_FIRST,
            beam_width=2,
            max_depth=3,
            solution_check=lambda node: (node.value or 0.0) > 0.9,
        ).run("p")
        assert result.success
        assert result.answer == "p.1.0"
        assert result.nodes_evaluated == 6
        expanded = {n.thought for n in result.tree.nodes() if n.children}
        assert expanded == {"p", "p.0", "p.1"}


# ── Budget, pruning, halting ─────────────────────────────────────────────────

class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_exhaustion_returns_best(self) -> None:
        result = await _search(_constant(0.5), beam_width=3, max_depth=3, budget=4).run("p")
        assert result.reason is SearchHaltReason.BUDGET_EXHAUSTED
        assert result.nodes_evaluated == 4
        assert result.metadata["budget"]["used"] == 4
        assert result.best is not None
        outcome = result.to_outcome()
        assert outcome.status is OutcomeStatus.PARTIAL
        assert outcome.reason == "budget_exhausted"

    @pytest.mark.asyncio
    async def test_evaluations_never_exceed_budget(self) -> None:
        for strategy in SearchStrategy:
            result = await _search(_constant(0.5), strategy=strategy, beam_width=3, max_depth=4, budget=7).run("p")
            assert result.nodes_evaluated <= 7

    @pytest.mark.asyncio
    async def test_shared_budget_manager(self) -> None:
        manager = BudgetManager(init_budget(5, 0.0))
        search = TreeSearch(_numbered_thoughts, _constant(0.5), SearchOptions(beam_width=2, max_depth=5), budget=manager)
        await search.run("p")
        assert manager.budget.used == 5


class TestPruning:
    @pytest.mark.asyncio
    async def test_pruned_nodes_are_not_expanded(self) -> None:
        result = await _search(
            _lookup({"p.0": 0.3}, default=0.7),
            beam_width=2,
            max_depth=2,
            prune_threshold=0.5,
        ).run("p")
        tree = result.tree
        pruned = [n for n in tree.nodes() if n.pruned]
        assert [n.thought for n in pruned] == ["p.0"]
        assert pruned[0].children == []
        assert result.nodes_evaluated == 4


class TestHalting:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        result = await _search(_constant(0.9)).run("p", cancel_event=cancel)
        assert result.reason is SearchHaltReason.CANCELLED
        assert result.nodes_evaluated == 0
        outcome = result.to_outcome()
        assert outcome.status is OutcomeStatus.FAILURE
        assert outcome.kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_evaluation_timeout_scores_zero(self) -> None:
        async def thoughts(ctx: NodeContext, width: int, opts: dict) -> list[str]:
            return [f"{ctx.thought}.{i}" for i in range(width)]

        async def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            if thought == "p.0":
                await asyncio.sleep(1.0)
            return 0.6

        search = TreeSearch(thoughts, evaluate, SearchOptions(beam_width=2, max_depth=1, timeout=0.05))
        result = await search.run("p")
        values = {n.thought: n.value for n in result.tree.children(result.tree.root_id)}
        assert values == {"p.0": 0.0, "p.1": 0.6}

    @pytest.mark.asyncio
    async def test_evaluation_context_describes_child(self) -> None:
        seen: list[tuple[int, tuple[str, ...]]] = []

        def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            seen.append((ctx.depth, ctx.path))
            return 0.5

        await _search(evaluate, beam_width=1, max_depth=2).run("p")
        assert seen == [(1, ("p", "p.0")), (2, ("p", "p.0", "p.0.0"))]


class TestDeterminism:
    @pytest.mark.asyncio
    async def test_tree_independent_of_scheduling(self) -> None:
        async def evaluate(thought: str, ctx: NodeContext, opts: dict) -> float:
            await asyncio.sleep(0.001 * (len(thought) % 3))
            return 0.5 + 0.1 * (thought.count("1") % 3)

        trees = []
        for concurrency in (1, 8):
            result = await _search(evaluate, beam_width=3, max_depth=3, max_concurrency=concurrency).run("p")
            trees.append(result.tree.to_dict())
        assert trees[0] == trees[1]


# ── Pure helpers ─────────────────────────────────────────────────────────────

class TestHelpers:
    def test_adaptive_beam_width_narrows_with_depth(self) -> None:
        assert adaptive_beam_width(3, 0, 10) == 3
        assert adaptive_beam_width(3, 4, 10) == 1

    def test_adaptive_beam_width_narrows_with_size(self) -> None:
        assert adaptive_beam_width(6, 0, 600) == 5
        assert adaptive_beam_width(6, 0, 1200) == 3

    def test_default_solution_check(self) -> None:
        tree = ThoughtTree("p")
        shallow = tree.add_child(tree.root_id, "a", value=0.95)
        deep = tree.add_child(shallow.id, "b", value=0.95)
        check = default_solution_check(4)
        assert not check(shallow)
        assert check(deep)
