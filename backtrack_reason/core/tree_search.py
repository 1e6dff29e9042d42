"""TreeSearch — explicit thought-tree exploration with BFS, DFS and best-first.

Expansion of a batch of nodes runs in four phases:
    1. thought_fn for every node, concurrently (bounded by a semaphore)
    2. budget granted one evaluation per thought, in frontier order
    3. evaluation_fn for every granted thought, concurrently
    4. children attached to the tree, in frontier order

Phases 2 and 4 are sequential, so tree shape, node ids and traversal
order depend only on what the injected functions return, never on task
scheduling.  Evaluations already granted budget finish even when the
budget runs dry; no new expansion starts after that.

Strategies:
    - bfs:        check a whole level for a solution, then expand all of it
    - dfs:        explicit stack; the best-valued child is explored first
    - best_first: heap keyed by (-value, insertion order); root value 0.5

Children scoring below ``prune_threshold`` are marked pruned and never
expanded.  Nodes at ``max_depth`` are never expanded.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field

from backtrack_reason.core.budget_manager import BudgetManager, init_budget, report
from backtrack_reason.domain.enums import ErrorKind, SearchHaltReason, SearchStrategy
from backtrack_reason.domain.errors import CallTimeoutError
from backtrack_reason.domain.outcome import Failure, PartialSuccess, Success
from backtrack_reason.domain.tree import NodeContext, ThoughtTree, TreeNode
from backtrack_reason.foundation.invoke import call_injected

logger = logging.getLogger(__name__)

ThoughtFn = Callable[[NodeContext, int, Mapping[str, Any]], Any]
EvaluationFn = Callable[[str, NodeContext, Mapping[str, Any]], Any]
SolutionCheck = Callable[[TreeNode], bool]

ROOT_VALUE = 0.5


@dataclass(frozen=True)
class SearchOptions:
    """Knobs for one tree search run."""

    strategy: SearchStrategy = SearchStrategy.BFS
    beam_width: int = 3
    max_depth: int = 5
    budget: int = 100
    prune_threshold: float = 0.0
    max_concurrency: int = 4
    timeout: float | None = None
    adaptive_beam: bool = False
    fn_opts: dict[str, Any] = field(default_factory=dict)


class SearchResult(BaseModel):
    """Everything a search run produced, including the explored tree."""

    answer: str | None = None
    success: bool = False
    reason: SearchHaltReason
    solution: TreeNode | None = None
    best: TreeNode | None = None
    solution_path: list[str] = Field(default_factory=list)
    nodes_evaluated: int = 0
    search_steps: int = 0
    tree: ThoughtTree
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    def to_outcome(self):
        """Success with the solution, or PartialSuccess with the best node."""
        if self.success and self.solution is not None:
            return Success(value=self.solution, iterations=self.search_steps)
        if self.best is not None:
            return PartialSuccess(best=self.best, reason=self.reason.value, iterations=self.search_steps)
        kind = ErrorKind.CANCELLED if self.reason is SearchHaltReason.CANCELLED else ErrorKind.INSUFFICIENT_BUDGET
        return Failure(kind=kind, context={"reason": self.reason.value}, iterations=self.search_steps)


def default_solution_check(max_depth: int) -> SolutionCheck:
    """A leaf at least halfway down with a value above 0.8."""
    def check(node: TreeNode) -> bool:
        return (
            node.is_leaf
            and node.depth >= max_depth // 2
            and node.value is not None
            and node.value > 0.8
        )
    return check


def adaptive_beam_width(base_width: int, depth: int, tree_size: int) -> int:
    """Narrow the beam as the tree deepens or grows large."""
    depth_width = max(1, base_width - depth // 2)
    if tree_size > 1000:
        size_width = max(2, base_width // 2)
    elif tree_size > 500:
        size_width = max(3, base_width - 1)
    else:
        size_width = base_width
    return min(depth_width, size_width)


class TreeSearch:
    """Runs one search strategy over a thought tree built from injected functions."""

    def __init__(
        self,
        thought_fn: ThoughtFn,
        evaluation_fn: EvaluationFn,
        options: SearchOptions | None = None,
        *,
        solution_check: SolutionCheck | None = None,
        budget: BudgetManager | None = None,
    ) -> None:
        self._thought_fn = thought_fn
        self._evaluation_fn = evaluation_fn
        self._options = options or SearchOptions()
        self._solution_check = solution_check or default_solution_check(self._options.max_depth)
        self._budget = budget

    # ── Public API ───────────────────────────────────────────────────────

    async def run(
        self,
        problem: str,
        initial_state: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SearchResult:
        opts = self._options
        run = _SearchRun(
            problem=problem,
            tree=ThoughtTree(problem, initial_state),
            budget=self._budget or BudgetManager(init_budget(opts.budget, 0.0)),
            semaphore=asyncio.Semaphore(max(1, opts.max_concurrency)),
            cancel_event=cancel_event,
        )
        run.tree.set_value(run.tree.root_id, ROOT_VALUE)

        logger.info(
            "Tree search starting: strategy=%s beam=%d max_depth=%d budget=%d",
            SearchStrategy(opts.strategy).value, opts.beam_width, opts.max_depth,
            run.budget.budget.remaining,
        )

        strategy = SearchStrategy(opts.strategy)
        if strategy is SearchStrategy.BFS:
            solution, reason = await self._bfs(run)
        elif strategy is SearchStrategy.DFS:
            solution, reason = await self._dfs(run)
        elif strategy is SearchStrategy.BEST_FIRST:
            solution, reason = await self._best_first(run)
        else:
            raise ValueError(f"Unknown search strategy: {strategy}")

        result = self._result(run, solution, reason)
        logger.info(
            "Tree search finished: reason=%s success=%s evaluated=%d steps=%d tree_size=%d",
            result.reason.value, result.success, result.nodes_evaluated,
            result.search_steps, run.tree.size,
        )
        return result

    # ── Strategies ───────────────────────────────────────────────────────

    async def _bfs(self, run: _SearchRun) -> tuple[TreeNode | None, SearchHaltReason]:
        level = [run.tree.root]
        while level:
            if self._cancelled(run):
                return None, SearchHaltReason.CANCELLED
            for node in level:
                if self._is_solution(node):
                    return node, SearchHaltReason.SOLUTION_FOUND
            expandable = [n for n in level if self._expandable(n)]
            if not expandable:
                break
            if not run.budget.has_budget():
                return None, SearchHaltReason.BUDGET_EXHAUSTED
            run.steps += 1
            children = await self._expand(run, expandable)
            level = [child for group in children for child in group]
        return None, self._frontier_halt(run)

    async def _dfs(self, run: _SearchRun) -> tuple[TreeNode | None, SearchHaltReason]:
        stack = [run.tree.root]
        while stack:
            if self._cancelled(run):
                return None, SearchHaltReason.CANCELLED
            node = stack.pop()
            if self._is_solution(node):
                return node, SearchHaltReason.SOLUTION_FOUND
            if not self._expandable(node):
                continue
            if not run.budget.has_budget():
                return None, SearchHaltReason.BUDGET_EXHAUSTED
            run.steps += 1
            (children,) = await self._expand(run, [node])
            # Highest value ends on top; among equals the first generated is popped first.
            ranked = sorted(enumerate(children), key=lambda ic: (ic[1].value or 0.0, -ic[0]))
            stack.extend(child for _, child in ranked)
        return None, self._frontier_halt(run)

    async def _best_first(self, run: _SearchRun) -> tuple[TreeNode | None, SearchHaltReason]:
        seq = 0
        frontier: list[tuple[float, int, str]] = [(-ROOT_VALUE, seq, run.tree.root_id)]
        while frontier:
            if self._cancelled(run):
                return None, SearchHaltReason.CANCELLED
            _, _, nid = heapq.heappop(frontier)
            node = run.tree.get_node(nid)
            if self._is_solution(node):
                return node, SearchHaltReason.SOLUTION_FOUND
            if not self._expandable(node):
                continue
            if not run.budget.has_budget():
                return None, SearchHaltReason.BUDGET_EXHAUSTED
            run.steps += 1
            (children,) = await self._expand(run, [node])
            for child in children:
                seq += 1
                heapq.heappush(frontier, (-(child.value or 0.0), seq, child.id))
        return None, self._frontier_halt(run)

    # ── Expansion ────────────────────────────────────────────────────────

    async def _expand(self, run: _SearchRun, nodes: Sequence[TreeNode]) -> list[list[TreeNode]]:
        opts = self._options
        contexts = [self._context(run, node) for node in nodes]
        widths = [self._beam_width(run, node) for node in nodes]

        thought_lists = await asyncio.gather(*(
            self._thoughts(run, ctx, width) for ctx, width in zip(contexts, widths)
        ))

        # Budget is granted in frontier order so the same inputs always
        # fund the same thoughts.
        granted: list[list[str]] = []
        for thoughts in thought_lists:
            count = await run.budget.consume_up_to(len(thoughts)) if thoughts else 0
            granted.append(thoughts[:count])

        scored = await asyncio.gather(*(
            self._score_all(run, node, ctx, thoughts)
            for node, ctx, thoughts in zip(nodes, contexts, granted)
        ))

        children: list[list[TreeNode]] = []
        for node, thoughts, scores in zip(nodes, granted, scored):
            group = []
            for thought, score in zip(thoughts, scores):
                child = run.tree.add_child(node.id, thought, value=score)
                run.evaluated += 1
                if score < opts.prune_threshold:
                    child.pruned = True
                    logger.debug("Pruned %s (value %.3f < %.3f)", child.id, score, opts.prune_threshold)
                group.append(child)
            children.append(group)
        return children

    async def _thoughts(self, run: _SearchRun, ctx: NodeContext, width: int) -> list[str]:
        async with run.semaphore:
            try:
                raw = await call_injected(
                    self._thought_fn, ctx, width, dict(self._options.fn_opts),
                    timeout=self._options.timeout, label="thought_fn",
                )
            except CallTimeoutError:
                logger.warning("thought_fn timed out at %s; node yields no children", ctx.node_id)
                return []
        return [str(t) for t in list(raw or [])[:width]]

    async def _score_all(
        self,
        run: _SearchRun,
        node: TreeNode,
        ctx: NodeContext,
        thoughts: Sequence[str],
    ) -> list[float]:
        return list(await asyncio.gather(*(
            self._score(run, self._child_context(ctx, node, thought), thought)
            for thought in thoughts
        )))

    async def _score(self, run: _SearchRun, ctx: NodeContext, thought: str) -> float:
        async with run.semaphore:
            try:
                raw = await call_injected(
                    self._evaluation_fn, thought, ctx, dict(self._options.fn_opts),
                    timeout=self._options.timeout, label="evaluation_fn",
                )
            except CallTimeoutError:
                logger.warning("evaluation_fn timed out at depth %d; scoring 0.0", ctx.depth)
                return 0.0
        return max(0.0, min(float(raw), 1.0))

    # ── Helpers ──────────────────────────────────────────────────────────

    def _context(self, run: _SearchRun, node: TreeNode) -> NodeContext:
        return NodeContext(
            problem=run.problem,
            node_id=node.id,
            depth=node.depth,
            thought=node.thought,
            path=tuple(n.thought for n in run.tree.path(node.id)),
            state=dict(node.state),
        )

    @staticmethod
    def _child_context(parent: NodeContext, node: TreeNode, thought: str) -> NodeContext:
        return NodeContext(
            problem=parent.problem,
            node_id=None,
            depth=node.depth + 1,
            thought=thought,
            path=(*parent.path, thought),
            state=dict(parent.state),
        )

    def _beam_width(self, run: _SearchRun, node: TreeNode) -> int:
        if not self._options.adaptive_beam:
            return self._options.beam_width
        return adaptive_beam_width(self._options.beam_width, node.depth, run.tree.size)

    def _expandable(self, node: TreeNode) -> bool:
        return not node.pruned and node.depth < self._options.max_depth

    def _is_solution(self, node: TreeNode) -> bool:
        return not node.is_root and bool(self._solution_check(node))

    def _frontier_halt(self, run: _SearchRun) -> SearchHaltReason:
        if run.tree.max_depth >= self._options.max_depth:
            return SearchHaltReason.MAX_DEPTH_REACHED
        return SearchHaltReason.FRONTIER_EXHAUSTED

    @staticmethod
    def _cancelled(run: _SearchRun) -> bool:
        return run.cancel_event is not None and run.cancel_event.is_set()

    def _result(
        self,
        run: _SearchRun,
        solution: TreeNode | None,
        reason: SearchHaltReason,
    ) -> SearchResult:
        evaluated = [n for n in run.tree.nodes() if not n.is_root and n.value is not None]
        best = solution or max(evaluated, key=lambda n: n.value, default=None)
        path_node = solution or best
        path = [n.thought for n in run.tree.path(path_node.id)] if path_node is not None else []
        return SearchResult(
            answer=solution.thought if solution is not None else None,
            success=solution is not None,
            reason=reason,
            solution=solution,
            best=best,
            solution_path=path,
            nodes_evaluated=run.evaluated,
            search_steps=run.steps,
            tree=run.tree,
            metadata={
                "strategy": SearchStrategy(self._options.strategy).value,
                "tree_size": run.tree.size,
                "max_depth_reached": run.tree.max_depth,
                "budget": report(run.budget.budget),
            },
        )


class _SearchRun:
    """Mutable per-run accumulator."""

    __slots__ = ("problem", "tree", "budget", "semaphore", "cancel_event", "evaluated", "steps")

    def __init__(
        self,
        problem: str,
        tree: ThoughtTree,
        budget: BudgetManager,
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event | None,
    ) -> None:
        self.problem = problem
        self.tree = tree
        self.budget = budget
        self.semaphore = semaphore
        self.cancel_event = cancel_event
        self.evaluated = 0
        self.steps = 0
