"""Tests for the simulated and Gemini-backed reasoning functions.

LLM responses are mocked at the LangChain ainvoke level for CI
determinism; production uses real Gemini Flash.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from backtrack_reason.adapters.llm import (
    default_llm_factory,
    make_evaluation_fn,
    make_generate_fn,
    make_thought_fn,
)
from backtrack_reason.adapters.simulation import (
    heuristic_score,
    simulate_evaluation,
    simulate_generate,
    simulate_thoughts,
)
from backtrack_reason.core.tree_search import SearchOptions, TreeSearch
from backtrack_reason.domain.tree import NodeContext


# ── Helpers ──────────────────────────────────────────────────────────────────

def _mock_llm(content: str) -> MagicMock:
    """Create a mock LLM whose ainvoke returns a fixed response."""
    mock = MagicMock()
    mock.ainvoke = AsyncMock(return_value=SimpleNamespace(content=content))
    return mock


def _ctx(**kw) -> NodeContext:
    base = {"problem": "sum one to ten", "node_id": "node_0", "path": ("start",)}
    base.update(kw)
    return NodeContext(**base)


# ── Simulation ───────────────────────────────────────────────────────────────

class TestSimulation:
    def test_sampling_thoughts(self) -> None:
        thoughts = simulate_thoughts(_ctx(), 3, {})
        assert len(thoughts) == 3
        assert thoughts[0] == "Try a direct calculation approach for: sum one to ten... (option 1)"
        assert thoughts[2].endswith("(option 3)")

    def test_proposal_thoughts(self) -> None:
        thoughts = simulate_thoughts(_ctx(), 4, {"style": "proposal"})
        assert thoughts[0].startswith("Initial approach")
        assert thoughts[3].startswith("Approach 4")

    def test_thoughts_vary_with_depth(self) -> None:
        assert simulate_thoughts(_ctx(depth=0), 1, {}) != simulate_thoughts(_ctx(depth=1), 1, {})

    def test_evaluation_without_jitter(self) -> None:
        ctx = _ctx(problem="sum numbers")
        thought = "sum numbers " + "x" * 100
        assert simulate_evaluation(thought, ctx, {"jitter": False}) == pytest.approx(1.0)
        assert simulate_evaluation("zzz", ctx, {"jitter": False}) == pytest.approx(0.009)

    def test_evaluation_is_deterministic_and_bounded(self) -> None:
        ctx = _ctx()
        first = simulate_evaluation("Break the problem into parts", ctx, {})
        assert first == simulate_evaluation("Break the problem into parts", ctx, {})
        assert 0.0 <= first <= 1.0

    def test_heuristic_score(self) -> None:
        assert heuristic_score("short") == pytest.approx(0.25)
        assert heuristic_score("Calculate the total if positive") == pytest.approx(0.8)
        assert heuristic_score("Plan the next move carefully") == pytest.approx(0.5)

    def test_simulated_generate(self) -> None:
        result = simulate_generate({"strategy": "creative"}, {"iteration": 1})
        assert result["answer"] == "answer-creative"
        assert 0.0 <= result["confidence"] <= 1.0
        assert result == simulate_generate({"strategy": "creative"}, {"iteration": 1})

    @pytest.mark.asyncio
    async def test_simulated_tree_search_is_reproducible(self) -> None:
        options = SearchOptions(beam_width=2, max_depth=3, budget=20)
        first = await TreeSearch(simulate_thoughts, simulate_evaluation, options).run("sum one to ten")
        second = await TreeSearch(simulate_thoughts, simulate_evaluation, options).run("sum one to ten")
        assert first.tree.to_dict() == second.tree.to_dict()
        assert first.nodes_evaluated <= 20


# ── Gemini adapters ──────────────────────────────────────────────────────────

class TestGenerateFn:
    @pytest.mark.asyncio
    async def test_parses_fenced_json(self) -> None:
        content = "```json\n" + json.dumps({"answer": "55", "confidence": 1.4}) + "\n```"
        generate = make_generate_fn(lambda: _mock_llm(content))
        result = await generate({"problem": "p"}, {})
        assert result["answer"] == "55"
        assert result["confidence"] == 1.0

    @pytest.mark.asyncio
    async def test_unparseable_response_falls_back_to_text(self) -> None:
        generate = make_generate_fn(lambda: _mock_llm("fifty-five"))
        result = await generate({"problem": "p"}, {})
        assert result == {"answer": "fifty-five", "confidence": 0.3}

    @pytest.mark.asyncio
    async def test_llm_failure_returns_error_result(self) -> None:
        def factory():
            raise RuntimeError("quota exceeded")

        result = await make_generate_fn(factory)({"problem": "p"}, {})
        assert result["error"] == "quota exceeded"
        assert result["confidence"] == 0.0

    @pytest.mark.asyncio
    async def test_feedback_reaches_prompt(self) -> None:
        llm = _mock_llm(json.dumps({"answer": "1"}))
        generate = make_generate_fn(lambda: llm)
        await generate({"problem": "p", "feedback": "answer too small"}, {})
        prompt = llm.ainvoke.call_args[0][0]
        assert "Feedback on your previous answer: answer too small" in prompt


class TestThoughtFn:
    @pytest.mark.asyncio
    async def test_truncates_to_beam_width(self) -> None:
        content = json.dumps(["a", "b", "c", "d"])
        propose = make_thought_fn(lambda: _mock_llm(content))
        assert await propose(_ctx(), 2, {}) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_plain_lines_fallback(self) -> None:
        propose = make_thought_fn(lambda: _mock_llm("- first step\n- second step\n"))
        assert await propose(_ctx(), 3, {}) == ["first step", "second step"]

    @pytest.mark.asyncio
    async def test_failure_yields_no_thoughts(self) -> None:
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("network"))
        assert await make_thought_fn(lambda: llm)(_ctx(), 3, {}) == []


class TestEvaluationFn:
    @pytest.mark.asyncio
    async def test_score_object(self) -> None:
        evaluate = make_evaluation_fn(lambda: _mock_llm('{"score": 0.8}'))
        assert await evaluate("step", _ctx(), {}) == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_bare_number_is_clamped(self) -> None:
        evaluate = make_evaluation_fn(lambda: _mock_llm("1.5"))
        assert await evaluate("step", _ctx(), {}) == 1.0

    @pytest.mark.asyncio
    async def test_garbage_scores_zero(self) -> None:
        evaluate = make_evaluation_fn(lambda: _mock_llm("very promising"))
        assert await evaluate("step", _ctx(), {}) == 0.0


def test_default_factory_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("BACKTRACK_GEMINI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="API key"):
        default_llm_factory()
