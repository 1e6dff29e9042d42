"""Gemini-backed reasoning functions.

Each ``make_*`` builder takes an LLM factory and returns a function with
the signature the engine injects: GenerateFn, ThoughtFn or EvaluationFn.
LLM calls are asynchronous; unparseable output or a failed call falls
back to a deterministic value and is logged, never raised.

The default factory builds ChatGoogleGenerativeAI from Settings and needs
GOOGLE_API_KEY or BACKTRACK_GEMINI_API_KEY in the environment.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Mapping

from backtrack_reason.config import settings
from backtrack_reason.domain.tree import NodeContext

logger = logging.getLogger(__name__)

LLMFactory = Callable[[], Any]  # Returns a langchain BaseChatModel


def default_llm_factory():
    """Create a Gemini Flash instance from environment config."""
    from langchain_google_genai import ChatGoogleGenerativeAI

    api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("BACKTRACK_GEMINI_API_KEY")
    if not api_key:
        raise RuntimeError(
            "Gemini API key not found. Set GOOGLE_API_KEY or BACKTRACK_GEMINI_API_KEY "
            "in your environment variables."
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=api_key,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
    )


# ── Prompts ──────────────────────────────────────────────────────────────────

_GENERATE_PROMPT = """You are solving a reasoning problem step by step.

Problem state (JSON):
{state}

Reasoning style: {style}
{feedback}
Respond ONLY with a JSON object:
{{"answer": "<your answer>", "confidence": <0.0-1.0>, "reasoning": "<one or two sentences>"}}"""

_THOUGHT_PROMPT = """Problem: {problem}

Reasoning so far:
{path}

Propose {count} distinct next reasoning steps. Each step should be one
concrete sentence that moves the reasoning forward.

Respond ONLY with a JSON array of strings."""

_EVALUATION_PROMPT = """Problem: {problem}

Reasoning so far:
{path}

Candidate next step: {thought}

Rate how promising this step is for solving the problem, from 0.0
(useless or wrong) to 1.0 (clearly leads to the solution).

Respond ONLY with a JSON object: {{"score": <0.0-1.0>}}"""


# ── Parsing ──────────────────────────────────────────────────────────────────

def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines).strip()
    return text


def _response_text(response: Any) -> str:
    return response.content if hasattr(response, "content") else str(response)


def _parse_result(text: str) -> dict[str, Any]:
    """Parse a generation response into a result dict, with fallback."""
    try:
        raw = json.loads(_strip_fences(text))
        if not isinstance(raw, dict) or "answer" not in raw:
            raise ValueError("Expected JSON object with an 'answer' key")
        result = dict(raw)
        result["confidence"] = max(0.0, min(float(raw.get("confidence", 0.5)), 1.0))
        return result
    except (json.JSONDecodeError, ValueError, TypeError) as exc:
        logger.warning("Failed to parse LLM result: %s; using raw text", exc)
        return {"answer": text.strip(), "confidence": 0.3}


def _parse_thoughts(text: str, count: int) -> list[str]:
    """Parse a thought-generation response into at most *count* thoughts."""
    try:
        raw = json.loads(_strip_fences(text))
        if not isinstance(raw, list):
            raise ValueError("Expected JSON array")
        thoughts = [str(item).strip() for item in raw if str(item).strip()]
        return thoughts[:count]
    except (json.JSONDecodeError, ValueError, TypeError) as exc:
        logger.warning("Failed to parse LLM thoughts: %s; splitting lines", exc)
        lines = [l.strip(" -*\t") for l in _strip_fences(text).splitlines()]
        return [l for l in lines if l][:count]


def _parse_score(text: str) -> float:
    try:
        raw = json.loads(_strip_fences(text))
        score = raw["score"] if isinstance(raw, dict) else raw
        return max(0.0, min(float(score), 1.0))
    except (json.JSONDecodeError, ValueError, TypeError, KeyError) as exc:
        logger.warning("Failed to parse LLM score: %s; scoring 0.0", exc)
        return 0.0


def _format_path(path: tuple[str, ...]) -> str:
    if not path:
        return "(nothing yet)"
    return "\n".join(f"{i + 1}. {step}" for i, step in enumerate(path))


# ── Builders ─────────────────────────────────────────────────────────────────

def make_generate_fn(llm_factory: LLMFactory | None = None):
    """GenerateFn: one LLM answer for the current reasoning state."""
    factory = llm_factory or default_llm_factory

    async def generate(state: Mapping[str, Any], opts: Mapping[str, Any]) -> dict[str, Any]:
        visible = {k: v for k, v in state.items() if k not in ("previous_result", "feedback")}
        feedback = state.get("feedback")
        prompt = _GENERATE_PROMPT.format(
            state=json.dumps(visible, default=str, sort_keys=True),
            style=state.get("strategy", "analytical"),
            feedback=f"\nFeedback on your previous answer: {feedback}\n" if feedback else "",
        )
        try:
            llm = factory()
            response = await llm.ainvoke(prompt)
            text = _response_text(response)
            logger.info("Gemini generation response length: %d chars", len(text))
            return _parse_result(text)
        except Exception as exc:
            logger.error("LLM invocation failed: %s; returning error result", exc)
            return {"error": str(exc), "confidence": 0.0}

    return generate


def make_thought_fn(llm_factory: LLMFactory | None = None):
    """ThoughtFn: up to ``beam_width`` candidate next steps for a node."""
    factory = llm_factory or default_llm_factory

    async def propose(ctx: NodeContext, beam_width: int, opts: Mapping[str, Any]) -> list[str]:
        prompt = _THOUGHT_PROMPT.format(
            problem=ctx.problem,
            path=_format_path(ctx.path),
            count=beam_width,
        )
        try:
            llm = factory()
            response = await llm.ainvoke(prompt)
            return _parse_thoughts(_response_text(response), beam_width)
        except Exception as exc:
            logger.error("LLM invocation failed for node %s: %s; no thoughts", ctx.node_id, exc)
            return []

    return propose


def make_evaluation_fn(llm_factory: LLMFactory | None = None):
    """EvaluationFn: a promise score in [0, 1] for one candidate step."""
    factory = llm_factory or default_llm_factory

    async def evaluate(thought: str, ctx: NodeContext, opts: Mapping[str, Any]) -> float:
        prompt = _EVALUATION_PROMPT.format(
            problem=ctx.problem,
            path=_format_path(ctx.path),
            thought=thought,
        )
        try:
            llm = factory()
            response = await llm.ainvoke(prompt)
            return _parse_score(_response_text(response))
        except Exception as exc:
            logger.error("LLM evaluation failed: %s; scoring 0.0", exc)
            return 0.0

    return evaluate
