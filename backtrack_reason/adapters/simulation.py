"""Deterministic stand-ins for the injected reasoning functions.

These have the exact GenerateFn / ThoughtFn / EvaluationFn signatures and
no hidden randomness: the same inputs always give the same outputs.  Use
them in tests and offline runs where no LLM is available.
"""

from __future__ import annotations

from typing import Any, Mapping

from backtrack_reason.domain.tree import NodeContext
from backtrack_reason.foundation.hashing import state_hash

_SAMPLING_THOUGHTS = (
    "Try a direct calculation approach",
    "Break the problem into smaller sub-problems",
    "Look for patterns or formulas that apply",
    "Work backwards from the desired outcome",
    "Use a systematic elimination strategy",
    "Apply domain-specific knowledge",
    "Consider edge cases and special conditions",
    "Reformulate the problem in a different way",
)

_PROPOSAL_THOUGHTS = (
    "Initial approach: Analyze the problem structure",
    "Alternative: Based on initial analysis, try a different method",
    "Refined approach: Combine insights from previous proposals",
)

_ACTION_WORDS = ("calculate", "check", "verify", "try", "apply", "use", "consider")
_CONDITIONAL_WORDS = ("if", "when", "unless", "in case")


def _jitter(*parts: Any, spread: float = 0.2) -> float:
    """Pseudo-noise in [-spread/2, spread/2] derived from the inputs."""
    digest = int(state_hash(parts)[:8], 16)
    return (digest / 0xFFFFFFFF - 0.5) * spread


def simulate_thoughts(ctx: NodeContext, beam_width: int, opts: Mapping[str, Any]) -> list[str]:
    """Sampling-style thoughts, one per beam slot, tagged with the problem."""
    style = opts.get("style", "sampling")
    topic = ctx.problem[:30]
    if style == "proposal":
        thoughts = [
            _PROPOSAL_THOUGHTS[i] if i < len(_PROPOSAL_THOUGHTS) else f"Approach {i + 1}: Explore further variations"
            for i in range(beam_width)
        ]
        return [f"{t} - {topic} (depth {ctx.depth + 1})" for t in thoughts]
    offset = ctx.depth % len(_SAMPLING_THOUGHTS)
    picked = [_SAMPLING_THOUGHTS[(offset + i) % len(_SAMPLING_THOUGHTS)] for i in range(beam_width)]
    return [f"{t} for: {topic}... (option {i + 1})" for i, t in enumerate(picked)]


def simulate_evaluation(thought: str, ctx: NodeContext, opts: Mapping[str, Any]) -> float:
    """Length and problem-term relevance, with deterministic jitter."""
    length_score = min(1.0, len(thought) / 100.0)
    words = ctx.problem.lower().split()
    relevance = sum(1 for w in words if w in thought.lower()) / max(1, len(words))
    base = length_score * 0.3 + relevance * 0.7
    jitter = _jitter(thought, ctx.depth, ctx.path) if opts.get("jitter", True) else 0.0
    return max(0.0, min(1.0, base + jitter))


def heuristic_score(thought: str, ctx: NodeContext | None = None, opts: Mapping[str, Any] | None = None) -> float:
    """Rule-of-thumb score rewarding concrete, conditional steps."""
    score = 0.5
    if len(thought) < 10:
        score *= 0.5
    lowered = thought.lower()
    if any(word in lowered for word in _ACTION_WORDS):
        score += 0.2
    if any(word in thought for word in _CONDITIONAL_WORDS):
        score += 0.1
    return max(0.0, min(1.0, score))


def simulate_generate(state: Mapping[str, Any], opts: Mapping[str, Any]) -> dict[str, Any]:
    """A result whose confidence grows with temperature changes and iterations."""
    temperature = (state.get("reasoning_params") or {}).get("temperature", 0.7)
    iteration = opts.get("iteration", 0)
    confidence = max(0.0, min(1.0, 0.4 + 0.1 * iteration + abs(temperature - 0.7) + _jitter(state_hash(state))))
    return {
        "answer": opts.get("answer", f"answer-{state.get('strategy', 'analytical')}"),
        "confidence": round(confidence, 4),
        "progress": iteration,
    }
