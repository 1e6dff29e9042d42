"""Graph builders — construct the LangGraph loop topologies.

Correction loop:

    START → attempt → decide
                        ├── "end"  → END
                        └── "loop" → attempt

Backtracking orchestrator:

    START → attempt → assess
                        ├── "end"       → END
                        ├── "refine"    → refine → attempt
                        └── "backtrack" → backtrack
                                             ├── "end"     → END
                                             └── "attempt" → attempt

Node closures hold per-run collaborators, so a graph is built per run.
"""

from __future__ import annotations

from langgraph.graph import END, START, StateGraph

from backtrack_reason.graph.nodes import (
    BacktrackContext,
    LoopContext,
    check_done,
    make_assess,
    make_attempt,
    make_backtrack,
    make_decide,
    refine,
    route_after_assess,
    route_after_backtrack,
)
from backtrack_reason.graph.state import BacktrackState, CorrectionState


def build_correction_graph(ctx: LoopContext):
    """Construct and compile the self-correction loop for one run."""
    graph = StateGraph(CorrectionState)

    # ── Register nodes ───────────────────────────────────────────────────
    graph.add_node("attempt", make_attempt(ctx))
    graph.add_node("decide", make_decide(ctx))

    # ── Edges ────────────────────────────────────────────────────────────
    graph.add_edge(START, "attempt")
    graph.add_edge("attempt", "decide")

    # ── Conditional exit ─────────────────────────────────────────────────
    graph.add_conditional_edges(
        "decide",
        check_done,
        {
            "end": END,
            "loop": "attempt",
        },
    )

    return graph.compile()


def build_backtracking_graph(ctx: BacktrackContext):
    """Construct and compile the backtracking orchestrator for one run."""
    graph = StateGraph(BacktrackState)

    graph.add_node("attempt", make_attempt(ctx))
    graph.add_node("assess", make_assess(ctx))
    graph.add_node("refine", refine)
    graph.add_node("backtrack", make_backtrack(ctx))

    graph.add_edge(START, "attempt")
    graph.add_edge("attempt", "assess")
    graph.add_edge("refine", "attempt")

    graph.add_conditional_edges(
        "assess",
        route_after_assess,
        {
            "end": END,
            "refine": "refine",
            "backtrack": "backtrack",
        },
    )
    graph.add_conditional_edges(
        "backtrack",
        route_after_backtrack,
        {
            "end": END,
            "attempt": "attempt",
        },
    )

    return graph.compile()
