"""backtrack-reason — iterative refinement, backtracking and tree search.

This is the application entry point.  It configures logging once and
wires a ReasoningEngine to the process-wide Settings.

Usage:
    from backtrack_reason.main import create_engine
    from backtrack_reason.adapters.llm import make_generate_fn

    engine = create_engine()
    outcome = await engine.execute_with_backtracking(make_generate_fn(), expected="42")
"""

from __future__ import annotations

import logging

from backtrack_reason.config import Settings, settings
from backtrack_reason.core.reasoning_engine import ReasoningEngine

# ── Logging ──────────────────────────────────────────────────────────────────

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install the root handler; a no-op if one is already configured."""
    logging.basicConfig(
        level=level or settings.log_level,
        format=LOG_FORMAT,
    )


# ── Engine ───────────────────────────────────────────────────────────────────

def create_engine(config: Settings | None = None) -> ReasoningEngine:
    configure_logging((config or settings).log_level)
    engine = ReasoningEngine(config)
    logging.getLogger(__name__).info(
        "%s ready (budget=%d, max_backtracks=%d, search=%s)",
        engine.config.app_name,
        engine.config.budget_total,
        engine.config.max_backtracks,
        engine.config.search_strategy,
    )
    return engine
