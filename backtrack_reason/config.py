"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "backtrack-reason"
    debug: bool = False
    log_level: str = "INFO"

    # Self-correction loop
    max_iterations: int = 3
    quality_threshold: float = 0.7

    # Divergence classification (tunable defaults, never per call)
    match_threshold: float = 0.95
    minor_threshold: float = 0.8
    moderate_threshold: float = 0.5

    # Dead-end detection
    repeat_threshold: int = 3
    confidence_threshold: float = 0.3
    stall_window: int = 5
    history_window: int = 10

    # Path exploration
    diversity_threshold: float = 0.3
    max_alternative_attempts: int = 9

    # Budget
    budget_total: int = 10
    priority_reserve_fraction: float = 0.2
    level_allocation_fraction: float = 0.4

    # Orchestrator
    max_backtracks: int = 3

    # Tree search
    search_strategy: str = "bfs"
    beam_width: int = 3
    max_depth: int = 5
    search_budget: int = 100
    prune_threshold: float = 0.0
    max_concurrency: int = 4

    # Injected call deadline in seconds; unset means no deadline
    call_timeout_seconds: float | None = None

    # Gemini LLM adapter
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.2
    gemini_max_output_tokens: int = 1024

    model_config = {"env_prefix": "BACKTRACK_"}


settings = Settings()
