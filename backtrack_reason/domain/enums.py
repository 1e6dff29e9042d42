"""Controlled enumerations for the backtrack-reason domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from enum import Enum


class DivergenceLevel(str, Enum):
    """How far an actual outcome is from the expected one."""

    MATCH = "match"
    MINOR = "minor"
    MODERATE = "moderate"
    CRITICAL = "critical"


class CorrectionStrategy(str, Enum):
    """What the correction loop does after a divergent attempt."""

    RETRY_ADJUSTED = "retry_adjusted"
    BACKTRACK_ALTERNATIVE = "backtrack_alternative"
    CLARIFY_REQUIREMENTS = "clarify_requirements"
    ACCEPT_PARTIAL = "accept_partial"


class Criticality(str, Enum):
    """How demanding the caller is about result quality."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SearchStrategy(str, Enum):
    """Tree traversal order."""

    BFS = "bfs"
    DFS = "dfs"
    BEST_FIRST = "best_first"


class SearchHaltReason(str, Enum):
    """Why a tree search stopped."""

    SOLUTION_FOUND = "solution_found"
    FRONTIER_EXHAUSTED = "frontier_exhausted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    MAX_DEPTH_REACHED = "max_depth_reached"
    CANCELLED = "cancelled"


class DeadEndReason(str, Enum):
    """Heuristics that can flag a reasoning branch as unrecoverable."""

    REPEATED_FAILURES = "repeated_failures"
    CIRCULAR_REASONING = "circular_reasoning"
    LOW_CONFIDENCE = "low_confidence"
    STALLED_PROGRESS = "stalled_progress"
    CONSTRAINT_VIOLATION = "constraint_violation"
    CUSTOM_PREDICATE = "custom_predicate"


class VariationStrategy(str, Enum):
    """Ways the path explorer derives an alternative from a state."""

    PARAMETER_ADJUSTMENT = "parameter_adjustment"
    STRATEGY_CHANGE = "strategy_change"
    BACKTRACK_TO_EARLIER = "backtrack_to_earlier"


class ReasoningStyle(str, Enum):
    """High-level reasoning styles, in the order strategy change cycles them."""

    ANALYTICAL = "analytical"
    CREATIVE = "creative"
    SYSTEMATIC = "systematic"
    INTUITIVE = "intuitive"


class OutcomeStatus(str, Enum):
    """Discriminator of the terminal result of a run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class ErrorKind(str, Enum):
    """Machine-readable failure kinds carried by errors and Failure outcomes."""

    VALIDATION_ERROR = "validation_error"
    INSUFFICIENT_BUDGET = "insufficient_budget"
    INSUFFICIENT_PRIORITY_BUDGET = "insufficient_priority_budget"
    EMPTY_STACK = "empty_stack"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    PERSISTENCE_ERROR = "persistence_error"
    EXHAUSTED_ALTERNATIVES = "exhausted_alternatives"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
