"""Domain services for query validation and evaluation.

Services implement logic that doesn't naturally fit within a single
entity: resolving names against the registry, lowering expression trees
into plans, and evaluating bound expressions in-process.
"""

from linq_engine.domain.services.evaluator import ExpressionEvaluator, compute_aggregate
from linq_engine.domain.services.planner import QueryPlanner
from linq_engine.domain.services.registry import EntityRegistry, ResolvedField

__all__ = [
    "EntityRegistry",
    "ResolvedField",
    "QueryPlanner",
    "ExpressionEvaluator",
    "compute_aggregate",
]
