"""Application layer for the query engine.

The application layer orchestrates domain logic to fulfill use cases:
composing queries, lowering them, and running the resulting plans.

Exports:
    QueryEngine:
        - QueryEngine: Main entry point for building and running queries
    Builder:
        - ExpressionBuilder: Builds validated query nodes
        - Query: Immutable fluent query
    Executor:
        - QueryExecutor: Executes plans using Volcano iterator model
        - Operator: Base class for executor operators
    Results:
        - ResultIterator: Lazy result iteration with scoped connection
        - ExecutionState: Lifecycle state of a result iterator
"""

from linq_engine.application.builder import ExpressionBuilder, Query
from linq_engine.application.executor import (
    AggregateOperator,
    FilterOperator,
    GroupOperator,
    HashJoinOperator,
    LetOperator,
    LimitOperator,
    Operator,
    ProjectOperator,
    QueryExecutor,
    SeqScanOperator,
    SortOperator,
)
from linq_engine.application.query_engine import QueryEngine
from linq_engine.application.results import ExecutionState, ResultIterator

__all__ = [
    "QueryEngine",
    "ExpressionBuilder",
    "Query",
    "QueryExecutor",
    "Operator",
    "SeqScanOperator",
    "FilterOperator",
    "ProjectOperator",
    "SortOperator",
    "LimitOperator",
    "HashJoinOperator",
    "GroupOperator",
    "AggregateOperator",
    "LetOperator",
    "ResultIterator",
    "ExecutionState",
]
