"""Domain entities for the query engine.

Exports:
    Schema:
        - FieldDescriptor: Named, typed scalar field of an entity
        - RelationDescriptor: To-one or to-many link between entities
        - EntityDescriptor: Queryable record type
        - entity_from_dataclass: Derive a descriptor from a dataclass

    Expressions:
        - Expr: Base class for scalar expressions
        - Column, Outer, Literal: References and constants
        - Comparison, Logical, IsNull, Like, Arithmetic, Function: Operators
        - AggregateCall, ClientCall, BoundField: Aggregates, client calls,
          resolved references
        - col, lit, outer, client, F: Expression constructors
        - count, min_, max_, sum_, average: Aggregate constructors

    Query Nodes:
        - QueryNode, NodeKind: Base class and tag
        - SourceNode, FilterNode, ProjectNode, JoinNode, GroupByNode,
          OrderByNode, AggregateNode, LetNode, LimitNode, SortKey

    Plans:
        - LogicalPlan, PlanStep, Operation: Validated operation sequences
        - RowShape, Binding, BindingKind, OutputColumn: Row descriptions

    Rows:
        - ResultRow: Immutable result row
        - ResultSet: Materialized result
"""

from linq_engine.domain.entities.entity import (
    EntityDescriptor,
    FieldDescriptor,
    RelationDescriptor,
    entity_from_dataclass,
)
from linq_engine.domain.entities.expression import (
    F,
    AggregateCall,
    Arithmetic,
    BoundField,
    ClientCall,
    Column,
    Comparison,
    Expr,
    FieldProxy,
    Function,
    IsNull,
    Like,
    Literal,
    Logical,
    Outer,
    average,
    client,
    col,
    count,
    lit,
    max_,
    min_,
    outer,
    sum_,
)
from linq_engine.domain.entities.plan import (
    AggregateStep,
    Binding,
    BindingKind,
    FilterStep,
    GroupStep,
    JoinStep,
    LetStep,
    LimitStep,
    LogicalPlan,
    Operation,
    OrderStep,
    OutputColumn,
    PlanStep,
    ProjectStep,
    RowShape,
    ScanStep,
)
from linq_engine.domain.entities.query_node import (
    AggregateNode,
    FilterNode,
    GroupByNode,
    JoinNode,
    LetNode,
    LimitNode,
    NodeKind,
    OrderByNode,
    ProjectNode,
    QueryNode,
    SortKey,
    SourceNode,
)
from linq_engine.domain.entities.row import ResultRow, ResultSet

__all__ = [
    # Schema
    "FieldDescriptor",
    "RelationDescriptor",
    "EntityDescriptor",
    "entity_from_dataclass",
    # Expressions
    "Expr",
    "Column",
    "Outer",
    "Literal",
    "Comparison",
    "Logical",
    "IsNull",
    "Like",
    "Arithmetic",
    "Function",
    "AggregateCall",
    "ClientCall",
    "BoundField",
    "FieldProxy",
    "F",
    "col",
    "lit",
    "outer",
    "client",
    "count",
    "min_",
    "max_",
    "sum_",
    "average",
    # Query Nodes
    "QueryNode",
    "NodeKind",
    "SourceNode",
    "FilterNode",
    "ProjectNode",
    "JoinNode",
    "GroupByNode",
    "SortKey",
    "OrderByNode",
    "AggregateNode",
    "LetNode",
    "LimitNode",
    # Plans
    "LogicalPlan",
    "PlanStep",
    "Operation",
    "ScanStep",
    "FilterStep",
    "JoinStep",
    "LetStep",
    "GroupStep",
    "AggregateStep",
    "OrderStep",
    "LimitStep",
    "ProjectStep",
    "RowShape",
    "Binding",
    "BindingKind",
    "OutputColumn",
    # Rows
    "ResultRow",
    "ResultSet",
]
