"""Outbound adapters - implementations of outbound ports.

These adapters implement the data sources queries read from and the
target adapters plans compile to.
"""

from linq_engine.adapters.outbound.in_memory_source import InMemoryConnection, InMemoryDataSource
from linq_engine.adapters.outbound.memory_target import InMemoryTargetAdapter
from linq_engine.adapters.outbound.sql_target import SQLTargetAdapter
from linq_engine.adapters.outbound.sqlalchemy_source import (
    SQLAlchemyConnection,
    SQLAlchemyDataSource,
)

__all__ = [
    "InMemoryDataSource",
    "InMemoryConnection",
    "SQLAlchemyDataSource",
    "SQLAlchemyConnection",
    "SQLTargetAdapter",
    "InMemoryTargetAdapter",
]
