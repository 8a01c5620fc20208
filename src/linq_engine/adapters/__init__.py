"""Adapters layer - concrete implementations of port interfaces.

Adapters provide the actual implementations:
- Outbound adapters: Data sources (in-memory, SQLAlchemy) and target
  adapters (SQL via sqlglot, in-memory)
"""

from linq_engine.adapters.outbound import (
    InMemoryDataSource,
    InMemoryTargetAdapter,
    SQLAlchemyDataSource,
    SQLTargetAdapter,
)

__all__ = [
    # Outbound adapters
    "InMemoryDataSource",
    "SQLAlchemyDataSource",
    "SQLTargetAdapter",
    "InMemoryTargetAdapter",
]
