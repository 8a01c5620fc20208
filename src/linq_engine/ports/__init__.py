"""Ports layer - interface definitions following Hexagonal Architecture.

Ports are abstract interfaces (protocols) that define contracts:
- Outbound ports: Dependencies on external systems (DataSource, TargetAdapter)

Adapters implement these ports with concrete functionality.
"""

from linq_engine.ports.outbound import (
    CompiledQuery,
    DataSource,
    QueryConnection,
    SourceConnection,
    TargetAdapter,
)

__all__ = [
    "DataSource",
    "SourceConnection",
    "QueryConnection",
    "TargetAdapter",
    "CompiledQuery",
]
