"""Outbound ports - interfaces for external dependencies.

Outbound ports define contracts for the systems the query engine depends
on: the stores rows are read from and the backends plans compile to.
"""

from linq_engine.ports.outbound.data_source import DataSource, QueryConnection, SourceConnection
from linq_engine.ports.outbound.target_adapter import CompiledQuery, TargetAdapter

__all__ = [
    "DataSource",
    "SourceConnection",
    "QueryConnection",
    "TargetAdapter",
    "CompiledQuery",
]
