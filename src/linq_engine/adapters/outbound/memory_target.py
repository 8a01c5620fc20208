"""In-memory Target Adapter.

Plans run by the in-process executor need no translation; compiling one
renders its description, which is what ``explain`` and the query log show.
It never declines a plan.
"""

from __future__ import annotations

from linq_engine.domain.entities.plan import LogicalPlan
from linq_engine.ports.outbound.target_adapter import CompiledQuery


class InMemoryTargetAdapter:
    """Target adapter for in-process evaluation."""

    @property
    def backend(self) -> str:
        return "memory"

    def compile(self, plan: LogicalPlan) -> CompiledQuery:
        return CompiledQuery(
            text=plan.describe(),
            backend=self.backend,
            columns=plan.shape.columns(),
        )
