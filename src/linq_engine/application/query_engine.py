"""Query engine: the facade tying builder, planner, adapters and executor together.

Control flow for one query::

    Query / QueryNode
        -> QueryPlanner.lower()         (linq.plan span)
        -> TargetAdapter.compile()      (linq.compile span, relational sources)
        -> ResultIterator               (linq.execute span, lazy)
              -> backend rows, coerced back to the plan's types, or
              -> QueryExecutor operators over entity scans

When the target adapter declines a plan with UnsupportedOperation, the
engine falls back to in-process evaluation over the same data source, unless
configured to raise instead.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator

from linq_engine.adapters.outbound.memory_target import InMemoryTargetAdapter
from linq_engine.adapters.outbound.sql_target import SQLTargetAdapter
from linq_engine.application.builder import ExpressionBuilder, Query
from linq_engine.application.executor import QueryExecutor
from linq_engine.application.results import ResultIterator
from linq_engine.domain.entities.plan import LogicalPlan, RowShape
from linq_engine.domain.entities.query_node import QueryNode
from linq_engine.domain.entities.row import ResultRow, ResultSet
from linq_engine.domain.errors import (
    EmptyAggregate,
    PlanValidationError,
    SourceError,
    UnsupportedOperation,
)
from linq_engine.domain.services.planner import QueryPlanner
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import coerce_value
from linq_engine.infrastructure.config import Config, get_config
from linq_engine.infrastructure.logging import get_logger
from linq_engine.infrastructure.metrics import MetricsRegistry, get_metrics
from linq_engine.infrastructure.tracing import trace_span
from linq_engine.ports.outbound.data_source import (
    DataSource,
    QueryConnection,
    SourceConnection,
)
from linq_engine.ports.outbound.target_adapter import CompiledQuery, TargetAdapter

logger = get_logger(__name__)


class QueryEngine:
    """Builds, plans and runs queries against one data source.

    Args:
        registry: Entity registry; frozen on construction
        source: Data source rows are read from
        adapter: Target adapter; by default SQL for sources that accept
            compiled queries, in-memory otherwise
        config: Engine configuration (defaults to ``get_config()``)
        metrics: Metrics registry; by default the global one when metrics
            are enabled

    Thread Safety:
        The engine holds no per-query state; concurrent queries each get
        their own plan and result iterator.

    Example:
        >>> engine = QueryEngine(registry, InMemoryDataSource({"Movie": movies}))
        >>> engine.query("Movie").where(F.Release > 2000).select("Title").to_list()
    """

    def __init__(
        self,
        registry: EntityRegistry,
        source: DataSource,
        adapter: TargetAdapter | None = None,
        config: Config | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if not registry.frozen:
            registry.freeze()
        self._registry = registry
        self._source = source
        self._config = config or get_config()
        if metrics is None and self._config.observability.metrics_enabled:
            metrics = get_metrics()
        self._metrics = metrics

        self._planner = QueryPlanner(registry)
        self._builder = ExpressionBuilder(registry, self._planner)
        self._executor = QueryExecutor(registry)
        self._adapter = adapter or self._default_adapter()

        logger.info(
            "query_engine_initialized",
            source=source.name,
            backend=self._adapter.backend,
            entities=len(registry),
        )

    def _default_adapter(self) -> TargetAdapter:
        if not self._source.accepts_compiled:
            return InMemoryTargetAdapter()
        target = self._config.target
        return SQLTargetAdapter(
            dialect=getattr(self._source, "dialect", target.dialect),
            pretty=target.pretty,
            identify=target.identify,
            registry=self._registry,
        )

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    @property
    def source(self) -> DataSource:
        return self._source

    @property
    def adapter(self) -> TargetAdapter:
        return self._adapter

    @property
    def builder(self) -> ExpressionBuilder:
        return self._builder

    @property
    def planner(self) -> QueryPlanner:
        return self._planner

    def query(self, entity: str, alias: str | None = None) -> Query:
        """Start a fluent query over an entity."""
        return Query(self._builder, self._builder.source(entity, alias), self)

    def lower(self, node: QueryNode | Query) -> LogicalPlan:
        """Validate and lower a query into a fresh logical plan.

        Raises:
            PlanValidationError: With every defect found in the query.
        """
        node = _node_of(node)
        with trace_span("linq.plan", {"linq.root": node.kind.value}) as span:
            try:
                plan = self._planner.lower(node)
            except PlanValidationError as e:
                if self._metrics is not None:
                    self._metrics.plan_validation_errors_total.inc(len(e.errors))
                logger.warning("plan_validation_failed", errors=[str(err) for err in e.errors])
                raise
            span.set_attribute("linq.steps", len(plan))
        logger.debug("plan_lowered", steps=len(plan), root=plan.root.operation.value)
        return plan

    def compile(self, query: QueryNode | Query | LogicalPlan) -> CompiledQuery:
        """Compile a query for the configured backend without running it.

        Raises:
            UnsupportedOperation: If the adapter cannot express the plan.
        """
        plan = query if isinstance(query, LogicalPlan) else self.lower(query)
        with trace_span("linq.compile", {"linq.backend": self._adapter.backend}):
            compiled = self._adapter.compile(plan)
        if self._config.observability.log_queries:
            logger.info("query_compiled", backend=compiled.backend, query=compiled.text)
        return compiled

    def explain(self, query: QueryNode | Query) -> str:
        """Describe the plan and what the backend will run for it."""
        plan = self.lower(query)
        lines = ["Plan:"]
        lines.extend(f"  {line}" for line in plan.describe().splitlines())
        compiled = None
        reason = "in-process"
        if self._source.accepts_compiled and not isinstance(self._adapter, InMemoryTargetAdapter):
            try:
                compiled = self._adapter.compile(plan)
            except UnsupportedOperation as e:
                reason = f"fallback: {e}"
        if compiled is None:
            lines.append(f"Backend: memory ({reason})")
        else:
            lines.append(f"Backend: {compiled.backend} ({self._source.name})")
            lines.append("Query:")
            lines.extend(f"  {line}" for line in compiled.text.splitlines())
        return "\n".join(lines)

    def execute(
        self,
        query: QueryNode | Query | LogicalPlan,
        timeout: float | None = None,
    ) -> ResultIterator:
        """Start a lazy execution.

        Planning and compiling happen now; the data source is not touched
        until the first row is pulled from the returned iterator.

        Raises:
            PlanValidationError: If the query is invalid.
            PlanConsumed: If ``query`` is a plan that was already executed.
            UnsupportedOperation: If the adapter declines the plan and
                fallback is disabled.
        """
        plan = query if isinstance(query, LogicalPlan) else self.lower(query)
        plan.mark_consumed()
        if timeout is None:
            timeout = self._config.execution.default_timeout_seconds

        compiled = self._compile_for_source(plan)
        produce: Callable[[SourceConnection, Callable[[], None]], Iterator[ResultRow]]
        if compiled is not None:
            backend = compiled.backend

            def produce(conn: SourceConnection, check: Callable[[], None]) -> Iterator[ResultRow]:
                return self._backend_rows(compiled, plan.shape, conn, check)
        else:
            backend = "memory"

            def produce(conn: SourceConnection, check: Callable[[], None]) -> Iterator[ResultRow]:
                return self._executor.rows(plan, self._executor.context(conn, check))

        logger.debug("query_scheduled", backend=backend, timeout=timeout)
        return ResultIterator(
            self._source,
            produce,
            plan.shape.column_names(),
            backend=backend,
            timeout=timeout,
            metrics=self._metrics,
        )

    def to_list(self, query: QueryNode | Query | LogicalPlan, timeout: float | None = None) -> ResultSet:
        """Execute a query and materialise every row."""
        with self.execute(query, timeout) as rows:
            return rows.to_list()

    def _compile_for_source(self, plan: LogicalPlan) -> CompiledQuery | None:
        """Compile for the source's backend, or None to evaluate in-process."""
        if not self._source.accepts_compiled or isinstance(self._adapter, InMemoryTargetAdapter):
            return None
        try:
            return self.compile(plan)
        except UnsupportedOperation as e:
            if self._config.execution.on_unsupported == "error":
                raise
            if self._metrics is not None:
                self._metrics.adapter_fallbacks_total.inc()
            logger.warning("adapter_fallback", backend=self._adapter.backend, reason=str(e))
            return None

    def _backend_rows(
        self,
        compiled: CompiledQuery,
        shape: RowShape,
        conn: SourceConnection,
        check: Callable[[], None],
    ) -> Iterator[ResultRow]:
        if not isinstance(conn, QueryConnection):
            raise SourceError(f"Data source '{self._source.name}' cannot run compiled queries")
        columns = shape.columns()
        names = [c.name for c in columns]
        strict = dict(compiled.empty_aggregates)
        for values in conn.execute(compiled):
            check()
            row: list[Any] = []
            for column, value in zip(columns, values):
                if value is None and column.name in strict:
                    raise EmptyAggregate(strict[column.name].value, column.name)
                row.append(coerce_value(value, column.type))
            yield ResultRow(names, row)

    def __repr__(self) -> str:
        return f"QueryEngine(source={self._source.name!r}, backend={self._adapter.backend!r})"


def _node_of(query: QueryNode | Query) -> QueryNode:
    return query.node if isinstance(query, Query) else query
