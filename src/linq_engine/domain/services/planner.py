"""Query Planner: type-checks a query-node tree and lowers it to a LogicalPlan.

Lowering is a post-order traversal: children are lowered before their
parents, so a FILTER step always follows the SCAN step it reads from. Every
field reference is resolved against the entity registry and rewritten into
a BoundField. All defects found anywhere in the tree are collected and
reported together in a PlanValidationError.

Join order is preserved as written; there is no cost-based reordering.

References:
    - Graefe, "Volcano" (1994) - logical/physical operator split
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from linq_engine.domain.entities.expression import (
    AggregateCall,
    Arithmetic,
    BoundField,
    ClientCall,
    Column,
    Comparison,
    Expr,
    Function,
    IsNull,
    Like,
    Literal,
    Logical,
    Outer,
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
    OrderStep,
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
    OrderByNode,
    ProjectNode,
    QueryNode,
    SourceNode,
)
from linq_engine.domain.errors import (
    AmbiguousField,
    AmbiguousJoin,
    PlanValidationError,
    QueryBuildError,
    TypeMismatch,
    UnknownField,
)
from linq_engine.domain.services.registry import EntityRegistry
from linq_engine.domain.value_objects import (
    AggregateFunction,
    ArithmeticOp,
    ComparisonOp,
    JoinKind,
    LogicalOp,
    ScalarFunction,
    SemanticType,
    numeric_result,
    type_of_value,
)

GROUP_KEY = "Key"
GROUP_ITEMS = "Items"


@dataclass
class _Lowering:
    """Mutable state of one lowering pass (one plan or sub-plan)."""

    errors: list[QueryBuildError]
    outer: tuple[RowShape, ...] = ()
    steps: list[PlanStep] = field(default_factory=list)

    def add(self, step_type: type[PlanStep], inputs: tuple[int, ...], shape: RowShape, **payload) -> int:
        index = len(self.steps)
        self.steps.append(step_type(index=index, inputs=inputs, shape=shape, **payload))
        return index

    def shape_of(self, index: int) -> RowShape:
        return self.steps[index].shape


def aggregate_type(
    function: AggregateFunction, operand_type: SemanticType | None
) -> SemanticType:
    """Result type of an aggregate.

    Raises:
        TypeMismatch: If the operand type is not valid for the function.
    """
    if function == AggregateFunction.COUNT:
        return SemanticType.INTEGER
    if operand_type is None:
        raise TypeMismatch(f"{function.name} requires a field to aggregate")
    if operand_type == SemanticType.SEQUENCE:
        raise TypeMismatch(f"{function.name} cannot aggregate a sequence", actual=operand_type)
    if function in (AggregateFunction.SUM, AggregateFunction.AVERAGE):
        if not operand_type.is_numeric and operand_type != SemanticType.NULL:
            raise TypeMismatch(
                f"{function.name} requires a numeric field, got {operand_type.value}",
                expected="numeric",
                actual=operand_type,
            )
        if function == AggregateFunction.AVERAGE:
            return SemanticType.FLOAT
        return operand_type
    if not operand_type.is_orderable:
        raise TypeMismatch(
            f"{function.name} requires an orderable field, got {operand_type.value}",
            actual=operand_type,
        )
    return operand_type


class QueryPlanner:
    """Validates query-node trees and lowers them into logical plans.

    The planner is stateless apart from its (read-only) registry, so one
    instance may be shared by concurrent callers.
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    def validate(self, node: QueryNode) -> list[QueryBuildError]:
        """Return every defect in the tree (empty if the tree is valid)."""
        errors: list[QueryBuildError] = []
        self._lower_tree(node, _Lowering(errors=errors))
        return errors

    def lower(self, node: QueryNode) -> LogicalPlan:
        """Lower a query-node tree into a logical plan.

        Raises:
            PlanValidationError: If any field reference, type or join
                condition in the tree is invalid.
        """
        errors: list[QueryBuildError] = []
        ctx = _Lowering(errors=errors)
        root = self._lower_tree(node, ctx)
        if errors or root is None:
            raise PlanValidationError(errors)
        return LogicalPlan(tuple(ctx.steps))

    def shape_of(self, node: QueryNode) -> RowShape:
        """Shape of the rows a node produces.

        Raises:
            PlanValidationError: If the node is invalid.
        """
        return self.lower(node).shape

    def bind(
        self,
        expr: Expr,
        shape: RowShape,
        *,
        outer: Sequence[RowShape] = (),
    ) -> tuple[Expr, SemanticType]:
        """Bind a single expression against a row shape.

        Raises:
            PlanValidationError: If the expression is invalid for the shape.
        """
        errors: list[QueryBuildError] = []
        bound, type_ = self._bind(expr, shape, errors, tuple(outer), shape.grouped)
        if errors or bound is None or type_ is None:
            raise PlanValidationError(errors)
        return bound, type_

    # Lowering

    def _lower_tree(self, node: QueryNode, ctx: _Lowering) -> int | None:
        if isinstance(node, SourceNode):
            return self._lower_source(node, ctx)
        if isinstance(node, FilterNode):
            return self._lower_filter(node, ctx)
        if isinstance(node, ProjectNode):
            return self._lower_project(node, ctx)
        if isinstance(node, JoinNode):
            return self._lower_join(node, ctx)
        if isinstance(node, GroupByNode):
            return self._lower_group(node, ctx)
        if isinstance(node, OrderByNode):
            return self._lower_order(node, ctx)
        if isinstance(node, AggregateNode):
            return self._lower_aggregate(node, ctx)
        if isinstance(node, LetNode):
            return self._lower_let(node, ctx)
        if isinstance(node, LimitNode):
            return self._lower_limit(node, ctx)
        ctx.errors.append(QueryBuildError(f"Unsupported query node: {type(node).__name__}"))
        return None

    def _lower_source(self, node: SourceNode, ctx: _Lowering) -> int | None:
        try:
            entity = self._registry.get(node.entity)
        except QueryBuildError as e:
            ctx.errors.append(e)
            return None
        shape = RowShape((Binding(node.binding, BindingKind.ENTITY, entity=entity),))
        return ctx.add(ScanStep, (), shape, entity=entity, alias=node.binding)

    def _lower_filter(self, node: FilterNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        shape = ctx.shape_of(child)
        predicate, type_ = self._bind(node.predicate, shape, ctx.errors, ctx.outer, shape.grouped)
        if predicate is None or type_ is None:
            return None
        if not _is_boolean(type_):
            ctx.errors.append(
                TypeMismatch(
                    f"Filter predicate must be boolean, got {type_.value}: "
                    f"{node.predicate.render()}",
                    expected=SemanticType.BOOLEAN,
                    actual=type_,
                )
            )
            return None
        return ctx.add(FilterStep, (child,), shape, predicate=predicate)

    def _lower_project(self, node: ProjectNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        shape = ctx.shape_of(child)
        if not node.selectors:
            return ctx.add(ProjectStep, (child,), shape, items=())

        items: list[tuple[str, Expr]] = []
        bindings: list[Binding] = []
        seen: set[str] = set()
        ok = True
        for name, expr in node.selectors:
            if name in seen:
                ctx.errors.append(AmbiguousField(name, [name, name]))
                ok = False
                continue
            seen.add(name)
            bound, type_ = self._bind(expr, shape, ctx.errors, ctx.outer, shape.grouped)
            if bound is None or type_ is None:
                ok = False
                continue
            items.append((name, bound))
            bindings.append(
                Binding(name, BindingKind.VALUE, type=type_, nullable=_nullable(bound))
            )
        if not ok:
            return None
        return ctx.add(ProjectStep, (child,), RowShape(tuple(bindings)), items=tuple(items))

    def _lower_join(self, node: JoinNode, ctx: _Lowering) -> int | None:
        left = self._lower_tree(node.left, ctx)
        right = self._lower_tree(node.right, ctx)
        if left is None or right is None:
            return None
        left_shape, right_shape = ctx.shape_of(left), ctx.shape_of(right)

        if left_shape.grouped or right_shape.grouped:
            ctx.errors.append(AmbiguousJoin("Cannot join grouped rows; aggregate or project them first"))
            return None
        clashes = [b.name for b in right_shape.bindings if left_shape.get(b.name) is not None]
        if clashes:
            ctx.errors.append(
                AmbiguousJoin(
                    f"Both join sides bind {', '.join(repr(c) for c in clashes)}; "
                    "give one side a distinct alias"
                )
            )
            return None

        keys = self._join_keys(node.predicate, left_shape, right_shape, ctx)
        if keys is None:
            return None
        left_keys, right_keys = keys

        nullable_right = node.join_kind == JoinKind.LEFT
        right_bindings = tuple(
            Binding(b.name, b.kind, b.type, b.entity, b.nullable or nullable_right)
            for b in right_shape.bindings
        )
        shape = RowShape(left_shape.bindings + right_bindings)
        return ctx.add(
            JoinStep,
            (left, right),
            shape,
            left_keys=left_keys,
            right_keys=right_keys,
            join_kind=node.join_kind,
        )

    def _join_keys(
        self,
        predicate: Expr,
        left: RowShape,
        right: RowShape,
        ctx: _Lowering,
    ) -> tuple[tuple[Expr, ...], tuple[Expr, ...]] | None:
        """Reduce a join predicate to pairs of (left key, right key)."""
        conjuncts = _conjuncts(predicate)
        left_keys: list[Expr] = []
        right_keys: list[Expr] = []
        ok = True
        for cond in conjuncts:
            if not isinstance(cond, Comparison) or cond.op != ComparisonOp.EQ:
                ctx.errors.append(
                    AmbiguousJoin(
                        f"Join condition {cond.render()} is not an equality; "
                        "only equi-joins are supported"
                    )
                )
                ok = False
                continue
            sides = [self._join_side(operand, left, right, ctx) for operand in (cond.left, cond.right)]
            if any(s is None for s in sides):
                ok = False
                continue
            (side_a, bound_a, type_a), (side_b, bound_b, type_b) = sides  # type: ignore[misc]
            if {side_a, side_b} != {"left", "right"}:
                ctx.errors.append(
                    AmbiguousJoin(
                        f"Join condition {cond.render()} must compare a left-side "
                        "value with a right-side value"
                    )
                )
                ok = False
                continue
            if not type_a.compatible_with(type_b):
                ctx.errors.append(
                    TypeMismatch(
                        f"Join keys have incompatible types {type_a.value} and "
                        f"{type_b.value}: {cond.render()}",
                        expected=type_a,
                        actual=type_b,
                    )
                )
                ok = False
                continue
            if side_a == "left":
                left_keys.append(bound_a)
                right_keys.append(bound_b)
            else:
                left_keys.append(bound_b)
                right_keys.append(bound_a)
        if not ok:
            return None
        return tuple(left_keys), tuple(right_keys)

    def _join_side(
        self,
        operand: Expr,
        left: RowShape,
        right: RowShape,
        ctx: _Lowering,
    ) -> tuple[str, Expr, SemanticType] | None:
        """Decide which join input an operand belongs to."""
        if not any(isinstance(e, (Column, BoundField)) for e in operand.walk()):
            ctx.errors.append(
                AmbiguousJoin(f"Join operand {operand.render()} references no field")
            )
            return None
        left_errors: list[QueryBuildError] = []
        right_errors: list[QueryBuildError] = []
        bound_l, type_l = self._bind(operand, left, left_errors, ctx.outer, False)
        bound_r, type_r = self._bind(operand, right, right_errors, ctx.outer, False)
        left_ok = not left_errors and bound_l is not None and type_l is not None
        right_ok = not right_errors and bound_r is not None and type_r is not None
        if left_ok and right_ok:
            # An alias-qualified operand belongs to the side binding that alias.
            named_l = _names_binding(operand, left)
            named_r = _names_binding(operand, right)
            if named_l and not named_r:
                return "left", bound_l, type_l  # type: ignore[return-value]
            if named_r and not named_l:
                return "right", bound_r, type_r  # type: ignore[return-value]
            ctx.errors.append(
                AmbiguousField(operand.render(), ["left side", "right side"])
            )
            return None
        if left_ok:
            return "left", bound_l, type_l  # type: ignore[return-value]
        if right_ok:
            return "right", bound_r, type_r  # type: ignore[return-value]
        # Prefer the error that is not a plain "not found on this side".
        errors = [e for e in left_errors + right_errors if type(e) is not UnknownField]
        if errors:
            ctx.errors.append(errors[0])
        elif _references_both(operand, left, right):
            ctx.errors.append(
                AmbiguousJoin(f"Join operand {operand.render()} mixes left and right fields")
            )
        else:
            ctx.errors.append(left_errors[0] if left_errors else UnknownField(operand.render()))
        return None

    def _lower_group(self, node: GroupByNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        shape = ctx.shape_of(child)
        key, type_ = self._bind(node.key, shape, ctx.errors, ctx.outer, shape.grouped)
        if key is None or type_ is None:
            return None
        if type_ == SemanticType.SEQUENCE:
            ctx.errors.append(TypeMismatch("Cannot group by a sequence", actual=type_))
            return None
        out = RowShape(
            (
                Binding(GROUP_KEY, BindingKind.VALUE, type=type_, nullable=_nullable(key)),
                Binding(GROUP_ITEMS, BindingKind.VALUE, type=SemanticType.SEQUENCE),
            ),
            element=shape,
        )
        return ctx.add(GroupStep, (child,), out, key=key)

    def _lower_order(self, node: OrderByNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        shape = ctx.shape_of(child)
        keys = []
        ok = True
        for sort_key in node.keys:
            bound, type_ = self._bind(sort_key.expr, shape, ctx.errors, ctx.outer, shape.grouped)
            if bound is None or type_ is None:
                ok = False
                continue
            if not type_.is_orderable and type_ != SemanticType.NULL:
                ctx.errors.append(
                    TypeMismatch(f"Cannot order by {type_.value}: {sort_key.expr.render()}", actual=type_)
                )
                ok = False
                continue
            keys.append((bound, sort_key.direction))
        if not ok:
            return None
        return ctx.add(OrderStep, (child,), shape, keys=tuple(keys))

    def _lower_aggregate(self, node: AggregateNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        shape = ctx.shape_of(child)
        per_group = shape.grouped
        target = shape.element if per_group else shape
        assert target is not None

        operand: Expr | None = None
        operand_type: SemanticType | None = None
        if node.operand is not None:
            operand, operand_type = self._bind(node.operand, target, ctx.errors, ctx.outer, target.grouped)
            if operand is None:
                return None
        try:
            result_type = aggregate_type(node.function, operand_type)
        except TypeMismatch as e:
            ctx.errors.append(e)
            return None

        result = Binding(node.alias, BindingKind.VALUE, type=result_type)
        if per_group:
            key = shape.get(GROUP_KEY)
            assert key is not None
            if node.alias == GROUP_KEY:
                ctx.errors.append(AmbiguousField(node.alias, [GROUP_KEY, node.alias]))
                return None
            out = RowShape((key, result))
        else:
            out = RowShape((result,))
        return ctx.add(
            AggregateStep,
            (child,),
            out,
            function=node.function,
            operand=operand,
            alias=node.alias,
            per_group=per_group,
        )

    def _lower_let(self, node: LetNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        sub_ctx = _Lowering(
            errors=ctx.errors,
            outer=((ctx.shape_of(child),) if child is not None else ()) + ctx.outer,
        )
        if child is None:
            return None
        shape = ctx.shape_of(child)
        sub_root = self._lower_tree(node.subquery, sub_ctx)

        existing = set(shape.column_names()) | {b.name for b in shape.bindings}
        if node.name in existing:
            ctx.errors.append(AmbiguousField(node.name, [node.name, f"let {node.name}"]))
            return None
        if sub_root is None:
            return None

        subplan = LogicalPlan(tuple(sub_ctx.steps))
        root = subplan.root
        scalar = isinstance(root, AggregateStep) and not root.per_group
        nullable = False
        if scalar:
            assert isinstance(root, AggregateStep)
            value_type = root.shape.bindings[0].type
            # Over no rows MIN, MAX and AVERAGE yield None, as a scalar sub-query does.
            nullable = not root.function.defined_on_empty
        else:
            value_type = SemanticType.SEQUENCE
        out = RowShape(
            shape.bindings
            + (Binding(node.name, BindingKind.VALUE, type=value_type, nullable=nullable),),
            element=shape.element,
        )
        return ctx.add(LetStep, (child,), out, name=node.name, subplan=subplan, scalar=scalar)

    def _lower_limit(self, node: LimitNode, ctx: _Lowering) -> int | None:
        child = self._lower_tree(node.input, ctx)
        if child is None:
            return None
        return ctx.add(
            LimitStep, (child,), ctx.shape_of(child), count=node.count, offset=node.offset
        )

    # Expression binding

    def _bind(
        self,
        expr: Expr,
        shape: RowShape,
        errors: list[QueryBuildError],
        outer: tuple[RowShape, ...],
        aggregates: bool,
    ) -> tuple[Expr | None, SemanticType | None]:
        """Bind an expression, appending every defect found to ``errors``."""
        if isinstance(expr, BoundField):
            return expr, expr.type

        if isinstance(expr, Column):
            try:
                bound = self._resolve(expr.path, shape)
            except QueryBuildError as e:
                errors.append(e)
                return None, None
            return bound, bound.type

        if isinstance(expr, Outer):
            if not outer:
                errors.append(
                    UnknownField(
                        expr.path,
                        message=f"outer reference '{expr.path}' used outside a let sub-query",
                    )
                )
                return None, None
            last_error: QueryBuildError | None = None
            for depth, outer_shape in enumerate(outer, start=1):
                try:
                    bound = self._resolve(expr.path, outer_shape)
                except QueryBuildError as e:
                    last_error = last_error or e
                    continue
                return _with_depth(bound, depth), bound.type
            assert last_error is not None
            errors.append(last_error)
            return None, None

        if isinstance(expr, Literal):
            type_ = type_of_value(expr.value)
            if type_ is None:
                errors.append(
                    TypeMismatch(f"Unsupported literal {expr.value!r} of type {type(expr.value).__name__}")
                )
                return None, None
            return expr, type_

        if isinstance(expr, AggregateCall):
            if not aggregates or shape.element is None:
                errors.append(
                    TypeMismatch(f"Aggregate {expr.render()} is only valid over grouped rows")
                )
                return None, None
            operand: Expr | None = None
            operand_type: SemanticType | None = None
            if expr.operand is not None:
                operand, operand_type = self._bind(
                    expr.operand, shape.element, errors, outer, shape.element.grouped
                )
                if operand is None:
                    return None, None
            try:
                result = aggregate_type(expr.function, operand_type)
            except TypeMismatch as e:
                errors.append(e)
                return None, None
            return AggregateCall(expr.function, operand), result

        children = expr.children()
        bound_children: list[Expr] = []
        types: list[SemanticType] = []
        failed = False
        for child in children:
            bound, type_ = self._bind(child, shape, errors, outer, aggregates)
            if bound is None or type_ is None:
                failed = True
                continue
            bound_children.append(bound)
            types.append(type_)
        if failed:
            return None, None

        try:
            return _check_composite(expr, bound_children, types)
        except TypeMismatch as e:
            errors.append(e)
            return None, None

    def _resolve(self, path: str, shape: RowShape) -> BoundField:
        """Resolve a dotted path against the bindings of a row shape."""
        parts = path.split(".")
        binding = shape.get(parts[0])
        if binding is not None and binding.kind == BindingKind.VALUE:
            if len(parts) > 1:
                raise TypeMismatch(
                    f"'{parts[0]}' is a {binding.type.value if binding.type else 'value'} "
                    f"and has no member '{parts[1]}'"
                )
            assert binding.type is not None
            return BoundField(binding.name, (), binding.type, binding.nullable)

        if binding is not None and len(parts) > 1:
            assert binding.entity is not None
            rf = self._registry.resolve_field(binding.entity, parts[1:])
            return BoundField(
                binding.name,
                rf.path,
                rf.type,
                rf.nullable or binding.nullable,
                rf.relations,
            )

        candidates = [
            b for b in shape.entity_bindings if b.entity is not None and b.entity.has_member(parts[0])
        ]
        if not candidates:
            if binding is not None:
                raise TypeMismatch(f"'{path}' is an entity, not a scalar value")
            sole = shape.sole_entity
            raise UnknownField(path, sole.entity.name if sole and sole.entity else None)
        if len(candidates) > 1:
            raise AmbiguousField(path, [f"{c.name}.{path}" for c in candidates])
        target = candidates[0]
        assert target.entity is not None
        rf = self._registry.resolve_field(target.entity, parts)
        return BoundField(
            target.name,
            rf.path,
            rf.type,
            rf.nullable or target.nullable,
            rf.relations,
        )


def _check_composite(
    expr: Expr, children: list[Expr], types: list[SemanticType]
) -> tuple[Expr, SemanticType]:
    """Type-check a composite expression whose children are already bound."""
    if isinstance(expr, Comparison):
        left, right = children
        lt, rt = types
        if SemanticType.SEQUENCE in (lt, rt):
            raise TypeMismatch(f"Cannot compare a sequence: {expr.render()}")
        if not lt.compatible_with(rt):
            raise TypeMismatch(
                f"Cannot compare {lt.value} with {rt.value}: {expr.render()}",
                expected=lt,
                actual=rt,
            )
        if expr.op == ComparisonOp.EQ and isinstance(right, Literal) and right.value is None:
            return IsNull(left), SemanticType.BOOLEAN
        if expr.op == ComparisonOp.NE and isinstance(right, Literal) and right.value is None:
            return IsNull(left, negated=True), SemanticType.BOOLEAN
        return Comparison(expr.op, left, right), SemanticType.BOOLEAN

    if isinstance(expr, Logical):
        for child, type_ in zip(expr.operands, types):
            if not _is_boolean(type_):
                raise TypeMismatch(
                    f"{expr.op.value} operand must be boolean, got {type_.value}: {child.render()}",
                    expected=SemanticType.BOOLEAN,
                    actual=type_,
                )
        if expr.op == LogicalOp.NOT and len(children) != 1:
            raise TypeMismatch("NOT takes exactly one operand")
        return Logical(expr.op, tuple(children)), SemanticType.BOOLEAN

    if isinstance(expr, IsNull):
        return IsNull(children[0], expr.negated), SemanticType.BOOLEAN

    if isinstance(expr, Like):
        if types[0] not in (SemanticType.STRING, SemanticType.NULL):
            raise TypeMismatch(
                f"LIKE requires a string, got {types[0].value}: {expr.render()}",
                expected=SemanticType.STRING,
                actual=types[0],
            )
        return Like(children[0], expr.pattern), SemanticType.BOOLEAN

    if isinstance(expr, Arithmetic):
        lt, rt = types
        for t in (lt, rt):
            if not t.is_numeric and t != SemanticType.NULL:
                raise TypeMismatch(
                    f"Arithmetic requires numeric operands, got {t.value}: {expr.render()}",
                    expected="numeric",
                    actual=t,
                )
        if expr.op == ArithmeticOp.DIV:
            result = SemanticType.FLOAT
        else:
            result = numeric_result(
                lt if lt != SemanticType.NULL else SemanticType.INTEGER,
                rt if rt != SemanticType.NULL else SemanticType.INTEGER,
            )
        return Arithmetic(expr.op, children[0], children[1]), result

    if isinstance(expr, Function):
        if types[0] not in (SemanticType.STRING, SemanticType.NULL):
            raise TypeMismatch(
                f"{expr.function.value} requires a string, got {types[0].value}",
                expected=SemanticType.STRING,
                actual=types[0],
            )
        result = (
            SemanticType.INTEGER if expr.function == ScalarFunction.LENGTH else SemanticType.STRING
        )
        return Function(expr.function, children[0]), result

    if isinstance(expr, ClientCall):
        return ClientCall(expr.fn, tuple(children), expr.returns, expr.name), expr.returns

    raise TypeMismatch(f"Unsupported expression {type(expr).__name__}")


def _is_boolean(type_: SemanticType) -> bool:
    return type_ in (SemanticType.BOOLEAN, SemanticType.NULL)


def _nullable(expr: Expr) -> bool:
    for e in expr.walk():
        if isinstance(e, BoundField) and e.nullable:
            return True
        if isinstance(e, Literal) and e.value is None:
            return True
        if isinstance(e, ClientCall):
            return True
    return False


def _conjuncts(expr: Expr) -> list[Expr]:
    if isinstance(expr, Logical) and expr.op == LogicalOp.AND:
        out: list[Expr] = []
        for operand in expr.operands:
            out.extend(_conjuncts(operand))
        return out
    return [expr]


def _with_depth(bound: BoundField, depth: int) -> BoundField:
    return BoundField(
        bound.binding, bound.path, bound.type, bound.nullable, bound.relations, depth
    )


def _names_binding(expr: Expr, shape: RowShape) -> bool:
    """Whether every column in ``expr`` starts with a binding name of ``shape``."""
    names = [e.path.split(".")[0] for e in expr.walk() if isinstance(e, Column)]
    return bool(names) and all(shape.get(n) is not None for n in names)


def _references_both(expr: Expr, left: RowShape, right: RowShape) -> bool:
    names = [e.path.split(".")[0] for e in expr.walk() if isinstance(e, Column)]
    in_left = any(left.get(n) is not None for n in names)
    in_right = any(right.get(n) is not None for n in names)
    return in_left and in_right
