"""
Measures - Declarative measure definitions and their compiled reducers

Three kinds of measure:
- count:          one per event passing the measure's filters
- countDistinct:  cardinality of distinct non-null values of a field
                  among events passing the filters
- number:         closed-form arithmetic over other measures of the same
                  query row (e.g. "starActivity - unstarActivity")

Filters are AND-combined; an empty filter list lets every event through.

Each compiled measure produces three polars aggregations:
1. raw_expr():    final value straight from events
2. rollup_expr(): partial state materialized into a rollup row
                  (a count, or a sorted list of distinct values)
3. merge_expr():  final value from a group of rollup rows

Keeping distinct values (rather than distinct counts) in rollups is what lets
a day-grained rollup answer a week or quarter exactly.
"""

import ast
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from .errors import SchemaError
from .predicates import Predicate, all_of


class MeasureKind(str, Enum):
    COUNT = 'count'
    COUNT_DISTINCT = 'countDistinct'
    DERIVED = 'number'


@dataclass(frozen=True)
class MeasureDefinition:
    """Schema-level measure; filters may be Predicates or segment names."""
    name: str
    kind: MeasureKind
    filters: Tuple[Union[Predicate, str], ...] = ()
    field: Optional[str] = None
    expression: Optional[str] = None


def count(name: str, *filters: Union[Predicate, str]) -> MeasureDefinition:
    return MeasureDefinition(name, MeasureKind.COUNT, tuple(filters))


def count_distinct(name: str, field: str, *filters: Union[Predicate, str]) -> MeasureDefinition:
    return MeasureDefinition(name, MeasureKind.COUNT_DISTINCT, tuple(filters), field=field)


def derived(name: str, expression: str) -> MeasureDefinition:
    return MeasureDefinition(name, MeasureKind.DERIVED, expression=expression)


# --- derived expressions -------------------------------------------------

_BINOPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


def _dotted_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_dotted_name(node.value)}.{node.attr}"
    raise SchemaError(f"Unsupported reference in measure expression: {ast.dump(node)}")


def parse_expression(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(expression, mode='eval')
    except SyntaxError as e:
        raise SchemaError(f"Invalid measure expression '{expression}': {e.msg}") from e

    for node in ast.walk(tree):
        allowed = (ast.Expression, ast.BinOp, ast.UnaryOp, ast.USub, ast.UAdd, ast.Constant,
                   ast.Name, ast.Attribute, ast.Load) + tuple(_BINOPS)
        if not isinstance(node, allowed):
            raise SchemaError(f"Unsupported syntax in measure expression '{expression}': "
                              f"{type(node).__name__}")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float)):
            raise SchemaError(f"Only numeric constants allowed in '{expression}'")
    return tree


def expression_references(expression: str) -> Tuple[str, ...]:
    """Measure names referenced by a derived expression, in order of appearance."""
    tree = parse_expression(expression)
    refs = []

    def visit(node):
        if isinstance(node, (ast.Name, ast.Attribute)):
            name = _dotted_name(node)
            if name not in refs:
                refs.append(name)
            return
        for child in ast.iter_child_nodes(node):
            visit(child)

    visit(tree.body)
    return tuple(refs)


def _fold(node: ast.AST, leaf: Callable[[str], Any], const: Callable[[Any], Any],
          binop: Callable[[type, Any, Any], Any], neg: Callable[[Any], Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _fold(node.body, leaf, const, binop, neg)
    if isinstance(node, ast.BinOp):
        return binop(type(node.op), _fold(node.left, leaf, const, binop, neg),
                     _fold(node.right, leaf, const, binop, neg))
    if isinstance(node, ast.UnaryOp):
        inner = _fold(node.operand, leaf, const, binop, neg)
        return neg(inner) if isinstance(node.op, ast.USub) else inner
    if isinstance(node, ast.Constant):
        return const(node.value)
    return leaf(_dotted_name(node))


def _expr_binop(op: type, left: pl.Expr, right: pl.Expr) -> pl.Expr:
    if op is ast.Div:
        return pl.when(right != 0).then(left / right).otherwise(None)
    return _BINOPS[op](left, right)


def _value_binop(op: type, left, right):
    if left is None or right is None:
        return None
    if op is ast.Div and right == 0:
        return None
    return _BINOPS[op](left, right)


# --- compiled measures ---------------------------------------------------

@dataclass(frozen=True)
class CompiledMeasure:
    """
    Executable measure. `name` and `dependencies` are fully qualified
    (e.g. 'Activities.starActivity') and double as result column names.
    """
    name: str
    kind: MeasureKind
    predicate: Optional[Predicate] = None
    field: Optional[str] = None
    expression: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()

    @property
    def is_derived(self) -> bool:
        return self.kind == MeasureKind.DERIVED

    def _filtered_field(self) -> pl.Expr:
        col = pl.col(self.field)
        if self.predicate is not None:
            col = col.filter(self.predicate.to_expr())
        return col.drop_nulls()

    def raw_expr(self) -> pl.Expr:
        """Final value over a group of events."""
        if self.kind == MeasureKind.COUNT:
            if self.predicate is None:
                return pl.len().cast(pl.Int64).alias(self.name)
            return self.predicate.to_expr().sum().cast(pl.Int64).alias(self.name)
        if self.kind == MeasureKind.COUNT_DISTINCT:
            return self._filtered_field().n_unique().cast(pl.Int64).alias(self.name)
        raise SchemaError(f"Derived measure '{self.name}' has no event aggregation")

    def rollup_expr(self) -> pl.Expr:
        """Partial state stored in a rollup row (always grouped)."""
        if self.kind == MeasureKind.COUNT:
            return self.raw_expr()
        if self.kind == MeasureKind.COUNT_DISTINCT:
            return self._filtered_field().unique().sort().alias(self.name)
        raise SchemaError(f"Derived measure '{self.name}' is not materialized")

    def merge_expr(self) -> pl.Expr:
        """Final value over a group of rollup rows."""
        if self.kind == MeasureKind.COUNT:
            return pl.col(self.name).sum().cast(pl.Int64).alias(self.name)
        if self.kind == MeasureKind.COUNT_DISTINCT:
            return pl.col(self.name).explode().drop_nulls().n_unique().cast(pl.Int64).alias(self.name)
        raise SchemaError(f"Derived measure '{self.name}' is not materialized")

    def derived_expr(self) -> pl.Expr:
        """Row-wise expression over already computed measure columns."""
        tree = parse_expression(self.expression)
        refs = dict(zip(self.references, self.dependencies))
        expr = _fold(tree, lambda name: pl.col(refs[name]), pl.lit, _expr_binop, operator.neg)
        return expr.alias(self.name)

    def reduce(self, events: Iterable[Mapping[str, Any]]) -> int:
        """Plain-Python reducer over an event stream; mirrors raw_expr()."""
        passing = (e for e in events if self.predicate is None or self.predicate.matches(e))
        if self.kind == MeasureKind.COUNT:
            return sum(1 for _ in passing)
        if self.kind == MeasureKind.COUNT_DISTINCT:
            return len({e.get(self.field) for e in passing if e.get(self.field) is not None})
        raise SchemaError(f"Derived measure '{self.name}' cannot reduce events directly")

    def evaluate(self, values: Mapping[str, Any]) -> Any:
        """Evaluate a derived measure from a row of computed measure values."""
        tree = parse_expression(self.expression)
        refs = dict(zip(self.references, self.dependencies))
        return _fold(tree, lambda name: values.get(refs[name]), lambda v: v, _value_binop,
                     lambda v: None if v is None else -v)


def compile_measure(
    definition: MeasureDefinition,
    qualified_name: str,
    resolve_segment: Callable[[str], Predicate],
    resolve_measure: Callable[[str], str],
) -> CompiledMeasure:
    """
    Compile a schema definition into an executable measure.

    Args:
        definition: Measure definition
        qualified_name: Cube-qualified measure name
        resolve_segment: Maps a segment name used as a filter to its predicate
        resolve_measure: Maps a measure reference to its qualified name
            (raises if the reference is not already defined)
    """
    kind = MeasureKind(definition.kind)

    if kind == MeasureKind.DERIVED:
        if not definition.expression:
            raise SchemaError(f"Derived measure '{definition.name}' needs an expression")
        references = expression_references(definition.expression)
        dependencies = tuple(resolve_measure(ref) for ref in references)
        return CompiledMeasure(
            name=qualified_name,
            kind=kind,
            expression=definition.expression,
            dependencies=dependencies,
            references=references,
        )

    if kind == MeasureKind.COUNT_DISTINCT and not definition.field:
        raise SchemaError(f"countDistinct measure '{definition.name}' needs a field")

    filters: Sequence[Predicate] = [
        resolve_segment(f) if isinstance(f, str) else f for f in definition.filters
    ]
    predicate = all_of(filters) if filters else None

    return CompiledMeasure(
        name=qualified_name,
        kind=kind,
        predicate=predicate,
        field=definition.field,
    )


def measure_columns(measures: Iterable[CompiledMeasure]) -> Dict[str, CompiledMeasure]:
    return {m.name: m for m in measures}
