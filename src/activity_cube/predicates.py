"""
Predicates - Named boolean filters over activity events

A predicate is a pure function of an event's fields, built only from
equality, set-membership, prefix and range tests. Each predicate can be:
1. Evaluated against a single event (a dict) with matches()
2. Compiled to a polars expression with to_expr() for columnar filtering

Both paths treat a missing/NULL field as "does not match", so
Not(Equals('type', 'star')) matches an event with no type in both.

Example:
    comment_activities = In('type', ['issue-comment', 'pull_request-comment'])
    contribution_prs = IsTrue('isContribution') & StartsWith('type', 'pull_request-')
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple

import polars as pl

from .errors import DuplicateDefinition, UnknownPredicate


class Predicate:
    """Base class; subclasses are frozen dataclasses so repr() is a stable fingerprint."""

    def matches(self, event: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def to_expr(self) -> pl.Expr:
        raise NotImplementedError

    def columns(self) -> Set[str]:
        raise NotImplementedError

    def __and__(self, other: 'Predicate') -> 'Predicate':
        return all_of([self, other])

    def __or__(self, other: 'Predicate') -> 'Predicate':
        return any_of([self, other])

    def __invert__(self) -> 'Predicate':
        return Not(self)


@dataclass(frozen=True, repr=True)
class Equals(Predicate):
    column: str
    value: Any

    def matches(self, event):
        value = event.get(self.column)
        return value is not None and value == self.value

    def to_expr(self):
        return (pl.col(self.column) == self.value).fill_null(False)

    def columns(self):
        return {self.column}


def IsTrue(column: str) -> Equals:
    return Equals(column, True)


@dataclass(frozen=True)
class In(Predicate):
    column: str
    values: Tuple[Any, ...]

    def __init__(self, column: str, values: Iterable[Any]):
        # Sorted so equal sets have equal reprs
        object.__setattr__(self, 'column', column)
        object.__setattr__(self, 'values', tuple(sorted(set(values), key=repr)))

    def matches(self, event):
        value = event.get(self.column)
        return value is not None and value in self.values

    def to_expr(self):
        return pl.col(self.column).is_in(list(self.values)).fill_null(False)

    def columns(self):
        return {self.column}


@dataclass(frozen=True)
class StartsWith(Predicate):
    """SQL `LIKE 'prefix%'`."""
    column: str
    prefix: str

    def matches(self, event):
        value = event.get(self.column)
        return isinstance(value, str) and value.startswith(self.prefix)

    def to_expr(self):
        return pl.col(self.column).str.starts_with(self.prefix).fill_null(False)

    def columns(self):
        return {self.column}


@dataclass(frozen=True)
class IsSet(Predicate):
    column: str

    def matches(self, event):
        return event.get(self.column) is not None

    def to_expr(self):
        return pl.col(self.column).is_not_null()

    def columns(self):
        return {self.column}


@dataclass(frozen=True)
class InRange(Predicate):
    """start <= column < end"""
    column: str
    start: datetime
    end: datetime

    def matches(self, event):
        value = event.get(self.column)
        return value is not None and self.start <= value < self.end

    def to_expr(self):
        col = pl.col(self.column)
        return ((col >= pl.lit(self.start)) & (col < pl.lit(self.end))).fill_null(False)

    def columns(self):
        return {self.column}


@dataclass(frozen=True)
class AllOf(Predicate):
    predicates: Tuple[Predicate, ...]

    def matches(self, event):
        return all(p.matches(event) for p in self.predicates)

    def to_expr(self):
        if not self.predicates:
            return pl.lit(True)
        return pl.all_horizontal([p.to_expr() for p in self.predicates])

    def columns(self):
        return set().union(*(p.columns() for p in self.predicates))


@dataclass(frozen=True)
class AnyOf(Predicate):
    predicates: Tuple[Predicate, ...]

    def matches(self, event):
        return any(p.matches(event) for p in self.predicates)

    def to_expr(self):
        if not self.predicates:
            return pl.lit(False)
        return pl.any_horizontal([p.to_expr() for p in self.predicates])

    def columns(self):
        return set().union(*(p.columns() for p in self.predicates))


@dataclass(frozen=True)
class Not(Predicate):
    predicate: Predicate

    def matches(self, event):
        return not self.predicate.matches(event)

    def to_expr(self):
        return ~self.predicate.to_expr()

    def columns(self):
        return self.predicate.columns()


def all_of(predicates: Iterable[Predicate]) -> Predicate:
    """AND-combine, flattening nested AllOf; a single predicate is returned as-is."""
    flat: List[Predicate] = []
    for p in predicates:
        if isinstance(p, AllOf):
            flat.extend(p.predicates)
        else:
            flat.append(p)
    if len(flat) == 1:
        return flat[0]
    return AllOf(tuple(flat))


def any_of(predicates: Iterable[Predicate]) -> Predicate:
    flat: List[Predicate] = []
    for p in predicates:
        if isinstance(p, AnyOf):
            flat.extend(p.predicates)
        else:
            flat.append(p)
    if len(flat) == 1:
        return flat[0]
    return AnyOf(tuple(flat))


class PredicateRegistry:
    """
    Append-only registry of named predicates (segments).

    Populated once at schema load; lookups afterwards are read-only,
    so the registry is safe to share between query threads.
    """

    def __init__(self):
        self._predicates: Dict[str, Predicate] = {}

    def register(self, name: str, predicate: Predicate) -> None:
        if name in self._predicates:
            raise DuplicateDefinition(name, kind='segment')
        if not isinstance(predicate, Predicate):
            raise TypeError(f"Segment '{name}' must be a Predicate, got {type(predicate).__name__}")
        self._predicates[name] = predicate

    def get(self, name: str) -> Predicate:
        try:
            return self._predicates[name]
        except KeyError:
            raise UnknownPredicate(name) from None

    def evaluate(self, name: str, event: Mapping[str, Any]) -> bool:
        return self.get(name).matches(event)

    def names(self) -> List[str]:
        return list(self._predicates)

    def __contains__(self, name: str) -> bool:
        return name in self._predicates

    def __len__(self) -> int:
        return len(self._predicates)
