"""
Cube Schema - Registry of named measures, dimensions, segments and rollups

Definitions are registered once at startup, in dependency order, and are
immutable afterwards. Registration compiles everything up front:
- segment names used as measure filters resolve to predicates
- derived measures resolve their references to earlier measures
  (referencing a later measure or itself is a cycle)
- rollups are checked against the registered members

Member naming:
- "Activities.count"       measure / dimension / segment of the primary cube
- "count"                  bare names resolve against the primary cube
- "Members.logo_url"       column of a joined lookup table
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from .errors import DuplicateDefinition, CyclicDependency, SchemaError, UnknownMember, UnknownPredicate
from .measures import CompiledMeasure, MeasureDefinition, compile_measure
from .periods import check_granularity, GRANULARITIES
from .predicates import Predicate, PredicateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dimension:
    """Per-row projection; `column` names the column in the (joined) event frame."""
    name: str
    column: str
    type: str = 'string'
    primary_key: bool = False


@dataclass(frozen=True)
class Lookup:
    """
    Many-to-one join from events to a side table.

    Example:
        Lookup('Members', foreign_key='memberId', key='id', columns=('logo_url', 'displayName'))
        exposes dimensions Members.logo_url and Members.displayName
    """
    name: str
    foreign_key: str
    key: str
    columns: Tuple[str, ...]


@dataclass(frozen=True)
class RollupDefinition:
    """
    Pre-aggregation: measures x dimensions x segments bucketed by `granularity`
    on the time dimension, stored in partitions of `partition_granularity`
    (a single partition when None).
    """
    name: str
    measures: Tuple[str, ...]
    dimensions: Tuple[str, ...] = ()
    segments: Tuple[str, ...] = ()
    time_dimension: str = 'timestamp'
    granularity: str = 'day'
    partition_granularity: Optional[str] = None
    refresh_every: Optional[timedelta] = None
    update_window: Optional[timedelta] = None
    incremental: bool = False


class CubeSchema:
    """Compiled definitions of one cube plus its lookups and rollups."""

    def __init__(self, name: str = 'Activities', time_dimension: str = 'timestamp'):
        self.name = name
        self.segments = PredicateRegistry()
        self._measures: Dict[str, CompiledMeasure] = {}
        self._dimensions: Dict[str, Dimension] = {}
        self._lookups: Dict[str, Lookup] = {}
        self._rollups: Dict[str, RollupDefinition] = {}
        self._time_dimension = self.qualify(time_dimension)

    # --- naming ----------------------------------------------------------

    def qualify(self, name: str) -> str:
        return name if '.' in name else f"{self.name}.{name}"

    def _local(self, name: str) -> str:
        prefix = f"{self.name}."
        return name[len(prefix):] if name.startswith(prefix) else name

    @property
    def time_dimension(self) -> str:
        return self._time_dimension

    # --- registration ----------------------------------------------------

    def add_segment(self, name: str, predicate: Predicate) -> None:
        self.segments.register(self._local(name), predicate)

    def add_measure(self, definition: MeasureDefinition) -> CompiledMeasure:
        qualified = self.qualify(definition.name)
        if qualified in self._measures:
            raise DuplicateDefinition(qualified, kind='measure')

        def resolve_measure(reference: str) -> str:
            ref = self.qualify(reference)
            if ref not in self._measures:
                raise CyclicDependency(qualified, ref)
            return ref

        def resolve_segment(segment: str) -> Predicate:
            try:
                return self.segments.get(self._local(segment))
            except UnknownPredicate as e:
                raise SchemaError(f"Measure '{qualified}' filters on unknown segment '{segment}'") from e

        compiled = compile_measure(definition, qualified, resolve_segment, resolve_measure)
        self._measures[qualified] = compiled
        return compiled

    def add_dimension(self, dimension: Dimension) -> None:
        qualified = self.qualify(dimension.name)
        if qualified in self._dimensions:
            raise DuplicateDefinition(qualified, kind='dimension')
        self._dimensions[qualified] = dimension

    def add_lookup(self, lookup: Lookup) -> None:
        if lookup.name in self._lookups or lookup.name == self.name:
            raise DuplicateDefinition(lookup.name, kind='lookup')
        self._lookups[lookup.name] = lookup
        for column in lookup.columns:
            qualified = f"{lookup.name}.{column}"
            self._dimensions[qualified] = Dimension(qualified, qualified)

    def add_rollup(self, rollup: RollupDefinition) -> None:
        if rollup.name in self._rollups:
            raise DuplicateDefinition(rollup.name, kind='rollup')
        check_granularity(rollup.granularity)
        if rollup.partition_granularity is not None:
            check_granularity(rollup.partition_granularity)
            if GRANULARITIES.index(rollup.partition_granularity) < GRANULARITIES.index(rollup.granularity):
                raise SchemaError(
                    f"Rollup '{rollup.name}': partitions ({rollup.partition_granularity}) "
                    f"must not be finer than its granularity ({rollup.granularity})"
                )

        for m in rollup.measures:
            if self.measure(m).is_derived:
                raise SchemaError(f"Rollup '{rollup.name}' cannot materialize derived measure '{m}'")
        for d in rollup.dimensions:
            self.dimension(d)
        for s in rollup.segments:
            self.segment(s)
        if self.qualify(rollup.time_dimension) != self.time_dimension:
            raise SchemaError(f"Rollup '{rollup.name}' must use time dimension {self.time_dimension}")

        self._rollups[rollup.name] = rollup

    # --- lookups ---------------------------------------------------------

    def measure(self, name: str) -> CompiledMeasure:
        try:
            return self._measures[self.qualify(name)]
        except KeyError:
            raise UnknownMember(name, kind='measure') from None

    def dimension(self, name: str) -> Dimension:
        try:
            return self._dimensions[self.qualify(name)]
        except KeyError:
            raise UnknownMember(name, kind='dimension') from None

    def segment(self, name: str) -> Predicate:
        if not name.startswith(f"{self.name}.") and '.' in name:
            raise UnknownMember(name, kind='segment')
        return self.segments.get(self._local(name))

    def rollup(self, name: str) -> RollupDefinition:
        try:
            return self._rollups[name]
        except KeyError:
            raise UnknownMember(name, kind='rollup') from None

    def has_measure(self, name: str) -> bool:
        return self.qualify(name) in self._measures

    @property
    def measures(self) -> List[CompiledMeasure]:
        return list(self._measures.values())

    @property
    def dimensions(self) -> List[Dimension]:
        return list(self._dimensions.values())

    @property
    def lookups(self) -> List[Lookup]:
        return list(self._lookups.values())

    @property
    def rollups(self) -> List[RollupDefinition]:
        return list(self._rollups.values())

    def lookup_for(self, dimension: str) -> Optional[Lookup]:
        """The lookup a dimension comes from, or None for event columns."""
        table = self.qualify(dimension).split('.', 1)[0]
        return self._lookups.get(table)

    # --- rollup identity -------------------------------------------------

    def rollup_signature(self, rollup: RollupDefinition) -> str:
        """
        Hash of everything a rollup's rows are a function of.

        Changing the rollup, or any measure, dimension, segment or lookup it
        references, changes the signature and therefore the storage table.
        """
        parts = [repr(rollup)]
        parts += [repr(self.measure(m)) for m in rollup.measures]
        parts += [repr(self.dimension(d)) for d in rollup.dimensions]
        parts += [f"{s}={self.segment(s)!r}" for s in rollup.segments]
        parts += [repr(lk) for lk in self.lookups
                  if any(self.lookup_for(d) is lk for d in rollup.dimensions)]
        digest = hashlib.sha1('\n'.join(parts).encode('utf-8')).hexdigest()
        return digest[:12]

    def rollup_table(self, rollup: RollupDefinition) -> str:
        return f"{rollup.name}_{self.rollup_signature(rollup)}"

    def __repr__(self):
        return (f"CubeSchema({self.name}: {len(self._measures)} measures, "
                f"{len(self._dimensions)} dimensions, {len(self.segments)} segments, "
                f"{len(self._rollups)} rollups)")
