"""
Query Compiler - Query descriptors to execution plans

This module resolves a query descriptor against the cube schema and
decides where it will be answered from.

Key responsibilities:
1. Parse the descriptor (measures, dimensions, segments, filters,
   timeDimensions, order, limit)
2. Resolve every member name; unknown names fail with UnknownMember
3. Build one effective predicate per measure: segments AND filters AND the
   time range AND the measure's own filters
4. Pick the best rollup that can answer the query, or plan a raw scan

Compilation is synchronous and side-effect free.

Example routing:
- count by type, segment issues_only, monthly          -> issuesByMonth
- leaderboard measures by username for one tenant/week -> contrlead
- count by platform                                    -> raw scan (no rollup has platform)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import CubeError, InvalidQuery, UnknownMember, UnresolvedDependency
from .measures import CompiledMeasure
from .periods import DateRange, GRANULARITIES, can_derive, check_granularity
from .predicates import InRange, IsSet, Not, In, Predicate, all_of
from .rollup_store import RollupStatus
from .schema import CubeSchema, Dimension

logger = logging.getLogger(__name__)

OPERATORS = {'equals', 'notEquals', 'in', 'notIn', 'set', 'notSet', 'inDateRange'}

_TRUE_STRINGS = {'true', '1', 'yes'}
_FALSE_STRINGS = {'false', '0', 'no'}


@dataclass(frozen=True)
class Filter:
    """(member, operator, values) as sent by the caller."""
    member: str
    operator: str
    values: Tuple[Any, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'Filter':
        member = raw.get('member') or raw.get('dimension')
        if not member:
            raise InvalidQuery(f"Filter without member: {dict(raw)!r}")
        values = raw.get('values') or ()
        if isinstance(values, (str, bytes)):
            values = (values,)
        return cls(member, raw.get('operator', 'equals'), tuple(values))


@dataclass(frozen=True)
class TimeDimension:
    dimension: str
    date_range: Optional[Tuple[Any, Any]] = None
    granularity: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'TimeDimension':
        if 'dimension' not in raw:
            raise InvalidQuery(f"timeDimensions entry without dimension: {dict(raw)!r}")
        date_range = raw.get('dateRange')
        if date_range is not None:
            if isinstance(date_range, str) or len(date_range) != 2:
                raise InvalidQuery(f"dateRange must be [startDate, endDate], got {date_range!r}",
                                   member=raw['dimension'])
            date_range = tuple(date_range)
        return cls(raw['dimension'], date_range, raw.get('granularity'))


@dataclass(frozen=True)
class QueryDescriptor:
    measures: Tuple[str, ...] = ()
    dimensions: Tuple[str, ...] = ()
    segments: Tuple[str, ...] = ()
    filters: Tuple[Filter, ...] = ()
    time_dimensions: Tuple[TimeDimension, ...] = ()
    order: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None

    @classmethod
    def from_dict(cls, query: Mapping[str, Any]) -> 'QueryDescriptor':
        """
        Parse a query descriptor.

        Example:
            {
                "measures": ["Activities.count"],
                "dimensions": ["Members.logo_url", "Activities.username"],
                "segments": ["Activities.contributions_only"],
                "filters": [{"member": "Activities.activity_tenant_id",
                             "operator": "equals", "values": ["t1"]}],
                "timeDimensions": [{"dimension": "Activities.timestamp",
                                    "dateRange": ["2023-05-04", "2023-05-11"]}],
                "order": {"Activities.count": "desc"},
                "limit": 10
            }
        """
        order = query.get('order') or ()
        if isinstance(order, Mapping):
            order = list(order.items())
        order_pairs = []
        for item in order:
            if isinstance(item, str) or len(item) != 2:
                raise InvalidQuery(f"Order entries must be (member, direction), got {item!r}")
            order_pairs.append((item[0], item[1]))

        limit = query.get('limit')
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
            raise InvalidQuery(f"limit must be a non-negative integer, got {limit!r}")

        return cls(
            measures=tuple(query.get('measures') or ()),
            dimensions=tuple(query.get('dimensions') or ()),
            segments=tuple(query.get('segments') or ()),
            filters=tuple(Filter.from_dict(f) for f in query.get('filters') or ()),
            time_dimensions=tuple(TimeDimension.from_dict(t) for t in query.get('timeDimensions') or ()),
            order=tuple(order_pairs),
            limit=limit,
        )


class PlanState(str, Enum):
    COMPILED = 'compiled'
    EXECUTING = 'executing'
    COMPLETE = 'complete'
    FAILED = 'failed'


@dataclass
class ExecutionPlan:
    """
    Everything the executor needs, with names already resolved.

    Column naming inside execution:
    - dimensions and measures use their qualified member names
    - the time bucket is '<time dimension>.<granularity>'
    """
    query: QueryDescriptor
    measures: List[CompiledMeasure]
    base_measures: List[CompiledMeasure]
    derived_measures: List[CompiledMeasure]
    dimensions: List[Tuple[str, Dimension]]
    segments: List[str]
    filters: List[Predicate]
    filter_members: Set[str]
    date_range: Optional[DateRange]
    granularity: Optional[str]
    bucket_column: Optional[str]
    order: List[Tuple[str, bool]]
    limit: Optional[int]
    output_names: Dict[str, str]
    effective_predicates: Dict[str, Predicate] = field(default_factory=dict)
    rollup: Optional[RollupStatus] = None
    state: PlanState = PlanState.COMPILED
    error: Optional[Exception] = None

    @property
    def source(self) -> str:
        return 'rollup' if self.rollup is not None else 'raw'

    @property
    def grouping_columns(self) -> List[str]:
        cols = [name for name, _ in self.dimensions]
        if self.bucket_column:
            cols.append(self.bucket_column)
        return cols

    @property
    def columns(self) -> List[str]:
        return self.grouping_columns + [m.name for m in self.measures]

    def start(self) -> None:
        if self.state != PlanState.COMPILED:
            raise CubeError(f"Plan cannot start from state '{self.state.value}'")
        self.state = PlanState.EXECUTING

    def complete(self) -> None:
        if self.state != PlanState.EXECUTING:
            raise CubeError(f"Plan cannot complete from state '{self.state.value}'")
        self.state = PlanState.COMPLETE

    def fail(self, error: Exception) -> None:
        self.state = PlanState.FAILED
        self.error = error

    def describe(self) -> Dict[str, Any]:
        """Dry-run summary of the plan."""
        return {
            'state': self.state.value,
            'source': self.source,
            'rollup': self.rollup.table if self.rollup else None,
            'measures': [m.name for m in self.measures],
            'dimensions': [name for name, _ in self.dimensions],
            'segments': list(self.segments),
            'granularity': self.granularity,
            'dateRange': self.date_range.as_bounds() if self.date_range else None,
            'order': [(member, 'desc' if desc else 'asc') for member, desc in self.order],
            'limit': self.limit,
            'effectivePredicates': {name: repr(p) for name, p in self.effective_predicates.items()},
        }


class QueryCompiler:
    """
    Compiles query descriptors and routes them to rollups.

    `catalog` returns the current status of every rollup; it is consulted
    on each compile so refreshes and stale flags are seen immediately.
    """

    def __init__(self, schema: CubeSchema, catalog: Optional[Callable[[], List[RollupStatus]]] = None):
        self.schema = schema
        self.catalog = catalog or (lambda: [])

    # --- member resolution -----------------------------------------------

    def _resolve_measures(self, names: Sequence[str]) -> List[CompiledMeasure]:
        measures = []
        for name in names:
            m = self.schema.measure(name)
            if m.name not in [x.name for x in measures]:
                measures.append(m)

        requested = {m.name for m in measures}
        for m in measures:
            if m.is_derived:
                missing = set(m.dependencies) - requested
                if missing:
                    raise UnresolvedDependency(m.name, missing)
        return measures

    def _coerce_value(self, dimension: Dimension, value: Any) -> Any:
        if dimension.type == 'boolean' and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise InvalidQuery(f"Invalid boolean filter value {value!r}", member=dimension.name)
        return value

    def _compile_filter(self, f: Filter) -> Tuple[Optional[Predicate], Optional[DateRange]]:
        """Returns (predicate over member columns, date range) for one filter."""
        if f.operator not in OPERATORS:
            raise InvalidQuery(f"Unsupported filter operator '{f.operator}'. Use one of {sorted(OPERATORS)}",
                               member=f.member)
        if self.schema.has_measure(f.member):
            raise InvalidQuery(f"Filters on measures are not supported: '{f.member}'", member=f.member)

        member = self.schema.qualify(f.member)
        dimension = self.schema.dimension(member)

        if f.operator == 'inDateRange':
            if member != self.schema.time_dimension:
                raise InvalidQuery(f"inDateRange needs the time dimension, got '{f.member}'", member=f.member)
            return None, DateRange.parse(list(f.values))
        if member == self.schema.time_dimension:
            raise InvalidQuery(f"Use inDateRange to filter on '{f.member}'", member=f.member)

        if f.operator in ('set', 'notSet'):
            predicate = IsSet(member)
            return (predicate if f.operator == 'set' else Not(predicate)), None

        if not f.values:
            raise InvalidQuery(f"Operator '{f.operator}' needs at least one value", member=f.member)
        predicate = In(member, [self._coerce_value(dimension, v) for v in f.values])
        if f.operator in ('notEquals', 'notIn'):
            return Not(predicate), None
        return predicate, None

    def _resolve_time(self, query: QueryDescriptor,
                      ranges: List[DateRange]) -> Tuple[Optional[DateRange], Optional[str]]:
        granularity = None
        for td in query.time_dimensions:
            member = self.schema.qualify(td.dimension)
            if self.schema.dimension(member).type != 'time':
                raise InvalidQuery(f"'{td.dimension}' is not a time dimension", member=td.dimension)
            if member != self.schema.time_dimension:
                raise InvalidQuery(f"Only {self.schema.time_dimension} can be used as time dimension",
                                   member=td.dimension)
            if td.date_range is not None:
                ranges.append(DateRange.parse(list(td.date_range)))
            if td.granularity is not None:
                if granularity is not None and granularity != td.granularity:
                    raise InvalidQuery("Only one granularity per query is supported", member=td.dimension)
                granularity = check_granularity(td.granularity)

        date_range = None
        for r in ranges:
            date_range = r if date_range is None else date_range.intersection(r)
        return date_range, granularity

    def _resolve_order(self, query: QueryDescriptor, available: Dict[str, str]) -> List[Tuple[str, bool]]:
        order = []
        for member, direction in query.order:
            column = available.get(member) or available.get(self.schema.qualify(member))
            if column is None:
                raise InvalidQuery(f"Cannot order by '{member}': not part of the query", member=member)
            if str(direction).lower() not in ('asc', 'desc'):
                raise InvalidQuery(f"Order direction must be asc or desc, got {direction!r}", member=member)
            order.append((column, str(direction).lower() == 'desc'))
        return order

    # --- compile ---------------------------------------------------------

    def compile(self, query) -> ExecutionPlan:
        """
        Compile a query descriptor (dict or QueryDescriptor) into a plan.

        Raises:
            UnknownMember: unresolvable measure, dimension or segment
            UnresolvedDependency: derived measure without its inputs
            InvalidQuery: malformed filters, ranges, order or limit
        """
        if not isinstance(query, QueryDescriptor):
            query = QueryDescriptor.from_dict(query)

        if not query.measures and not query.dimensions:
            raise InvalidQuery("Query needs at least one measure or dimension")

        measures = self._resolve_measures(query.measures)
        base = [m for m in measures if not m.is_derived]
        derived = sorted((m for m in measures if m.is_derived),
                         key=lambda m: [x.name for x in self.schema.measures].index(m.name))

        output_names: Dict[str, str] = {}
        for name in query.measures:
            output_names[self.schema.qualify(name)] = name

        dimensions: List[Tuple[str, Dimension]] = []
        for name in query.dimensions:
            qualified = self.schema.qualify(name)
            dim = self.schema.dimension(qualified)
            if qualified not in [d for d, _ in dimensions]:
                dimensions.append((qualified, dim))
                output_names[qualified] = name

        segments = []
        for name in query.segments:
            self.schema.segment(name)
            local = self.schema.qualify(name).split('.', 1)[1]
            if local not in segments:
                segments.append(local)

        filters: List[Predicate] = []
        ranges: List[DateRange] = []
        filter_members: Set[str] = set()
        for f in query.filters:
            predicate, date_range = self._compile_filter(f)
            if predicate is not None:
                filters.append(predicate)
                filter_members.add(self.schema.qualify(f.member))
            if date_range is not None:
                ranges.append(date_range)

        date_range, granularity = self._resolve_time(query, ranges)
        bucket_column = f"{self.schema.time_dimension}.{granularity}" if granularity else None
        if bucket_column:
            output_names[bucket_column] = bucket_column

        available = {name: name for name in [d for d, _ in dimensions] + [m.name for m in measures]}
        available.update({v: k for k, v in output_names.items()})
        if bucket_column:
            available[bucket_column] = bucket_column
        order = self._resolve_order(query, available)

        plan = ExecutionPlan(
            query=query,
            measures=measures,
            base_measures=base,
            derived_measures=derived,
            dimensions=dimensions,
            segments=segments,
            filters=filters,
            filter_members=filter_members,
            date_range=date_range,
            granularity=granularity,
            bucket_column=bucket_column,
            order=order,
            limit=query.limit,
            output_names=output_names,
        )
        plan.effective_predicates = self._effective_predicates(plan)
        plan.rollup = self.find_best_rollup(plan, self.catalog())

        logger.debug(f"Compiled query: {len(measures)} measures, {len(dimensions)} dimensions, "
                     f"source={plan.source}")
        return plan

    def _effective_predicates(self, plan: ExecutionPlan) -> Dict[str, Predicate]:
        row = [self.schema.segment(s) for s in plan.segments]
        row += [self._to_event_columns(p) for p in plan.filters]
        if plan.date_range is not None:
            row.append(InRange(self.schema.dimension(self.schema.time_dimension).column,
                               plan.date_range.start, plan.date_range.end))
        result = {}
        for m in plan.base_measures:
            parts = row + ([m.predicate] if m.predicate is not None else [])
            result[m.name] = all_of(parts)
        return result

    def _to_event_columns(self, predicate: Predicate) -> Predicate:
        """Rewrite a member-column predicate in terms of the raw event columns."""
        if isinstance(predicate, Not):
            return Not(self._to_event_columns(predicate.predicate))
        if isinstance(predicate, In):
            return In(self.schema.dimension(predicate.column).column, predicate.values)
        if isinstance(predicate, IsSet):
            return IsSet(self.schema.dimension(predicate.column).column)
        return predicate

    # --- routing ---------------------------------------------------------

    def rejection_reason(self, plan: ExecutionPlan, status: RollupStatus) -> Optional[str]:
        """Why a rollup cannot answer the plan, or None if it can."""
        rollup = status.definition
        if plan.date_range is None:
            return "query has no date range"
        if not status.available:
            return "rollup is stale or rebuilding" if status.coverage is not None else "rollup not built"

        rollup_measures = {self.schema.qualify(m) for m in rollup.measures}
        missing = {m.name for m in plan.base_measures} - rollup_measures
        if missing:
            return f"missing measures {sorted(missing)}"

        rollup_dims = {self.schema.qualify(d) for d in rollup.dimensions}
        needed = {name for name, _ in plan.dimensions} | plan.filter_members
        missing = needed - rollup_dims
        if missing:
            return f"missing dimensions {sorted(missing)}"

        missing = set(plan.segments) - set(rollup.segments)
        if missing:
            return f"missing segments {sorted(missing)}"

        if plan.granularity is not None and not can_derive(rollup.granularity, plan.granularity):
            return f"granularity {rollup.granularity} cannot produce {plan.granularity}"
        if not plan.date_range.is_aligned(rollup.granularity):
            return f"range {plan.date_range} not aligned to {rollup.granularity}"
        if not status.coverage.contains(plan.date_range):
            return f"range {plan.date_range} outside coverage {status.coverage}"
        return None

    def find_best_rollup(self, plan: ExecutionPlan, candidates: List[RollupStatus]) -> Optional[RollupStatus]:
        """
        Find the best rollup for a plan, or None for a raw scan.

        Selection criteria:
        1. Must hold every measure, grouping/filter dimension and segment
        2. Its granularity must produce the requested one and the range must be
           aligned to it and inside the built coverage
        3. Prefer the finest granularity, then the fewest extra columns,
           then the fewest rows
        """
        eligible = []
        for status in candidates:
            reason = self.rejection_reason(plan, status)
            if reason is None:
                eligible.append(status)
                logger.debug(f"  ✅ {status.table}: eligible ({status.row_count:,} rows)")
            else:
                logger.debug(f"  ❌ {status.table}: {reason}")

        if not eligible:
            logger.debug("No rollup can answer the query, using raw scan")
            return None

        requested = len(plan.base_measures) + len(plan.dimensions) + len(plan.segments)

        def cost(status: RollupStatus):
            r = status.definition
            extra = len(r.measures) + len(r.dimensions) + len(r.segments) - requested
            return (GRANULARITIES.index(r.granularity), extra, status.row_count, r.name)

        best = min(eligible, key=cost)
        logger.info(f"Selected rollup: {best.table} ({best.row_count:,} rows)")
        return best
