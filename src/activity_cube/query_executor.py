"""
Query Executor - Evaluate execution plans against rollups or raw events

The executor:
1. Loads rollup rows for the plan's range (fast path), or scans raw events
   with a deadline (fallback)
2. Applies segments and dimension filters
3. Groups by the requested dimensions (and time bucket) and reduces each
   measure: raw events with raw_expr(), rollup rows with merge_expr()
4. Computes derived measures from the reduced values
5. Applies ORDER BY (ties broken by grouping keys) and LIMIT

Both paths produce the same rows for any range the rollup covers. A rollup
that cannot be read falls back to the raw scan.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import polars as pl

from .data_loader import EventSource
from .errors import StorageError
from .predicates import all_of
from .query_compiler import ExecutionPlan
from .rollup_builder import BUCKET_COLUMN, bucket_expr, project_members, segment_column
from .rollup_store import RollupStore
from .schema import CubeSchema

logger = logging.getLogger(__name__)


@dataclass
class ResultSet:
    """
    Ordered result rows plus the definitions they were computed with.

    `measure_fingerprints` / `key_fingerprints` identify the measure and
    dimension definitions, so results from different definitions are never
    compared as if they were alike.
    """
    frame: pl.DataFrame
    measures: Tuple[str, ...]
    keys: Tuple[str, ...]
    output_names: Dict[str, str]
    measure_fingerprints: Dict[str, str] = field(default_factory=dict)
    key_fingerprints: Dict[str, str] = field(default_factory=dict)
    source: str = 'raw'
    rollup: Optional[str] = None
    elapsed_ms: float = 0.0

    def __len__(self):
        return len(self.frame)

    def column_for(self, member: str) -> str:
        """Output column of a qualified member."""
        return self.output_names.get(member, member)

    def rows(self) -> List[Dict[str, Any]]:
        return self.frame.to_dicts()

    def scalar(self, measure: str) -> Any:
        """Value of a measure in a measures-only result."""
        if self.frame.is_empty():
            return 0
        return self.frame[self.column_for(measure)][0]


class AggregationExecutor:
    """
    Executes compiled plans.

    Args:
        schema: Cube schema
        source: Raw event source for fallback scans
        store: Rollup store for plans routed to a rollup
        lookup_frames: Side tables for lookup dimensions on raw scans
        timeout: Seconds a raw scan may take before failing with Timeout
    """

    def __init__(
        self,
        schema: CubeSchema,
        source: EventSource,
        store: Optional[RollupStore] = None,
        lookup_frames: Optional[Dict[str, pl.DataFrame]] = None,
        timeout: Optional[float] = None,
    ):
        self.schema = schema
        self.source = source
        self.store = store
        self.lookup_frames = dict(lookup_frames or {})
        self.timeout = timeout

    # --- paths -----------------------------------------------------------

    def _from_raw(self, plan: ExecutionPlan) -> pl.DataFrame:
        events = self.source.scan(plan.date_range, self.timeout)

        needed = [name for name, _ in plan.dimensions] + sorted(plan.filter_members)
        df = project_members(events, self.schema, dict.fromkeys(needed), self.lookup_frames)

        row_filter = [self.schema.segment(s) for s in plan.segments] + list(plan.filters)
        if row_filter:
            df = df.filter(all_of(row_filter).to_expr())
        if plan.bucket_column:
            df = df.with_columns(bucket_expr(plan.granularity).alias(plan.bucket_column))

        keys = plan.grouping_columns
        aggs = [m.raw_expr() for m in plan.base_measures]
        return self._aggregate(df, keys, aggs)

    def _from_rollup(self, plan: ExecutionPlan) -> pl.DataFrame:
        rows = self.store.read(plan.rollup, plan.date_range)

        row_filter = [pl.col(segment_column(s)) for s in plan.segments]
        row_filter += [p.to_expr() for p in plan.filters]
        if row_filter:
            rows = rows.filter(pl.all_horizontal(row_filter))
        if plan.bucket_column:
            rows = rows.with_columns(bucket_expr(plan.granularity, BUCKET_COLUMN).alias(plan.bucket_column))

        keys = plan.grouping_columns
        aggs = [m.merge_expr() for m in plan.base_measures]
        return self._aggregate(rows, keys, aggs)

    @staticmethod
    def _aggregate(df: pl.DataFrame, keys: List[str], aggs: List[pl.Expr]) -> pl.DataFrame:
        if not keys:
            # Measures-only: always exactly one row
            return df.select(aggs)
        if not aggs:
            return df.select(keys).unique(maintain_order=True)
        return df.group_by(keys, maintain_order=True).agg(aggs)

    # --- post-processing -------------------------------------------------

    def _finish(self, plan: ExecutionPlan, df: pl.DataFrame) -> pl.DataFrame:
        for m in plan.derived_measures:
            df = df.with_columns(m.derived_expr())

        if plan.order:
            keys = [k for k in plan.grouping_columns if k not in [c for c, _ in plan.order]]
            df = df.sort(
                [c for c, _ in plan.order] + keys,
                descending=[d for _, d in plan.order] + [False] * len(keys),
                nulls_last=True,
                maintain_order=True,
            )
        if plan.limit is not None:
            df = df.head(plan.limit)

        df = df.select(plan.columns)
        return df.rename({k: v for k, v in plan.output_names.items() if k != v and k in df.columns})

    def execute(self, plan: ExecutionPlan) -> ResultSet:
        """
        Execute a compiled plan.

        Raises:
            Timeout: the raw scan exceeded the deadline
        """
        plan.start()
        start_time = time.time()
        try:
            source = plan.source
            df = None
            if plan.rollup is not None:
                try:
                    df = self._from_rollup(plan)
                except StorageError as e:
                    logger.warning(f"Rollup {plan.rollup.table} unreadable ({e}), scanning raw events")
                    source = 'raw'
            if df is None:
                df = self._from_raw(plan)
            df = self._finish(plan, df)
        except Exception as e:
            plan.fail(e)
            raise
        plan.complete()

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(f"Query complete: {len(df):,} rows from "
                    f"{plan.rollup.table if source == 'rollup' else 'raw events'} in {elapsed_ms:.1f}ms")

        return ResultSet(
            frame=df,
            measures=tuple(m.name for m in plan.measures),
            keys=tuple(plan.grouping_columns),
            output_names=dict(plan.output_names),
            measure_fingerprints={m.name: repr(m) for m in plan.measures},
            key_fingerprints={name: repr(dim) for name, dim in plan.dimensions},
            source=source,
            rollup=plan.rollup.table if source == 'rollup' else None,
            elapsed_ms=elapsed_ms,
        )
