"""
Activity Cube - Query entrypoint tying the engine together

    cube = ActivityCube(FrameEventSource(events), lookup_frames={'Members': members})
    cube.refresh()
    result = cube.load({
        "measures": ["Activities.count"],
        "dimensions": ["Activities.username"],
        "timeDimensions": [{"dimension": "Activities.timestamp",
                            "dateRange": ["2023-05-04", "2023-05-11"]}],
        "order": {"Activities.count": "desc"},
    })
    board = cube.contributor_leaderboard(["tenant-1"], ["2023-05-04", "2023-05-11"])

Queries are independent: load_all() runs them on a thread pool, and the
only shared state is the rollup store.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import polars as pl

from .activities_schema import LEADERBOARD_METRICS, build_activities_schema
from .data_loader import EventSource
from .errors import InvalidQuery
from .leaderboard import LeaderboardComparator, PeriodComparison
from .periods import previous_period
from .query_compiler import ExecutionPlan, QueryCompiler
from .query_executor import AggregationExecutor, ResultSet
from .rollup_store import RefreshResult, RollupStore
from .schema import CubeSchema
from .settings import EngineSettings
from .storage import IpcRollupStorage, MemoryRollupStorage, RollupStorage

logger = logging.getLogger(__name__)


class ActivityCube:
    """
    Metrics engine over one event source.

    Args:
        source: Raw event source
        schema: Cube schema (the Activities cube by default)
        storage: Rollup storage (IPC files under settings.rollup_dir, else memory)
        lookup_frames: Side tables by lookup name ('Members', 'Tenants')
        settings: Engine settings (EngineSettings.from_env() by default)
    """

    def __init__(
        self,
        source: EventSource,
        schema: Optional[CubeSchema] = None,
        storage: Optional[RollupStorage] = None,
        lookup_frames: Optional[Mapping[str, pl.DataFrame]] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings.from_env()
        self.schema = schema or build_activities_schema()
        self.source = source

        if storage is None:
            if self.settings.rollup_dir is not None:
                storage = IpcRollupStorage(self.settings.rollup_dir)
            else:
                storage = MemoryRollupStorage()
        self.storage = storage

        lookups = dict(lookup_frames or {})
        self.store = RollupStore(
            self.schema,
            source,
            storage,
            lookup_frames=lookups,
            max_attempts=self.settings.refresh_max_attempts,
            backoff_s=self.settings.refresh_backoff_s,
            backoff_multiplier=self.settings.refresh_backoff_multiplier,
        )
        self.compiler = QueryCompiler(self.schema, catalog=self.store.candidates)
        self.executor = AggregationExecutor(
            self.schema, source, self.store, lookup_frames=lookups, timeout=self.settings.raw_timeout_s
        )
        self.comparator = LeaderboardComparator()

        logger.info(f"Activity cube ready: {self.schema!r}")

    # --- queries ---------------------------------------------------------

    def dry_run(self, query) -> ExecutionPlan:
        """Compile a query and report where it would run, without executing it."""
        plan = self.compiler.compile(query)
        logger.info(f"Dry run: source={plan.source}"
                    + (f" rollup={plan.rollup.table}" if plan.rollup else ""))
        return plan

    def load(self, query) -> ResultSet:
        return self.executor.execute(self.compiler.compile(query))

    def load_all(self, queries: Sequence[Any]) -> List[ResultSet]:
        """Run independent queries concurrently; results keep the input order."""
        if not queries:
            return []
        workers = max(1, min(self.settings.workers, len(queries)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.load, queries))

    # --- rollups ---------------------------------------------------------

    def refresh(self, rollup: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        if rollup is None:
            return self.store.refresh_all(now)
        return {rollup: self.store.refresh(rollup, now)}

    def refresh_due(self, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        return self.store.refresh_due(now)

    def rebuild(self, rollup: str, now: Optional[datetime] = None) -> RefreshResult:
        return self.store.rebuild(rollup, now)

    # --- leaderboards ----------------------------------------------------

    def compare_periods(
        self,
        measure: str,
        key: str,
        date_range: Sequence[Any],
        previous_date_range: Optional[Sequence[Any]] = None,
        filters: Sequence[Mapping[str, Any]] = (),
        segments: Sequence[str] = (),
        display: Optional[Dict[str, str]] = None,
    ) -> PeriodComparison:
        """
        Compare one measure per key between a period and the one before it.

        Args:
            measure: Measure name
            key: Dimension joining the two periods
            date_range: [startDate, endDate] of the current period
            previous_date_range: Defaults to the equal-length period just before
            filters: Extra query filters applied to both periods
            segments: Segments applied to both periods
            display: Output field -> dimension shown on current rows
        """
        measure = self.schema.qualify(measure)
        key = self.schema.qualify(key)
        display = display or {}
        if previous_date_range is None:
            previous_date_range = previous_period(*date_range)

        def query(dr, dimensions, order=False):
            q = {
                'measures': [measure],
                'dimensions': dimensions,
                'segments': list(segments),
                'filters': list(filters),
                'timeDimensions': [{'dimension': self.schema.time_dimension, 'dateRange': list(dr)}],
            }
            if order:
                q['order'] = {measure: 'desc'}
            return q

        display_dims = [d for d in display.values() if self.schema.qualify(d) != key]
        total_current, total_previous, current, previous = self.load_all([
            query(date_range, []),
            query(previous_date_range, []),
            query(date_range, [key] + display_dims, order=True),
            query(previous_date_range, [key]),
        ])

        return self.comparator.compare(
            current,
            previous,
            measure=measure,
            key=key,
            total_current=total_current,
            total_previous=total_previous,
            attributes={name: self.schema.qualify(d) for name, d in display.items()},
        )

    def contributor_leaderboard(
        self,
        tenant_ids: Sequence[str],
        date_range: Sequence[Any],
        previous_date_range: Optional[Sequence[Any]] = None,
        metric: str = 'metric_contributor_contributions',
    ) -> PeriodComparison:
        """
        Contributor leaderboard for a set of tenants.

        Ranks members by `metric` in date_range against previous_date_range
        (by default the equal-length period just before it).

        Raises:
            InvalidQuery: metric is not a leaderboard metric
        """
        local = metric.split('.', 1)[1] if metric.startswith(f"{self.schema.name}.") else metric
        if local not in LEADERBOARD_METRICS:
            raise InvalidQuery(f"Unknown leaderboard metric '{metric}'. Use one of {LEADERBOARD_METRICS}",
                               member=metric)
        if not tenant_ids:
            raise InvalidQuery("At least one tenant id is required", member='activity_tenant_id')

        return self.compare_periods(
            measure=local,
            key='memberId',
            date_range=date_range,
            previous_date_range=previous_date_range,
            filters=[{'member': 'activity_tenant_id', 'operator': 'in', 'values': list(tenant_ids)}],
            display={'username': 'username', 'logo': 'Members.logo_url'},
        )
