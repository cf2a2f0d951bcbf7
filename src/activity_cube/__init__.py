"""
Activity metrics engine: segments, measures, rollups and leaderboards over
community activity events.
"""

from .activities_schema import build_activities_schema, LEADERBOARD_METRICS
from .data_loader import CsvEventSource, DuckDBEventSource, EventSource, FrameEventSource
from .engine import ActivityCube
from .errors import (
    CubeError,
    CyclicDependency,
    DuplicateDefinition,
    IncomparablePeriods,
    InvalidQuery,
    RebuildInProgress,
    SchemaError,
    StorageError,
    Timeout,
    UnknownMember,
    UnknownPredicate,
    UnresolvedDependency,
)
from .events import canonicalize_url, events_frame
from .leaderboard import LeaderboardComparator, PeriodComparison, percentage_change, percentage_of_rounded
from .periods import DateRange, previous_period
from .query_compiler import ExecutionPlan, PlanState, QueryCompiler, QueryDescriptor
from .query_executor import AggregationExecutor, ResultSet
from .rollup_store import RollupStore
from .schema import CubeSchema, Dimension, Lookup, RollupDefinition
from .settings import EngineSettings, configure_logging
from .storage import IpcRollupStorage, MemoryRollupStorage

__all__ = [
    'ActivityCube',
    'AggregationExecutor',
    'CsvEventSource',
    'CubeError',
    'CubeSchema',
    'CyclicDependency',
    'DateRange',
    'Dimension',
    'DuckDBEventSource',
    'DuplicateDefinition',
    'EngineSettings',
    'EventSource',
    'ExecutionPlan',
    'FrameEventSource',
    'IncomparablePeriods',
    'InvalidQuery',
    'IpcRollupStorage',
    'LEADERBOARD_METRICS',
    'LeaderboardComparator',
    'Lookup',
    'MemoryRollupStorage',
    'PeriodComparison',
    'PlanState',
    'QueryCompiler',
    'QueryDescriptor',
    'RebuildInProgress',
    'ResultSet',
    'RollupDefinition',
    'RollupStore',
    'SchemaError',
    'StorageError',
    'Timeout',
    'UnknownMember',
    'UnknownPredicate',
    'UnresolvedDependency',
    'build_activities_schema',
    'canonicalize_url',
    'configure_logging',
    'events_frame',
    'percentage_change',
    'percentage_of_rounded',
    'previous_period',
]
