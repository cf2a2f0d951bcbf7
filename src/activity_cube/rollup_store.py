"""
Rollup Store - Partitioned, incrementally refreshed pre-aggregations

Strategy:
- Each rollup is stored as table '<rollup>_<signature>'; a definition change
  gives a new signature, so the new table is built from scratch and the
  superseded one is dropped afterwards
- Partitions follow the rollup's partition granularity; a manifest records
  each partition's window, how far it was built and its row count
- Incremental refresh rebuilds missing partitions, partitions that were
  built before their window ended, and partitions touching
  [now - update window, now]; older partitions are final
- Non-incremental rollups rebuild every partition on refresh

Concurrency:
- Writes to one (table, partition) pair hold that pair's lock only
- A rollup under rebuild is hidden from routing; a second rebuild or a
  refresh of it fails with RebuildInProgress, and so does a rebuild
  requested while a refresh is running
- Manifest changes are persisted under the manifest lock
- Partition overwrites are atomic in storage, so readers never block

Failure handling:
- Each partition (scan, aggregate, write) is retried with exponential backoff
- When attempts run out the partition is dropped from the manifest and the
  rollup is marked stale; queries then use raw scans until a refresh
  succeeds
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

import polars as pl

from .data_loader import EventSource
from .errors import RebuildInProgress, StorageError
from .events import events_frame
from .periods import DateRange, partition_key, partition_ranges, truncate, utcnow
from .rollup_builder import BUCKET_COLUMN, build_partition
from .schema import CubeSchema, RollupDefinition
from .storage import Manifest, PartitionInfo, RollupStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollupStatus:
    """Routing view of one rollup at a point in time."""
    definition: RollupDefinition
    table: str
    coverage: Optional[DateRange]
    row_count: int
    stale: bool = False
    rebuilding: bool = False

    @property
    def available(self) -> bool:
        return self.coverage is not None and not self.stale and not self.rebuilding


@dataclass
class RefreshResult:
    rollup: str
    table: str
    partitions: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    rows: int = 0
    elapsed_s: float = 0.0
    full: bool = False

    @property
    def stale(self) -> bool:
        return bool(self.failed)


def coverage_of(manifest: Manifest) -> Optional[DateRange]:
    """
    [first partition start, built_until of the last contiguous partition).

    Coverage stops at the first gap or at the first partition that was
    built before its window ended.
    """
    ordered = manifest.ordered()
    if not ordered:
        return None
    start = ordered[0].start
    until = ordered[0].start
    for p in ordered:
        if p.start != until:
            break
        until = p.built_until
        if not p.complete:
            break
    if until <= start:
        return None
    return DateRange(start, until)


class RollupStore:
    """
    Builds, refreshes and serves rollup partitions.

    Args:
        schema: Cube schema holding the rollup definitions
        source: Raw event source partitions are built from
        storage: Partition storage back-end
        lookup_frames: Side tables for lookup dimensions
        max_attempts: Build attempts per partition before marking stale
        backoff_s: First retry delay
        backoff_multiplier: Delay growth per attempt
        sleep: Injected for tests
    """

    def __init__(
        self,
        schema: CubeSchema,
        source: EventSource,
        storage: RollupStorage,
        lookup_frames: Optional[Dict[str, pl.DataFrame]] = None,
        max_attempts: int = 3,
        backoff_s: float = 0.5,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.schema = schema
        self.source = source
        self.storage = storage
        self.lookup_frames = dict(lookup_frames or {})
        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s
        self.backoff_multiplier = backoff_multiplier
        self._sleep = sleep

        self._manifests: Dict[str, Manifest] = {}
        self._manifest_lock = threading.Lock()
        self._partition_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._rebuilding: Set[str] = set()
        self._refreshing: Dict[str, int] = {}
        self._rebuild_guard = threading.Lock()

        logger.info(f"Rollup store initialized with {len(schema.rollups)} rollups")

    # --- manifests -------------------------------------------------------

    def table(self, name: str) -> str:
        return self.schema.rollup_table(self.schema.rollup(name))

    def manifest(self, name: str) -> Manifest:
        """Snapshot of a rollup's manifest (loaded from storage on first use)."""
        table = self.table(name)
        with self._manifest_lock:
            if table not in self._manifests:
                stored = self.storage.read_manifest(table)
                self._manifests[table] = stored or Manifest(table=table, rollup=name)
            return self._manifests[table].copy()

    def _update_manifest(self, table: str, change: Callable[[Manifest], None]) -> Manifest:
        with self._manifest_lock:
            manifest = self._manifests[table]
            change(manifest)
            snapshot = manifest.copy()
            self.storage.write_manifest(snapshot)
        return snapshot

    def _partition_lock(self, table: str, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._partition_locks.setdefault((table, key), threading.Lock())

    # --- status ----------------------------------------------------------

    def status(self, name: str) -> RollupStatus:
        rollup = self.schema.rollup(name)
        manifest = self.manifest(name)
        with self._rebuild_guard:
            rebuilding = name in self._rebuilding
        return RollupStatus(
            definition=rollup,
            table=manifest.table,
            coverage=coverage_of(manifest),
            row_count=manifest.row_count,
            stale=manifest.stale,
            rebuilding=rebuilding,
        )

    def candidates(self) -> List[RollupStatus]:
        return [self.status(r.name) for r in self.schema.rollups]

    def is_rebuilding(self, name: str) -> bool:
        with self._rebuild_guard:
            return name in self._rebuilding

    # --- refresh ---------------------------------------------------------

    def _windows(self, rollup: RollupDefinition, now: datetime) -> List[DateRange]:
        bounds = self.source.time_bounds()
        if bounds is None:
            return []
        first = truncate(bounds[0], rollup.granularity)
        return partition_ranges(first, now, rollup.partition_granularity)

    def _targets(self, rollup: RollupDefinition, manifest: Manifest, now: datetime,
                 full: bool) -> List[Tuple[str, DateRange]]:
        targets = []
        window_start = now - rollup.update_window if rollup.update_window else None
        for window in self._windows(rollup, now):
            key = partition_key(window, rollup.partition_granularity)
            existing = manifest.partitions.get(key)
            if (full or not rollup.incremental or existing is None or not existing.complete
                    or (existing.start, existing.end) != (window.start, window.end)):
                targets.append((key, window))
            elif window_start is not None and window.intersects(DateRange(window_start, now)):
                targets.append((key, window))
        return targets

    def _build_with_retry(self, rollup: RollupDefinition, table: str, key: str,
                          window: DateRange, result: RefreshResult) -> Optional[pl.DataFrame]:
        """Scan, build and write one partition; returns None once attempts run out."""
        delay = self.backoff_s
        for attempt in range(1, self.max_attempts + 1):
            try:
                events = self.source.scan(window)
                df = build_partition(self.schema, rollup, events, self.lookup_frames)
                self.storage.write_partition(table, key, df)
                return df
            except Exception as e:
                if attempt == self.max_attempts:
                    logger.error(f"❌ {table}/{key}: refresh failed after {attempt} attempts: {e}")
                    result.errors[key] = f"{type(e).__name__}: {e}"
                    return None
                logger.warning(f"{table}/{key}: attempt {attempt} failed ({e}), "
                               f"retrying in {delay:.2f}s")
                self._sleep(delay)
                delay *= self.backoff_multiplier
        return None

    def _build(self, name: str, now: datetime, full: bool) -> RefreshResult:
        rollup = self.schema.rollup(name)
        manifest = self.manifest(name)
        table = manifest.table
        result = RefreshResult(rollup=name, table=table, full=full)
        start_time = time.time()

        targets = self._targets(rollup, manifest, now, full)
        logger.info(f"Refreshing {table}: {len(targets)} partitions "
                    f"({'full' if full else 'incremental'})")

        for key, window in targets:
            built_until = min(window.end, now)
            with self._partition_lock(table, key):
                df = self._build_with_retry(rollup, table, key, DateRange(window.start, built_until), result)
                if df is not None:
                    info = PartitionInfo(key, window.start, window.end, built_until, len(df), utcnow())
                    if self._try_update_manifest(table, lambda m: m.partitions.__setitem__(key, info)):
                        result.partitions.append(key)
                        result.rows += len(df)
                        continue
                    result.errors[key] = 'manifest write failed'
                result.failed.append(key)
                self._mark_stale(table, key)

        def finish(m: Manifest):
            m.last_refresh = now
            if not result.failed:
                m.stale = False

        self._try_update_manifest(table, finish)
        result.elapsed_s = time.time() - start_time

        if result.failed:
            logger.warning(f"⚠️  {table} is stale: {len(result.failed)} partitions failed, "
                           f"queries will scan raw events")
        else:
            logger.info(f"✅ {table}: {len(result.partitions)} partitions, "
                        f"{result.rows:,} rows in {result.elapsed_s:.2f}s")
        return result

    def _try_update_manifest(self, table: str, change: Callable[[Manifest], None]) -> bool:
        try:
            self._update_manifest(table, change)
            return True
        except StorageError as e:
            # The in-memory manifest keeps the change
            logger.error(f"Could not persist manifest for {table}: {e}")
            return False

    def _mark_stale(self, table: str, key: str) -> None:
        def change(m: Manifest):
            m.partitions.pop(key, None)
            m.stale = True

        self._try_update_manifest(table, change)

    def refresh(self, name: str, now: Optional[datetime] = None) -> RefreshResult:
        """
        Incrementally refresh one rollup.

        Raises:
            UnknownMember: no such rollup
            RebuildInProgress: the rollup is being rebuilt
        """
        now = now or utcnow()
        self.schema.rollup(name)
        with self._rebuild_guard:
            if name in self._rebuilding:
                raise RebuildInProgress(name)
            self._refreshing[name] = self._refreshing.get(name, 0) + 1
        try:
            return self._build(name, now, full=False)
        finally:
            with self._rebuild_guard:
                self._refreshing[name] -= 1
                if not self._refreshing[name]:
                    del self._refreshing[name]

    def rebuild(self, name: str, now: Optional[datetime] = None) -> RefreshResult:
        """
        Rebuild every partition of one rollup.

        The rollup is hidden from routing until the rebuild finishes.

        Raises:
            RebuildInProgress: another rebuild or a refresh of this rollup is running
        """
        now = now or utcnow()
        self.schema.rollup(name)
        with self._rebuild_guard:
            if name in self._rebuilding:
                raise RebuildInProgress(name)
            if name in self._refreshing:
                raise RebuildInProgress(name, 'refreshed')
            self._rebuilding.add(name)
        try:
            result = self._build(name, now, full=True)
            table = result.table
            stale = set(self.manifest(name).partitions) - set(result.partitions) - set(result.failed)
            for key in stale:
                self.storage.delete_partition(table, key)
                self._update_manifest(table, lambda m: m.partitions.pop(key, None))
            self.drop_superseded(name)
            return result
        finally:
            with self._rebuild_guard:
                self._rebuilding.discard(name)

    def refresh_all(self, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        now = now or utcnow()
        return {r.name: self.refresh(r.name, now) for r in self.schema.rollups}

    def refresh_due(self, now: Optional[datetime] = None) -> Dict[str, RefreshResult]:
        """Refresh every rollup whose cadence has elapsed since its last refresh."""
        now = now or utcnow()
        results = {}
        for rollup in self.schema.rollups:
            manifest = self.manifest(rollup.name)
            due = (manifest.last_refresh is None or manifest.stale
                   or (rollup.refresh_every is not None and now - manifest.last_refresh >= rollup.refresh_every))
            if not due:
                continue
            try:
                results[rollup.name] = self.refresh(rollup.name, now)
            except RebuildInProgress:
                logger.warning(f"Skipping scheduled refresh of {rollup.name}: rebuild in progress")
        return results

    def drop_superseded(self, name: str) -> List[str]:
        """Drop tables left by earlier definitions of this rollup."""
        current = self.table(name)
        prefix = f"{name}_"
        dropped = []
        for table in self.storage.tables():
            suffix = table[len(prefix):]
            if table.startswith(prefix) and table != current and '_' not in suffix:
                self.storage.drop_table(table)
                dropped.append(table)
        return dropped

    # --- reads -----------------------------------------------------------

    def read(self, status: RollupStatus, date_range: DateRange) -> pl.DataFrame:
        """
        Rollup rows whose bucket falls inside date_range.

        The range must be aligned to the rollup granularity (the compiler
        only routes aligned ranges here).
        """
        manifest = self.manifest(status.definition.name)
        frames = []
        for info in manifest.ordered():
            if not DateRange(info.start, info.end).intersects(date_range):
                continue
            start_time = time.time()
            frames.append(self.storage.read_partition(manifest.table, info.key))
            logger.debug(f"  Loaded {manifest.table}/{info.key} in {(time.time() - start_time) * 1000:.1f}ms")

        if not frames:
            return build_partition(self.schema, status.definition, events_frame([]), self.lookup_frames)
        df = pl.concat(frames, how='vertical_relaxed')
        return df.filter(
            (pl.col(BUCKET_COLUMN) >= pl.lit(date_range.start)) & (pl.col(BUCKET_COLUMN) < pl.lit(date_range.end))
        )

    def query(self, plan) -> pl.DataFrame:
        """Rollup rows for an execution plan routed to this store."""
        if plan.rollup is None or plan.date_range is None:
            raise ValueError("Plan is not routed to a rollup")
        return self.read(plan.rollup, plan.date_range)
