"""
Rollup store tests: partitioning, incremental refresh, rebuild exclusion,
retry/backoff and stale fallback.
"""

from datetime import datetime

import pytest

from activity_cube import ActivityCube, FrameEventSource
from activity_cube.errors import RebuildInProgress, StorageError
from activity_cube.periods import DateRange
from activity_cube.rollup_builder import BUCKET_COLUMN, ROWS_COLUMN, rollup_columns
from activity_cube.rollup_store import RollupStore, coverage_of
from activity_cube.schema import RollupDefinition
from activity_cube.storage import Manifest, MemoryRollupStorage, PartitionInfo

from conftest import MEMBERS, NOW, SAMPLE_EVENTS, event, week_query


class FlakyStorage(MemoryRollupStorage):
    """Fails the first `failures` partition writes of tables starting with `prefix`."""

    def __init__(self, failures, prefix=''):
        super().__init__()
        self.failures = failures
        self.prefix = prefix
        self.attempts = 0

    def write_partition(self, table, key, df):
        if table.startswith(self.prefix):
            self.attempts += 1
            if self.failures is None or self.attempts <= self.failures:
                raise StorageError(f"disk full writing {table}/{key}", table, key)
        super().write_partition(table, key, df)


class UnreliableSource(FrameEventSource):
    """Fails the first `failures` ranged scans (None fails all of them)."""

    def __init__(self, events, failures):
        super().__init__(events)
        self.failures = failures
        self.ranged_scans = 0

    def scan(self, date_range=None, timeout=None):
        if date_range is not None:
            self.ranged_scans += 1
            if self.failures is None or self.ranged_scans <= self.failures:
                raise OSError("connection reset by peer")
        return super().scan(date_range, timeout)


def make_store(schema, source, storage=None, sleeps=None, **kw):
    return RollupStore(schema, source, storage or MemoryRollupStorage(), {'Members': MEMBERS},
                       sleep=(sleeps.append if sleeps is not None else (lambda s: None)), **kw)


def test_partitions_follow_partition_granularity(schema, source):
    store = make_store(schema, source)
    result = store.refresh('contrlead', NOW)

    assert result.partitions == ['20230101', '20230401']
    assert not result.stale

    manifest = store.manifest('contrlead')
    q1, q2 = manifest.ordered()
    assert (q1.start, q1.end, q1.built_until) == (datetime(2023, 1, 1), datetime(2023, 4, 1), datetime(2023, 4, 1))
    assert q1.complete
    assert q2.built_until == NOW
    assert not q2.complete

    status = store.status('contrlead')
    assert status.coverage == DateRange(datetime(2023, 1, 1), NOW)
    assert status.available
    assert status.row_count == manifest.row_count > 0


def test_partition_layout(schema, source):
    store = make_store(schema, source)
    store.refresh('issuesByMonth', NOW)
    rollup = schema.rollup('issuesByMonth')
    table = store.table('issuesByMonth')

    df = store.storage.read_partition(table, 'all')
    assert df.columns == rollup_columns(schema, rollup)
    assert df[ROWS_COLUMN].sum() == len(SAMPLE_EVENTS)

    issues = df.filter(df['segment:issues_only'])
    assert sorted(issues['__bucket'].dt.month().to_list()) == [3, 4, 5]
    assert issues['Activities.count'].sum() == 3


def test_incremental_refresh_only_touches_update_window(schema, source):
    store = make_store(schema, source)
    store.refresh('contrlead', NOW)
    q1_built_at = store.manifest('contrlead').partitions['20230101'].built_at

    second = store.refresh('contrlead', NOW)
    assert second.partitions == ['20230401']
    assert store.manifest('contrlead').partitions['20230101'].built_at == q1_built_at


def test_update_window_reaches_back_into_previous_partition(schema, source):
    store = make_store(schema, source)
    store.refresh('contrlead', datetime(2023, 4, 3))

    # 2023-04-03 minus the 7 day window starts inside Q1
    result = store.refresh('contrlead', datetime(2023, 4, 3))
    assert result.partitions == ['20230101', '20230401']


def test_non_incremental_rollup_rebuilds_everything(schema, source):
    store = make_store(schema, source)
    store.refresh('issuesByMonth', NOW)
    assert store.refresh('issuesByMonth', NOW).partitions == ['all']


def test_late_events_show_up_after_refresh(schema, source, settings):
    cube = ActivityCube(source, schema=schema, storage=MemoryRollupStorage(),
                        lookup_frames={'Members': MEMBERS}, settings=settings)
    cube.refresh('contrlead', now=NOW)
    query = week_query(['Activities.metric_contributor_contributions'], ['memberId'],
                       filters=[{'member': 'memberId', 'operator': 'equals', 'values': ['m3']}])
    assert cube.load(query).rows()[0]['Activities.metric_contributor_contributions'] == 1

    source.extend([event('late', 'issue-comment', '2023-05-10T20:00:00', 'carol', 'm3',
                         url='https://github.com/o/r/issues/2#c9')])
    cube.refresh('contrlead', now=NOW)

    result = cube.load(query)
    assert result.source == 'rollup'
    assert result.rows()[0]['Activities.metric_contributor_contributions'] == 2


def test_refresh_during_rebuild_is_rejected(schema, source):
    seen = {}

    class ReentrantStorage(MemoryRollupStorage):
        def write_partition(self, table, key, df):
            if 'rebuilding' not in seen:
                seen['rebuilding'] = store.status('contrlead').rebuilding
                seen['candidate'] = [s for s in store.candidates() if s.definition.name == 'contrlead'][0]
                for action in (store.rebuild, store.refresh):
                    try:
                        action('contrlead', NOW)
                    except RebuildInProgress as e:
                        seen.setdefault('errors', []).append(e)
            super().write_partition(table, key, df)

    store = make_store(schema, source, ReentrantStorage())
    store.rebuild('contrlead', NOW)

    assert seen['rebuilding'] is True
    assert not seen['candidate'].available
    assert [e.rollup for e in seen['errors']] == ['contrlead', 'contrlead']
    assert not store.is_rebuilding('contrlead')


def test_refresh_due_skips_rollups_under_rebuild(schema, source):
    store = make_store(schema, source)
    store._rebuilding.add('contrlead')
    results = store.refresh_due(NOW)
    assert 'contrlead' not in results
    assert set(results) == {'issuesByMonth', 'actcount'}


def test_refresh_due_respects_cadence(schema, source):
    store = make_store(schema, source)
    store.refresh_all(NOW)

    # issuesByMonth has no cadence and is only refreshed on demand
    assert store.refresh_due(datetime(2023, 5, 12, 12)) == {}
    assert set(store.refresh_due(datetime(2023, 5, 13, 1))) == {'contrlead', 'actcount'}


def test_write_retries_with_backoff(schema, source):
    sleeps = []
    storage = FlakyStorage(failures=2, prefix='issuesByMonth')
    store = make_store(schema, source, storage, sleeps, max_attempts=3, backoff_s=0.5, backoff_multiplier=2.0)

    result = store.refresh('issuesByMonth', NOW)
    assert result.partitions == ['all']
    assert sleeps == [0.5, 1.0]
    assert not store.status('issuesByMonth').stale


def test_exhausted_retries_mark_rollup_stale(schema, source):
    sleeps = []
    store = make_store(schema, source, FlakyStorage(failures=None, prefix='contrlead'), sleeps, max_attempts=2)

    result = store.refresh('contrlead', NOW)
    assert result.stale
    assert result.failed == ['20230101', '20230401']
    assert len(sleeps) == 2

    status = store.status('contrlead')
    assert status.stale
    assert not status.available
    assert store.manifest('contrlead').partitions == {}


def test_source_failures_are_retried(schema):
    sleeps = []
    store = make_store(schema, UnreliableSource(SAMPLE_EVENTS, failures=1), sleeps=sleeps)

    result = store.refresh('issuesByMonth', NOW)
    assert result.partitions == ['all']
    assert result.errors == {}
    assert sleeps == [0.5]


def test_source_failures_mark_rollup_stale(schema):
    store = make_store(schema, UnreliableSource(SAMPLE_EVENTS, failures=None), max_attempts=2)

    result = store.refresh('contrlead', NOW)
    assert result.stale
    assert result.failed == ['20230101', '20230401']
    assert result.errors['20230401'].startswith('OSError')

    manifest = store.manifest('contrlead')
    assert manifest.stale
    assert manifest.last_refresh == NOW
    assert not store.status('contrlead').available


def test_rebuild_is_rejected_while_refresh_runs(schema, source):
    seen = []

    class ReentrantStorage(MemoryRollupStorage):
        def write_partition(self, table, key, df):
            if not seen:
                try:
                    store.rebuild('issuesByMonth', NOW)
                except RebuildInProgress as e:
                    seen.append(str(e))
            super().write_partition(table, key, df)

    store = make_store(schema, source, ReentrantStorage())
    store.refresh('issuesByMonth', NOW)

    assert seen == ["Rollup 'issuesByMonth' is already being refreshed, retry later"]
    assert store.rebuild('issuesByMonth', NOW).partitions == ['all']


def test_manifest_is_persisted_under_lock(schema, source):
    held = []

    class WatchingStorage(MemoryRollupStorage):
        def write_manifest(self, manifest):
            held.append(store._manifest_lock.locked())
            super().write_manifest(manifest)

    store = make_store(schema, source, WatchingStorage())
    store.refresh('issuesByMonth', NOW)
    assert held and all(held)


def test_stale_rollup_falls_back_to_raw(schema, source, settings):
    storage = FlakyStorage(failures=None, prefix='contrlead')
    cube = ActivityCube(source, schema=schema, storage=storage,
                        lookup_frames={'Members': MEMBERS}, settings=settings)
    cube.refresh('contrlead', now=NOW)

    query = week_query(['metric_contributor_contributions'],
                       filters=[{'member': 'activity_tenant_id', 'operator': 'equals', 'values': ['t1']}])
    plan = cube.dry_run(query)
    assert plan.source == 'raw'

    result = cube.load(query)
    assert result.source == 'raw'
    assert result.scalar('Activities.metric_contributor_contributions') == 5


def test_coverage_stops_at_gap_and_incomplete_partition():
    def info(key, start, end, built_until=None):
        return PartitionInfo(key, start, end, built_until or end, 1)

    manifest = Manifest('t', 'r', {
        'a': info('a', datetime(2023, 1, 1), datetime(2023, 4, 1)),
        'c': info('c', datetime(2023, 7, 1), datetime(2023, 10, 1)),
    })
    assert coverage_of(manifest) == DateRange(datetime(2023, 1, 1), datetime(2023, 4, 1))

    manifest.partitions['b'] = info('b', datetime(2023, 4, 1), datetime(2023, 7, 1), datetime(2023, 5, 1))
    assert coverage_of(manifest) == DateRange(datetime(2023, 1, 1), datetime(2023, 5, 1))

    assert coverage_of(Manifest('t', 'r')) is None


def test_definition_change_builds_new_table(schema, source):
    storage = MemoryRollupStorage()
    store = make_store(schema, source, storage)
    store.refresh('issuesByMonth', NOW)
    old_table = store.table('issuesByMonth')

    changed = schema.rollup('issuesByMonth')
    schema._rollups['issuesByMonth'] = RollupDefinition(
        changed.name, changed.measures, changed.dimensions, changed.segments, granularity='day')
    new_table = store.table('issuesByMonth')
    assert new_table != old_table
    assert store.status('issuesByMonth').coverage is None

    store.rebuild('issuesByMonth', NOW)
    assert new_table in storage.tables()
    assert old_table not in storage.tables()


def test_empty_source_builds_nothing(schema):
    store = make_store(schema, FrameEventSource())
    result = store.refresh('contrlead', NOW)
    assert result.partitions == []
    assert store.status('contrlead').coverage is None


def test_read_filters_rows_to_range(schema, source):
    store = make_store(schema, source)
    store.refresh('contrlead', NOW)
    rows = store.read(store.status('contrlead'), DateRange.parse(['2023-05-04', '2023-05-10']))
    buckets = rows[BUCKET_COLUMN].to_list()
    assert buckets
    assert all(datetime(2023, 5, 4) <= b < datetime(2023, 5, 11) for b in buckets)

    empty = store.read(store.status('contrlead'), DateRange.parse(['2023-06-01', '2023-06-02']))
    assert empty.is_empty()
    assert empty.columns == rows.columns


def test_refresh_unknown_rollup(schema, source):
    store = make_store(schema, source)
    with pytest.raises(ValueError):
        store.refresh('nope', NOW)
