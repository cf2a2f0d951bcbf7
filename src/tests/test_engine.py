"""
Engine tests: the contributor leaderboard end to end, dry runs, concurrent
loads and file-backed rollups.
"""

import pytest

from activity_cube import ActivityCube, EngineSettings, IpcRollupStorage
from activity_cube.errors import InvalidQuery

from conftest import CURRENT_WEEK, MEMBERS, NOW, PREVIOUS_WEEK, week_query

TENANT_T1 = [{'member': 'Activities.activity_tenant_id', 'operator': 'in', 'values': ['t1']}]


@pytest.mark.parametrize('engine', ['cube', 'built_cube'])
def test_contributor_leaderboard(engine, request):
    cube = request.getfixturevalue(engine)
    board = cube.contributor_leaderboard(['t1'], CURRENT_WEEK)

    assert board.total_current == 5
    assert board.total_previous == 3
    assert board.delta_percentage == pytest.approx(200 / 3)

    assert [r.to_dict() for r in board.rows] == [
        {'id': 'm1', 'username': 'alice', 'logo': 'a.png',
         'count': 2, 'previousCount': 1, 'countDiff': 1, 'share': 40, 'rank': 1},
        {'id': 'm2', 'username': 'bob', 'logo': 'b.png',
         'count': 2, 'previousCount': 2, 'countDiff': 0, 'share': 40, 'rank': 2},
        {'id': 'm3', 'username': 'carol', 'logo': None,
         'count': 1, 'previousCount': 0, 'countDiff': 1, 'share': 20, 'rank': 3},
    ]


def test_explicit_previous_period_matches_default(cube):
    default = cube.contributor_leaderboard(['t1'], CURRENT_WEEK)
    explicit = cube.contributor_leaderboard(['t1'], CURRENT_WEEK, previous_date_range=PREVIOUS_WEEK)
    assert default.to_dict() == explicit.to_dict()


def test_leaderboard_other_metric(built_cube):
    board = built_cube.contributor_leaderboard(['t1'], CURRENT_WEEK, metric='Activities.metric_contributor_prs')
    assert [(r.key, r.count) for r in board.rows] == [('m1', 1), ('m3', 1)]
    assert board.measure == 'Activities.metric_contributor_prs'


def test_leaderboard_rejects_bad_input(cube):
    with pytest.raises(InvalidQuery):
        cube.contributor_leaderboard(['t1'], CURRENT_WEEK, metric='count')
    with pytest.raises(InvalidQuery):
        cube.contributor_leaderboard([], CURRENT_WEEK)


def test_dry_run_reports_source(cube):
    query = week_query(['Activities.metric_contributor_contributions'], filters=TENANT_T1)
    assert cube.dry_run(query).source == 'raw'

    cube.refresh(now=NOW)
    plan = cube.dry_run(query)
    assert plan.source == 'rollup'
    assert plan.rollup.table.startswith('contrlead_')


def test_load_all_keeps_input_order(built_cube):
    queries = [
        week_query(['Activities.count']),
        week_query(['Activities.metric_contributor_contributions'], filters=TENANT_T1),
        week_query(['Activities.count'], ['Activities.activity_tenant_id']),
    ]
    results = built_cube.load_all(queries)
    assert [r.frame.columns for r in results] == [
        ['Activities.count'],
        ['Activities.metric_contributor_contributions'],
        ['Activities.activity_tenant_id', 'Activities.count'],
    ]
    assert results[0].scalar('Activities.count') == 7
    assert results[1].scalar('Activities.metric_contributor_contributions') == 5
    assert built_cube.load_all([]) == []


def test_rollups_persist_under_rollup_dir(source, schema, tmp_path):
    settings = EngineSettings(rollup_dir=tmp_path / 'rollups', raw_timeout_s=None, refresh_backoff_s=0.0)
    cube = ActivityCube(source, schema=schema, lookup_frames={'Members': MEMBERS}, settings=settings)
    assert isinstance(cube.storage, IpcRollupStorage)

    results = cube.refresh(now=NOW)
    assert set(results) == {'contrlead', 'issuesByMonth', 'actcount'}
    assert not any(r.stale for r in results.values())

    # a second engine over the same directory sees the built rollups
    reopened = ActivityCube(source, schema=schema, lookup_frames={'Members': MEMBERS}, settings=settings)
    result = reopened.load(week_query(['Activities.metric_contributor_contributions'], filters=TENANT_T1))
    assert result.source == 'rollup'
    assert result.scalar('Activities.metric_contributor_contributions') == 5
