"""
Query compiler tests: member resolution, filters, effective predicates and
rollup routing.
"""

from datetime import datetime

import pytest

from activity_cube.errors import InvalidQuery, UnknownMember, UnresolvedDependency
from activity_cube.measures import count
from activity_cube.periods import DateRange
from activity_cube.predicates import Equals, In, Not
from activity_cube.query_compiler import PlanState, QueryCompiler, QueryDescriptor
from activity_cube.rollup_store import RollupStatus
from activity_cube.schema import CubeSchema, Dimension, RollupDefinition

from conftest import CURRENT_WEEK, week_query


def status_for(schema, name, coverage=('2023-01-01', '2023-12-31'), rows=100, **kw):
    rollup = schema.rollup(name)
    return RollupStatus(rollup, schema.rollup_table(rollup), DateRange.parse(list(coverage)), rows, **kw)


@pytest.fixture
def compiler(schema):
    return QueryCompiler(schema)


def test_query_descriptor_accepts_order_mapping_and_pairs():
    a = QueryDescriptor.from_dict({'measures': ['count'], 'order': {'count': 'desc'}})
    b = QueryDescriptor.from_dict({'measures': ['count'], 'order': [['count', 'desc']]})
    assert a.order == b.order == (('count', 'desc'),)


@pytest.mark.parametrize('limit', [-1, 1.5, True, '10'])
def test_invalid_limit_is_rejected(limit):
    with pytest.raises(InvalidQuery):
        QueryDescriptor.from_dict({'measures': ['count'], 'limit': limit})


def test_unknown_members_are_rejected(compiler):
    with pytest.raises(UnknownMember):
        compiler.compile({'measures': ['Activities.nope']})
    with pytest.raises(UnknownMember):
        compiler.compile({'measures': ['count'], 'dimensions': ['Activities.nope']})
    with pytest.raises(UnknownMember):
        compiler.compile({'measures': ['count'], 'segments': ['Activities.nope']})
    with pytest.raises(UnknownMember):
        compiler.compile({'measures': ['count'], 'segments': ['Members.star']})


def test_empty_query_is_rejected(compiler):
    with pytest.raises(InvalidQuery):
        compiler.compile({})


def test_derived_measure_needs_its_dependencies(compiler):
    with pytest.raises(UnresolvedDependency) as info:
        compiler.compile({'measures': ['Activities.starCount']})
    assert info.value.missing == ['Activities.starActivity', 'Activities.unstarActivity']

    plan = compiler.compile({'measures': ['starActivity', 'unstarActivity', 'starCount']})
    assert [m.name for m in plan.derived_measures] == ['Activities.starCount']
    assert len(plan.base_measures) == 2


def test_filter_operators(compiler):
    plan = compiler.compile({
        'measures': ['count'],
        'filters': [
            {'member': 'activity_tenant_id', 'operator': 'equals', 'values': ['t1']},
            {'member': 'Activities.platform', 'operator': 'notIn', 'values': ['slack', 'discord']},
            {'member': 'Activities.memberId', 'operator': 'set'},
        ],
    })
    assert plan.filters[0] == In('Activities.activity_tenant_id', ['t1'])
    assert plan.filters[1] == Not(In('Activities.platform', ['slack', 'discord']))
    assert plan.filter_members == {'Activities.activity_tenant_id', 'Activities.platform', 'Activities.memberId'}


def test_boolean_filter_values_are_coerced(compiler):
    plan = compiler.compile({
        'measures': ['count'],
        'filters': [{'member': 'isContribution', 'operator': 'equals', 'values': ['true']}],
    })
    assert plan.filters == [In('Activities.isContribution', [True])]

    with pytest.raises(InvalidQuery):
        compiler.compile({
            'measures': ['count'],
            'filters': [{'member': 'isContribution', 'operator': 'equals', 'values': ['maybe']}],
        })


@pytest.mark.parametrize('bad_filter', [
    {'member': 'count', 'operator': 'equals', 'values': ['1']},
    {'member': 'type', 'operator': 'contains', 'values': ['issue']},
    {'member': 'type', 'operator': 'in', 'values': []},
    {'member': 'type', 'operator': 'inDateRange', 'values': CURRENT_WEEK},
    {'member': 'timestamp', 'operator': 'equals', 'values': ['2023-05-04']},
])
def test_invalid_filters(compiler, bad_filter):
    with pytest.raises(InvalidQuery):
        compiler.compile({'measures': ['count'], 'filters': [bad_filter]})


def test_in_date_range_filter_intersects_time_dimension(compiler):
    plan = compiler.compile({
        'measures': ['count'],
        'filters': [{'member': 'timestamp', 'operator': 'inDateRange', 'values': ['2023-05-06', '2023-05-20']}],
        'timeDimensions': [{'dimension': 'Activities.timestamp', 'dateRange': CURRENT_WEEK}],
    })
    assert plan.date_range == DateRange(datetime(2023, 5, 6), datetime(2023, 5, 11))


def test_granularity_adds_bucket_column(compiler):
    plan = compiler.compile(week_query(['count'], timeDimensions=[
        {'dimension': 'Activities.timestamp', 'dateRange': CURRENT_WEEK, 'granularity': 'day'}]))
    assert plan.bucket_column == 'Activities.timestamp.day'
    assert plan.grouping_columns == ['Activities.timestamp.day']

    with pytest.raises(InvalidQuery):
        compiler.compile(week_query(['count'], timeDimensions=[
            {'dimension': 'Activities.timestamp', 'granularity': 'fortnight'}]))


def test_order_must_reference_the_query(compiler):
    with pytest.raises(InvalidQuery):
        compiler.compile(week_query(['count'], order={'Activities.username': 'asc'}))
    with pytest.raises(InvalidQuery):
        compiler.compile(week_query(['count'], ['username'], order={'Activities.username': 'sideways'}))

    plan = compiler.compile(week_query(['count'], ['username'], order={'username': 'asc', 'count': 'desc'}))
    assert plan.order == [('Activities.username', False), ('Activities.count', True)]


def test_effective_predicate_combines_segment_filter_range_and_measure(compiler):
    plan = compiler.compile(week_query(
        ['metric_contributor_issue_comments'],
        segments=['comment_activites'],
        filters=[{'member': 'activity_tenant_id', 'operator': 'equals', 'values': ['t1']}],
    ))
    predicate = plan.effective_predicates['Activities.metric_contributor_issue_comments']

    base = {'type': 'issue-comment', 'isContribution': True, 'tenantId': 't1',
            'timestamp': datetime(2023, 5, 6)}
    assert predicate.matches(base)
    assert not predicate.matches(dict(base, tenantId='t2'))
    assert not predicate.matches(dict(base, timestamp=datetime(2023, 5, 11)))
    assert not predicate.matches(dict(base, isContribution=False))
    assert not predicate.matches(dict(base, type='pull_request-comment'))


def test_plan_state_transitions(compiler):
    plan = compiler.compile({'measures': ['count']})
    assert plan.state == PlanState.COMPILED
    plan.start()
    assert plan.state == PlanState.EXECUTING
    plan.complete()
    assert plan.state == PlanState.COMPLETE
    with pytest.raises(ValueError):
        plan.start()


def test_describe_reports_raw_source_without_rollups(compiler):
    info = compiler.compile(week_query(['count'], ['platform'])).describe()
    assert info['source'] == 'raw'
    assert info['rollup'] is None
    assert info['dateRange'] == CURRENT_WEEK


# --- routing -------------------------------------------------------------

def test_leaderboard_query_routes_to_contrlead(schema):
    contrlead = status_for(schema, 'contrlead')
    compiler = QueryCompiler(schema, catalog=lambda: [contrlead])

    plan = compiler.compile(week_query(
        ['metric_contributor_contributions'], ['memberId', 'username', 'Members.logo_url'],
        filters=[{'member': 'activity_tenant_id', 'operator': 'in', 'values': ['t1']}],
    ))
    assert plan.rollup == contrlead
    assert plan.source == 'rollup'


def test_rejection_reasons(schema):
    compiler = QueryCompiler(schema)
    contrlead = status_for(schema, 'contrlead', coverage=('2023-05-01', '2023-05-08'))

    def reason(query, status=contrlead):
        return compiler.rejection_reason(compiler.compile(query), status)

    assert reason({'measures': ['metric_contributor_prs']}) == 'query has no date range'
    assert 'missing measures' in reason(week_query(['count']))
    assert 'missing dimensions' in reason(week_query(['metric_contributor_prs'], ['platform']))
    assert 'missing dimensions' in reason(week_query(
        ['metric_contributor_prs'], filters=[{'member': 'type', 'operator': 'equals', 'values': ['x']}]))
    assert 'missing segments' in reason(week_query(['metric_contributor_prs'], segments=['star']))
    assert 'not aligned' in reason(week_query(['metric_contributor_prs'], timeDimensions=[
        {'dimension': 'Activities.timestamp', 'dateRange': ['2023-05-04T10:00:00', '2023-05-06']}]))
    assert 'outside coverage' in reason(week_query(['metric_contributor_prs']))
    assert reason(week_query(['metric_contributor_prs']),
                  status_for(schema, 'contrlead', stale=True)) == 'rollup is stale or rebuilding'
    assert reason(week_query(['metric_contributor_prs']),
                  status_for(schema, 'contrlead', rebuilding=True)) == 'rollup is stale or rebuilding'
    assert reason(week_query(['metric_contributor_prs']), status_for(schema, 'contrlead')) is None

    monthly = status_for(schema, 'issuesByMonth')
    assert 'cannot produce' in reason(week_query(['count'], ['type'], segments=['issues_only'], timeDimensions=[
        {'dimension': 'Activities.timestamp', 'dateRange': ['2023-01-01', '2023-03-31'], 'granularity': 'day'}]),
        monthly)


def test_prefers_finest_then_smallest_rollup():
    schema = CubeSchema('Activities')
    schema.add_dimension(Dimension('type', 'type'))
    schema.add_dimension(Dimension('platform', 'platform'))
    schema.add_dimension(Dimension('timestamp', 'timestamp', type='time'))
    schema.add_measure(count('count'))
    schema.add_measure(count('stars', Equals('type', 'star')))
    schema.add_rollup(RollupDefinition('daily', ('count',), ('type',), granularity='day'))
    schema.add_rollup(RollupDefinition('monthly', ('count',), ('type',), granularity='month'))
    schema.add_rollup(RollupDefinition('monthlyWide', ('count', 'stars'), ('type', 'platform'),
                                       granularity='month'))

    catalog = [status_for(schema, name) for name in ('daily', 'monthlyWide', 'monthly')]
    compiler = QueryCompiler(schema, catalog=lambda: catalog)

    def routed(date_range, granularity=None):
        td = {'dimension': 'Activities.timestamp', 'dateRange': date_range}
        if granularity:
            td['granularity'] = granularity
        plan = compiler.compile({'measures': ['count'], 'dimensions': ['type'], 'timeDimensions': [td]})
        return plan.rollup.definition.name if plan.rollup else None

    assert routed(['2023-01-01', '2023-03-31']) == 'daily'
    assert routed(['2023-04-01', '2023-04-30'], 'month') == 'daily'
    assert routed(['2023-01-05', '2023-01-20']) == 'daily'
    assert routed(['2022-12-01', '2023-01-31']) is None

    # without a daily rollup the narrower of the two monthly ones wins
    catalog.pop(0)
    assert routed(['2023-01-01', '2023-03-31']) == 'monthly'
