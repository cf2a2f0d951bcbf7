"""
Shared fixtures: a small activity history around the week of 2023-05-04.

Tenant t1 members:
- m1 alice  (logo a.png)
- m2 bob    (logo b.png)
- m3 carol  (not in the members table)
- dave has no member id

Current week  [2023-05-04, 2023-05-10]: contributions alice 2, bob 2, carol 1
Previous week [2023-04-27, 2023-05-03]: contributions alice 1, bob 2
"""

from datetime import datetime

import polars as pl
import pytest

from activity_cube import (
    ActivityCube,
    EngineSettings,
    FrameEventSource,
    MemoryRollupStorage,
    build_activities_schema,
)

NOW = datetime(2023, 5, 12)

CURRENT_WEEK = ['2023-05-04', '2023-05-10']
PREVIOUS_WEEK = ['2023-04-27', '2023-05-03']


def event(id, type, timestamp, username=None, member_id=None, tenant='t1',
          url=None, contribution=True, platform='github'):
    return {
        'id': id,
        'type': type,
        'timestamp': timestamp,
        'username': username,
        'memberId': member_id,
        'tenantId': tenant,
        'url': url,
        'isContribution': contribution,
        'platform': platform,
    }


SAMPLE_EVENTS = [
    # Q1, only there so contrlead has a finished partition
    event('q1', 'issues-opened', '2023-03-15T09:00:00', 'alice', 'm1', url='https://github.com/o/r/issues/7'),

    # previous week
    event('p1', 'pull_request-opened', '2023-04-28T10:00:00', 'alice', 'm1', url='https://github.com/o/r/pull/0'),
    event('p2', 'issue-comment', '2023-04-29T10:00:00', 'bob', 'm2', url='https://github.com/o/r/issues/1#c1'),
    event('p3', 'issues-opened', '2023-04-30T10:00:00', 'bob', 'm2', url='https://github.com/o/r/issues/1'),

    # current week
    event('e1', 'pull_request-opened', '2023-05-04T10:00:00', 'alice', 'm1', url='https://github.com/o/r/pull/1'),
    event('e2', 'pull_request-comment', '2023-05-05T11:00:00', 'alice', 'm1',
          url='https://github.com/o/r/pull/1#issuecomment-9'),
    event('e3', 'issues-opened', '2023-05-06T08:00:00', 'bob', 'm2', url='https://github.com/o/r/issues/2'),
    event('e4', 'issue-comment', '2023-05-06T09:00:00', 'bob', 'm2', url='https://github.com/o/r/issues/2#c2'),
    event('e5', 'pull_request-opened', '2023-05-09T12:00:00', 'carol', 'm3', url='https://github.com/o/r/pull/3'),
    event('e6', 'pull_request-opened', '2023-05-07T12:00:00', 'alice', 'm1', tenant='t2',
          url='https://github.com/o/x/pull/9'),
    event('e7', 'star', '2023-05-08T07:00:00', 'dave', None, contribution=False),
]

MEMBERS = pl.DataFrame({
    'id': ['m1', 'm2'],
    'logo_url': ['a.png', 'b.png'],
    'displayName': ['Alice', 'Bob'],
})


@pytest.fixture
def schema():
    return build_activities_schema()


@pytest.fixture
def source():
    return FrameEventSource(SAMPLE_EVENTS)


@pytest.fixture
def settings():
    return EngineSettings(raw_timeout_s=None, refresh_backoff_s=0.0, workers=2)


@pytest.fixture
def cube(source, schema, settings):
    """Engine with no rollups built: every query scans raw events."""
    return ActivityCube(source, schema=schema, storage=MemoryRollupStorage(),
                        lookup_frames={'Members': MEMBERS}, settings=settings)


@pytest.fixture
def built_cube(cube):
    """Engine with every rollup refreshed as of NOW."""
    cube.refresh(now=NOW)
    return cube


def week_query(measures, dimensions=(), **extra):
    query = {
        'measures': list(measures),
        'dimensions': list(dimensions),
        'timeDimensions': [{'dimension': 'Activities.timestamp', 'dateRange': CURRENT_WEEK}],
    }
    query.update(extra)
    return query
