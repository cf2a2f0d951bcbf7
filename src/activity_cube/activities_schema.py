"""
Activities cube - segments, measures, dimensions and rollups

Each measure keeps its own type list exactly as configured, even where two
measures look alike (e.g. metric_contributor_contributions vs
metric_contributor_contributors, which adds the commit types).
"""

from datetime import timedelta

from .measures import count, count_distinct, derived
from .predicates import Equals, In, IsTrue, StartsWith, any_of
from .schema import CubeSchema, Dimension, Lookup, RollupDefinition

# Types counted as organisation contributions
ORG_CONTRIBUTION_TYPES = [
    'issues-closed',
    'issues-opened',
    'issue-comment',
    'pull_request-closed',
    'pull_request-merged',
    'pull_request-opened',
    'pull_request-reviewed',
    'pull_request-comment',
    'pull_request-review-thread-comment',
]

COMMENT_TYPES = ['issue-comment', 'pull_request-comment', 'pull_request-review-thread-comment']
COMMIT_TYPES = ['committed-commit', 'co-authored-commit', 'authored commit']

# Measures the contributor leaderboard can rank by
LEADERBOARD_METRICS = [
    'metric_contributor_comments',
    'metric_contributor_contributions',
    'metric_contributor_issue_comments',
    'metric_contributor_issues',
    'metric_contributor_prs',
    'metric_contributor_prs_merged',
    'metric_contributor_pr_review_comments',
]


def _register_segments(schema: CubeSchema) -> None:
    schema.add_segment('star', Equals('type', 'star'))
    schema.add_segment('fork', Equals('type', 'fork'))
    schema.add_segment('contributions_only', IsTrue('isContribution'))
    schema.add_segment('comment_activites', In('type', COMMENT_TYPES))
    schema.add_segment('commits_activites', Equals('type', 'commits'))
    schema.add_segment('contributions_activites',
                       any_of([StartsWith('type', 'issue'), StartsWith('type', 'pull_request-')]))
    schema.add_segment('issues_activites', StartsWith('type', 'issue'))
    schema.add_segment('pull_request_activites', StartsWith('type', 'pull_request-'))
    schema.add_segment('issues_only', In('type', ['issues-opened', 'issues-closed']))


def _register_measures(schema: CubeSchema) -> None:
    contribution = IsTrue('isContribution')

    schema.add_measure(count('count'))
    schema.add_measure(count('count_pr_activities', In('type', [
        'pull_request-closed', 'pull_request-comment', 'pull_request-merged',
        'pull_request-opened', 'pull_request-review-thread-comment', 'pull_request-reviewed',
    ])))
    schema.add_measure(count('count_metric_pr_authors', In('type', ['pull_request-opened'])))
    schema.add_measure(count('count_metric_pr_reviewers', In('type', ['pull_request-reviewed'])))
    schema.add_measure(count('count_metric_pr_reviews', In('type', ['pull_request-reviewed'])))
    schema.add_measure(count('count_metric_pr_comments',
                             In('type', ['pull_request-comment', 'pull_request-review-thread-comment'])))

    # Contributor leaderboard
    schema.add_measure(count('metric_contributor_comments', contribution, In('type', COMMENT_TYPES)))
    schema.add_measure(count('metric_contributor_contributions', In('type', [
        'issue-comment', 'issues-closed', 'issues-opened', 'pull_request-closed',
        'pull_request-comment', 'pull_request-merged', 'pull_request-opened',
        'pull_request-review-thread-comment', 'pull_request-reviewed',
    ])))
    schema.add_measure(count('metric_contributor_contributors', In('type', [
        'issue-comment', 'issues-closed', 'issues-opened', 'pull_request-closed',
        'pull_request-comment', 'pull_request-merged', 'pull_request-opened',
        'pull_request-review-thread-comment', 'pull_request-reviewed',
    ] + COMMIT_TYPES)))
    schema.add_measure(count('metric_org_issue_commenters', In('type', ['issue-comment'])))
    schema.add_measure(count('metric_org_issue_opened', In('type', ['issues-opened'])))
    schema.add_measure(count('metric_contributor_issues_closed', In('type', ['issues-closed'])))
    schema.add_measure(count('metric_org_pr_closed', In('type', ['pull_request-closed'])))
    schema.add_measure(count('metric_org_pr_merged', In('type', ['pull_request-merged'])))
    schema.add_measure(count('metric_org_pr_opened', In('type', ['pull_request-opened'])))
    schema.add_measure(count('metric_org_commits', In('type', COMMIT_TYPES)))
    schema.add_measure(count('metric_org_committers', In('type', ['committed-commit'])))

    # Unique PRs touched, comments collapse onto their PR
    schema.add_measure(count_distinct('metric_contributor_prs', 'contributionUrl',
                                      contribution, StartsWith('type', 'pull_request-')))
    schema.add_measure(count('metric_contributor_prs_merged',
                             contribution, Equals('type', 'pull_request-merged')))
    schema.add_measure(count('metric_contributor_issues', contribution, StartsWith('type', 'issue-')))
    schema.add_measure(count('metric_contributor_issue_comments',
                             contribution, Equals('type', 'issue-comment')))
    schema.add_measure(count('metric_contributor_pr_comments',
                             contribution, Equals('type', 'pull_request-comment')))
    schema.add_measure(count('metric_contributor_pr_review_comments',
                             contribution, Equals('type', 'pull_request-review-thread-comment')))

    # Organisation
    schema.add_measure(count('count_metric_contributions', In('type', ORG_CONTRIBUTION_TYPES)))
    schema.add_measure(count('count_metric_issue_commenters', In('type', ['issue-comment'])))

    schema.add_measure(count_distinct('starActivity', 'id', Equals('type', 'star')))
    schema.add_measure(count_distinct('unstarActivity', 'id', Equals('type', 'unstar')))
    schema.add_measure(derived('starCount', 'starActivity - unstarActivity'))


def _register_dimensions(schema: CubeSchema) -> None:
    schema.add_dimension(Dimension('id', 'id', primary_key=True))
    schema.add_dimension(Dimension('type', 'type'))
    schema.add_dimension(Dimension('timestamp', 'timestamp', type='time'))
    schema.add_dimension(Dimension('username', 'username'))
    schema.add_dimension(Dimension('objectMemberUsername', 'objectMemberUsername'))
    schema.add_dimension(Dimension('objectMemberId', 'objectMemberId', type='number'))
    schema.add_dimension(Dimension('platform', 'platform'))
    schema.add_dimension(Dimension('sourceId', 'sourceId'))
    schema.add_dimension(Dimension('channel', 'channel'))
    schema.add_dimension(Dimension('activity_tenant_id', 'tenantId'))
    schema.add_dimension(Dimension('memberId', 'memberId'))
    schema.add_dimension(Dimension('isContribution', 'isContribution', type='boolean'))
    schema.add_dimension(Dimension('contributionUrl', 'contributionUrl'))

    schema.add_lookup(Lookup('Members', foreign_key='memberId', key='id',
                             columns=('logo_url', 'displayName')))
    schema.add_lookup(Lookup('Tenants', foreign_key='tenantId', key='id', columns=('name',)))


def _register_rollups(schema: CubeSchema) -> None:
    schema.add_rollup(RollupDefinition(
        name='contrlead',
        measures=(
            'count_metric_contributions',
            'metric_contributor_comments',
            'metric_contributor_contributions',
            'metric_contributor_issue_comments',
            'metric_contributor_issues',
            'metric_contributor_prs',
            'metric_contributor_prs_merged',
            'metric_contributor_pr_review_comments',
        ),
        dimensions=('activity_tenant_id', 'username', 'memberId', 'Members.logo_url'),
        granularity='day',
        partition_granularity='quarter',
        refresh_every=timedelta(days=1),
        update_window=timedelta(days=7),
        incremental=True,
    ))
    schema.add_rollup(RollupDefinition(
        name='issuesByMonth',
        measures=('count',),
        dimensions=('type',),
        segments=('issues_only',),
        granularity='month',
    ))
    schema.add_rollup(RollupDefinition(
        name='actcount',
        measures=('count',),
        dimensions=('activity_tenant_id', 'memberId', 'username'),
        segments=('comment_activites',),
        granularity='year',
        partition_granularity='year',
        refresh_every=timedelta(days=1),
        update_window=timedelta(days=7),
        incremental=True,
    ))


def build_activities_schema() -> CubeSchema:
    """Load the Activities cube. Raises SchemaError on any invalid definition."""
    schema = CubeSchema('Activities', time_dimension='timestamp')
    _register_segments(schema)
    _register_measures(schema)
    _register_dimensions(schema)
    _register_rollups(schema)
    return schema
