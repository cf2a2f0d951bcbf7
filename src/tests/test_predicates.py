"""
Predicate tests: single-event evaluation must agree with the polars
expression for every predicate, including NULL fields.
"""

from datetime import datetime

import polars as pl
import pytest

from activity_cube.errors import DuplicateDefinition, UnknownPredicate
from activity_cube.events import events_frame
from activity_cube.predicates import (
    AllOf,
    Equals,
    In,
    InRange,
    IsSet,
    IsTrue,
    Not,
    PredicateRegistry,
    StartsWith,
    all_of,
)

EVENTS = [
    {'id': '1', 'type': 'pull_request-opened', 'timestamp': datetime(2023, 5, 4), 'isContribution': True,
     'memberId': 'm1'},
    {'id': '2', 'type': 'issue-comment', 'timestamp': datetime(2023, 5, 5), 'isContribution': False,
     'memberId': None},
    {'id': '3', 'type': None, 'timestamp': datetime(2023, 5, 6), 'isContribution': None, 'memberId': 'm2'},
]

PREDICATES = [
    Equals('type', 'issue-comment'),
    IsTrue('isContribution'),
    In('type', ['issue-comment', 'pull_request-opened']),
    StartsWith('type', 'pull_request-'),
    IsSet('memberId'),
    InRange('timestamp', datetime(2023, 5, 5), datetime(2023, 5, 6)),
    Not(Equals('type', 'star')),
    Not(IsSet('memberId')),
    IsTrue('isContribution') & StartsWith('type', 'pull_request-'),
    Equals('type', 'star') | IsSet('memberId'),
    ~In('type', ['issue-comment']),
]


@pytest.mark.parametrize('predicate', PREDICATES, ids=repr)
def test_expression_matches_row_evaluation(predicate):
    df = events_frame(EVENTS)
    vectorized = df.select(predicate.to_expr().alias('m'))['m'].to_list()
    assert vectorized == [predicate.matches(e) for e in EVENTS]


def test_null_field_never_matches_positive_predicates():
    event = EVENTS[2]
    assert not Equals('type', 'star').matches(event)
    assert not StartsWith('type', 'pull').matches(event)
    assert not IsTrue('isContribution').matches(event)
    assert Not(Equals('type', 'star')).matches(event)


def test_in_values_are_order_independent():
    assert In('type', ['b', 'a']) == In('type', ['a', 'b', 'a'])
    assert repr(In('type', ['b', 'a'])) == repr(In('type', ['a', 'b']))


def test_all_of_flattens_and_unwraps():
    a, b, c = Equals('type', 'a'), Equals('type', 'b'), IsSet('id')
    assert all_of([a]) is a
    combined = all_of([AllOf((a, b)), c])
    assert combined == AllOf((a, b, c))
    assert combined.columns() == {'type', 'id'}


def test_empty_all_of_matches_everything():
    df = events_frame(EVENTS)
    assert df.filter(AllOf(()).to_expr()).height == len(EVENTS)


def test_registry_register_and_evaluate():
    registry = PredicateRegistry()
    registry.register('comments', In('type', ['issue-comment']))

    assert 'comments' in registry
    assert len(registry) == 1
    assert registry.evaluate('comments', EVENTS[1])
    assert not registry.evaluate('comments', EVENTS[0])


def test_registry_rejects_duplicates_and_unknown_names():
    registry = PredicateRegistry()
    registry.register('star', Equals('type', 'star'))

    with pytest.raises(DuplicateDefinition):
        registry.register('star', Equals('type', 'unstar'))
    with pytest.raises(UnknownPredicate):
        registry.get('fork')


def test_registry_rejects_non_predicates():
    with pytest.raises(TypeError):
        PredicateRegistry().register('bad', pl.col('type') == 'star')
