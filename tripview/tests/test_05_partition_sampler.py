#!/usr/bin/env python3
"""
Test 5: Reproducible partitions
================================

Tests:
1. Same seed over the same view -> identical membership, even after a
   rebuild from reordered input
2. Partitions are disjoint and (with fractions summing to 1) cover the view
3. Sizes are roughly proportional to the fractions
4. Bad fractions raise InvalidFractions; bad filters raise RequestInvalid
"""

import random
from datetime import datetime, timedelta

import pytest

from tripview.core import (
    GeoJoinView,
    InvalidFractions,
    PartitionSampler,
    QueryBuilder,
    RequestInvalid,
)
from tripview.core.geo_join_view import TRIP_ID

from .conftest import make_trips

N_TRIPS = 2000


@pytest.fixture
def big_view(backend, zones):
    start = datetime(2024, 2, 1)
    rows = [
        (start + timedelta(minutes=7 * i), 5 + i % 40, 1 + i % 2, 1 + (i // 2) % 2, 5.0 + i % 50)
        for i in range(N_TRIPS)
    ]
    return GeoJoinView(backend).build(make_trips(rows), zones)


def member_ids(engine, view):
    request = QueryBuilder(view).request().group_by(TRIP_ID).aggregate('*', 'count')
    return set(engine.execute(request, view).column(TRIP_ID))


def test_same_seed_same_membership(big_view, engine):
    sampler = PartitionSampler(engine)
    first = sampler.split(big_view, [], {'train': 0.8, 'validation': 0.2}, seed=42)
    second = sampler.split(big_view, [], {'train': 0.8, 'validation': 0.2}, seed=42)

    assert first == second
    for name in ('train', 'validation'):
        assert member_ids(engine, first[name]) == member_ids(engine, second[name])


def test_membership_survives_reordered_input(backend, zones, engine):
    """trip_id follows row content, so a reshuffled rebuild keeps every assignment."""
    start = datetime(2024, 3, 1)
    rows = [
        (start + timedelta(minutes=11 * i), 5 + i % 30, 1 + i % 2, 1 + (i // 3) % 2, 4.0 + i % 25)
        for i in range(500)
    ]
    shuffled = list(rows)
    random.Random(0).shuffle(shuffled)

    sampler = PartitionSampler(engine)
    memberships = []
    for ordering in (rows, shuffled):
        view = GeoJoinView(backend).build(make_trips(ordering), zones)
        train = sampler.split(view, [], {'train': 0.5}, seed=42)['train']
        request = QueryBuilder(train).request().group_by(TRIP_ID, 'pickup_datetime').aggregate('*', 'count')
        memberships.append(engine.execute(request, train).rows)

    assert memberships[0] == memberships[1]
    assert 0 < len(memberships[0]) < 500


def test_different_seed_different_membership(big_view, engine):
    sampler = PartitionSampler(engine)
    a = sampler.split(big_view, [], {'train': 0.5}, seed=1)
    b = sampler.split(big_view, [], {'train': 0.5}, seed=2)
    assert member_ids(engine, a['train']) != member_ids(engine, b['train'])


def test_disjoint_and_covering(big_view, engine):
    sampler = PartitionSampler(engine)
    parts = sampler.split(big_view, [], {'train': 0.6, 'validation': 0.3, 'test': 0.1}, seed=7)

    ids = {name: member_ids(engine, view) for name, view in parts.items()}
    assert not ids['train'] & ids['validation']
    assert not ids['train'] & ids['test']
    assert not ids['validation'] & ids['test']
    assert ids['train'] | ids['validation'] | ids['test'] == set(range(N_TRIPS))


def test_sizes_proportional(big_view, engine):
    sampler = PartitionSampler(engine)
    parts = sampler.split(big_view, [], {'train': 0.8, 'validation': 0.2}, seed=3)
    sizes = sampler.sizes(parts)
    assert sum(sizes.values()) == N_TRIPS
    assert abs(sizes['train'] / N_TRIPS - 0.8) < 0.05


def test_partial_split(big_view, engine):
    sampler = PartitionSampler(engine)
    parts = sampler.split(big_view, [], {'sample': 0.1}, seed=11)
    size = sampler.sizes(parts)['sample']
    assert 0 < size < N_TRIPS * 0.2


def test_filters_apply_before_split(big_view, engine):
    sampler = PartitionSampler(engine)
    filters = [('pickup_neighborhood', 'eq', 'Midtown'), ('fare_amount', 'lt', 30.0)]
    parts = sampler.split(big_view, filters, {'train': 0.7, 'validation': 0.3}, seed=5)

    request = (QueryBuilder(big_view).request()
               .filter('pickup_neighborhood', 'eq', 'Midtown')
               .filter('fare_amount', 'lt', 30.0)
               .aggregate('*', 'count'))
    expected = engine.execute(request, big_view).rows[0][0]
    assert sum(sampler.sizes(parts).values()) == expected

    # A partition is still a view: requests run against it as usual
    train = parts['train']
    assert train.name == 'joined_trips[train]'
    result = engine.execute(QueryBuilder(train).request().group_by('pickup_neighborhood').aggregate('*', 'count'), train)
    assert result.column('pickup_neighborhood') == ['Midtown']


@pytest.mark.parametrize('fractions', [
    {},
    {'train': -0.1},
    {'train': 0.8, 'validation': 0.3},
    {'train': 'half'},
    {'train': float('nan')},
    {'': 0.5},
])
def test_invalid_fractions(view, fractions):
    with pytest.raises(InvalidFractions):
        PartitionSampler().split(view, [], fractions, seed=0)


def test_float_sum_tolerated(view):
    parts = PartitionSampler().split(view, [], {'a': 0.1, 'b': 0.2, 'c': 0.7}, seed=0)
    assert list(parts) == ['a', 'b', 'c']


def test_invalid_filters(view):
    with pytest.raises(RequestInvalid):
        PartitionSampler().split(view, [('no_such_column', 'eq', 1)], {'train': 1.0}, seed=0)


def test_invalid_seed(view):
    with pytest.raises(ValueError):
        PartitionSampler().split(view, [], {'train': 1.0}, seed=-1)


def test_sizes_needs_engine(view):
    parts = PartitionSampler().split(view, [], {'train': 1.0}, seed=0)
    with pytest.raises(ValueError):
        PartitionSampler().sizes(parts)
