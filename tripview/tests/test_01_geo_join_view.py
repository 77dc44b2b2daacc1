#!/usr/bin/env python3
"""
Test 1: Joined view construction and caching
=============================================

Tests:
1. Trips with a null or unknown zone id are excluded, never defaulted
2. Every joined row carries non-null pickup_* / dropoff_* zone fields
3. Missing expected columns raise SchemaMismatch naming them
4. Building the same inputs twice is a no-op; different inputs need rebuild;
   frames staged for the join do not outlive it
5. trip_id is attached when the facts have none and kept when they do
"""

from datetime import datetime

import polars as pl
import pytest

from tripview.core import GeoJoinView, QueryBuilder, SchemaMismatch, get_view_cache
from tripview.core.geo_join_view import TRIP_ID

from .conftest import make_trips


def test_join_excludes_null_and_unmatched_ids(backend, trips, zones, engine):
    extra = make_trips([
        (datetime(2024, 1, 3, 7, 0), 10, None, 2, 10.0),     # null pickup id
        (datetime(2024, 1, 3, 7, 5), 10, 1, None, 10.0),     # null dropoff id
        (datetime(2024, 1, 3, 7, 10), 10, 99, 2, 10.0),      # unknown pickup id
        (datetime(2024, 1, 3, 7, 15), 10, 2, 42, 10.0),      # unknown dropoff id
    ])
    facts = pl.concat([trips, extra])

    cache = GeoJoinView(backend)
    view = cache.build(facts, zones)

    # Only the 10 trips whose ids are non-null and known survive
    assert cache.row_count() == 10

    request = QueryBuilder(view).request().aggregate('*', 'count')
    for column in ('pickup_borough', 'pickup_neighborhood', 'dropoff_borough', 'dropoff_neighborhood'):
        assert column in view.columns
        nulls = engine.execute(request.filter(column, 'is_null'), view)
        assert nulls.rows[0][0] == 0


def test_joined_zone_fields(view, engine):
    request = (QueryBuilder(view).request()
               .group_by('pickup_neighborhood', 'dropoff_neighborhood')
               .aggregate('*', 'count'))
    result = engine.execute(request, view)
    counts = {(r[0], r[1]): r[2] for r in result}
    assert counts == {
        ('Midtown', 'Airport'): 5,
        ('Midtown', 'Midtown'): 2,
        ('Airport', 'Midtown'): 2,
        ('Airport', 'Airport'): 1,
    }


def test_missing_trip_columns(backend, trips, zones):
    with pytest.raises(SchemaMismatch) as excinfo:
        GeoJoinView(backend).build(trips.drop('dropoff_zone_id'), zones)
    assert excinfo.value.missing == ['dropoff_zone_id']


def test_missing_zone_columns(backend, trips, zones):
    with pytest.raises(SchemaMismatch) as excinfo:
        GeoJoinView(backend).build(trips, zones.drop('borough', 'neighborhood'))
    assert excinfo.value.missing == ['borough', 'neighborhood']


def test_unregistered_relation_name(backend, zones):
    with pytest.raises(ValueError):
        GeoJoinView(backend).build('no_such_table', zones)


def test_build_is_cached(backend, trips, zones):
    cache = GeoJoinView(backend)
    first = cache.build(trips, zones)
    second = cache.build(trips, zones)
    assert first is second
    assert cache.cached_names() == ['joined_trips']

    with pytest.raises(ValueError):
        cache.build(trips.head(5), zones)

    rebuilt = cache.build(trips.head(5), zones, rebuild=True)
    assert cache.row_count() == 5
    assert rebuilt.relation == 'joined_trips'


def test_invalidate(backend, trips, zones):
    cache = GeoJoinView(backend)
    cache.build(trips, zones)
    cache.invalidate()
    assert cache.cached_names() == []
    assert not backend.has_relation('joined_trips')
    with pytest.raises(ValueError):
        cache.get()


def test_staged_frames_are_dropped(backend, trips, zones):
    cache = GeoJoinView(backend)
    cache.build(trips, zones)
    assert backend.has_relation('joined_trips')
    assert not backend.has_relation('joined_trips__facts')
    assert not backend.has_relation('joined_trips__zones')

    cache.invalidate()
    assert not backend.has_relation('joined_trips')


def test_staged_frames_dropped_on_failed_build(backend, trips, zones):
    with pytest.raises(SchemaMismatch):
        GeoJoinView(backend).build(trips.drop('pickup_zone_id'), zones)
    assert not backend.has_relation('joined_trips__facts')
    assert not backend.has_relation('joined_trips__zones')


def test_trip_id_added_when_absent(view, engine):
    assert TRIP_ID in view.columns
    request = QueryBuilder(view).request().group_by(TRIP_ID).aggregate('*', 'count')
    ids = engine.execute(request, view).column(TRIP_ID)
    assert ids == list(range(10))


def test_trip_id_kept_when_present(backend, trips, zones, engine):
    facts = trips.with_columns(pl.Series(TRIP_ID, [100 + i for i in range(len(trips))]))
    view = GeoJoinView(backend).build(facts, zones)
    request = QueryBuilder(view).request().group_by(TRIP_ID).aggregate('*', 'count')
    assert engine.execute(request, view).column(TRIP_ID) == [100 + i for i in range(10)]


def test_registered_relations_as_inputs(backend, trips, zones):
    backend.register('raw_trips', trips)
    backend.register('raw_zones', zones)
    cache = GeoJoinView(backend)
    cache.build('raw_trips', 'raw_zones')
    # Names compare by value, so this is a cache hit
    cache.build('raw_trips', 'raw_zones')
    assert cache.row_count() == 10
    # Caller-registered inputs are left alone
    assert backend.has_relation('raw_trips')
    assert backend.has_relation('raw_zones')


def test_process_wide_cache(backend):
    cache = get_view_cache(backend)
    assert get_view_cache() is cache
    with pytest.raises(ValueError):
        get_view_cache(object())
