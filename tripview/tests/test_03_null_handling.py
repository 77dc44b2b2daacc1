#!/usr/bin/env python3
"""
Test 3: NULL handling correctness
==================================

A null in any column a statistic, group key, comparison filter or derived
column reads excludes the row before grouping. Nulls are never coerced to 0,
and both backends must agree.
"""

from datetime import datetime

import polars as pl
import pytest

from tripview.core import GeoJoinView, QueryBuilder

from .conftest import make_trips


@pytest.fixture
def null_view(backend, zones):
    facts = make_trips([
        (datetime(2024, 1, 1, 8, 0), 10, 1, 2, 10.0),
        (datetime(2024, 1, 1, 8, 0), 20, 1, 2, None),
        (datetime(2024, 1, 1, 9, 0), 30, 1, 2, 30.0),
        (datetime(2024, 1, 1, 9, 0), None, 1, 2, 50.0),     # null dropoff time
        (datetime(2024, 1, 1, 9, 0), 40, 2, 1, None),
        (datetime(2024, 1, 1, 9, 0), 50, 2, 1, None),
    ]).with_columns(pl.Series('vendor_id', ['A', 'A', None, 'B', 'B', 'B']))
    return GeoJoinView(backend).build(facts, zones)


def test_mean_skips_nulls(null_view, engine):
    request = QueryBuilder(null_view).request().aggregate('fare_amount', 'mean')
    result = engine.execute(request, null_view)
    # (10 + 30 + 50) / 3, not (10 + 0 + 30 + 50 + 0 + 0) / 6
    assert result.rows[0][0] == pytest.approx(30.0)


def test_all_null_group_is_absent(null_view, engine):
    request = (QueryBuilder(null_view).request()
               .group_by('pickup_neighborhood')
               .aggregate('fare_amount', 'mean'))
    result = engine.execute(request, null_view)
    # Every Airport pickup has a null fare: no row rather than a 0 or NaN row
    assert result.column('pickup_neighborhood') == ['Midtown']


def test_count_column_matches_guarded_rows(null_view, engine):
    request = (QueryBuilder(null_view).request()
               .aggregate('*', 'count', alias='rows')
               .aggregate('fare_amount', 'count'))
    result = engine.execute(request, null_view).to_dicts()[0]
    # The fare guard applies to the whole job, count(*) included
    assert result == {'rows': 3, 'fare_amount_count': 3}


def test_null_group_key_excluded(null_view, engine):
    request = QueryBuilder(null_view).request().group_by('vendor_id').aggregate('*', 'count')
    result = engine.execute(request, null_view)
    assert result.to_dicts() == [{'vendor_id': 'A', 'count': 2}, {'vendor_id': 'B', 'count': 3}]


def test_null_derived_source_excluded(null_view, engine):
    request = (QueryBuilder(null_view).request()
               .derive('trip_time', 'seconds_between', 'pickup_datetime', 'dropoff_datetime')
               .derive('pickup_hour', 'hour', 'pickup_datetime')
               .group_by('pickup_hour')
               .aggregate('*', 'count')
               .aggregate('trip_time', 'mean'))
    result = engine.execute(request, null_view).to_dicts()
    assert result[0] == {'pickup_hour': 8, 'count': 2, 'trip_time_mean': pytest.approx(900.0)}
    # Hour 9 has four trips, one without a dropoff time
    assert result[1] == {'pickup_hour': 9, 'count': 3, 'trip_time_mean': pytest.approx(2400.0)}


def test_is_null_filter_is_not_guarded(null_view, engine):
    request = (QueryBuilder(null_view).request()
               .filter('fare_amount', 'is_null')
               .aggregate('*', 'count'))
    assert engine.execute(request, null_view).rows[0][0] == 3

    request = (QueryBuilder(null_view).request()
               .filter('vendor_id', 'not_null')
               .aggregate('*', 'count'))
    assert engine.execute(request, null_view).rows[0][0] == 5


def test_null_comparison_column_excluded(null_view, engine):
    request = (QueryBuilder(null_view).request()
               .filter('vendor_id', 'neq', 'A')
               .aggregate('*', 'count'))
    # The null vendor is neither 'A' nor 'not A'
    assert engine.execute(request, null_view).rows[0][0] == 3
