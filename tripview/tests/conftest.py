"""
Shared fixtures: small trip/zone frames and one backend per kind.

The scenario frame is the hand-checked 10-trip dataset:

    trip  pickup  dropoff  pickup time         duration
    0     1       2        2024-01-01 08:00    20 min
    1     1       2        2024-01-01 08:30    30 min
    2     1       2        2024-01-01 09:10    40 min
    3     1       2        2024-01-02 08:05    25 min
    4     1       1        2024-01-01 10:00    15 min
    5     2       1        2024-01-01 11:00    10 min
    6     2       2        2024-01-01 12:00    12 min
    7     1       2        2024-01-01 09:45    35 min
    8     2       1        2024-01-01 13:00    18 min
    9     1       1        2024-01-01 14:00    22 min

Trips 1 -> 2 by pickup hour: hour 8 = {0, 1, 3} mean 1500s, hour 9 = {2, 7} mean 2250s.
"""

from datetime import datetime, timedelta

import polars as pl
import pytest

from tripview.core import (
    AggregationEngine,
    DuckDBBackend,
    GeoJoinView,
    PolarsBackend,
    reset_view_cache,
)

SCENARIO = [
    # (pickup time, minutes, pickup zone, dropoff zone, fare)
    (datetime(2024, 1, 1, 8, 0), 20, 1, 2, 30.0),
    (datetime(2024, 1, 1, 8, 30), 30, 1, 2, 42.0),
    (datetime(2024, 1, 1, 9, 10), 40, 1, 2, 55.0),
    (datetime(2024, 1, 2, 8, 5), 25, 1, 2, 35.0),
    (datetime(2024, 1, 1, 10, 0), 15, 1, 1, 12.0),
    (datetime(2024, 1, 1, 11, 0), 10, 2, 1, 9.0),
    (datetime(2024, 1, 1, 12, 0), 12, 2, 2, 11.0),
    (datetime(2024, 1, 1, 9, 45), 35, 1, 2, 48.0),
    (datetime(2024, 1, 1, 13, 0), 18, 2, 1, 20.0),
    (datetime(2024, 1, 1, 14, 0), 22, 1, 1, 21.0),
]


def make_trips(rows) -> pl.DataFrame:
    """Trip frame from (pickup, minutes, pickup zone, dropoff zone, fare) tuples."""
    return pl.DataFrame(
        {
            'pickup_datetime': [r[0] for r in rows],
            'dropoff_datetime': [
                r[0] + timedelta(minutes=r[1]) if r[1] is not None else None for r in rows
            ],
            'pickup_zone_id': [r[2] for r in rows],
            'dropoff_zone_id': [r[3] for r in rows],
            'fare_amount': [r[4] for r in rows],
        },
        schema={
            'pickup_datetime': pl.Datetime('us'),
            'dropoff_datetime': pl.Datetime('us'),
            'pickup_zone_id': pl.Int64,
            'dropoff_zone_id': pl.Int64,
            'fare_amount': pl.Float64,
        },
    )


def make_zones(names) -> pl.DataFrame:
    """Zone frame with ids 1..n; names are (borough, neighborhood) pairs."""
    return pl.DataFrame(
        {
            'zone_id': list(range(1, len(names) + 1)),
            'borough': [b for b, _ in names],
            'neighborhood': [n for _, n in names],
        },
        schema={'zone_id': pl.Int64, 'borough': pl.String, 'neighborhood': pl.String},
    )


@pytest.fixture
def trips():
    return make_trips(SCENARIO)


@pytest.fixture
def zones():
    return make_zones([('Manhattan', 'Midtown'), ('Queens', 'Airport')])


@pytest.fixture(params=['polars', 'duckdb'])
def backend(request):
    if request.param == 'polars':
        yield PolarsBackend()
    else:
        db = DuckDBBackend()
        yield db
        db.close()


@pytest.fixture
def engine(backend):
    return AggregationEngine(backend)


@pytest.fixture
def view(backend, trips, zones):
    return GeoJoinView(backend).build(trips, zones)


@pytest.fixture(autouse=True)
def fresh_view_cache():
    reset_view_cache()
    yield
    reset_view_cache()
