#!/usr/bin/env python3
"""
Test 9: Cancellation and transient failures on real backends
=============================================================

Tests:
1. DuckDB: cancel(job_id) interrupts a running aggregate, which surfaces as
   BackendUnavailable; the job id is forgotten afterwards
2. DuckDB: Parquet files vanishing under a view -> BackendUnavailable
3. Polars: a spilled view whose file was deleted -> BackendUnavailable
4. Polars: cancel() reports that nothing was interrupted
"""

import threading
import time

import pytest

from tripview.core import (
    AggregationEngine,
    BackendUnavailable,
    DuckDBBackend,
    GeoJoinView,
    PolarsBackend,
    QueryBuilder,
)
from tripview.core.geo_join_view import JoinedView
from tripview.core.query_builder import freeze_schema

TIMEOUT = 30

# About 1e11 rows; AVG streams, so it runs long without growing memory
SLOW_TRIPS_SQL = """
CREATE VIEW slow_trips AS
SELECT CAST(a.range % 7 AS BIGINT) AS pickup_zone_id,
       CAST(a.range * b.range AS DOUBLE) AS fare_amount
FROM range(1000000) AS a CROSS JOIN range(100000) AS b
"""


def relation_view(backend, relation):
    return JoinedView(relation=relation, schema=freeze_schema(backend.schema(relation)))


def test_duckdb_cancel_interrupts_running_job():
    backend = DuckDBBackend()
    try:
        backend.con.execute(SLOW_TRIPS_SQL)
        view = relation_view(backend, 'slow_trips')
        engine = AggregationEngine(backend)
        request = QueryBuilder(view).request().group_by('pickup_zone_id').aggregate('fare_amount', 'mean')
        job_id = 's9:slow:1'
        outcome = {}

        def run():
            try:
                outcome['result'] = engine.execute(request, view, job_id=job_id)
            except Exception as e:
                outcome['error'] = e

        worker = threading.Thread(target=run, daemon=True)
        worker.start()

        # Keep interrupting until the job is gone: the cursor may be
        # registered a moment before its query starts
        interrupted = False
        deadline = time.monotonic() + TIMEOUT
        while worker.is_alive() and time.monotonic() < deadline:
            interrupted = engine.cancel(job_id) or interrupted
            worker.join(0.05)

        assert not worker.is_alive(), "job kept running after cancel"
        assert interrupted
        assert 'result' not in outcome
        assert isinstance(outcome['error'], BackendUnavailable)
        assert not engine.cancel(job_id)
    finally:
        backend.close()


def test_duckdb_cancel_unknown_job():
    backend = DuckDBBackend()
    try:
        assert not AggregationEngine(backend).cancel('never-started')
    finally:
        backend.close()


def test_duckdb_missing_parquet_is_unavailable(tmp_path, trips):
    path = tmp_path / 'trips.parquet'
    trips.write_parquet(path)
    backend = DuckDBBackend()
    try:
        backend.register_parquet('trip_files', [path])
        view = relation_view(backend, 'trip_files')
        path.unlink()

        request = QueryBuilder(view).request().aggregate('fare_amount', 'mean')
        with pytest.raises(BackendUnavailable):
            AggregationEngine(backend).execute(request, view, job_id='s9:files:1')
    finally:
        backend.close()


def test_polars_missing_spill_file_is_unavailable(tmp_path, trips, zones):
    backend = PolarsBackend(spill_dir=tmp_path)
    view = GeoJoinView(backend).build(trips, zones)
    (tmp_path / 'joined_trips.arrow').unlink()

    request = QueryBuilder(view).request().group_by('pickup_neighborhood').aggregate('*', 'count')
    with pytest.raises(BackendUnavailable):
        AggregationEngine(backend).execute(request, view, job_id='s9:spill:1')


def test_polars_cancel_is_a_no_op():
    assert not AggregationEngine(PolarsBackend()).cancel('s9:any:1')
