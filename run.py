#!/usr/bin/env python3
"""
Run: Build the joined trip view and drive a reactive session end to end

This script:
1. Scans trip and zone files lazily
2. Builds (or reuses) the cached trips x zones view in the chosen backend
3. Opens a ReactiveSession with the dashboard derivations
4. Binds the pickup/dropoff selection and waits for every derivation
5. Writes each result to CSV (the presentation layer is out of scope)
6. Optionally fits fare_amount ~ trip_distance on a reproducible train split

Examples:
  python3 run.py --trips ./data/trips --zones ./data/taxi_zone_lookup.csv
  python3 run.py --trips ./data/trips --zones ./data/zones.csv --backend duckdb \\
      --pickup Midtown --dropoff JFK Airport --fit
"""

import argparse
import csv
import logging
import os
import sys
import time
from dataclasses import replace
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Polars reads this once, at import time
os.environ.setdefault('POLARS_MAX_THREADS', os.environ.get('TRIPVIEW_THREADS', str(os.cpu_count() or 8)))

from tripview.core import (  # noqa: E402
    AggregationEngine,
    LeastSquaresFitter,
    PartitionSampler,
    QueryBuilder,
    ReactiveSession,
    Settings,
    TripLoader,
    TripViewError,
    fit_partition,
    get_view_cache,
    make_backend,
)

PERCENTILES = (0.1, 0.25, 0.5, 0.75, 0.9)


def dashboard_derivations(view, top: int):
    """(name, depends_on, build) for every result the dashboard shows."""
    qb = QueryBuilder(view)

    def top_dropoffs(p):
        return (qb.request()
                .filter('pickup_neighborhood', 'eq', p['pickup'])
                .group_by('dropoff_neighborhood')
                .aggregate('fare_amount', 'mean')
                .top(top))

    def hourly_trip_time(p):
        return (qb.request()
                .filter('pickup_neighborhood', 'eq', p['pickup'])
                .filter('dropoff_neighborhood', 'eq', p['dropoff'])
                .derive('pickup_hour', 'hour', 'pickup_datetime')
                .derive('trip_time', 'seconds_between', 'pickup_datetime', 'dropoff_datetime')
                .group_by('pickup_hour')
                .aggregate('*', 'count')
                .aggregate('trip_time', 'mean')
                .percentiles('trip_time', *PERCENTILES))

    def weekly_fares(p):
        return (qb.request()
                .filter('pickup_neighborhood', 'eq', p['pickup'])
                .filter('dropoff_neighborhood', 'eq', p['dropoff'])
                .derive('pickup_year', 'iso_year', 'pickup_datetime')
                .derive('pickup_week', 'week', 'pickup_datetime')
                .group_by('pickup_year', 'pickup_week')
                .aggregate('*', 'count')
                .percentiles('fare_amount', *PERCENTILES))

    return [
        ('top_dropoffs', ('pickup',), top_dropoffs),
        ('hourly_trip_time', ('pickup', 'dropoff'), hourly_trip_time),
        ('weekly_fares', ('pickup', 'dropoff'), weekly_fares),
    ]


def busiest(engine, view, column: str, **filters) -> str:
    request = QueryBuilder(view).request()
    for name, value in filters.items():
        request = request.filter(name, 'eq', value)
    result = engine.execute(request.group_by(column).top(1), view)
    if not len(result):
        raise ValueError(f"No trips to pick a default {column} from")
    return result.column(column)[0]


def write_csv(path: Path, result):
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(result.columns)
        writer.writerows(result.rows)


def main():
    parser = argparse.ArgumentParser(
        description="Reactive aggregation over joined trip data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--trips', type=Path, required=True,
                        help='Trip file or directory of Parquet/CSV trip files')
    parser.add_argument('--zones', type=Path, required=True,
                        help='Zone lookup file (zone_id, borough, neighborhood)')
    parser.add_argument('--backend', choices=['polars', 'duckdb'], default=None,
                        help='Execution backend (default: TRIPVIEW_BACKEND or polars)')
    parser.add_argument('--pickup', nargs='+', default=None,
                        help='Pickup neighborhood (default: busiest pickup)')
    parser.add_argument('--dropoff', nargs='+', default=None,
                        help='Dropoff neighborhood (default: busiest dropoff for the pickup)')
    parser.add_argument('--top', type=int, default=10,
                        help='Number of ranked dropoff neighborhoods (default: 10)')
    parser.add_argument('--output-dir', type=Path, default=Path('results'),
                        help='Directory to write result CSV files (default: ./results)')
    parser.add_argument('--max-result-rows', type=int, default=None,
                        help='Largest grouped result accepted (default: 100,000)')
    parser.add_argument('--spill-dir', type=Path, default=None,
                        help='Polars: spill the joined view to Arrow IPC here')
    parser.add_argument('--duckdb-path', type=Path, default=None,
                        help='DuckDB: database file (default: in-memory)')
    parser.add_argument('--threads', type=int, default=None,
                        help='Worker threads for the backend')
    parser.add_argument('--timeout', type=float, default=600.0,
                        help='Seconds to wait for the session (default: 600)')
    parser.add_argument('--fit', action='store_true',
                        help='Fit fare_amount ~ trip_distance on an 80/20 train split')
    parser.add_argument('--seed', type=int, default=42,
                        help='Partition seed for --fit (default: 42)')

    args = parser.parse_args()

    overrides = {
        'backend': args.backend,
        'max_result_rows': args.max_result_rows,
        'spill_dir': args.spill_dir,
        'duckdb_path': args.duckdb_path,
        'threads': args.threads,
    }
    try:
        settings = replace(Settings.from_env(), **{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        logger.error(f"Invalid settings: {e}")
        sys.exit(2)

    print("=" * 70)
    print("TRIPVIEW: Reactive Aggregation")
    print("=" * 70)
    print()
    print(f"Trips:            {args.trips}")
    print(f"Zones:            {args.zones}")
    print(f"Backend:          {settings.backend}")
    print(f"Output directory: {args.output_dir}")
    print()

    args.output_dir.mkdir(parents=True, exist_ok=True)

    # Build the joined view
    logger.info("=" * 70)
    logger.info("Building Joined View")
    logger.info("=" * 70)

    init_start = time.time()
    try:
        loader = TripLoader(args.trips, args.zones)
        backend = make_backend(settings)
        if settings.backend == 'duckdb':
            parquet = loader.to_parquet(args.output_dir / 'parquet')
            backend.register_parquet('raw_trips', parquet)
            facts = 'raw_trips'
        else:
            facts = loader.scan_trips()
        view = get_view_cache(backend).build(facts, loader.load_zones(), name=settings.view_name)
        engine = AggregationEngine(backend, max_result_rows=settings.max_result_rows)
    except (TripViewError, ValueError) as e:
        logger.error(f"Failed to build the joined view: {e}")
        sys.exit(1)

    init_time = time.time() - init_start
    logger.info(f"✅ View {view.name} ready in {init_time:.3f}s "
                f"({get_view_cache().row_count(view.name):,} rows)")

    # Resolve the selection
    pickup = ' '.join(args.pickup) if args.pickup else busiest(engine, view, 'pickup_neighborhood')
    dropoff = (' '.join(args.dropoff) if args.dropoff
               else busiest(engine, view, 'dropoff_neighborhood', pickup_neighborhood=pickup))
    logger.info(f"Selection: {pickup} -> {dropoff}")

    # Drive the session
    logger.info("")
    logger.info("=" * 70)
    logger.info("Running Session")
    logger.info("=" * 70)

    outcomes = {}

    def on_result(name):
        def handle(result):
            out_path = args.output_dir / f"{name}.csv"
            write_csv(out_path, result)
            outcomes[name] = ('success', len(result))
            logger.info(f"  ✅ {name}: {len(result)} rows -> {out_path}")
        return handle

    def on_error(name):
        def handle(error):
            outcomes[name] = (f"failed: {str(error)[:60]}", 0)
            logger.error(f"  ❌ {name} FAILED: {error}")
        return handle

    session_start = time.perf_counter()
    with ReactiveSession(engine, view, max_workers=settings.session_workers) as session:
        for name, depends_on, build in dashboard_derivations(view, args.top):
            session.add_derivation(name, depends_on, build)
            session.subscribe(name, on_result(name), on_error(name))

        session.update(pickup=pickup, dropoff=dropoff)
        if not session.wait(timeout=args.timeout):
            logger.error(f"Session did not settle within {args.timeout:.0f}s")
        names = session.derivations()
    session_time = (time.perf_counter() - session_start) * 1000

    # Optional model fit on the training partition
    coefficients = None
    if args.fit:
        try:
            sampler = PartitionSampler(engine)
            partitions = sampler.split(
                view, [('pickup_neighborhood', 'eq', pickup)],
                {'train': 0.8, 'validation': 0.2}, seed=args.seed,
            )
            logger.info(f"Partition sizes: {sampler.sizes(partitions)}")
            coefficients = fit_partition(
                LeastSquaresFitter(backend), partitions, 'fare_amount', ['trip_distance']
            )
        except TripViewError as e:
            logger.error(f"  ❌ Model fit FAILED: {e}")

    # Summary
    print()
    print("=" * 70)
    print("SESSION SUMMARY")
    print("=" * 70)
    print()

    for name in names:
        status, rows = outcomes.get(name, ('did not finish', 0))
        status_icon = "✅" if status == 'success' else "❌"
        print(f"{status_icon} {name}: {rows} rows ({status})")

    if coefficients is not None:
        terms = ', '.join(f"{k}={v:.4f}" for k, v in coefficients.items())
        print(f"\n✅ fare_amount ~ trip_distance: {terms}")

    print()
    print(f"Session time: {session_time:.3f}ms ({session_time/1000:.3f}s)")
    successes = sum(1 for status, _ in outcomes.values() if status == 'success')
    print(f"Success rate: {successes}/{len(names)} derivations")
    print()
    print(f"Results written to: {args.output_dir}")
    print("=" * 70)

    if successes < len(names):
        sys.exit(1)


if __name__ == "__main__":
    main()
