#!/usr/bin/env python3
"""
Trip Loader - Lazy scanning of trip and zone files

Trip files (Parquet or CSV) are scanned lazily so nothing is loaded until a
backend materializes the joined view. Column names from the public NYC TLC
exports are normalized to the names the join and query layers use.

Key features:
- Lazy scans (Parquet preferred, CSV with an explicit schema)
- NYC TLC column normalization (tpep_pickup_datetime -> pickup_datetime, ...)
- One-off conversion of CSV inputs to Parquet for faster rescans
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Union

import polars as pl

logger = logging.getLogger(__name__)

# CSV schema for the trip fact table; Parquet files carry their own
TRIP_SCHEMA = {
    'trip_id': pl.Int64,
    'vendor_id': pl.String,
    'pickup_datetime': pl.Datetime('us'),
    'dropoff_datetime': pl.Datetime('us'),
    'passenger_count': pl.Int64,
    'trip_distance': pl.Float64,
    'pickup_longitude': pl.Float64,
    'pickup_latitude': pl.Float64,
    'dropoff_longitude': pl.Float64,
    'dropoff_latitude': pl.Float64,
    'pickup_zone_id': pl.Int64,
    'dropoff_zone_id': pl.Int64,
    'fare_amount': pl.Float64,
    'tip_amount': pl.Float64,
}

ZONE_SCHEMA = {
    'zone_id': pl.Int64,
    'borough': pl.String,
    'neighborhood': pl.String,
}

# Public TLC / taxi-zone lookup names -> canonical names
COLUMN_ALIASES = {
    'VendorID': 'vendor_id',
    'vendorid': 'vendor_id',
    'tpep_pickup_datetime': 'pickup_datetime',
    'tpep_dropoff_datetime': 'dropoff_datetime',
    'lpep_pickup_datetime': 'pickup_datetime',
    'lpep_dropoff_datetime': 'dropoff_datetime',
    'PULocationID': 'pickup_zone_id',
    'DOLocationID': 'dropoff_zone_id',
    'LocationID': 'zone_id',
    'Borough': 'borough',
    'Zone': 'neighborhood',
    'zone': 'neighborhood',
}


def normalize_columns(lf: pl.LazyFrame) -> pl.LazyFrame:
    """Rename known aliases; canonical names already present win."""
    names = lf.collect_schema().names()
    present = set(names)
    mapping = {
        old: new for old, new in COLUMN_ALIASES.items()
        if old in present and new not in present
    }
    if mapping:
        logger.info(f"Normalizing columns: {mapping}")
        lf = lf.rename(mapping)
    return lf


class TripLoader:
    """
    Discovers and lazily scans trip and zone inputs.

    Args:
        trips: A trip file or a directory of *.parquet / *.csv trip files
        zones: The zone lookup file (Parquet or CSV)
    """

    def __init__(self, trips: Union[str, Path], zones: Union[str, Path]):
        self.trip_files = self._discover(Path(trips))
        self.zone_file = Path(zones)
        if not self.zone_file.is_file():
            raise ValueError(f"Zone file not found: {zones}")
        logger.info(f"Found {len(self.trip_files)} trip file(s), zones in {self.zone_file.name}")

    @staticmethod
    def _discover(path: Path) -> List[Path]:
        if path.is_file():
            return [path]
        if path.is_dir():
            files = sorted(path.glob("*.parquet")) or sorted(path.glob("*.csv"))
            if files:
                return files
        raise ValueError(f"No Parquet or CSV trip files found in {path}")

    @staticmethod
    def _scan(path: Path, schema: Dict) -> pl.LazyFrame:
        if path.suffix == '.parquet':
            return pl.scan_parquet(path)
        # Only override columns the file actually has
        header = pl.scan_csv(path, n_rows=0).collect_schema().names()
        overrides = {name: dtype for name, dtype in schema.items() if name in header}
        return pl.scan_csv(path, schema_overrides=overrides, try_parse_dates=True)

    def scan_trips(self) -> pl.LazyFrame:
        """All trip files as one lazy frame (nothing is read yet)."""
        frames = [normalize_columns(self._scan(f, TRIP_SCHEMA)) for f in self.trip_files]
        lf = pl.concat(frames, how='diagonal_relaxed') if len(frames) > 1 else frames[0]
        logger.info(f"Lazy trip frame created from {len(self.trip_files)} file(s)")
        return lf

    def scan_zones(self) -> pl.LazyFrame:
        return normalize_columns(self._scan(self.zone_file, ZONE_SCHEMA))

    def load_zones(self) -> pl.DataFrame:
        """The zone table is small; load it eagerly."""
        return self.scan_zones().collect()

    def to_parquet(self, output_dir: Path) -> List[Path]:
        """
        Convert trip inputs to Parquet, one output per input file.

        Returns:
            Paths of the Parquet files (existing Parquet inputs are returned as-is)
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        outputs = []
        for path in self.trip_files:
            if path.suffix == '.parquet':
                outputs.append(path)
                continue
            start_time = time.time()
            target = output_dir / f"{path.stem}.parquet"
            normalize_columns(self._scan(path, TRIP_SCHEMA)).sink_parquet(target)
            elapsed = time.time() - start_time
            logger.info(f"✅ Converted {path.name} -> {target.name} in {elapsed:.2f}s")
            outputs.append(target)
        return outputs
