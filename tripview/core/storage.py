#!/usr/bin/env python3
"""
Spill Store - Arrow IPC files for cached views

Large cached views can be spilled to disk as LZ4-compressed Arrow IPC files
and scanned back lazily, so the joined view does not have to stay resident.

Directory structure:
    spill_dir/
        joined_trips.arrow
        ...
"""

import logging
import os
import time
from pathlib import Path

import polars as pl
import psutil

logger = logging.getLogger(__name__)


def get_memory_mb() -> float:
    """Current RSS of this process in MB"""
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024**2


class SpillStore:
    """Writes relations to Arrow IPC files and scans them back."""

    def __init__(self, spill_dir: Path):
        self.spill_dir = Path(spill_dir)
        self.spill_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Spill store initialized: {self.spill_dir}")

    def path_for(self, name: str) -> Path:
        return self.spill_dir / f"{name}.arrow"

    def write_relation(self, name: str, df: pl.DataFrame, compression: str = 'lz4') -> Path:
        """
        Write a materialized relation to disk.

        Args:
            name: Relation name (file stem)
            df: DataFrame to write
            compression: 'lz4', 'zstd' or 'uncompressed'

        Returns:
            Path to the written file
        """
        start_time = time.time()
        output_path = self.path_for(name)
        df.write_ipc(output_path, compression=compression)

        file_size_mb = output_path.stat().st_size / (1024 * 1024)
        write_time = time.time() - start_time
        logger.info(f"Spilled {name}: {len(df):,} rows, {file_size_mb:.1f} MB "
                    f"in {write_time*1000:.1f}ms")
        return output_path

    def scan(self, name: str) -> pl.LazyFrame:
        path = self.path_for(name)
        if not path.exists():
            raise ValueError(f"No spilled relation '{name}' in {self.spill_dir}")
        return pl.scan_ipc(path)

    def remove(self, name: str):
        self.path_for(name).unlink(missing_ok=True)
