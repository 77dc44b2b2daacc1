"""
Runtime settings.

Defaults live here as constants; every knob can be overridden with a
TRIPVIEW_* environment variable or passed explicitly by the entry script.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_BACKEND = 'polars'
DEFAULT_MAX_RESULT_ROWS = 100_000
DEFAULT_SESSION_WORKERS = 4
DEFAULT_VIEW_NAME = 'joined_trips'

SUPPORTED_BACKENDS = ('polars', 'duckdb')


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_path(name: str) -> Optional[Path]:
    raw = os.environ.get(name)
    return Path(raw) if raw else None


@dataclass
class Settings:
    """Knobs consumed by the core; connection details stay external."""
    backend: str = DEFAULT_BACKEND
    max_result_rows: int = DEFAULT_MAX_RESULT_ROWS
    session_workers: int = DEFAULT_SESSION_WORKERS
    view_name: str = DEFAULT_VIEW_NAME
    threads: int = field(default_factory=lambda: os.cpu_count() or 8)
    spill_dir: Optional[Path] = None      # Polars: spill cached views to Arrow IPC
    duckdb_path: Optional[Path] = None    # DuckDB: None = in-memory database

    def __post_init__(self):
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported backend {self.backend!r}; expected one of {SUPPORTED_BACKENDS}"
            )
        if self.max_result_rows < 1:
            raise ValueError("max_result_rows must be >= 1")
        if self.session_workers < 1:
            raise ValueError("session_workers must be >= 1")

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from TRIPVIEW_* environment variables."""
        return cls(
            backend=os.environ.get('TRIPVIEW_BACKEND', DEFAULT_BACKEND),
            max_result_rows=_env_int('TRIPVIEW_MAX_RESULT_ROWS', DEFAULT_MAX_RESULT_ROWS),
            session_workers=_env_int('TRIPVIEW_SESSION_WORKERS', DEFAULT_SESSION_WORKERS),
            view_name=os.environ.get('TRIPVIEW_VIEW_NAME', DEFAULT_VIEW_NAME),
            threads=_env_int('TRIPVIEW_THREADS', os.cpu_count() or 8),
            spill_dir=_env_path('TRIPVIEW_SPILL_DIR'),
            duckdb_path=_env_path('TRIPVIEW_DUCKDB_PATH'),
        )
