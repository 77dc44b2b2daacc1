"""
Core modules for the trip aggregation layer.
"""

from .errors import (
    TripViewError,
    SchemaMismatch,
    RequestInvalid,
    BackendUnavailable,
    ResultTooLarge,
    InvalidFractions,
)
from .config import Settings
from .data_loader import TripLoader
from .storage import SpillStore
from .plan import Backend
from .polars_backend import PolarsBackend
from .duckdb_backend import DuckDBBackend
from .query_builder import QueryBuilder, AggregationRequest, Predicate
from .geo_join_view import GeoJoinView, JoinedView, get_view_cache, reset_view_cache
from .aggregation_engine import AggregationEngine, AggregationResult
from .partition_sampler import PartitionSampler
from .modeling import ModelFitter, LeastSquaresFitter, fit_partition
from .reactive_session import ReactiveSession, SessionStatus, Derivation


def make_backend(settings: Settings) -> Backend:
    """Backend selected by settings.backend."""
    if settings.backend == 'duckdb':
        return DuckDBBackend(settings.duckdb_path or ':memory:', threads=settings.threads)
    return PolarsBackend(spill_dir=settings.spill_dir)


__all__ = [
    'TripViewError',
    'SchemaMismatch',
    'RequestInvalid',
    'BackendUnavailable',
    'ResultTooLarge',
    'InvalidFractions',
    'Settings',
    'TripLoader',
    'SpillStore',
    'Backend',
    'PolarsBackend',
    'DuckDBBackend',
    'make_backend',
    'QueryBuilder',
    'AggregationRequest',
    'Predicate',
    'GeoJoinView',
    'JoinedView',
    'get_view_cache',
    'reset_view_cache',
    'AggregationEngine',
    'AggregationResult',
    'PartitionSampler',
    'ModelFitter',
    'LeastSquaresFitter',
    'fit_partition',
    'ReactiveSession',
    'SessionStatus',
    'Derivation',
]
