#!/usr/bin/env python3
"""
Geo Join View - Canonical trips x zones view, built once and cached

The fact table is left-joined to the zone table twice (pickup and dropoff).
Trips with a null zone id, or an id the zone table cannot resolve, are
excluded rather than defaulted, so every joined row carries non-null
pickup_* and dropoff_* zone fields.

The joined output is materialized in the backend under a logical name and
published as an immutable JoinedView. The cache entry is written under a lock
before anyone can observe it and is read-only afterwards, so any number of
sessions can share it.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_VIEW_NAME
from .errors import SchemaMismatch
from .plan import Backend, JoinPlan, ViewFilter
from .query_builder import Schema, freeze_schema

logger = logging.getLogger(__name__)

TRIP_ID = 'trip_id'
ZONE_KEY = 'zone_id'
ZONE_FIELDS = ('borough', 'neighborhood')
ENDPOINTS = (('pickup', 'pickup_zone_id'), ('dropoff', 'dropoff_zone_id'))
REQUIRED_TRIP_COLUMNS = ('pickup_datetime', 'dropoff_datetime', 'pickup_zone_id', 'dropoff_zone_id')


@dataclass(frozen=True)
class JoinedView:
    """
    Read-only handle on a cached relation.

    filters restrict the relation further (partitions are views whose filters
    carry a hash-bucket predicate); label names the view in logs.
    """
    relation: str
    schema: Schema
    filters: Tuple[ViewFilter, ...] = ()
    label: Optional[str] = None

    @property
    def name(self) -> str:
        return self.label or self.relation

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.schema)

    def restrict(self, filters, label: str) -> 'JoinedView':
        return replace(self, filters=self.filters + tuple(filters), label=label)


@dataclass
class _CacheEntry:
    inputs: Tuple[Any, Any]
    view: JoinedView
    rows: int


def _same_input(a, b) -> bool:
    if isinstance(a, str) or isinstance(b, str):
        return a == b
    return a is b


class GeoJoinView:
    """
    Builds and caches the joined trip view.

    Inputs are relation names already registered in the backend, or Polars
    frames that are staged as '<name>__facts' / '<name>__zones' for the join and
    dropped once it is materialized.
    """

    def __init__(
        self,
        backend: Backend,
        required_trip_columns: Tuple[str, ...] = REQUIRED_TRIP_COLUMNS,
        zone_fields: Tuple[str, ...] = ZONE_FIELDS,
    ):
        self.backend = backend
        self.required_trip_columns = tuple(required_trip_columns)
        self.zone_fields = tuple(zone_fields)
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def _resolve(self, source, fallback_name: str, staged: List[str]) -> str:
        if isinstance(source, str):
            if not self.backend.has_relation(source):
                raise ValueError(f"Relation '{source}' is not registered")
            return source
        self.backend.register(fallback_name, source)
        staged.append(fallback_name)
        return fallback_name

    def _check_columns(self, relation: str, expected) -> Dict:
        schema = self.backend.schema(relation)
        missing = set(expected) - set(schema)
        if missing:
            raise SchemaMismatch(relation, missing)
        return schema

    def build(self, facts, zones, name: str = DEFAULT_VIEW_NAME, rebuild: bool = False) -> JoinedView:
        """
        Join facts to zones and cache the result under `name`.

        Args:
            facts: Trip relation name or Polars frame
            zones: Zone relation name or Polars frame
            name: Logical name of the cached view
            rebuild: Replace an existing entry even if inputs match

        Returns:
            JoinedView over the cached relation

        Raises:
            SchemaMismatch: expected columns are absent from either input
            ValueError: `name` is cached for different inputs and rebuild is False
        """
        with self._lock:
            entry = self._cache.get(name)
            if entry is not None and not rebuild:
                if _same_input(entry.inputs[0], facts) and _same_input(entry.inputs[1], zones):
                    logger.info(f"View '{name}' already cached ({entry.rows:,} rows)")
                    return entry.view
                raise ValueError(
                    f"View '{name}' is cached for different inputs; pass rebuild=True to replace it"
                )

            staged: List[str] = []
            try:
                fact_rel = self._resolve(facts, f"{name}__facts", staged)
                zone_rel = self._resolve(zones, f"{name}__zones", staged)
                fact_schema = self._check_columns(fact_rel, self.required_trip_columns)
                self._check_columns(zone_rel, (ZONE_KEY,) + self.zone_fields)

                add_identity = TRIP_ID not in fact_schema
                plan = JoinPlan(
                    name=name,
                    facts=fact_rel,
                    zones=zone_rel,
                    endpoints=ENDPOINTS,
                    zone_key=ZONE_KEY,
                    zone_fields=self.zone_fields,
                    identity=TRIP_ID,
                    add_identity=add_identity,
                    identity_order=tuple(fact_schema) if add_identity else (),
                )
                logger.info(f"Building view '{name}' from {fact_rel} x {zone_rel}")
                rows = self.backend.materialize(plan)
            finally:
                # The joined relation no longer reads the staged copies
                for relation in staged:
                    self.backend.drop(relation)

            view = JoinedView(relation=name, schema=freeze_schema(self.backend.schema(name)))
            self._cache[name] = _CacheEntry(inputs=(facts, zones), view=view, rows=rows)
            return view

    def get(self, name: str = DEFAULT_VIEW_NAME) -> JoinedView:
        with self._lock:
            entry = self._cache.get(name)
        if entry is None:
            raise ValueError(f"View '{name}' has not been built")
        return entry.view

    def row_count(self, name: str = DEFAULT_VIEW_NAME) -> int:
        with self._lock:
            entry = self._cache.get(name)
        if entry is None:
            raise ValueError(f"View '{name}' has not been built")
        return entry.rows

    def invalidate(self, name: str = DEFAULT_VIEW_NAME):
        """Forget a cached view and drop its relation from the backend."""
        with self._lock:
            entry = self._cache.pop(name, None)
            if entry is not None:
                self.backend.drop(name)
                logger.info(f"Invalidated view '{name}'")

    def cached_names(self) -> List[str]:
        with self._lock:
            return sorted(self._cache)


# Process-wide instance shared by sessions
_view_cache: Optional[GeoJoinView] = None
_view_cache_lock = threading.Lock()


def get_view_cache(backend: Optional[Backend] = None) -> GeoJoinView:
    """
    Get or create the process-wide GeoJoinView.

    Args:
        backend: Backend to build on (required on first call)
    """
    global _view_cache

    with _view_cache_lock:
        if _view_cache is None:
            if backend is None:
                raise ValueError("backend required on first call to get_view_cache()")
            _view_cache = GeoJoinView(backend)
        elif backend is not None and backend is not _view_cache.backend:
            raise ValueError("View cache already bound to a different backend; call reset_view_cache()")
        return _view_cache


def reset_view_cache():
    """Reset the process-wide view cache (useful for testing)."""
    global _view_cache
    with _view_cache_lock:
        _view_cache = None
