#!/usr/bin/env python3
"""
Query Builder - Declarative aggregation requests over a joined view

Requests are immutable values: every fluent call validates its arguments
against the column vocabulary and returns a NEW request, so many variants can
share a common prefix. Nothing here touches data.

Closed vocabulary:
- predicates: eq, neq, lt, lte, gt, gte, is_null, not_null
- derived columns: hour / week / year / iso_year of a timestamp, seconds_between(start, end)
- statistics: count, mean, percentile(q), plus top(n) ranking by count

Example:
    >>> request = (QueryBuilder(view).request()
    ...     .filter('pickup_zone_id', 'eq', 1)
    ...     .derive('pickup_hour', 'hour', 'pickup_datetime')
    ...     .derive('trip_time', 'seconds_between', 'pickup_datetime', 'dropoff_datetime')
    ...     .group_by('pickup_hour')
    ...     .aggregate('*', 'count')
    ...     .aggregate('trip_time', 'mean'))
"""

import datetime
import numbers
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Tuple

import polars as pl

from .errors import RequestInvalid

COMPARISON_OPS = ('eq', 'neq', 'lt', 'lte', 'gt', 'gte')
NULL_OPS = ('is_null', 'not_null')
EXTRACT_KINDS = ('hour', 'week', 'year', 'iso_year')
DERIVE_KINDS = EXTRACT_KINDS + ('seconds_between',)
STATISTICS = ('count', 'mean', 'percentile')

RANK_COLUMN = 'rank'
COUNT_COLUMN = 'count'

Schema = Tuple[Tuple[str, str], ...]


def column_kind(dtype) -> str:
    """Collapse a Polars dtype into the kinds the vocabulary cares about."""
    if dtype == pl.Datetime:
        return 'datetime'
    if dtype == pl.Date:
        return 'date'
    if dtype == pl.Boolean:
        return 'boolean'
    if dtype.is_numeric():
        return 'numeric'
    if dtype == pl.String or dtype == pl.Categorical:
        return 'string'
    return 'other'


def freeze_schema(schema) -> Schema:
    """
    Normalise a schema into a sorted tuple of (column, kind) pairs.

    Accepts a Polars schema (name -> dtype), a mapping of name -> kind, or an
    already-frozen tuple.
    """
    if isinstance(schema, tuple):
        return tuple(sorted(schema))
    frozen = []
    for name, dtype in dict(schema).items():
        kind = dtype if isinstance(dtype, str) else column_kind(dtype)
        frozen.append((name, kind))
    return tuple(sorted(frozen))


def quantile_label(q: float) -> str:
    """0.5 -> 'p50', 0.125 -> 'p12.5'"""
    return 'p' + format(q * 100, 'g')


@dataclass(frozen=True)
class Predicate:
    """Single WHERE condition: column <op> value."""
    column: str
    op: str
    value: Any = None

    def __str__(self):
        if self.op in NULL_OPS:
            return f"{self.column} {self.op}"
        return f"{self.column} {self.op} {self.value!r}"


@dataclass(frozen=True)
class HashBucket:
    """Rows whose seeded hash of `column` falls in [low, high)."""
    column: str
    seed: int
    low: float
    high: float

    def __str__(self):
        return f"bucket({self.column}, seed={self.seed}) in [{self.low:g}, {self.high:g})"


@dataclass(frozen=True)
class Derived:
    """Derived column computed row-by-row inside the backend."""
    name: str
    kind: str
    sources: Tuple[str, ...]

    def __str__(self):
        return f"{self.name}={self.kind}({', '.join(self.sources)})"


@dataclass(frozen=True)
class Aggregate:
    """One requested statistic. column is '*' for count(*)."""
    column: str
    statistic: str
    quantile: Optional[float] = None
    alias: Optional[str] = None

    @property
    def name(self) -> str:
        if self.alias:
            return self.alias
        if self.statistic == 'count':
            return COUNT_COLUMN if self.column == '*' else f"{self.column}_count"
        if self.statistic == 'mean':
            return f"{self.column}_mean"
        return f"{self.column}_{quantile_label(self.quantile)}"

    def __str__(self):
        if self.statistic == 'percentile':
            return f"percentile({self.column}, {self.quantile:g})"
        return f"{self.statistic}({self.column})"


def _check_literal(column: str, kind: str, value: Any):
    if kind == 'numeric':
        ok = isinstance(value, numbers.Real) and not isinstance(value, bool)
    elif kind == 'string':
        ok = isinstance(value, str)
    elif kind == 'boolean':
        ok = isinstance(value, bool)
    elif kind == 'datetime':
        ok = isinstance(value, datetime.datetime)
    elif kind == 'date':
        ok = isinstance(value, datetime.date) and not isinstance(value, datetime.datetime)
    else:
        ok = False
    if not ok:
        raise RequestInvalid(
            f"Value {value!r} is not comparable with {kind} column '{column}'"
        )


@dataclass(frozen=True)
class AggregationRequest:
    """
    Immutable filter/derive/group/aggregate request.

    `schema` is the column vocabulary the request was validated against;
    equality is structural, so building the same sequence twice yields equal
    requests.
    """
    schema: Schema = ()
    filters: Tuple[Predicate, ...] = ()
    derived: Tuple[Derived, ...] = ()
    group_keys: Tuple[str, ...] = ()
    aggregates: Tuple[Aggregate, ...] = ()
    top_n: Optional[int] = None

    # ------------------------------------------------------------------
    # Vocabulary
    # ------------------------------------------------------------------

    @property
    def base_kinds(self) -> Dict[str, str]:
        return dict(self.schema)

    @property
    def kinds(self) -> Dict[str, str]:
        """Base columns plus derived columns (all derived values are numeric)."""
        kinds = self.base_kinds
        for d in self.derived:
            kinds[d.name] = 'numeric'
        return kinds

    def _derived_by_name(self) -> Dict[str, Derived]:
        return {d.name: d for d in self.derived}

    def _require_column(self, column: str) -> str:
        kinds = self.kinds
        if column not in kinds:
            raise RequestInvalid(
                f"Unknown column '{column}'. Available: {sorted(kinds)}"
            )
        return kinds[column]

    def _output_names(self):
        names = set(self.group_keys)
        names.update(a.name for a in self.aggregates)
        if self.top_n is not None:
            names.add(RANK_COLUMN)
        return names

    # ------------------------------------------------------------------
    # Fluent API
    # ------------------------------------------------------------------

    def filter(self, column: str, op: str, value: Any = None) -> 'AggregationRequest':
        """Add a predicate; predicates are ANDed."""
        kind = self._require_column(column)
        if op in COMPARISON_OPS:
            if value is None:
                raise RequestInvalid(
                    f"'{op}' on '{column}' needs a value; use is_null/not_null for nulls"
                )
            _check_literal(column, kind, value)
        elif op in NULL_OPS:
            if value is not None:
                raise RequestInvalid(f"'{op}' takes no value (got {value!r})")
        else:
            raise RequestInvalid(
                f"Unsupported operator '{op}'. Supported: {COMPARISON_OPS + NULL_OPS}"
            )
        return replace(self, filters=self.filters + (Predicate(column, op, value),))

    def derive(self, name: str, kind: str, *sources: str) -> 'AggregationRequest':
        """Add a derived column computed from base timestamp columns."""
        if not name or not isinstance(name, str):
            raise RequestInvalid(f"Derived column needs a name, got {name!r}")
        if name in self.kinds:
            raise RequestInvalid(f"Column '{name}' already exists")
        if kind not in DERIVE_KINDS:
            raise RequestInvalid(f"Unsupported derived kind '{kind}'. Supported: {DERIVE_KINDS}")

        arity = 2 if kind == 'seconds_between' else 1
        if len(sources) != arity:
            raise RequestInvalid(f"{kind} takes {arity} source column(s), got {len(sources)}")

        base = self.base_kinds
        for source in sources:
            if source not in base:
                raise RequestInvalid(
                    f"Derived column '{name}' must read base columns; '{source}' is not one"
                )
            source_kind = base[source]
            if kind == 'hour' or kind == 'seconds_between':
                allowed = ('datetime',)
            else:
                allowed = ('datetime', 'date')
            if source_kind not in allowed:
                raise RequestInvalid(
                    f"{kind} needs a {' or '.join(allowed)} column; '{source}' is {source_kind}"
                )

        return replace(self, derived=self.derived + (Derived(name, kind, tuple(sources)),))

    def group_by(self, *keys: str) -> 'AggregationRequest':
        if not keys:
            raise RequestInvalid("group_by needs at least one key")
        seen = set(self.group_keys)
        for key in keys:
            self._require_column(key)
            if key in seen:
                raise RequestInvalid(f"Duplicate group key '{key}'")
            seen.add(key)
        clash = seen & {a.name for a in self.aggregates}
        if clash:
            raise RequestInvalid(f"Group keys collide with aggregate names: {sorted(clash)}")
        return replace(self, group_keys=self.group_keys + tuple(keys))

    def aggregate(
        self,
        column: str,
        statistic: str,
        quantile: Optional[float] = None,
        alias: Optional[str] = None
    ) -> 'AggregationRequest':
        """Request one statistic for a column ('*' only for count)."""
        if statistic not in STATISTICS:
            raise RequestInvalid(f"Unsupported statistic '{statistic}'. Supported: {STATISTICS}")

        if column == '*':
            if statistic != 'count':
                raise RequestInvalid(f"'*' is only valid for count, not {statistic}")
        else:
            kind = self._require_column(column)
            if statistic != 'count' and kind != 'numeric':
                raise RequestInvalid(f"{statistic} needs a numeric column; '{column}' is {kind}")

        if statistic == 'percentile':
            if (not isinstance(quantile, numbers.Real) or isinstance(quantile, bool)
                    or not 0.0 <= quantile <= 1.0):
                raise RequestInvalid(f"percentile needs a quantile in [0, 1], got {quantile!r}")
            quantile = float(quantile)
        elif quantile is not None:
            raise RequestInvalid(f"quantile is only valid for percentile, not {statistic}")

        agg = Aggregate(column, statistic, quantile, alias)
        if agg.name in self._output_names():
            raise RequestInvalid(f"Duplicate output column '{agg.name}'")
        return replace(self, aggregates=self.aggregates + (agg,))

    def percentiles(self, column: str, *quantiles: float) -> 'AggregationRequest':
        """Shorthand for a band of percentiles of one column."""
        request = self
        for q in quantiles:
            request = request.aggregate(column, 'percentile', q)
        return request

    def top(self, n: int) -> 'AggregationRequest':
        """
        Keep the n groups with the highest count (ties: ascending group key).

        Adds count(*) when it is not already requested.
        """
        if not isinstance(n, int) or isinstance(n, bool) or n < 1:
            raise RequestInvalid(f"top needs a positive integer, got {n!r}")
        if not self.group_keys:
            raise RequestInvalid("top needs group keys to rank")
        if self.top_n is not None:
            raise RequestInvalid("top already set")

        request = self
        existing = {a.name: a for a in self.aggregates}
        if COUNT_COLUMN in existing:
            agg = existing[COUNT_COLUMN]
            if agg.statistic != 'count' or agg.column != '*':
                raise RequestInvalid(f"'{COUNT_COLUMN}' must be count(*) to rank by it")
        else:
            request = request.aggregate('*', 'count')
        if RANK_COLUMN in request._output_names():
            raise RequestInvalid(f"'{RANK_COLUMN}' is reserved for the rank column")
        return replace(request, top_n=n)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def validate(self, schema=None):
        """
        Re-run every build-time check, optionally against another schema.

        Raises RequestInvalid; returns None when the request is executable.
        """
        fresh = AggregationRequest(
            schema=freeze_schema(schema) if schema is not None else self.schema
        )
        for d in self.derived:
            fresh = fresh.derive(d.name, d.kind, *d.sources)
        for p in self.filters:
            fresh = fresh.filter(p.column, p.op, p.value)
        if self.group_keys:
            fresh = fresh.group_by(*self.group_keys)
        for a in self.aggregates:
            fresh = fresh.aggregate(a.column, a.statistic, a.quantile, a.alias)
        if self.top_n is not None:
            fresh = fresh.top(self.top_n)
        if not fresh.aggregates:
            raise RequestInvalid("Request has no aggregates")

    def non_null_columns(self) -> Tuple[str, ...]:
        """
        Base columns whose nulls exclude a row before grouping.

        Columns referenced only by is_null / not_null are left alone.
        """
        derived = self._derived_by_name()
        needed = set()

        def add(column):
            if column in derived:
                needed.update(derived[column].sources)
            elif column != '*':
                needed.add(column)

        for d in self.derived:
            needed.update(d.sources)
        for p in self.filters:
            if p.op in COMPARISON_OPS:
                add(p.column)
        for key in self.group_keys:
            add(key)
        for a in self.aggregates:
            add(a.column)
        return tuple(sorted(needed))

    def output_columns(self) -> Tuple[str, ...]:
        names = tuple(self.group_keys) + tuple(a.name for a in self.aggregates)
        if self.top_n is not None:
            names = (RANK_COLUMN,) + names
        return names

    def __str__(self):
        keys = ', '.join(self.group_keys) if self.group_keys else 'none'
        aggs = ', '.join(str(a) for a in self.aggregates)
        filters = ', '.join(str(p) for p in self.filters)
        derived = ', '.join(str(d) for d in self.derived)
        top = f", top={self.top_n}" if self.top_n is not None else ''
        return f"Request(keys=[{keys}], aggs=[{aggs}], filters=[{filters}], derived=[{derived}]{top})"


class QueryBuilder:
    """
    Entry point binding the column vocabulary of a view.

    Accepts anything with a `schema` attribute (e.g. a JoinedView), a Polars
    schema, or a mapping of column -> kind.
    """

    def __init__(self, source):
        schema = getattr(source, 'schema', source)
        self.schema = freeze_schema(schema)

    def request(self) -> AggregationRequest:
        return AggregationRequest(schema=self.schema)

    def predicate(self, column: str, op: str, value: Any = None) -> Predicate:
        """Validated standalone predicate (used for partition filters)."""
        return self.request().filter(column, op, value).filters[0]

    @property
    def columns(self) -> Mapping[str, str]:
        return dict(self.schema)
