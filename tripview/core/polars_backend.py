#!/usr/bin/env python3
"""
Polars Backend - In-process lazy execution of logical plans

Every plan is compiled into ONE LazyFrame query and collected once, so the
Polars optimizer sees filters, derived columns and aggregates together
(predicate pushdown, projection pushdown). Only the grouped result is
materialized.

Cached relations are either held as in-memory frames or spilled to Arrow IPC
via SpillStore and scanned back lazily.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional

import polars as pl

from .errors import BackendUnavailable, RequestInvalid
from .plan import HASH_BUCKETS, AggregatePlan, Backend, JoinPlan, ScanPlan
from .query_builder import COUNT_COLUMN, RANK_COLUMN, HashBucket
from .storage import SpillStore, get_memory_mb

logger = logging.getLogger(__name__)

# Plan-level mistakes the compiler missed; anything else propagates untouched
REJECTED_ERRORS = (
    pl.exceptions.ColumnNotFoundError,
    pl.exceptions.SchemaError,
    pl.exceptions.InvalidOperationError,
)


def predicate_expr(p) -> pl.Expr:
    """Compile one view filter / predicate into a boolean expression."""
    if isinstance(p, HashBucket):
        bucket = (pl.col(p.column).hash(seed=p.seed) % HASH_BUCKETS).cast(pl.Float64) / HASH_BUCKETS
        return (bucket >= p.low) & (bucket < p.high)

    col = pl.col(p.column)
    op = p.op
    if op == 'is_null':
        return col.is_null()
    if op == 'not_null':
        return col.is_not_null()

    val = pl.lit(p.value)
    if op == 'eq':
        return col == val
    elif op == 'neq':
        return col != val
    elif op == 'lt':
        return col < val
    elif op == 'lte':
        return col <= val
    elif op == 'gt':
        return col > val
    elif op == 'gte':
        return col >= val
    raise RequestInvalid(f"Unsupported operator: {op}")


def derived_expr(d) -> pl.Expr:
    if d.kind == 'seconds_between':
        start, end = d.sources
        expr = (pl.col(end) - pl.col(start)).dt.total_seconds()
    elif d.kind == 'hour':
        expr = pl.col(d.sources[0]).dt.hour()
    elif d.kind == 'week':
        expr = pl.col(d.sources[0]).dt.week()    # ISO week
    elif d.kind == 'year':
        expr = pl.col(d.sources[0]).dt.year()
    elif d.kind == 'iso_year':
        expr = pl.col(d.sources[0]).dt.iso_year()
    else:
        raise RequestInvalid(f"Unsupported derived kind: {d.kind}")
    return expr.cast(pl.Int64).alias(d.name)


def aggregate_expr(a) -> pl.Expr:
    """
    Rows with nulls in aggregated columns are already filtered out by the
    plan's null guard, so count(col) == count(*) within a group.
    """
    if a.statistic == 'count':
        expr = pl.len() if a.column == '*' else pl.col(a.column).count()
    elif a.statistic == 'mean':
        expr = pl.col(a.column).mean()
    elif a.statistic == 'percentile':
        expr = pl.col(a.column).quantile(a.quantile, interpolation='linear')
    else:
        raise RequestInvalid(f"Unsupported aggregate: {a.statistic}")
    return expr.alias(a.name)


def _and_all(exprs) -> Optional[pl.Expr]:
    combined = None
    for expr in exprs:
        combined = expr if combined is None else combined & expr
    return combined


class PolarsBackend(Backend):
    """
    Executes plans on Polars LazyFrames.

    Polars cannot interrupt a running collect(), so cancel() only reports
    that nothing was cancelled; callers still discard superseded results.
    """

    kind = 'polars'

    def __init__(self, spill_dir: Optional[Path] = None):
        self._relations: Dict[str, pl.LazyFrame] = {}
        self._lock = threading.Lock()
        self.store = SpillStore(spill_dir) if spill_dir else None
        logger.info(f"Polars backend initialized (spill: {spill_dir or 'off'})")

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def register(self, name: str, frame) -> None:
        if isinstance(frame, pl.DataFrame):
            lf = frame.lazy()
        elif isinstance(frame, pl.LazyFrame):
            lf = frame
        else:
            raise TypeError(f"Expected a Polars DataFrame or LazyFrame, got {type(frame).__name__}")
        with self._lock:
            self._relations[name] = lf
        logger.debug(f"Registered relation: {name}")

    def has_relation(self, name: str) -> bool:
        with self._lock:
            return name in self._relations

    def _relation(self, name: str) -> pl.LazyFrame:
        with self._lock:
            lf = self._relations.get(name)
        if lf is None:
            raise ValueError(f"Relation '{name}' is not registered")
        return lf

    def schema(self, name: str) -> Dict:
        return dict(self._relation(name).collect_schema())

    def drop(self, name: str) -> None:
        with self._lock:
            self._relations.pop(name, None)
        if self.store:
            self.store.remove(name)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def materialize(self, plan: JoinPlan) -> int:
        start_time = time.time()
        facts = self._relation(plan.facts)
        zones = self._relation(plan.zones)
        fact_schema = facts.collect_schema()

        if plan.add_identity:
            # Number rows in content order so reordered input keeps its ids
            order = list(plan.identity_order or fact_schema.names())
            facts = (facts.sort(order, nulls_last=True)
                          .with_columns(pl.int_range(pl.len(), dtype=pl.Int64).alias(plan.identity)))

        # Null ids never match; drop them before joining
        facts = facts.filter(_and_all(pl.col(id_col).is_not_null() for _, id_col in plan.endpoints))

        for prefix, id_col in plan.endpoints:
            lookup = zones.select(
                [pl.col(plan.zone_key).cast(fact_schema[id_col]).alias(id_col)]
                + [pl.col(field).alias(f"{prefix}_{field}") for field in plan.zone_fields]
            )
            facts = facts.join(lookup, on=id_col, how='left')

        facts = facts.filter(_and_all(pl.col(c).is_not_null() for c in plan.output_fields()))

        try:
            df = facts.collect()
        except REJECTED_ERRORS as e:
            raise RequestInvalid(f"Backend rejected join: {e}") from e
        except OSError as e:
            raise BackendUnavailable(f"Join of '{plan.facts}' failed: {e}") from e

        rows = len(df)
        if self.store:
            self.store.write_relation(plan.name, df)
            cached = self.store.scan(plan.name)
        else:
            cached = df.lazy()

        with self._lock:
            self._relations[plan.name] = cached

        elapsed = (time.time() - start_time) * 1000
        logger.info(f"✅ Cached {plan.name}: {rows:,} rows in {elapsed:.1f}ms "
                    f"(RSS {get_memory_mb():.0f} MB)")
        return rows

    def _filtered(self, relation: str, view_filters, non_null) -> pl.LazyFrame:
        lf = self._relation(relation)
        conditions = [predicate_expr(f) for f in view_filters]
        conditions.extend(pl.col(c).is_not_null() for c in non_null)
        if conditions:
            lf = lf.filter(_and_all(conditions))
        return lf

    def submit(self, plan: AggregatePlan, job_id: Optional[str] = None) -> pl.DataFrame:
        lf = self._filtered(plan.relation, plan.view_filters, plan.non_null)

        if plan.derived:
            lf = lf.with_columns([derived_expr(d) for d in plan.derived])
        if plan.filters:
            lf = lf.filter(_and_all(predicate_expr(p) for p in plan.filters))

        agg_exprs = [aggregate_expr(a) for a in plan.aggregates]
        keys = list(plan.group_keys)
        if keys:
            lf = lf.group_by(keys).agg(agg_exprs)
        else:
            lf = lf.select(agg_exprs)

        if plan.top_n is not None:
            # Rank AFTER aggregation: count desc, then group keys asc
            lf = (lf.sort([COUNT_COLUMN] + keys, descending=[True] + [False] * len(keys))
                    .head(plan.top_n)
                    .with_row_index(RANK_COLUMN, offset=1))
        elif keys:
            lf = lf.sort(keys)

        lf = lf.head(plan.limit)

        try:
            return lf.collect()
        except REJECTED_ERRORS as e:
            raise RequestInvalid(f"Backend rejected plan: {e}") from e
        except OSError as e:
            raise BackendUnavailable(f"Job {job_id} failed reading '{plan.relation}': {e}") from e

    def fetch(self, plan: ScanPlan) -> pl.DataFrame:
        lf = self._filtered(plan.relation, plan.view_filters, plan.columns)
        try:
            return lf.select(list(plan.columns)).head(plan.limit).collect()
        except REJECTED_ERRORS as e:
            raise RequestInvalid(f"Backend rejected scan: {e}") from e

    def cancel(self, job_id: str) -> bool:
        logger.debug(f"Polars job {job_id} cannot be interrupted; result will be discarded")
        return False

