#!/usr/bin/env python3
"""
DuckDB Backend - Logical plans compiled to SQL

Each plan becomes ONE parameterised SQL statement. Jobs run on their own
cursor (a separate connection handle on the same database), which makes them
safe to run from several session threads and lets cancel() interrupt a
superseded job.

Percentiles use quantile_cont (linear interpolation between closest ranks),
matching the Polars backend.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

import duckdb
import polars as pl

from .errors import BackendUnavailable, RequestInvalid
from .plan import HASH_BUCKETS, AggregatePlan, Backend, JoinPlan, ScanPlan
from .query_builder import COUNT_COLUMN, RANK_COLUMN, HashBucket
from .storage import get_memory_mb

logger = logging.getLogger(__name__)

SQL_OPS = {'eq': '=', 'neq': '!=', 'lt': '<', 'lte': '<=', 'gt': '>', 'gte': '>='}

TRANSIENT_ERRORS = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.InterruptException,
    duckdb.OutOfMemoryException,
)
REJECTED_ERRORS = (
    duckdb.BinderException,
    duckdb.CatalogException,
    duckdb.ParserException,
    duckdb.ConversionException,
)


def quote(name: str) -> str:
    """Quote an identifier"""
    return '"' + name.replace('"', '""') + '"'


class SqlCompiler:
    """Builds SQL text and its positional parameters in emission order."""

    def __init__(self):
        self.params: List = []

    def param(self, value) -> str:
        self.params.append(value)
        return '?'

    def predicate(self, p) -> str:
        if isinstance(p, HashBucket):
            # Inlined: the bucket expression appears twice
            bucket = (f"(hash({quote(p.column)}, CAST({int(p.seed)} AS BIGINT)) "
                      f"% {HASH_BUCKETS}) / {HASH_BUCKETS}.0")
            return f"({bucket} >= {float(p.low)!r} AND {bucket} < {float(p.high)!r})"

        col = quote(p.column)
        if p.op == 'is_null':
            return f"{col} IS NULL"
        if p.op == 'not_null':
            return f"{col} IS NOT NULL"
        if p.op not in SQL_OPS:
            raise RequestInvalid(f"Unsupported operator: {p.op}")
        return f"{col} {SQL_OPS[p.op]} {self.param(p.value)}"

    def where(self, conditions: List[str]) -> str:
        return f" WHERE {' AND '.join(conditions)}" if conditions else ''

    @staticmethod
    def derived(d) -> str:
        if d.kind == 'seconds_between':
            start, end = (quote(s) for s in d.sources)
            expr = f"trunc((epoch_ms({end}) - epoch_ms({start})) / 1000.0)"
        elif d.kind == 'hour':
            expr = f"hour({quote(d.sources[0])})"
        elif d.kind == 'week':
            expr = f"weekofyear({quote(d.sources[0])})"    # ISO week
        elif d.kind == 'year':
            expr = f"year({quote(d.sources[0])})"
        elif d.kind == 'iso_year':
            expr = f"isoyear({quote(d.sources[0])})"
        else:
            raise RequestInvalid(f"Unsupported derived kind: {d.kind}")
        return f"CAST({expr} AS BIGINT) AS {quote(d.name)}"

    @staticmethod
    def aggregate(a) -> str:
        if a.statistic == 'count':
            expr = 'COUNT(*)' if a.column == '*' else f"COUNT({quote(a.column)})"
        elif a.statistic == 'mean':
            expr = f"AVG({quote(a.column)})"
        elif a.statistic == 'percentile':
            expr = f"quantile_cont(CAST({quote(a.column)} AS DOUBLE), {float(a.quantile)!r})"
        else:
            raise RequestInvalid(f"Unsupported aggregate: {a.statistic}")
        return f"{expr} AS {quote(a.name)}"

    def base_scan(self, relation: str, view_filters, non_null, select: str = '*') -> str:
        conditions = [self.predicate(f) for f in view_filters]
        conditions.extend(f"{quote(c)} IS NOT NULL" for c in non_null)
        return f"SELECT {select} FROM {quote(relation)}{self.where(conditions)}"

    def aggregate_plan(self, plan: AggregatePlan) -> str:
        derived = ''.join(f", {self.derived(d)}" for d in plan.derived)
        inner = self.base_scan(plan.relation, plan.view_filters, plan.non_null, f"*{derived}")

        keys = ', '.join(quote(k) for k in plan.group_keys)
        aggs = ', '.join(self.aggregate(a) for a in plan.aggregates)
        select = f"{keys}, {aggs}" if keys else aggs

        sql = (f"SELECT {select} FROM ({inner}) AS base"
               f"{self.where([self.predicate(p) for p in plan.filters])}")
        if keys:
            sql += f" GROUP BY {keys}"

        if plan.top_n is not None:
            # Rank AFTER aggregation: count desc, then group keys asc
            order = f"{quote(COUNT_COLUMN)} DESC, {keys}"
            sql = (f"SELECT ROW_NUMBER() OVER (ORDER BY {order}) AS {quote(RANK_COLUMN)}, grouped.* "
                   f"FROM ({sql}) AS grouped ORDER BY {quote(RANK_COLUMN)} "
                   f"LIMIT {min(int(plan.top_n), int(plan.limit))}")
            return sql

        if keys:
            sql += f" ORDER BY {keys}"
        return f"{sql} LIMIT {int(plan.limit)}"

    def join_plan(self, plan: JoinPlan) -> str:
        facts = quote(plan.facts)
        if plan.add_identity:
            # Ordered on content: an empty OVER () follows parallel scan order
            order = ', '.join(f"{quote(c)} ASC NULLS LAST" for c in plan.identity_order)
            window = f"ORDER BY {order}" if order else ''
            source = (f"(SELECT *, CAST(row_number() OVER ({window}) - 1 AS BIGINT) AS {quote(plan.identity)} "
                      f"FROM {facts})")
        else:
            source = facts

        selects = ['f.*']
        joins = []
        conditions = []
        for i, (prefix, id_col) in enumerate(plan.endpoints):
            alias = f"z{i}"
            joins.append(f"LEFT JOIN {quote(plan.zones)} AS {alias} "
                         f"ON f.{quote(id_col)} = {alias}.{quote(plan.zone_key)}")
            conditions.append(f"f.{quote(id_col)} IS NOT NULL")
            for field in plan.zone_fields:
                selects.append(f"{alias}.{quote(field)} AS {quote(f'{prefix}_{field}')}")
                conditions.append(f"{alias}.{quote(field)} IS NOT NULL")

        return (f"CREATE OR REPLACE TABLE {quote(plan.name)} AS "
                f"SELECT {', '.join(selects)} FROM {source} AS f {' '.join(joins)}"
                f"{self.where(conditions)}")


class DuckDBBackend(Backend):
    """
    Executes plans on a DuckDB database (in-memory by default).

    Registration and joins go through the main connection under a lock;
    aggregate jobs each get a cursor tracked by job id.
    """

    kind = 'duckdb'

    def __init__(self, database: Union[str, Path] = ':memory:', threads: Optional[int] = None):
        self.database = str(database)
        self.con = duckdb.connect(self.database)
        if threads:
            self.con.execute(f"SET threads TO {int(threads)}")
        self._lock = threading.Lock()
        self._jobs: Dict[str, duckdb.DuckDBPyConnection] = {}
        logger.info(f"DuckDB backend initialized: {self.database}")

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def register(self, name: str, frame) -> None:
        if isinstance(frame, pl.LazyFrame):
            frame = frame.collect()
        if not isinstance(frame, pl.DataFrame):
            raise TypeError(f"Expected a Polars DataFrame or LazyFrame, got {type(frame).__name__}")

        staging = f"__incoming_{name}"
        with self._lock:
            self.con.register(staging, frame.to_arrow())
            try:
                self.con.execute(f"CREATE OR REPLACE TABLE {quote(name)} AS SELECT * FROM {quote(staging)}")
            finally:
                self.con.unregister(staging)
        logger.debug(f"Registered relation: {name} ({len(frame):,} rows)")

    def register_parquet(self, name: str, paths: List[Path]) -> None:
        """Expose Parquet files as a view without loading them."""
        if not paths:
            raise ValueError(f"No Parquet files given for '{name}'")
        files = ', '.join("'" + str(p).replace("'", "''") + "'" for p in paths)
        with self._lock:
            self.con.execute(f"CREATE OR REPLACE VIEW {quote(name)} AS SELECT * FROM read_parquet([{files}])")
        logger.info(f"Registered {len(paths)} Parquet file(s) as {name}")

    def has_relation(self, name: str) -> bool:
        with self._lock:
            found = self.con.execute(
                "SELECT count(*) FROM information_schema.tables WHERE table_name = ?", [name]
            ).fetchone()[0]
        return found > 0

    def schema(self, name: str) -> Dict:
        if not self.has_relation(name):
            raise ValueError(f"Relation '{name}' is not registered")
        with self._lock:
            empty = self.con.execute(f"SELECT * FROM {quote(name)} LIMIT 0").pl()
        return dict(empty.schema)

    def drop(self, name: str) -> None:
        with self._lock:
            kind = self.con.execute(
                "SELECT table_type FROM information_schema.tables WHERE table_name = ?", [name]
            ).fetchone()
            if kind is not None:
                keyword = 'VIEW' if kind[0] == 'VIEW' else 'TABLE'
                self.con.execute(f"DROP {keyword} IF EXISTS {quote(name)}")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def materialize(self, plan: JoinPlan) -> int:
        start_time = time.time()
        sql = SqlCompiler().join_plan(plan)
        logger.debug(f"Join SQL: {sql}")
        with self._lock:
            try:
                self.con.execute(sql)
                rows = self.con.execute(f"SELECT count(*) FROM {quote(plan.name)}").fetchone()[0]
            except TRANSIENT_ERRORS as e:
                raise BackendUnavailable(f"Join of '{plan.facts}' failed: {e}") from e
            except REJECTED_ERRORS as e:
                raise RequestInvalid(f"Backend rejected join: {e}") from e

        elapsed = (time.time() - start_time) * 1000
        logger.info(f"✅ Cached {plan.name}: {rows:,} rows in {elapsed:.1f}ms "
                    f"(RSS {get_memory_mb():.0f} MB)")
        return rows

    def _run(self, sql: str, params: List, job_id: Optional[str]) -> pl.DataFrame:
        with self._lock:
            cursor = self.con.cursor()
            if job_id is not None:
                self._jobs[job_id] = cursor
        try:
            return cursor.execute(sql, params).pl()
        except TRANSIENT_ERRORS as e:
            raise BackendUnavailable(f"Job {job_id} failed: {e}") from e
        except REJECTED_ERRORS as e:
            raise RequestInvalid(f"Backend rejected plan: {e}") from e
        finally:
            with self._lock:
                if job_id is not None:
                    self._jobs.pop(job_id, None)
            cursor.close()

    def submit(self, plan: AggregatePlan, job_id: Optional[str] = None) -> pl.DataFrame:
        compiler = SqlCompiler()
        sql = compiler.aggregate_plan(plan)
        logger.debug(f"Job {job_id} SQL: {sql} params={compiler.params}")
        return self._run(sql, compiler.params, job_id)

    def fetch(self, plan: ScanPlan) -> pl.DataFrame:
        compiler = SqlCompiler()
        columns = ', '.join(quote(c) for c in plan.columns)
        sql = compiler.base_scan(plan.relation, plan.view_filters, plan.columns, columns)
        sql += f" LIMIT {int(plan.limit)}"
        return self._run(sql, compiler.params, None)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            cursor = self._jobs.get(job_id)
            if cursor is None:
                return False
            cursor.interrupt()
        logger.info(f"Interrupted job {job_id}")
        return True

    def close(self):
        self.con.close()
