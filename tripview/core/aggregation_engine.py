#!/usr/bin/env python3
"""
Aggregation Engine - One backend job per request

The engine turns a validated AggregationRequest into a single AggregatePlan
and submits it once. All row-level work (filters, null guards, derived
columns, grouping, statistics, ranking) happens inside the backend; only the
grouped rows come back.

Semantics:
1. Percentiles: linear interpolation between closest ranks, for every quantile
   of every request, so p10 <= p25 <= p50 <= p75 <= p90 within a row.
2. Nulls: a null in any column a comparison filter, derived column, group key
   or statistic reads excludes the row before grouping (never coerced to 0).
3. Top-N: aggregate, rank by count desc (ties: ascending group key), truncate.
4. Row cap: more than max_result_rows grouped rows raises ResultTooLarge.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import polars as pl

from .config import DEFAULT_MAX_RESULT_ROWS
from .errors import RequestInvalid, ResultTooLarge
from .plan import AggregatePlan, Backend
from .query_builder import AggregationRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationResult:
    """Grouped rows: one tuple per distinct group key, in `columns` order."""
    columns: Tuple[str, ...]
    rows: Tuple[tuple, ...]

    @classmethod
    def from_frame(cls, df: pl.DataFrame) -> 'AggregationResult':
        return cls(columns=tuple(df.columns), rows=tuple(tuple(row) for row in df.iter_rows()))

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def column(self, name: str) -> List[Any]:
        try:
            idx = self.columns.index(name)
        except ValueError:
            raise KeyError(f"No column '{name}' in result. Available: {list(self.columns)}")
        return [row[idx] for row in self.rows]

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]

    def to_polars(self) -> pl.DataFrame:
        return pl.DataFrame(list(self.rows), schema=list(self.columns), orient="row")


class AggregationEngine:
    """
    Executes aggregation requests against a view through a backend.

    The engine never retries: BackendUnavailable reaches the caller, who
    decides whether to try again.
    """

    def __init__(self, backend: Backend, max_result_rows: int = DEFAULT_MAX_RESULT_ROWS):
        """
        Args:
            backend: Execution backend holding the view's relation
            max_result_rows: Largest grouped result allowed back into this process
        """
        if max_result_rows < 1:
            raise ValueError("max_result_rows must be >= 1")
        self.backend = backend
        self.max_result_rows = max_result_rows
        logger.info(f"Aggregation engine initialized ({backend.kind}, cap {max_result_rows:,} rows)")

    def plan(self, request: AggregationRequest, source) -> AggregatePlan:
        """Validate against the source's columns and compile one plan."""
        if not isinstance(request, AggregationRequest):
            raise RequestInvalid(f"Expected an AggregationRequest, got {type(request).__name__}")
        request.validate(source.schema)
        # One extra row is enough to detect an oversized result
        return AggregatePlan.from_request(request, source, limit=self.max_result_rows + 1)

    def execute(self, request: AggregationRequest, source, job_id: Optional[str] = None) -> AggregationResult:
        """
        Run a request as a single backend job.

        Args:
            request: Request built with QueryBuilder
            source: JoinedView (or partition view) to aggregate over
            job_id: Identifier for best-effort cancellation

        Returns:
            AggregationResult with the grouped rows

        Raises:
            RequestInvalid: the request does not fit the source
            BackendUnavailable: transient backend failure
            ResultTooLarge: more grouped rows than max_result_rows
        """
        plan = self.plan(request, source)
        logger.info(f"Executing job {job_id or '-'} on {source.name}: {request}")

        start = time.perf_counter()
        df = self.backend.submit(plan, job_id=job_id)
        elapsed = (time.perf_counter() - start) * 1000

        if len(df) > self.max_result_rows:
            raise ResultTooLarge(len(df), self.max_result_rows)

        result = AggregationResult.from_frame(df)
        logger.info(f"Job {job_id or '-'} complete: {len(result)} rows in {elapsed:.1f}ms")
        return result

    def cancel(self, job_id: str) -> bool:
        """Best-effort interruption of a running job."""
        return self.backend.cancel(job_id)
