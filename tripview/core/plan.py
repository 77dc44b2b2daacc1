"""
Logical plans and the backend contract.

A plan is a plain, immutable description of ONE backend job. Backends compile
plans into their own dialect (Polars lazy expressions, DuckDB SQL); nothing
above this layer knows which backend is running.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from .query_builder import Aggregate, AggregationRequest, Derived, HashBucket, Predicate

ViewFilter = Union[Predicate, HashBucket]

# Resolution of the seeded hash used for partition assignment
HASH_BUCKETS = 1_000_000


@dataclass(frozen=True)
class JoinPlan:
    """
    Resolve both trip endpoints against the zone table.

    endpoints: (prefix, fact id column) pairs, e.g. ('pickup', 'pickup_zone_id').
    Zone fields land on the output as '<prefix>_<field>'. Rows with a null id,
    an id absent from the zone table, or a null zone field are excluded.

    When add_identity is set, rows are numbered after sorting on identity_order
    (every fact column), so the same rows get the same ids on every build
    regardless of scan order.
    """
    name: str
    facts: str
    zones: str
    endpoints: Tuple[Tuple[str, str], ...]
    zone_key: str
    zone_fields: Tuple[str, ...]
    identity: str
    add_identity: bool
    identity_order: Tuple[str, ...] = ()

    def output_fields(self) -> Tuple[str, ...]:
        return tuple(
            f"{prefix}_{field}" for prefix, _ in self.endpoints for field in self.zone_fields
        )


@dataclass(frozen=True)
class AggregatePlan:
    """filter -> null guard -> derive -> filter -> group/aggregate -> rank -> limit"""
    relation: str
    view_filters: Tuple[ViewFilter, ...]
    non_null: Tuple[str, ...]
    derived: Tuple[Derived, ...]
    filters: Tuple[Predicate, ...]
    group_keys: Tuple[str, ...]
    aggregates: Tuple[Aggregate, ...]
    top_n: Optional[int]
    limit: int

    @classmethod
    def from_request(cls, request: AggregationRequest, view, limit: int) -> 'AggregatePlan':
        return cls(
            relation=view.relation,
            view_filters=view.filters,
            non_null=request.non_null_columns(),
            derived=request.derived,
            filters=request.filters,
            group_keys=request.group_keys,
            aggregates=request.aggregates,
            top_n=request.top_n,
            limit=limit,
        )


@dataclass(frozen=True)
class ScanPlan:
    """Projection of non-null rows from a view (model fitting only)."""
    relation: str
    view_filters: Tuple[ViewFilter, ...]
    columns: Tuple[str, ...]
    limit: int


class Backend:
    """
    Contract every execution backend implements.

    Relations are addressed by name. `submit` is the only operation that is
    expected to take a long time; `cancel` is best-effort.
    """

    kind = 'abstract'

    def register(self, name: str, frame) -> None:
        """Expose a Polars DataFrame/LazyFrame as relation `name`."""
        raise NotImplementedError

    def has_relation(self, name: str) -> bool:
        raise NotImplementedError

    def schema(self, name: str) -> Dict:
        """Column name -> Polars dtype."""
        raise NotImplementedError

    def materialize(self, plan: JoinPlan) -> int:
        """Run a join and cache its output as relation `plan.name`; returns row count."""
        raise NotImplementedError

    def submit(self, plan: AggregatePlan, job_id: Optional[str] = None):
        """Run an aggregate plan; returns a (small) Polars DataFrame."""
        raise NotImplementedError

    def fetch(self, plan: ScanPlan):
        raise NotImplementedError

    def cancel(self, job_id: str) -> bool:
        return False

    def drop(self, name: str) -> None:
        raise NotImplementedError
