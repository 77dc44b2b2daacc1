#!/usr/bin/env python3
"""
Partition Sampler - Reproducible train/validation splits of a view

Each row is assigned by hashing (trip_id, seed) into a bucket in [0, 1).
Partition i owns [sum(fractions[:i]), sum(fractions[:i+1])), so partitions
are disjoint by construction, the same seed over the same cached view always
yields the same membership, and sizes converge to the requested fractions as
the row count grows. No data moves: a partition is just a view with an extra
hash-bucket filter, evaluated inside the backend.
"""

import logging
import math
import numbers
from typing import Dict, Iterable, Mapping

from .errors import InvalidFractions, RequestInvalid
from .geo_join_view import TRIP_ID, JoinedView
from .query_builder import HashBucket, Predicate, QueryBuilder

logger = logging.getLogger(__name__)

# Float slack when fractions like 0.1 + 0.2 + 0.7 add up to 1.0000000000000002
FRACTION_TOLERANCE = 1e-9


def check_fractions(fractions: Mapping[str, float]):
    if not fractions:
        raise InvalidFractions("At least one partition fraction is required")
    for name, fraction in fractions.items():
        if not isinstance(name, str) or not name:
            raise InvalidFractions(f"Partition names must be non-empty strings, got {name!r}")
        if isinstance(fraction, bool) or not isinstance(fraction, numbers.Real) or math.isnan(fraction):
            raise InvalidFractions(f"Fraction for '{name}' must be a number, got {fraction!r}")
        if fraction < 0:
            raise InvalidFractions(f"Fraction for '{name}' is negative ({fraction})")
    total = math.fsum(fractions.values())
    if total > 1.0 + FRACTION_TOLERANCE:
        raise InvalidFractions(f"Fractions sum to {total:.6g} > 1.0")


class PartitionSampler:
    """
    Splits a view into named, disjoint partitions.

    Args:
        engine: AggregationEngine used by sizes() to count partition rows
    """

    def __init__(self, engine=None, identity: str = TRIP_ID):
        self.engine = engine
        self.identity = identity

    def split(
        self,
        view: JoinedView,
        filters: Iterable,
        fractions: Mapping[str, float],
        seed: int,
    ) -> Dict[str, JoinedView]:
        """
        Filter a view and split it into partitions.

        Args:
            view: Joined view to split
            filters: Predicates, or (column, op[, value]) tuples, ANDed
            fractions: Ordered mapping of partition name -> fraction (sum <= 1)
            seed: Non-negative integer seed

        Returns:
            Dict of partition name -> restricted JoinedView

        Raises:
            InvalidFractions: negative fractions or a sum above 1.0
            RequestInvalid: a filter does not fit the view
        """
        check_fractions(fractions)
        if isinstance(seed, bool) or not isinstance(seed, int) or seed < 0:
            raise ValueError(f"seed must be a non-negative integer, got {seed!r}")
        if self.identity not in view.columns:
            raise RequestInvalid(f"View {view.name} has no identity column '{self.identity}'")

        builder = QueryBuilder(view)
        predicates = []
        for f in filters or ():
            if isinstance(f, Predicate):
                predicates.append(builder.predicate(f.column, f.op, f.value))
            else:
                predicates.append(builder.predicate(*f))

        partitions = {}
        low = 0.0
        for name, fraction in fractions.items():
            high = min(low + fraction, 1.0)
            if 1.0 - high <= FRACTION_TOLERANCE:
                high = 1.0
            bucket = HashBucket(self.identity, seed, low, high)
            partitions[name] = view.restrict(predicates + [bucket], label=f"{view.name}[{name}]")
            low = high

        logger.info(f"Split {view.name} into {list(partitions)} "
                    f"(fractions={dict(fractions)}, seed={seed}, filters={len(predicates)})")
        return partitions

    def sizes(self, partitions: Mapping[str, JoinedView]) -> Dict[str, int]:
        """Row count of each partition (one backend job per partition)."""
        if self.engine is None:
            raise ValueError("sizes() needs an AggregationEngine")
        counts = {}
        for name, view in partitions.items():
            request = QueryBuilder(view).request().aggregate('*', 'count')
            result = self.engine.execute(request, view)
            counts[name] = result.rows[0][0]
        return counts
