"""
Error taxonomy for the aggregation layer.

SchemaMismatch, RequestInvalid and InvalidFractions are caller mistakes and
are never retried. BackendUnavailable is transient; the caller decides
whether and when to retry. ResultTooLarge protects the local process from an
unbounded group-by.
"""


class TripViewError(Exception):
    """Base class for every error raised by tripview."""


class SchemaMismatch(TripViewError, ValueError):
    """A view could not be built because expected columns are missing."""

    def __init__(self, relation: str, missing):
        self.relation = relation
        self.missing = sorted(missing)
        super().__init__(f"{relation}: missing expected columns {self.missing}")


class RequestInvalid(TripViewError, ValueError):
    """A request was malformed (unknown column, bad predicate, ...)."""


class BackendUnavailable(TripViewError, ConnectionError):
    """The backend failed transiently or the job was interrupted."""


class ResultTooLarge(TripViewError, ValueError):
    """The grouped result exceeded the configured row cap."""

    def __init__(self, rows: int, cap: int):
        self.rows = rows
        self.cap = cap
        super().__init__(
            f"Grouped result exceeds the {cap:,}-row cap; "
            f"narrow the filters or group by fewer keys"
        )


class InvalidFractions(TripViewError, ValueError):
    """Partition fractions were negative, empty or summed above 1.0."""
