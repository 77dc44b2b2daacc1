#!/usr/bin/env python3
"""
Model fitting collaborator

The solver is external: anything with fit(response, predictors, view) that
returns coefficients can be plugged in. LeastSquaresFitter is the default
adapter; it pulls the (capped) training rows out of the backend and solves
ordinary least squares with NumPy.
"""

import logging
import time
from typing import Dict, Mapping, Sequence

import numpy as np

from .errors import RequestInvalid, ResultTooLarge
from .plan import Backend, ScanPlan

logger = logging.getLogger(__name__)

INTERCEPT = 'intercept'
DEFAULT_MAX_TRAINING_ROWS = 5_000_000


class ModelFitter:
    """Contract for model-fitting collaborators."""

    def fit(self, response: str, predictors: Sequence[str], view) -> Dict[str, float]:
        raise NotImplementedError


class LeastSquaresFitter(ModelFitter):
    """
    response ~ intercept + predictors, solved with numpy.linalg.lstsq.

    Rows with a null in the response or any predictor are excluded, matching
    the aggregation engine's null handling.
    """

    def __init__(self, backend: Backend, max_rows: int = DEFAULT_MAX_TRAINING_ROWS):
        self.backend = backend
        self.max_rows = max_rows

    def fit(self, response: str, predictors: Sequence[str], view) -> Dict[str, float]:
        predictors = list(predictors)
        if not predictors:
            raise RequestInvalid("At least one predictor is required")
        columns = [response] + predictors
        kinds = dict(view.schema)
        for column in columns:
            if column not in kinds:
                raise RequestInvalid(f"Unknown column '{column}'. Available: {sorted(kinds)}")
            if kinds[column] != 'numeric':
                raise RequestInvalid(f"'{column}' is {kinds[column]}, not numeric")

        start = time.perf_counter()
        df = self.backend.fetch(ScanPlan(
            relation=view.relation,
            view_filters=view.filters,
            columns=tuple(columns),
            limit=self.max_rows + 1,
        ))
        if len(df) > self.max_rows:
            raise ResultTooLarge(len(df), self.max_rows)
        if len(df) <= len(predictors):
            raise RequestInvalid(
                f"Only {len(df)} training rows for {len(predictors)} predictors in {view.name}"
            )

        y = df[response].cast(float).to_numpy()
        x = df.select(predictors).cast(float).to_numpy()
        design = np.column_stack([np.ones(len(y)), x])
        solution, _, rank, _ = np.linalg.lstsq(design, y, rcond=None)
        if rank < design.shape[1]:
            logger.warning(f"Design matrix is rank deficient ({rank} < {design.shape[1]})")

        coefficients = dict(zip([INTERCEPT] + predictors, (float(v) for v in solution)))
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"Fitted {response} ~ {' + '.join(predictors)} on {len(y):,} rows "
                    f"of {view.name} in {elapsed:.1f}ms")
        return coefficients


def fit_partition(
    fitter: ModelFitter,
    partitions: Mapping,
    response: str,
    predictors: Sequence[str],
    partition: str = 'train',
) -> Dict[str, float]:
    """Feed the training partition to a fitter."""
    if partition not in partitions:
        raise ValueError(f"No '{partition}' partition. Available: {list(partitions)}")
    return fitter.fit(response, predictors, partitions[partition])
