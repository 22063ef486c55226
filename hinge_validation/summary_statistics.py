"""
Per-group summary statistics for posterior predictive checks.

Every summary function maps a :class:`Dataset` to one value per group
(a float array of length ``group_count``). When a statistic cannot be
computed for a group (too few observations, no predictor variation) the group
gets the ``STATISTIC_UNDEFINED`` marker (NaN) instead of raising: with
unequal group histories this is an expected occurrence, and downstream
aggregates skip the marker.
"""
from __future__ import annotations

from typing import Callable, Dict

import numpy as np

from .data_model import Dataset
from .errors import ConfigurationError

STATISTIC_UNDEFINED = float("nan")

SummaryFunction = Callable[[Dataset], np.ndarray]


def is_undefined(values):
    """Elementwise test for the undefined-statistic marker."""
    return np.isnan(values)


def _per_group(dataset: Dataset, stat: Callable[[np.ndarray, np.ndarray], float], min_n: int) -> np.ndarray:
    out = np.full(dataset.group_count, STATISTIC_UNDEFINED)
    for g, idx in enumerate(dataset.group_indices()):
        if idx.shape[0] < min_n:
            continue
        x = dataset.predictor_transformed[idx]
        y = dataset.response[idx]
        order = np.argsort(x, kind="stable")
        out[g] = stat(x[order], y[order])
    return out


def group_response_sd(dataset: Dataset) -> np.ndarray:
    """Sample standard deviation of responses in each group (needs n ≥ 2)."""
    return _per_group(dataset, lambda x, y: float(np.std(y, ddof=1)), min_n=2)


def group_response_mean(dataset: Dataset) -> np.ndarray:
    """Mean response in each group."""
    return _per_group(dataset, lambda x, y: float(np.mean(y)), min_n=1)


def group_response_range(dataset: Dataset) -> np.ndarray:
    """Max minus min response in each group."""
    return _per_group(dataset, lambda x, y: float(np.ptp(y)), min_n=1)


def _ols_slope(x: np.ndarray, y: np.ndarray) -> float:
    dx = x - x.mean()
    sxx = float(np.dot(dx, dx))
    if sxx == 0.0:
        return STATISTIC_UNDEFINED
    return float(np.dot(dx, y - y.mean()) / sxx)


def group_ols_slope(dataset: Dataset) -> np.ndarray:
    """Least-squares slope of response on the hinge-transformed predictor."""
    return _per_group(dataset, _ols_slope, min_n=2)


def _lag1_autocorrelation(x: np.ndarray, y: np.ndarray) -> float:
    d = y - y.mean()
    denom = float(np.dot(d, d))
    if denom == 0.0:
        return STATISTIC_UNDEFINED
    return float(np.dot(d[:-1], d[1:]) / denom)


def group_lag1_autocorrelation(dataset: Dataset) -> np.ndarray:
    """Lag-1 autocorrelation of responses ordered by predictor (needs n ≥ 3)."""
    return _per_group(dataset, _lag1_autocorrelation, min_n=3)


SUMMARY_FUNCTIONS: Dict[str, SummaryFunction] = {
    "sd": group_response_sd,
    "mean": group_response_mean,
    "range": group_response_range,
    "slope": group_ols_slope,
    "lag1_autocorrelation": group_lag1_autocorrelation,
}


def get_summary_function(name: str) -> SummaryFunction:
    """Look up a summary function by its configuration name."""
    try:
        return SUMMARY_FUNCTIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown summary_fn {name!r}; choose from {sorted(SUMMARY_FUNCTIONS)}"
        ) from None
