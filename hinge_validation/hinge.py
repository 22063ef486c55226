"""
Hinge transform for the predictor.

Predictor values are re-expressed relative to a fixed changepoint (for example
the year a regime shift is known to have happened). The changepoint is a
configuration value, never a fitted parameter, and the same transform must be
applied when generating synthetic data and when preparing real data for
inference.
"""
from __future__ import annotations

from typing import Union

import numpy as np

ArrayLike = Union[float, int, np.ndarray]


def transform(predictor_raw: ArrayLike, changepoint: float) -> ArrayLike:
    """
    Re-express raw predictor values relative to the changepoint.

    Args:
        predictor_raw: Scalar or array of raw predictor values.
        changepoint: Fixed hinge location.

    Returns:
        ``predictor_raw - changepoint`` (same shape as the input; arrays are
        returned as float arrays).
    """
    if np.isscalar(predictor_raw):
        return predictor_raw - changepoint
    return np.asarray(predictor_raw, dtype=float) - changepoint
