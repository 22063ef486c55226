"""
Synthetic "ground truth" generation for the hierarchical hinge model.

The generator draws hyperparameters (or takes them as fixed values), then one
``(intercept, slope)`` pair per group, then a right-aligned predictor history
per group, and finally noisy responses:

    response = intercept[g] + slope[g] * (predictor_raw - changepoint) + Normal(0, sigma_residual)

Group histories are right-aligned on ``end_period``: a group observed for
fewer periods is missing only its earliest periods, never random gaps.

The per-step helpers (:func:`draw_group_parameters`, :func:`draw_responses`)
are shared with the posterior predictive simulator so both paths use exactly
the same generative arithmetic.

Usage:
    config = GeneratorConfig(group_count=8, min_n=5, max_n=15)
    hyper, groups, dataset = TruthGenerator().generate(config, rng=np.random.default_rng(1))
"""
from __future__ import annotations

import logging
from typing import NamedTuple, Optional

import numpy as np

from . import hinge
from .config import GeneratorConfig, HyperPrior
from .data_model import Dataset, GroupParameters, HyperParameters

logger = logging.getLogger(__name__)


class SimulatedTruth(NamedTuple):
    """Known generating values and the dataset drawn from them."""

    hyperparameters: HyperParameters
    group_parameters: GroupParameters
    dataset: Dataset


# ──────────────────────────────────────────────────────────────────────
# Generative steps
# ──────────────────────────────────────────────────────────────────────

def draw_hyperparameters(config: GeneratorConfig, rng: np.random.Generator) -> HyperParameters:
    """Draw each prior-distributed hyperparameter; fixed values pass through."""
    values = {}
    for name, spec in config.hyperparameter_specs().items():
        values[name] = spec.draw(rng) if isinstance(spec, HyperPrior) else float(spec)
    return HyperParameters(**values)


def draw_group_parameters(
    hyper: HyperParameters,
    group_count: int,
    rng: np.random.Generator,
) -> GroupParameters:
    """Draw i.i.d. per-group intercepts and slopes from the population normals."""
    intercepts = rng.normal(hyper.mu_intercept, hyper.sigma_intercept, size=group_count)
    slopes = rng.normal(hyper.mu_slope, hyper.sigma_slope, size=group_count)
    return GroupParameters(intercepts=intercepts, slopes=slopes)


def right_aligned_predictors(n: int, end_period: int) -> np.ndarray:
    """The ``n`` contiguous integer periods ending at ``end_period``."""
    return np.arange(end_period - n + 1, end_period + 1, dtype=float)


def draw_responses(
    group_parameters: GroupParameters,
    group_ids: np.ndarray,
    predictor_transformed: np.ndarray,
    sigma_residual: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Linear predictor per observation plus independent Normal residuals."""
    mean = (
        group_parameters.intercepts[group_ids]
        + group_parameters.slopes[group_ids] * predictor_transformed
    )
    return mean + rng.normal(0.0, sigma_residual, size=mean.shape[0])


# ──────────────────────────────────────────────────────────────────────
# Generator
# ──────────────────────────────────────────────────────────────────────

class TruthGenerator:
    """
    Draw known parameters and a dataset from them.

    The generator holds no random state of its own; results are reproducible
    only when the caller passes a seeded ``numpy.random.Generator``.
    """

    def generate(
        self,
        config: GeneratorConfig,
        rng: Optional[np.random.Generator] = None,
    ) -> SimulatedTruth:
        """
        Generate hyperparameters, group parameters and a dataset.

        Args:
            config: Generator configuration.
            rng: Random generator; a fresh unseeded one is used when omitted.

        Returns:
            SimulatedTruth ``(hyperparameters, group_parameters, dataset)``.

        Raises:
            ConfigurationError: If the configuration is invalid (checked
                before any draw).
        """
        # Re-check in case the config was mutated after construction;
        # warnings were already logged when it was built
        config.validate(log_warnings=False)
        if rng is None:
            rng = np.random.default_rng()

        hyper = draw_hyperparameters(config, rng)
        hyper.validate(allow_degenerate=config.allow_degenerate)
        group_parameters = draw_group_parameters(hyper, config.group_count, rng)

        sizes = rng.integers(config.min_n, config.max_n, size=config.group_count, endpoint=True)
        group_ids = np.repeat(np.arange(config.group_count), sizes)
        predictor_raw = np.concatenate(
            [right_aligned_predictors(int(n), config.end_period) for n in sizes]
        )
        predictor_transformed = hinge.transform(predictor_raw, config.changepoint)

        response = draw_responses(
            group_parameters, group_ids, predictor_transformed, hyper.sigma_residual, rng
        )

        dataset = Dataset(
            group_ids=group_ids,
            predictor_raw=predictor_raw,
            response=response,
            group_count=config.group_count,
            changepoint=config.changepoint,
            predictor_transformed=predictor_transformed,
        )
        logger.debug(
            "Generated %d observations over %d groups (sizes %d–%d)",
            len(dataset), config.group_count, sizes.min(), sizes.max(),
        )
        return SimulatedTruth(hyper, group_parameters, dataset)
