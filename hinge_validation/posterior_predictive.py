"""
Posterior predictive replicates of a per-group summary statistic.

Each replicate draws fresh group parameters from the point-estimate
hyperparameters, simulates responses on the fixed design of the observed
dataset (same groups, same right-aligned predictor values), and records the
summary statistic of every group. Replicates share no state: each one gets
its own random stream spawned from a single ``SeedSequence``, so results do
not depend on how replicates are scheduled across worker threads.

Example usage:
    simulator = PosteriorPredictiveSimulator()
    distribution = simulator.simulate(
        point_estimates(posterior), dataset.shape(), group_response_sd,
        replicate_count=500, seed=7, max_workers=4,
    )
    distribution.mean()
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from tqdm import tqdm

from . import hinge
from .data_model import Dataset, DatasetShape, HyperParameters
from .errors import ConfigurationError, RunCancelled, ShapeMismatchError
from .summary_statistics import SummaryFunction
from .truth_generator import draw_group_parameters, draw_responses

logger = logging.getLogger(__name__)


class SummaryStatisticDistribution:
    """
    Append-only collection of per-group summary-statistic vectors.

    Becomes frozen once ``replicate_count`` vectors have been appended.
    Consumers should treat the contents as an unordered multiset; undefined
    statistics are kept as NaN and skipped by the nan-aware summaries.
    """

    def __init__(self, replicate_count: int, group_count: int):
        if replicate_count < 1:
            raise ConfigurationError("replicate_count must be ≥ 1")
        self.replicate_count = int(replicate_count)
        self.group_count = int(group_count)
        self._values = np.full((self.replicate_count, self.group_count), np.nan)
        self._size = 0

    def append(self, vector: Sequence[float]) -> None:
        """
        Add one replicate's statistic vector.

        Raises:
            ShapeMismatchError: If the vector length differs from
                ``group_count``.
            RuntimeError: If the distribution is already frozen.
        """
        if self.frozen:
            raise RuntimeError(
                f"Distribution is frozen after {self.replicate_count} replicates"
            )
        arr = np.asarray(vector, dtype=float)
        if arr.shape != (self.group_count,):
            raise ShapeMismatchError(
                f"Summary statistic returned shape {arr.shape}, expected ({self.group_count},)"
            )
        self._values[self._size] = arr
        self._size += 1

    @property
    def frozen(self) -> bool:
        return self._size == self.replicate_count

    def __len__(self) -> int:
        return self._size

    @property
    def values(self) -> np.ndarray:
        """Read-only ``(replicates, group_count)`` array of appended vectors."""
        out = self._values[: self._size].copy()
        out.setflags(write=False)
        return out

    def defined_counts(self) -> np.ndarray:
        """Number of replicates with a defined statistic, per group."""
        return np.sum(~np.isnan(self.values), axis=0)

    def mean(self) -> np.ndarray:
        return self._nan_reduce(np.nanmean, minimum=1)

    def std(self) -> np.ndarray:
        return self._nan_reduce(lambda v, axis: np.nanstd(v, axis=axis, ddof=1), minimum=2)

    def quantiles(self, levels: Sequence[float]) -> np.ndarray:
        """``(len(levels), group_count)`` order-statistic quantiles, NaN-skipping."""
        values = self.values
        out = np.full((len(levels), self.group_count), np.nan)
        for g in range(self.group_count):
            column = values[:, g]
            column = column[~np.isnan(column)]
            if column.size:
                out[:, g] = np.quantile(column, list(levels), method="inverted_cdf")
        return out

    def _nan_reduce(self, func, minimum: int) -> np.ndarray:
        values = self.values
        out = np.full(self.group_count, np.nan)
        ok = self.defined_counts() >= minimum
        if ok.any():
            out[ok] = func(values[:, ok], axis=0)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replicate_count": self.replicate_count,
            "group_count": self.group_count,
            "frozen": self.frozen,
            "values": self.values.tolist(),
        }

    def to_frame(self) -> pd.DataFrame:
        """Long format: one row per (replicate, group)."""
        values = self.values
        reps, groups = np.meshgrid(
            np.arange(values.shape[0]), np.arange(self.group_count), indexing="ij"
        )
        return pd.DataFrame({
            "replicate": reps.ravel(),
            "group": groups.ravel(),
            "value": values.ravel(),
        })


class PosteriorPredictiveSimulator:
    """Generate replicate summary statistics from point-estimate hyperparameters."""

    def simulate(
        self,
        point_estimates: HyperParameters,
        dataset_shape: DatasetShape,
        summary_fn: SummaryFunction,
        replicate_count: int,
        seed: Optional[int] = None,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
        show_progress: bool = False,
    ) -> SummaryStatisticDistribution:
        """
        Run ``replicate_count`` independent predictive replicates.

        Args:
            point_estimates: Hyperparameters used as the generating values
                (typically posterior means).
            dataset_shape: Fixed design reused by every replicate.
            summary_fn: Maps a dataset to one value per group.
            replicate_count: Number of replicates (≥ 1).
            seed: Root seed for the spawned per-replicate streams.
            max_workers: Worker threads (1 runs inline).
            cancel_event: Checked at replicate boundaries.
            show_progress: Show a tqdm progress bar.

        Returns:
            Frozen SummaryStatisticDistribution holding exactly
            ``replicate_count`` vectors of length ``group_count``.

        Raises:
            ConfigurationError: If ``replicate_count < 1``, ``max_workers < 1``
                or the point estimates have negative scales.
            ShapeMismatchError: If ``summary_fn`` returns a vector of the
                wrong length.
            RunCancelled: If the cancellation signal is set.
        """
        if replicate_count < 1:
            raise ConfigurationError("replicate_count must be ≥ 1")
        if max_workers < 1:
            raise ConfigurationError("max_workers must be ≥ 1")
        point_estimates.validate(allow_degenerate=True)

        distribution = SummaryStatisticDistribution(replicate_count, dataset_shape.group_count)
        streams = np.random.SeedSequence(seed).spawn(replicate_count)
        group_ids = dataset_shape.group_ids()
        predictor_raw = dataset_shape.predictor_raw()
        predictor_transformed = hinge.transform(predictor_raw, dataset_shape.changepoint)

        def replicate(index: int) -> np.ndarray:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled(f"Posterior predictive simulation cancelled at replicate {index}")
            rng = np.random.default_rng(streams[index])
            groups = draw_group_parameters(point_estimates, dataset_shape.group_count, rng)
            response = draw_responses(
                groups, group_ids, predictor_transformed, point_estimates.sigma_residual, rng
            )
            replicate_data = Dataset(
                group_ids=group_ids,
                predictor_raw=predictor_raw,
                response=response,
                group_count=dataset_shape.group_count,
                changepoint=dataset_shape.changepoint,
                predictor_transformed=predictor_transformed,
            )
            return np.asarray(summary_fn(replicate_data), dtype=float)

        logger.info(
            "Simulating %d predictive replicates over %d groups (%d workers)",
            replicate_count, dataset_shape.group_count, max_workers,
        )
        results: List[Optional[np.ndarray]] = [None] * replicate_count

        if max_workers == 1:
            indices = range(replicate_count)
            if show_progress:
                indices = tqdm(indices, desc="Replicates")
            for i in indices:
                results[i] = replicate(i)
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_map = {executor.submit(replicate, i): i for i in range(replicate_count)}
                iterator = as_completed(future_map)
                if show_progress:
                    iterator = tqdm(iterator, total=replicate_count, desc="Replicates")
                try:
                    for fut in iterator:
                        results[future_map[fut]] = fut.result()
                except Exception:
                    for pending in future_map:
                        pending.cancel()
                    raise

        # Index order, so the stored sequence does not depend on scheduling
        for vector in results:
            distribution.append(vector)

        undefined = distribution.replicate_count - distribution.defined_counts()
        if undefined.any():
            logger.debug(
                "Statistic undefined in some replicates for groups %s",
                np.flatnonzero(undefined).tolist(),
            )
        return distribution
