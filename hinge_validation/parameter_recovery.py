"""
Parameter recovery: compare known generating values with a posterior.

For every declared parameter the comparator reports the posterior mean,
empirical quantiles of the draws, the credible interval spanned by the
outermost quantiles, the true value, signed and absolute error, and whether
the interval covers the truth. Per-group parameters are matched by group
index, so report keys look like ``intercept[0]``, ``slope[3]``.

The comparator is pure: it never modifies its inputs and identical inputs
give identical reports.

Example usage:
    comparator = RecoveryComparator(quantiles=[0.05, 0.5, 0.95])
    report = comparator.compare(truth, posterior)
    print(report.coverage_rate)
    report.to_frame().to_csv("recovery.csv")
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import DEFAULT_QUANTILES, validate_quantiles
from .data_model import GROUP_PARAMETER_NAMES, HYPERPARAMETER_NAMES
from .errors import ShapeMismatchError
from .inference import PosteriorSample

logger = logging.getLogger(__name__)


def empirical_quantiles(draws: np.ndarray, levels: Sequence[float]) -> np.ndarray:
    """Order-statistic quantiles of ``draws`` along the first axis."""
    return np.quantile(draws, list(levels), axis=0, method="inverted_cdf")


def quantile_label(level: float) -> str:
    """Column label for a quantile level, e.g. 0.025 -> ``q2.5``."""
    return f"q{100 * level:g}"


@dataclass(frozen=True)
class ParameterRecovery:
    """Recovery summary for one scalar parameter."""

    parameter: str
    family: str
    group: Optional[int]
    truth: float
    point_estimate: float
    quantiles: Dict[float, float]
    lower: float
    upper: float
    normalized_rank: float

    @property
    def error(self) -> float:
        return self.point_estimate - self.truth

    @property
    def absolute_error(self) -> float:
        return abs(self.error)

    @property
    def covered(self) -> bool:
        return self.lower <= self.truth <= self.upper

    @property
    def interval_width(self) -> float:
        return self.upper - self.lower

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter": self.parameter,
            "family": self.family,
            "group": self.group,
            "truth": self.truth,
            "point_estimate": self.point_estimate,
            "quantiles": {quantile_label(q): v for q, v in self.quantiles.items()},
            "interval": {"lower": self.lower, "upper": self.upper},
            "error": self.error,
            "absolute_error": self.absolute_error,
            "covered": self.covered,
            "normalized_rank": self.normalized_rank,
        }


class RecoveryReport:
    """Ordered collection of :class:`ParameterRecovery` entries."""

    def __init__(self, entries: List[ParameterRecovery], quantiles: Sequence[float]):
        self._entries = {entry.parameter: entry for entry in entries}
        self.quantiles = tuple(quantiles)

    def __getitem__(self, parameter: str) -> ParameterRecovery:
        return self._entries[parameter]

    def __contains__(self, parameter: str) -> bool:
        return parameter in self._entries

    def __iter__(self) -> Iterator[ParameterRecovery]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def parameters(self) -> List[str]:
        return list(self._entries)

    @property
    def nominal_coverage(self) -> float:
        """Probability mass between the outermost quantile levels."""
        return self.quantiles[-1] - self.quantiles[0]

    def family(self, name: str) -> List[ParameterRecovery]:
        return [e for e in self._entries.values() if e.family == name]

    @property
    def coverage_rate(self) -> float:
        """Share of per-group parameters whose interval covers the truth."""
        group_entries = [e for e in self._entries.values() if e.group is not None]
        if not group_entries:
            return float("nan")
        return float(np.mean([e.covered for e in group_entries]))

    @property
    def hyperparameter_coverage(self) -> float:
        hyper = [e for e in self._entries.values() if e.group is None]
        return float(np.mean([e.covered for e in hyper])) if hyper else float("nan")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantiles": list(self.quantiles),
            "nominal_coverage": self.nominal_coverage,
            "coverage_rate": self.coverage_rate,
            "hyperparameter_coverage": self.hyperparameter_coverage,
            "parameters": {name: e.to_dict() for name, e in self._entries.items()},
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per parameter with flattened quantile columns."""
        rows = []
        for e in self._entries.values():
            row = {
                "parameter": e.parameter,
                "family": e.family,
                "group": e.group,
                "truth": e.truth,
                "point_estimate": e.point_estimate,
                "lower": e.lower,
                "upper": e.upper,
                "error": e.error,
                "absolute_error": e.absolute_error,
                "covered": e.covered,
                "normalized_rank": e.normalized_rank,
            }
            row.update({quantile_label(q): v for q, v in e.quantiles.items()})
            rows.append(row)
        return pd.DataFrame(rows)


class RecoveryComparator:
    """
    Compare true parameter values with posterior draws.

    Args:
        quantiles: Quantile levels to report, each in (0, 1) and
            non-decreasing. The first and last define the credible interval
            used for coverage.
    """

    def __init__(self, quantiles: Optional[Sequence[float]] = None):
        quantiles = list(DEFAULT_QUANTILES if quantiles is None else quantiles)
        validate_quantiles(quantiles)
        self.quantiles = tuple(float(q) for q in quantiles)

    def compare(self, truth, posterior: PosteriorSample) -> RecoveryReport:
        """
        Build a recovery report.

        Args:
            truth: ``(HyperParameters, GroupParameters, ...)``, typically the
                :class:`~hinge_validation.truth_generator.SimulatedTruth`
                that produced the fitted dataset.
            posterior: Posterior draws for the same dataset.

        Returns:
            RecoveryReport with one entry per scalar parameter.

        Raises:
            ShapeMismatchError: If the posterior's group count differs from
                the truth's or a declared parameter is absent.
        """
        hyper, groups = truth[0], truth[1]
        entries: List[ParameterRecovery] = []

        for name in HYPERPARAMETER_NAMES:
            draws = self._draws(posterior, name)
            if draws.ndim != 1:
                raise ShapeMismatchError(f"{name}: expected scalar draws, got {draws.shape[1:]}")
            entries.append(self._summarise(name, name, None, getattr(hyper, name), draws))

        true_values = {"intercept": groups.intercepts, "slope": groups.slopes}
        for name in GROUP_PARAMETER_NAMES:
            draws = self._draws(posterior, name)
            if draws.ndim != 2 or draws.shape[1] != groups.group_count:
                raise ShapeMismatchError(
                    f"{name}: posterior has shape {draws.shape[1:]}, "
                    f"truth has {groups.group_count} groups"
                )
            for g in range(groups.group_count):
                entries.append(
                    self._summarise(f"{name}[{g}]", name, g, true_values[name][g], draws[:, g])
                )

        report = RecoveryReport(entries, self.quantiles)
        logger.debug(
            "Recovery: %d parameters, group coverage %.2f", len(report), report.coverage_rate
        )
        return report

    @staticmethod
    def _draws(posterior: PosteriorSample, name: str) -> np.ndarray:
        if name not in posterior:
            raise ShapeMismatchError(f"Posterior has no draws for {name!r}")
        return np.asarray(posterior[name])

    def _summarise(
        self,
        parameter: str,
        family: str,
        group: Optional[int],
        truth: float,
        draws: np.ndarray,
    ) -> ParameterRecovery:
        q = empirical_quantiles(draws, self.quantiles)
        return ParameterRecovery(
            parameter=parameter,
            family=family,
            group=group,
            truth=float(truth),
            point_estimate=float(np.mean(draws)),
            quantiles={level: float(v) for level, v in zip(self.quantiles, q)},
            lower=float(q[0]),
            upper=float(q[-1]),
            normalized_rank=float(np.mean(draws < truth)),
        )
