"""
Posterior Predictive Checks for the hierarchical hinge model.

Compares the summary statistic of the observed dataset with its distribution
over posterior predictive replicates, per group and in aggregate.

For each group g:
- T_obs = T(y)_g computed on the observed data
- T_rep = T(y_rep)_g over replicates where the statistic is defined

The posterior predictive p-value is P(T_rep >= T_obs). Values near 0.5 mean
the observed statistic is typical of the replicates; values near 0 or 1 flag
potential misfit. No pass/fail decision is taken here.

The aggregate row uses the mean of the per-group statistic (undefined groups
skipped) as its test statistic.

Example usage:
    from hinge_validation.posterior_predictive_checks import run_posterior_predictive_check

    result = run_posterior_predictive_check(
        dataset, CmdStanAdapter(), summary_fn="sd", replicate_count=500,
        output_dir="results/ppc",
    )
    print(result.report.to_frame())
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import DEFAULT_QUANTILES, SamplerConfig, validate_quantiles
from .data_model import Dataset, save_json
from .errors import ShapeMismatchError
from .inference import InferenceAdapter, ModelSpec, PosteriorSample, point_estimates
from .parameter_recovery import quantile_label
from .posterior_predictive import PosteriorPredictiveSimulator, SummaryStatisticDistribution
from .summary_statistics import SummaryFunction, get_summary_function

logger = logging.getLogger(__name__)

# Interpretation thresholds used only for logging
EXTREME_THRESHOLD = 0.05  # p < 0.05 or p > 0.95


@dataclass(frozen=True)
class GroupComparison:
    """Empirical statistic against its replicate distribution for one group."""

    group: Optional[int]
    empirical: float
    simulated_mean: float
    simulated_sd: float
    quantiles: Dict[float, float]
    rank: Optional[int]
    n_defined: int
    percentile: float
    p_value: float
    z_score: float

    @property
    def label(self) -> str:
        return "aggregate" if self.group is None else str(self.group)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.label,
            "empirical": self.empirical,
            "simulated_mean": self.simulated_mean,
            "simulated_sd": self.simulated_sd,
            "quantiles": {quantile_label(q): v for q, v in self.quantiles.items()},
            "rank": self.rank,
            "n_defined": self.n_defined,
            "percentile": self.percentile,
            "p_value": self.p_value,
            "z_score": self.z_score,
        }


class ComparisonReport:
    """Per-group comparisons plus one aggregate comparison."""

    def __init__(self, groups: List[GroupComparison], aggregate: GroupComparison,
                 quantiles: Sequence[float]):
        self.groups = groups
        self.aggregate = aggregate
        self.quantiles = tuple(quantiles)

    def __getitem__(self, group: int) -> GroupComparison:
        return self.groups[group]

    def __len__(self) -> int:
        return len(self.groups)

    def p_values(self) -> np.ndarray:
        return np.array([g.p_value for g in self.groups])

    def extreme_groups(self, threshold: float = EXTREME_THRESHOLD) -> List[int]:
        """Groups whose p-value lies in either tail beyond ``threshold``."""
        return [
            g.group for g in self.groups
            if np.isfinite(g.p_value) and (g.p_value < threshold or g.p_value > 1 - threshold)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantiles": list(self.quantiles),
            "aggregate": self.aggregate.to_dict(),
            "groups": [g.to_dict() for g in self.groups],
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per group followed by the aggregate row."""
        rows = []
        for comparison in self.groups + [self.aggregate]:
            row = comparison.to_dict()
            row.update(row.pop("quantiles"))
            rows.append(row)
        return pd.DataFrame(rows)


def _compare(group: Optional[int], empirical: float, replicates: np.ndarray,
             quantiles: Sequence[float]) -> GroupComparison:
    defined = replicates[~np.isnan(replicates)]
    n = int(defined.size)
    nan = float("nan")
    if n == 0 or np.isnan(empirical):
        return GroupComparison(
            group=group, empirical=float(empirical),
            simulated_mean=float(defined.mean()) if n else nan,
            simulated_sd=float(defined.std(ddof=1)) if n > 1 else nan,
            quantiles={q: nan for q in quantiles},
            rank=None, n_defined=n, percentile=nan, p_value=nan, z_score=nan,
        )

    mean = float(defined.mean())
    sd = float(defined.std(ddof=1)) if n > 1 else nan
    q = np.quantile(defined, list(quantiles), method="inverted_cdf")
    rank = int(np.sum(defined < empirical))
    if sd > 0:
        z_score = (empirical - mean) / sd
    else:
        z_score = nan
    return GroupComparison(
        group=group,
        empirical=float(empirical),
        simulated_mean=mean,
        simulated_sd=sd,
        quantiles={level: float(v) for level, v in zip(quantiles, q)},
        rank=rank,
        n_defined=n,
        percentile=100.0 * rank / n,
        p_value=float(np.mean(defined >= empirical)),
        z_score=float(z_score),
    )


def _nanmean_rows(values: np.ndarray) -> np.ndarray:
    """Row-wise mean skipping NaN; rows with no defined value stay NaN."""
    counts = np.sum(~np.isnan(values), axis=-1)
    totals = np.nansum(values, axis=-1)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(counts > 0, totals / np.maximum(counts, 1), np.nan)


class EmpiricalComparator:
    """
    Locate the empirical summary statistic within its replicate distribution.

    Args:
        quantiles: Quantile levels reported for the replicate distribution.
    """

    def __init__(self, quantiles: Optional[Sequence[float]] = None):
        quantiles = list(DEFAULT_QUANTILES if quantiles is None else quantiles)
        validate_quantiles(quantiles)
        self.quantiles = tuple(float(q) for q in quantiles)

    def assess(
        self,
        simulated: SummaryStatisticDistribution,
        empirical: Union[Sequence[float], np.ndarray],
    ) -> ComparisonReport:
        """
        Compare the observed per-group statistic with the replicates.

        Args:
            simulated: Replicate distribution (one vector per replicate).
            empirical: Observed statistic, one value per group (NaN where
                undefined).

        Returns:
            ComparisonReport with per-group and aggregate comparisons.

        Raises:
            ShapeMismatchError: If ``empirical`` has the wrong length.
        """
        observed = np.asarray(empirical, dtype=float).reshape(-1)
        if observed.shape[0] != simulated.group_count:
            raise ShapeMismatchError(
                f"Empirical statistic has {observed.shape[0]} values, "
                f"replicates have {simulated.group_count} groups"
            )
        values = simulated.values

        groups = [
            _compare(g, observed[g], values[:, g], self.quantiles)
            for g in range(simulated.group_count)
        ]
        aggregate = _compare(
            None, float(_nanmean_rows(observed)), _nanmean_rows(values), self.quantiles
        )
        return ComparisonReport(groups, aggregate, self.quantiles)


# ──────────────────────────────────────────────────────────────────────
# End-to-end check
# ──────────────────────────────────────────────────────────────────────

class PredictiveCheckResult(NamedTuple):
    posterior: PosteriorSample
    distribution: SummaryStatisticDistribution
    empirical: np.ndarray
    report: ComparisonReport


def run_posterior_predictive_check(
    dataset: Dataset,
    adapter: InferenceAdapter,
    model_spec: Optional[ModelSpec] = None,
    sampler_config: Optional[SamplerConfig] = None,
    summary_fn: Union[str, Callable[[Dataset], np.ndarray]] = "sd",
    replicate_count: int = 500,
    quantiles: Optional[Sequence[float]] = None,
    seed: Optional[int] = None,
    max_workers: int = 1,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    output_dir: Optional[Union[str, Path]] = None,
    show_progress: bool = False,
) -> PredictiveCheckResult:
    """
    Fit a dataset, simulate predictive replicates, and compare.

    Args:
        dataset: Observed data.
        adapter: Inference adapter used for the fit.
        model_spec: Defaults to the bundled hinge model.
        sampler_config: Defaults to ``SamplerConfig()``.
        summary_fn: Registered statistic name or a callable.
        replicate_count: Predictive replicates (≥ 1).
        quantiles: Quantile levels reported for the replicates.
        seed: Root seed for the replicate streams.
        max_workers: Worker threads for replicates.
        timeout: Sampler timeout in seconds.
        cancel_event: Cooperative cancellation signal.
        output_dir: When given, writes ``ppc_summary.json`` and
            ``ppc_groups.csv`` there.
        show_progress: Show a tqdm progress bar for replicates.

    Returns:
        PredictiveCheckResult ``(posterior, distribution, empirical, report)``.
    """
    model_spec = model_spec or ModelSpec()
    sampler_config = sampler_config or SamplerConfig()
    stat: SummaryFunction = get_summary_function(summary_fn) if isinstance(summary_fn, str) else summary_fn
    comparator = EmpiricalComparator(quantiles)

    posterior = adapter.fit(model_spec, dataset, sampler_config,
                            timeout=timeout, cancel_event=cancel_event)
    estimates = point_estimates(posterior)
    logger.info("Posterior-mean hyperparameters: %s", estimates.to_dict())

    distribution = PosteriorPredictiveSimulator().simulate(
        estimates,
        dataset.shape(),
        stat,
        replicate_count,
        seed=seed,
        max_workers=max_workers,
        cancel_event=cancel_event,
        show_progress=show_progress,
    )
    empirical = np.asarray(stat(dataset), dtype=float)
    report = comparator.assess(distribution, empirical)

    extreme = report.extreme_groups()
    if extreme:
        logger.warning("Groups with extreme predictive p-values: %s", extreme)
    logger.info("Aggregate predictive p-value: %.3f", report.aggregate.p_value)

    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        save_json(
            {
                "summary_fn": summary_fn if isinstance(summary_fn, str) else getattr(summary_fn, "__name__", "custom"),
                "replicate_count": replicate_count,
                "point_estimates": estimates.to_dict(),
                "diagnostics": {k: v for k, v in posterior.diagnostics.items() if k != "report"},
                "comparison": report.to_dict(),
            },
            output_dir / "ppc_summary.json",
        )
        report.to_frame().to_csv(output_dir / "ppc_groups.csv", index=False)
        logger.info("Saved posterior predictive check to %s", output_dir)

    return PredictiveCheckResult(posterior, distribution, empirical, report)
