"""
Calibration study: repeated parameter recovery on simulated datasets.

The study works by:
1. Drawing known hyperparameters, group parameters and a dataset with the
   TruthGenerator (iteration ``i`` uses seed ``config.seed + i``)
2. Fitting the model to each simulated dataset through an InferenceAdapter
3. Comparing truth and posterior with the RecoveryComparator
4. Aggregating recovery across iterations per parameter family:
   bias, RMSE, coverage against the nominal level (with a binomial test),
   mean credible-interval width, and simulation-based calibration ranks with
   chi-square and Kolmogorov-Smirnov uniformity tests

When the model and inference are calibrated, interval coverage matches the
nominal level and the normalised ranks of the truths are uniform on [0, 1].

Examples:
    config = StudyConfig.from_yaml("configs/study_config.yaml")
    study = CalibrationStudy(config, CmdStanAdapter())
    result = study.run()
    print(result.summary_table)
"""
from __future__ import annotations

import dataclasses
import datetime
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats
from tqdm import tqdm

from .config import SamplerConfig, StudyConfig
from .data_model import GROUP_PARAMETER_NAMES, HYPERPARAMETER_NAMES, save_dataset, save_json
from .errors import InferenceFailure, RunCancelled
from .inference import InferenceAdapter, ModelSpec
from .parameter_recovery import ParameterRecovery, RecoveryComparator, RecoveryReport
from .truth_generator import SimulatedTruth, TruthGenerator

logger = logging.getLogger(__name__)

PARAMETER_FAMILIES = HYPERPARAMETER_NAMES + GROUP_PARAMETER_NAMES

# Sampler seeds are offset from generator seeds so the two streams differ
SAMPLER_SEED_OFFSET = 10_000


def family_statistics(entries: List[ParameterRecovery], nominal: float) -> Dict[str, Any]:
    """
    Recovery metrics pooled over a list of per-parameter recoveries.

    Returns a dict with ``n``, ``bias``, ``rmse``, ``coverage``, ``ci_width``,
    ``nominal``, ``coverage_p_value`` (two-sided binomial test against the
    nominal level) and SBC rank uniformity tests.
    """
    n = len(entries)
    if n == 0:
        return {"n": 0}
    errors = np.array([e.error for e in entries])
    covered = int(sum(e.covered for e in entries))
    widths = np.array([e.interval_width for e in entries])
    ranks = np.array([e.normalized_rank for e in entries])

    out: Dict[str, Any] = {
        "n": n,
        "bias": float(np.mean(errors)),
        "rmse": float(np.sqrt(np.mean(errors ** 2))),
        "coverage": covered / n,
        "ci_width": float(np.mean(widths)),
        "nominal": float(nominal),
        "coverage_p_value": float(stats.binomtest(covered, n, nominal).pvalue),
    }
    out.update(rank_uniformity(ranks))
    return out


def rank_uniformity(ranks: np.ndarray) -> Dict[str, Any]:
    """Chi-square (binned) and KS tests of normalised ranks against U(0, 1)."""
    n = ranks.shape[0]
    n_bins = min(20, n // 5)
    result: Dict[str, Any] = {"n_bins": n_bins}
    if n_bins >= 2:
        counts, _ = np.histogram(ranks, bins=n_bins, range=(0.0, 1.0))
        expected = np.full(n_bins, counts.sum() / n_bins)
        chi2_stat, chi2_p = stats.chisquare(counts, expected)
        result.update(chi2_statistic=float(chi2_stat), chi2_p_value=float(chi2_p))
    else:
        result.update(chi2_statistic=None, chi2_p_value=None)
    ks_stat, ks_p = stats.kstest(ranks, "uniform")
    result.update(ks_statistic=float(ks_stat), ks_p_value=float(ks_p))
    return result


@dataclasses.dataclass
class CalibrationResult:
    """Outcome of a calibration study."""

    truths: List[SimulatedTruth]
    reports: List[RecoveryReport]
    failures: Dict[int, str]
    statistics: Dict[str, Dict[str, Any]]
    output_dir: Optional[Path] = None

    @property
    def n_completed(self) -> int:
        return len(self.reports)

    @property
    def summary_table(self) -> pd.DataFrame:
        """One row per parameter family."""
        rows = []
        for family, s in self.statistics.items():
            if s.get("n"):
                rows.append({
                    "parameter": family,
                    "n": s["n"],
                    "bias": s["bias"],
                    "rmse": s["rmse"],
                    "coverage": s["coverage"],
                    "nominal": s["nominal"],
                    "coverage_p_value": s["coverage_p_value"],
                    "ci_width": s["ci_width"],
                    "ks_p_value": s["ks_p_value"],
                    "chi2_p_value": s["chi2_p_value"],
                })
        return pd.DataFrame(rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_completed": self.n_completed,
            "failures": {str(k): v for k, v in self.failures.items()},
            "statistics": self.statistics,
        }


class CalibrationStudy:
    """
    Repeated simulate → fit → compare.

    Args:
        config: Study configuration (generator, sampler, quantiles, seeds).
        adapter: Inference adapter used for every fit.
        model_spec: Defaults to the bundled model at ``config.stan_file``.
        output_dir: Where per-iteration and aggregate outputs are written.
            Defaults to a timestamped directory under ``config.results_dir``.
            Pass ``False`` to keep everything in memory.
        show_progress: Show a tqdm bar over iterations.
    """

    def __init__(
        self,
        config: StudyConfig,
        adapter: InferenceAdapter,
        model_spec: Optional[ModelSpec] = None,
        output_dir=None,
        show_progress: bool = True,
    ):
        self.config = config
        self.adapter = adapter
        self.model_spec = model_spec or ModelSpec(stan_file=config.stan_file)
        self.comparator = RecoveryComparator(config.quantiles)
        self.generator = TruthGenerator()
        self.show_progress = show_progress

        if output_dir is None:
            timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
            output_dir = Path(config.results_dir) / "calibration" / f"run_{timestamp}"
        self.output_dir: Optional[Path] = Path(output_dir) if output_dir is not False else None

    def _sampler_config(self, iteration: int) -> SamplerConfig:
        base = self.config.sampler
        seed = base.seed if base.seed is not None else self.config.seed + SAMPLER_SEED_OFFSET
        return dataclasses.replace(base, seed=seed + iteration)

    def run(
        self,
        n_iterations: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CalibrationResult:
        """
        Run the study.

        Iterations whose fit raises :class:`InferenceFailure` are logged and
        recorded in ``failures`` and left out of the aggregates.

        Args:
            n_iterations: Overrides ``config.n_iterations``.
            cancel_event: Checked between iterations and passed to the
                adapter.

        Returns:
            CalibrationResult.

        Raises:
            RunCancelled: If the cancellation signal is set.
            InferenceFailure: If every iteration failed.
        """
        n_iterations = self.config.n_iterations if n_iterations is None else n_iterations
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            self.config.save_yaml(self.output_dir / "config.yaml")

        truths: List[SimulatedTruth] = []
        reports: List[RecoveryReport] = []
        failures: Dict[int, str] = {}

        logger.info("Running %d calibration iterations", n_iterations)
        iterations = range(n_iterations)
        if self.show_progress:
            iterations = tqdm(iterations, desc="Calibration")

        for i in iterations:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled(f"Calibration cancelled before iteration {i + 1}")

            rng = np.random.default_rng(self.config.seed + i)
            truth = self.generator.generate(self.config.generator, rng)

            iter_dir = None
            if self.output_dir is not None:
                iter_dir = self.output_dir / f"iteration_{i + 1}"
                save_json(
                    {
                        "hyperparameters": truth.hyperparameters.to_dict(),
                        "group_parameters": truth.group_parameters.to_dict(),
                    },
                    iter_dir / "true_parameters.json",
                )
                save_dataset(truth.dataset, iter_dir / "dataset.csv")

            try:
                posterior = self.adapter.fit(
                    self.model_spec,
                    truth.dataset,
                    self._sampler_config(i),
                    timeout=self.config.timeout,
                    cancel_event=cancel_event,
                )
            except InferenceFailure as exc:
                logger.warning("Iteration %d: inference failed: %s", i + 1, exc)
                failures[i] = str(exc)
                if iter_dir is not None:
                    save_json({"error": str(exc), "diagnostics": exc.diagnostics},
                              iter_dir / "failure.json")
                continue

            report = self.comparator.compare(truth, posterior)
            if iter_dir is not None:
                report.to_frame().to_csv(iter_dir / "recovery.csv", index=False)

            truths.append(truth)
            reports.append(report)

        if not reports:
            raise InferenceFailure(
                f"All {n_iterations} calibration iterations failed", {"failures": failures}
            )

        result = CalibrationResult(
            truths=truths,
            reports=reports,
            failures=failures,
            statistics=self._analyze_recovery(reports),
            output_dir=self.output_dir,
        )
        if self.output_dir is not None:
            save_json(result.to_dict(), self.output_dir / "recovery_statistics.json")
            save_json(
                [
                    {"hyperparameters": t.hyperparameters.to_dict(),
                     "group_parameters": t.group_parameters.to_dict()}
                    for t in truths
                ],
                self.output_dir / "all_true_parameters.json",
            )
            result.summary_table.to_csv(self.output_dir / "summary_table.csv", index=False)
            logger.info("Saved calibration results to %s", self.output_dir)

        logger.info(
            "Calibration finished: %d/%d iterations completed", result.n_completed, n_iterations
        )
        return result

    def _analyze_recovery(self, reports: List[RecoveryReport]) -> Dict[str, Dict[str, Any]]:
        nominal = reports[0].nominal_coverage
        statistics: Dict[str, Dict[str, Any]] = {}
        for family in PARAMETER_FAMILIES:
            pooled = [entry for report in reports for entry in report.family(family)]
            statistics[family] = family_statistics(pooled, nominal)
            s = statistics[family]
            if s.get("n"):
                logger.info(
                    "%s: bias=%.3f rmse=%.3f coverage=%.2f (nominal %.2f, p=%.3f)",
                    family, s["bias"], s["rmse"], s["coverage"], nominal, s["coverage_p_value"],
                )
        return statistics
