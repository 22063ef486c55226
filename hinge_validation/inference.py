"""
Boundary to the external Bayesian inference engine.

The adapter does not sample anything itself. It serialises a dataset and a
model specification into an :class:`InferenceRequest`, hands it to the engine
(CmdStan through ``cmdstanpy`` in production), and turns the returned draws
into a structurally checked :class:`PosteriorSample`.

Guarantees are structural only: every declared parameter is present and all
arrays share one draw count. Engine errors, timeouts and non-convergence
signals surface as :class:`InferenceFailure` with the engine diagnostics
attached; nothing is retried here.

Example usage:
    adapter = CmdStanAdapter()
    posterior = adapter.fit(ModelSpec(), dataset, SamplerConfig(chains=4), timeout=600)
    hyper_means = point_estimates(posterior)
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
from cmdstanpy import CmdStanModel

from .config import DEFAULT_STAN_FILE, SamplerConfig
from .data_model import (
    GROUP_PARAMETER_NAMES,
    HYPERPARAMETER_NAMES,
    Dataset,
    GroupParameters,
    HyperParameters,
)
from .errors import InferenceFailure, RunCancelled, ShapeMismatchError

logger = logging.getLogger(__name__)


# Prior families are fixed by the Stan program; only their scales are data.
PRIOR_FAMILIES: Dict[str, str] = {
    "mu_intercept": "normal",
    "sigma_intercept": "half_normal",
    "mu_slope": "normal",
    "sigma_slope": "half_normal",
    "sigma_residual": "half_normal",
    "intercept": "normal(mu_intercept, sigma_intercept)",
    "slope": "normal(mu_slope, sigma_slope)",
}


def _default_priors() -> Dict[str, float]:
    return {
        "prior_mu_intercept_loc": 0.0,
        "prior_mu_intercept_scale": 100.0,
        "prior_sigma_intercept_scale": 50.0,
        "prior_mu_slope_loc": 0.0,
        "prior_mu_slope_scale": 10.0,
        "prior_sigma_slope_scale": 5.0,
        "prior_sigma_residual_scale": 20.0,
    }


@dataclass(frozen=True)
class ModelSpec:
    """
    Names, shapes and priors of the hierarchical hinge model.

    Attributes:
        name: Model identifier sent with every request.
        stan_file: Stan program implementing the model.
        priors: Prior locations/scales passed to the program as data.
    """

    name: str = "hinge_hierarchical"
    stan_file: str = str(DEFAULT_STAN_FILE)
    priors: Dict[str, float] = field(default_factory=_default_priors)

    @property
    def hyperparameter_names(self) -> Tuple[str, ...]:
        return HYPERPARAMETER_NAMES

    @property
    def group_parameter_names(self) -> Tuple[str, ...]:
        return GROUP_PARAMETER_NAMES

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return self.hyperparameter_names + self.group_parameter_names

    def expected_shapes(self, group_count: int) -> Dict[str, Tuple[int, ...]]:
        """Per-draw shape of each declared parameter."""
        shapes: Dict[str, Tuple[int, ...]] = {name: () for name in self.hyperparameter_names}
        shapes.update({name: (group_count,) for name in self.group_parameter_names})
        return shapes


# ──────────────────────────────────────────────────────────────────────
# Request / response
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class InferenceRequest:
    """Everything the engine needs for one fit."""

    model: str
    data: Dict[str, Any]
    parameters: Dict[str, str]
    sampler: SamplerConfig

    @classmethod
    def build(
        cls,
        model_spec: ModelSpec,
        dataset: Dataset,
        sampler_config: SamplerConfig,
    ) -> "InferenceRequest":
        """
        Assemble the named data arrays for the engine.

        Produces ``{N, J, group, x, y}`` plus the prior constants:

        - **N**: number of observations
        - **J**: number of groups
        - **group[N]**: 1-based group index (Stan convention)
        - **x[N]**: hinge-transformed predictor
        - **y[N]**: response
        """
        if len(dataset) == 0:
            raise ValueError("Cannot fit a dataset with no observations")
        data: Dict[str, Any] = {
            "N": len(dataset),
            "J": dataset.group_count,
            "group": (dataset.group_ids + 1).tolist(),
            "x": dataset.predictor_transformed.tolist(),
            "y": dataset.response.tolist(),
        }
        data.update(model_spec.priors)
        parameters = {name: PRIOR_FAMILIES[name] for name in model_spec.parameter_names}
        return cls(model=model_spec.name, data=data, parameters=parameters, sampler=sampler_config)

    def to_stan_data(self) -> Dict[str, Any]:
        return dict(self.data)


class EngineResult(NamedTuple):
    """Raw engine output: named draw arrays plus diagnostics."""

    draws: Dict[str, np.ndarray]
    diagnostics: Dict[str, Any]


# ──────────────────────────────────────────────────────────────────────
# Posterior sample
# ──────────────────────────────────────────────────────────────────────

class PosteriorSample(Mapping):
    """
    Read-only mapping from parameter name to posterior draws.

    Scalar parameters have shape ``(draw_count,)``; per-group parameters
    have shape ``(draw_count, group_count)``.
    """

    def __init__(
        self,
        draws: Dict[str, Any],
        diagnostics: Optional[Dict[str, Any]] = None,
    ):
        if not draws:
            raise ShapeMismatchError("Posterior sample has no parameters")
        arrays: Dict[str, np.ndarray] = {}
        for name, values in draws.items():
            arr = np.array(values, dtype=float)
            if arr.ndim == 0:
                raise ShapeMismatchError(f"{name}: draws must have a leading draw axis")
            arr.setflags(write=False)
            arrays[name] = arr

        counts = {name: arr.shape[0] for name, arr in arrays.items()}
        if len(set(counts.values())) != 1:
            raise ShapeMismatchError(f"Draw counts disagree across parameters: {counts}")
        self._draw_count = next(iter(counts.values()))
        if self._draw_count == 0:
            raise ShapeMismatchError("Posterior sample has zero draws")

        self._draws = arrays
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})

    @classmethod
    def from_engine(
        cls,
        draws: Dict[str, Any],
        model_spec: ModelSpec,
        group_count: int,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> "PosteriorSample":
        """
        Build a sample and check it against the model specification.

        Raises:
            ShapeMismatchError: If a declared parameter is absent or has the
                wrong per-draw shape, or draw counts disagree.
        """
        missing = [name for name in model_spec.parameter_names if name not in draws]
        if missing:
            raise ShapeMismatchError(f"Engine response is missing declared parameters: {missing}")
        posterior = cls(
            {name: draws[name] for name in model_spec.parameter_names},
            diagnostics=diagnostics,
        )
        for name, shape in model_spec.expected_shapes(group_count).items():
            if posterior[name].shape[1:] != shape:
                raise ShapeMismatchError(
                    f"{name}: expected per-draw shape {shape}, got {posterior[name].shape[1:]}"
                )
        return posterior

    # Mapping interface

    def __getitem__(self, name: str) -> np.ndarray:
        return self._draws[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._draws)

    def __len__(self) -> int:
        return len(self._draws)

    @property
    def draw_count(self) -> int:
        return self._draw_count

    def mean(self, name: str) -> np.ndarray:
        return self._draws[name].mean(axis=0)

    def hyperparameter_means(self) -> HyperParameters:
        return HyperParameters(**{name: float(self.mean(name)) for name in HYPERPARAMETER_NAMES})

    def group_means(self) -> GroupParameters:
        return GroupParameters(intercepts=self.mean("intercept"), slopes=self.mean("slope"))

    def to_frame(self) -> pd.DataFrame:
        """Flatten draws into one column per scalar, e.g. ``intercept[0]``."""
        columns: Dict[str, np.ndarray] = {}
        for name, arr in self._draws.items():
            if arr.ndim == 1:
                columns[name] = arr
            else:
                flat = arr.reshape(arr.shape[0], -1)
                for j in range(flat.shape[1]):
                    columns[f"{name}[{j}]"] = flat[:, j]
        return pd.DataFrame(columns)


def point_estimates(posterior: PosteriorSample) -> HyperParameters:
    """Posterior means of the hyperparameters (used for predictive replicates)."""
    return posterior.hyperparameter_means()


# ──────────────────────────────────────────────────────────────────────
# Adapters
# ──────────────────────────────────────────────────────────────────────

def _check_cancel(cancel_event: Optional[threading.Event], where: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled(f"Inference cancelled {where}")


class InferenceAdapter(ABC):
    """
    Base class for inference engine adapters.

    Subclasses implement :meth:`_run_engine`; :meth:`fit` adds request
    building, cancellation checks, convergence screening and structural
    validation.

    Args:
        rhat_threshold: Largest acceptable split R-hat across declared
            parameters.
        max_divergent_fraction: Largest acceptable share of post-warmup
            transitions that diverged.
    """

    def __init__(self, rhat_threshold: float = 1.05, max_divergent_fraction: float = 0.01):
        self.rhat_threshold = rhat_threshold
        self.max_divergent_fraction = max_divergent_fraction

    def fit(
        self,
        model_spec: ModelSpec,
        dataset: Dataset,
        sampler_config: SamplerConfig,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PosteriorSample:
        """
        Fit the model to a dataset and return posterior draws.

        Args:
            model_spec: Parameter names/shapes and priors.
            dataset: Data to condition on.
            sampler_config: Chains, iterations, warmup and seed; passed
                through to the engine untouched.
            timeout: Seconds to wait for all chains (None = no limit).
            cancel_event: Checked before the engine is launched and once it
                returns; a set event raises :class:`RunCancelled`.

        Returns:
            Structurally validated PosteriorSample.

        Raises:
            InferenceFailure: Engine error, timeout or non-convergence.
            ShapeMismatchError: Missing parameters or inconsistent draws.
            RunCancelled: If the cancellation signal is set.
        """
        _check_cancel(cancel_event, "before launching the sampler")
        request = InferenceRequest.build(model_spec, dataset, sampler_config)
        logger.info(
            "Fitting %s: N=%d, J=%d, chains=%d, iterations=%d (warmup %d)",
            request.model,
            request.data["N"],
            request.data["J"],
            sampler_config.chains,
            sampler_config.iterations,
            sampler_config.warmup,
        )

        result = self._run_engine(request, model_spec, timeout)
        _check_cancel(cancel_event, "after the sampler returned")

        posterior = PosteriorSample.from_engine(
            result.draws, model_spec, dataset.group_count, diagnostics=result.diagnostics
        )
        self._check_convergence(posterior, result.diagnostics)
        logger.info("Posterior: %d draws, max R-hat %s", posterior.draw_count,
                    result.diagnostics.get("max_rhat"))
        return posterior

    @abstractmethod
    def _run_engine(
        self,
        request: InferenceRequest,
        model_spec: ModelSpec,
        timeout: Optional[float],
    ) -> EngineResult:
        """Invoke the engine and return its draws and diagnostics."""

    def _check_convergence(self, posterior: PosteriorSample, diagnostics: Dict[str, Any]) -> None:
        if diagnostics.get("failure"):
            raise InferenceFailure(
                f"Engine reported failure: {diagnostics['failure']}", diagnostics
            )
        non_finite = [name for name, arr in posterior.items() if not np.all(np.isfinite(arr))]
        if non_finite:
            raise InferenceFailure(f"Non-finite draws for {non_finite}", diagnostics)

        max_rhat = diagnostics.get("max_rhat")
        if max_rhat is not None and max_rhat > self.rhat_threshold:
            raise InferenceFailure(
                f"Chains did not converge: max R-hat {max_rhat:.3f} > {self.rhat_threshold}",
                diagnostics,
            )

        divergences = diagnostics.get("divergences")
        if divergences:
            fraction = divergences / posterior.draw_count
            if fraction > self.max_divergent_fraction:
                raise InferenceFailure(
                    f"{divergences} divergent transitions ({fraction:.1%} of draws) "
                    f"exceed the allowed {self.max_divergent_fraction:.1%}",
                    diagnostics,
                )


class CmdStanAdapter(InferenceAdapter):
    """
    Adapter for CmdStan via ``cmdstanpy``.

    The Stan program is compiled lazily on first use and cached per file.
    Chains run inside CmdStan; the adapter blocks until all chains report
    or the timeout elapses.

    Args:
        show_progress: Forward CmdStan's progress bars.
        output_dir: Where CmdStan writes its CSV files (temp dir if None).
        rhat_threshold: See :class:`InferenceAdapter`.
        max_divergent_fraction: See :class:`InferenceAdapter`.
    """

    def __init__(
        self,
        show_progress: bool = False,
        output_dir: Optional[str] = None,
        rhat_threshold: float = 1.05,
        max_divergent_fraction: float = 0.01,
    ):
        super().__init__(rhat_threshold=rhat_threshold, max_divergent_fraction=max_divergent_fraction)
        self.show_progress = show_progress
        self.output_dir = output_dir
        self._models: Dict[str, CmdStanModel] = {}

    def _get_model(self, stan_file: str) -> CmdStanModel:
        if stan_file not in self._models:
            if not Path(stan_file).exists():
                raise InferenceFailure(f"Stan model not found: {stan_file}")
            logger.info("Compiling Stan model: %s", stan_file)
            try:
                self._models[stan_file] = CmdStanModel(stan_file=stan_file)
            except (RuntimeError, ValueError) as exc:
                raise InferenceFailure(f"Stan model failed to compile: {exc}") from exc
        return self._models[stan_file]

    def _run_engine(
        self,
        request: InferenceRequest,
        model_spec: ModelSpec,
        timeout: Optional[float],
    ) -> EngineResult:
        model = self._get_model(model_spec.stan_file)
        sampler = request.sampler
        try:
            fit = model.sample(
                data=request.to_stan_data(),
                chains=sampler.chains,
                iter_warmup=sampler.warmup,
                iter_sampling=sampler.sampling_iterations,
                seed=sampler.seed,
                timeout=timeout,
                show_progress=self.show_progress,
                output_dir=self.output_dir,
            )
        except TimeoutError as exc:
            raise InferenceFailure(
                f"Sampler timed out after {timeout} s", {"timeout": timeout}
            ) from exc
        except (RuntimeError, ValueError) as exc:
            raise InferenceFailure(f"Sampler failed: {exc}", {"error": str(exc)}) from exc

        draws: Dict[str, np.ndarray] = {}
        for name in model_spec.parameter_names:
            try:
                draws[name] = fit.stan_variable(name)
            except ValueError:
                # Absent variables are reported as a shape mismatch by fit()
                logger.error("Engine output has no variable %r", name)

        return EngineResult(draws, self._diagnostics(fit, model_spec.parameter_names))

    @staticmethod
    def _diagnostics(fit: Any, parameter_names: Tuple[str, ...]) -> Dict[str, Any]:
        diagnostics: Dict[str, Any] = {
            "divergences": int(np.sum(fit.divergences)) if fit.divergences is not None else 0,
            "max_treedepth_hits": (
                int(np.sum(fit.max_treedepths)) if fit.max_treedepths is not None else 0
            ),
            "report": fit.diagnose(),
        }
        summary = fit.summary()
        if "R_hat" in summary.columns:
            base_names = summary.index.to_series().str.split("[").str[0]
            rhat = summary.loc[base_names.isin(parameter_names).values, "R_hat"]
            rhat = rhat[np.isfinite(rhat)]
            diagnostics["max_rhat"] = float(rhat.max()) if len(rhat) else None
            diagnostics["rhat"] = {str(k): float(v) for k, v in rhat.items()}
        return diagnostics
