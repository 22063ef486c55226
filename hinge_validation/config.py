"""
Configuration for the hinge-model validation workflow.

Defines the generator, sampler and study configuration dataclasses, with
validation on construction and YAML loading/saving.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

from .data_model import HYPERPARAMETER_NAMES, SCALE_PARAMETER_NAMES, HyperParameters
from .errors import ConfigurationError
from .summary_statistics import SUMMARY_FUNCTIONS

logger = logging.getLogger(__name__)

# Default paths relative to this module
_MODULE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = _MODULE_DIR / "configs" / "study_config.yaml"
DEFAULT_STAN_FILE = _MODULE_DIR / "stan" / "hinge_hierarchical.stan"

DEFAULT_QUANTILES: List[float] = [0.025, 0.25, 0.5, 0.75, 0.975]

# distribution name → required parameters
PRIOR_DISTRIBUTIONS: Dict[str, tuple] = {
    "normal": ("loc", "scale"),
    "half_normal": ("scale",),
    "exponential": ("scale",),
    "lognormal": ("mean", "sigma"),
    "uniform": ("low", "high"),
}
_POSITIVE_SUPPORT = {"half_normal", "exponential", "lognormal"}


# ──────────────────────────────────────────────────────────────────────
# Hyperparameter priors
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HyperPrior:
    """Generating distribution for one hyperparameter."""

    distribution: str
    params: Dict[str, float]

    @classmethod
    def from_spec(cls, name: str, spec: Dict[str, Any]) -> "HyperPrior":
        spec = dict(spec)
        distribution = spec.pop("distribution", None)
        if distribution not in PRIOR_DISTRIBUTIONS:
            raise ConfigurationError(
                f"{name}: unknown prior distribution {distribution!r}; "
                f"choose from {sorted(PRIOR_DISTRIBUTIONS)}"
            )
        required = PRIOR_DISTRIBUTIONS[distribution]
        missing = [p for p in required if p not in spec]
        if missing:
            raise ConfigurationError(f"{name}: {distribution} prior is missing {missing}")
        extra = sorted(set(spec) - set(required))
        if extra:
            raise ConfigurationError(f"{name}: unexpected prior arguments {extra}")
        prior = cls(distribution, {k: float(spec[k]) for k in required})
        prior.validate(name)
        return prior

    def validate(self, name: str) -> None:
        p = self.params
        for key in ("scale", "sigma"):
            if key in p and p[key] <= 0:
                raise ConfigurationError(f"{name}: prior {key} must be > 0, got {p[key]}")
        if self.distribution == "uniform" and not p["low"] < p["high"]:
            raise ConfigurationError(f"{name}: uniform prior needs low < high")
        if name in SCALE_PARAMETER_NAMES:
            positive = self.distribution in _POSITIVE_SUPPORT or (
                self.distribution == "uniform" and p["low"] > 0
            )
            if not positive:
                raise ConfigurationError(
                    f"{name}: scale parameters need a prior with positive support, "
                    f"got {self.distribution}"
                )

    def draw(self, rng: np.random.Generator) -> float:
        p = self.params
        if self.distribution == "normal":
            return float(rng.normal(p["loc"], p["scale"]))
        if self.distribution == "half_normal":
            return float(abs(rng.normal(0.0, p["scale"])))
        if self.distribution == "exponential":
            return float(rng.exponential(p["scale"]))
        if self.distribution == "lognormal":
            return float(rng.lognormal(p["mean"], p["sigma"]))
        return float(rng.uniform(p["low"], p["high"]))


HyperSpec = Union[float, HyperPrior]


# ──────────────────────────────────────────────────────────────────────
# Generator configuration
# ──────────────────────────────────────────────────────────────────────

def _default_hyperparameters() -> Dict[str, Any]:
    return {
        "mu_intercept": {"distribution": "normal", "loc": 100.0, "scale": 25.0},
        "sigma_intercept": {"distribution": "half_normal", "scale": 10.0},
        "mu_slope": {"distribution": "normal", "loc": 0.0, "scale": 1.0},
        "sigma_slope": {"distribution": "half_normal", "scale": 0.5},
        "sigma_residual": {"distribution": "half_normal", "scale": 5.0},
    }


@dataclass
class GeneratorConfig:
    """
    Configuration for synthetic dataset generation.

    Attributes:
        group_count: Number of groups.
        min_n: Smallest per-group sample size (≥ 1).
        max_n: Largest per-group sample size (≥ min_n).
        changepoint: Hinge location applied to raw predictors.
        end_period: Last raw predictor value of every group; group histories
            are right-aligned on it.
        hyperparameters: Per hyperparameter either a number (fixed ground
            truth) or a prior mapping such as
            ``{"distribution": "half_normal", "scale": 2.0}``.
        allow_degenerate: Accept fixed scale hyperparameters equal to zero.
    """

    group_count: int = 10
    min_n: int = 5
    max_n: int = 20
    changepoint: float = 2000.0
    end_period: int = 2020
    hyperparameters: Dict[str, Any] = field(default_factory=_default_hyperparameters)
    allow_degenerate: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self, log_warnings: bool = True) -> List[str]:
        """
        Validate generator settings.

        Args:
            log_warnings: Emit soft warnings through the module logger.

        Returns:
            List of warning strings (empty if no warnings).

        Raises:
            ConfigurationError: On hard validation failures.
        """
        warnings: List[str] = []

        if self.group_count < 1:
            raise ConfigurationError("group_count must be ≥ 1")
        if self.min_n < 1:
            raise ConfigurationError("min_n must be ≥ 1 (groups cannot be empty)")
        if self.max_n < self.min_n:
            raise ConfigurationError("max_n must be ≥ min_n")
        if not np.isfinite(self.changepoint):
            raise ConfigurationError("changepoint must be a finite number")
        self.hyperparameter_specs()

        if self.group_count < 5:
            warnings.append(
                f"group_count={self.group_count} is low; "
                "group-level scales will be poorly identified"
            )
        if self.min_n < 3:
            warnings.append(
                f"min_n={self.min_n}: groups with fewer than 3 observations "
                "carry little information about their slope"
            )

        if log_warnings:
            for w in warnings:
                logger.warning(w)
        return warnings

    def hyperparameter_specs(self) -> Dict[str, HyperSpec]:
        """
        Resolve the hyperparameter entries into fixed values or priors.

        Raises:
            ConfigurationError: On missing/unknown names, bad priors or
                invalid fixed values.
        """
        missing = [n for n in HYPERPARAMETER_NAMES if n not in self.hyperparameters]
        unknown = sorted(set(self.hyperparameters) - set(HYPERPARAMETER_NAMES))
        if missing:
            raise ConfigurationError(f"Missing hyperparameters: {missing}")
        if unknown:
            raise ConfigurationError(f"Unknown hyperparameters: {unknown}")

        specs: Dict[str, HyperSpec] = {}
        for name in HYPERPARAMETER_NAMES:
            raw = self.hyperparameters[name]
            if isinstance(raw, dict):
                specs[name] = HyperPrior.from_spec(name, raw)
            else:
                try:
                    specs[name] = float(raw)
                except (TypeError, ValueError) as exc:
                    raise ConfigurationError(
                        f"{name}: expected a number or a prior mapping, got {raw!r}"
                    ) from exc
        fixed = {k: v for k, v in specs.items() if not isinstance(v, HyperPrior)}
        for name in SCALE_PARAMETER_NAMES:
            if name in fixed:
                value = fixed[name]
                if value < 0 or (value == 0 and not self.allow_degenerate):
                    bound = "≥ 0" if self.allow_degenerate else "> 0"
                    raise ConfigurationError(f"{name} must be {bound}, got {value}")
        return specs

    def fixed_hyperparameters(self) -> Optional[HyperParameters]:
        """Return the ground truth when every hyperparameter is fixed, else None."""
        specs = self.hyperparameter_specs()
        if any(isinstance(v, HyperPrior) for v in specs.values()):
            return None
        return HyperParameters(**specs)


# ──────────────────────────────────────────────────────────────────────
# Sampler configuration
# ──────────────────────────────────────────────────────────────────────

@dataclass
class SamplerConfig:
    """
    Pass-through settings for the external sampler.

    ``iterations`` counts warmup plus sampling iterations per chain, so each
    chain keeps ``iterations - warmup`` draws.
    """

    chains: int = 4
    iterations: int = 2000
    warmup: int = 1000
    seed: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.chains < 1:
            raise ConfigurationError("chains must be ≥ 1")
        if self.warmup < 0:
            raise ConfigurationError("warmup must be ≥ 0")
        if self.iterations < self.warmup:
            raise ConfigurationError("iterations must be ≥ warmup")

    @property
    def sampling_iterations(self) -> int:
        return self.iterations - self.warmup


# ──────────────────────────────────────────────────────────────────────
# Study configuration
# ──────────────────────────────────────────────────────────────────────

@dataclass
class StudyConfig:
    """
    Top-level configuration for calibration studies and posterior
    predictive checks.

    Attributes:
        generator: Synthetic data settings.
        sampler: Sampler pass-through settings.
        replicate_count: Posterior predictive replicates (≥ 1).
        summary_fn: Name of the summary statistic (see
            ``summary_statistics.SUMMARY_FUNCTIONS``).
        quantiles: Credible-interval quantile levels, each in (0, 1),
            non-decreasing; the outermost pair defines coverage.
        n_iterations: Simulate–fit–compare iterations per calibration study.
        max_workers: Threads used for posterior predictive replicates.
        timeout: Seconds before a sampler call is abandoned (None = no limit).
        rhat_threshold: Largest acceptable split R-hat.
        max_divergent_fraction: Largest acceptable share of divergent
            transitions.
        stan_file: Stan program (defaults to the bundled hinge model).
        results_dir: Directory for outputs.
        seed: Base seed; iteration ``i`` uses ``seed + i``.
    """

    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    replicate_count: int = 500
    summary_fn: str = "sd"
    quantiles: List[float] = field(default_factory=lambda: list(DEFAULT_QUANTILES))

    n_iterations: int = 20
    max_workers: int = 1
    timeout: Optional[float] = None

    rhat_threshold: float = 1.05
    max_divergent_fraction: float = 0.01

    stan_file: Optional[str] = None
    results_dir: Optional[str] = None
    seed: int = 42

    def __post_init__(self):
        if isinstance(self.generator, dict):
            self.generator = GeneratorConfig(**self.generator)
        if isinstance(self.sampler, dict):
            self.sampler = SamplerConfig(**self.sampler)
        self.quantiles = [float(q) for q in self.quantiles]
        if self.stan_file is None:
            self.stan_file = str(DEFAULT_STAN_FILE)
        if self.results_dir is None:
            self.results_dir = str(Path.cwd() / "results")

        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, log_warnings: bool = True) -> List[str]:
        """
        Validate configuration values.

        Args:
            log_warnings: Emit soft warnings through the module logger.

        Returns:
            List of warning strings (empty if no warnings).

        Raises:
            ConfigurationError: On hard validation failures.
        """
        warnings: List[str] = []

        if self.replicate_count < 1:
            raise ConfigurationError("replicate_count must be ≥ 1")
        if self.summary_fn not in SUMMARY_FUNCTIONS:
            raise ConfigurationError(
                f"Unknown summary_fn {self.summary_fn!r}; choose from {sorted(SUMMARY_FUNCTIONS)}"
            )
        validate_quantiles(self.quantiles)
        if self.n_iterations < 1:
            raise ConfigurationError("n_iterations must be ≥ 1")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be ≥ 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be > 0 seconds when given")
        if self.rhat_threshold <= 1.0:
            raise ConfigurationError("rhat_threshold must be > 1.0")
        if not 0.0 <= self.max_divergent_fraction <= 1.0:
            raise ConfigurationError("max_divergent_fraction must be in [0, 1]")

        if self.replicate_count < 100:
            warnings.append(
                f"replicate_count={self.replicate_count} is low; "
                "tail quantiles of the replicate distribution will be noisy"
            )
        if self.n_iterations < 10:
            warnings.append(
                f"n_iterations={self.n_iterations} is too few to judge coverage"
            )

        if log_warnings:
            for w in warnings:
                logger.warning(w)

        return warnings

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dict (for JSON/YAML serialization)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StudyConfig":
        """Create from a dict, ignoring unknown keys."""
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        unknown = sorted(set(d) - known_fields)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", unknown)
        filtered = {k: v for k, v in d.items() if k in known_fields}
        return cls(**filtered)

    @classmethod
    def from_yaml(cls, path: Optional[str | Path] = None) -> "StudyConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML file.  Falls back to the default
                  ``configs/study_config.yaml`` shipped with the package.

        Returns:
            Validated StudyConfig instance.
        """
        path = Path(path) if path else DEFAULT_CONFIG_PATH
        if not path.exists():
            logger.warning("Config file %s not found; using defaults", path)
            return cls()

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        logger.info("Loaded config from %s", path)
        return cls.from_dict(raw)

    def save_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.info("Saved config to %s", path)


def validate_quantiles(quantiles: List[float]) -> None:
    """
    Check credible-interval quantile levels.

    Raises:
        ConfigurationError: If empty, outside (0, 1) or decreasing.
    """
    if len(quantiles) == 0:
        raise ConfigurationError("quantiles must be a non-empty list")
    if any(not 0.0 < q < 1.0 for q in quantiles):
        raise ConfigurationError(f"quantile levels must lie in (0, 1), got {list(quantiles)}")
    if any(b < a for a, b in zip(quantiles, quantiles[1:])):
        raise ConfigurationError(f"quantile levels must be non-decreasing, got {list(quantiles)}")
