"""
Shared test fixtures for the hinge_validation test suite.

The inference engine is replaced by in-process fakes so that no test needs
CmdStan, except the ones marked ``slow``.
"""
import pytest
import numpy as np

from hinge_validation.config import GeneratorConfig, SamplerConfig, StudyConfig
from hinge_validation.data_model import Dataset, GroupParameters, HyperParameters
from hinge_validation.inference import EngineResult, InferenceAdapter
from hinge_validation.truth_generator import TruthGenerator


# ── Fake engines ─────────────────────────────────────────────────────


class FakeAdapter(InferenceAdapter):
    """Returns preset draws and diagnostics instead of sampling."""

    def __init__(self, draws=None, diagnostics=None, **kwargs):
        super().__init__(**kwargs)
        self.draws = draws
        self.diagnostics = diagnostics or {}
        self.requests = []

    def _run_engine(self, request, model_spec, timeout):
        self.requests.append(request)
        return EngineResult(dict(self.draws), dict(self.diagnostics))


class CalibratedFakeAdapter(InferenceAdapter):
    """
    Posterior calibrated by construction.

    For every true value θ the fake draws a centre ``c = θ + s·e`` and then
    posterior draws ``c + s·e'``. Truth and draws are then exchangeable
    around ``c``, so ranks are uniform and intervals reach nominal coverage.
    The truths are regenerated with the same seeds the calibration study
    uses for iteration ``i``.
    """

    def __init__(self, config, draw_count=400, scale=1.0, **kwargs):
        super().__init__(**kwargs)
        self.config = config
        self.draw_count = draw_count
        self.scale = scale
        self.calls = 0

    def _run_engine(self, request, model_spec, timeout):
        truth = TruthGenerator().generate(
            self.config.generator, np.random.default_rng(self.config.seed + self.calls)
        )
        assert np.array_equal(request.data["y"], truth.dataset.response.tolist())
        rng = np.random.default_rng(1000 + self.calls)
        self.calls += 1

        def posterior_for(true_values):
            true_values = np.asarray(true_values, dtype=float)
            centre = true_values + self.scale * rng.standard_normal(true_values.shape)
            noise = rng.standard_normal((self.draw_count,) + true_values.shape)
            return centre + self.scale * noise

        hyper = truth.hyperparameters
        draws = {name: posterior_for(getattr(hyper, name)) for name in hyper.to_dict()}
        for name in ("sigma_intercept", "sigma_slope", "sigma_residual"):
            draws[name] = np.abs(draws[name])
        draws["intercept"] = posterior_for(truth.group_parameters.intercepts)
        draws["slope"] = posterior_for(truth.group_parameters.slopes)
        return EngineResult(draws, {"max_rhat": 1.0, "divergences": 0})


def make_draws(group_count=3, draw_count=50, seed=0):
    """Well-formed posterior draws for every declared parameter."""
    rng = np.random.default_rng(seed)
    return {
        "mu_intercept": rng.normal(100.0, 1.0, draw_count),
        "sigma_intercept": np.abs(rng.normal(5.0, 0.5, draw_count)),
        "mu_slope": rng.normal(0.5, 0.1, draw_count),
        "sigma_slope": np.abs(rng.normal(0.2, 0.05, draw_count)),
        "sigma_residual": np.abs(rng.normal(2.0, 0.2, draw_count)),
        "intercept": rng.normal(100.0, 5.0, (draw_count, group_count)),
        "slope": rng.normal(0.5, 0.2, (draw_count, group_count)),
    }


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def generator_config():
    """A small generator config with prior-distributed hyperparameters."""
    return GeneratorConfig(group_count=6, min_n=3, max_n=8, changepoint=2000.0, end_period=2020)


@pytest.fixture
def fixed_hyperparameters():
    return {
        "mu_intercept": 100.0,
        "sigma_intercept": 5.0,
        "mu_slope": 0.5,
        "sigma_slope": 0.2,
        "sigma_residual": 2.0,
    }


@pytest.fixture
def degenerate_config():
    """Noiseless scenario: every group follows response = 125 + 0.5 * x."""
    return GeneratorConfig(
        group_count=4,
        min_n=2,
        max_n=6,
        changepoint=2000.0,
        end_period=2020,
        hyperparameters={
            "mu_intercept": 125.0,
            "sigma_intercept": 0.0,
            "mu_slope": 0.5,
            "sigma_slope": 0.0,
            "sigma_residual": 0.0,
        },
        allow_degenerate=True,
    )


@pytest.fixture
def small_dataset():
    """Three groups with 3, 1 and 4 observations (group 1 has a single point)."""
    return Dataset(
        group_ids=np.array([0, 0, 0, 1, 2, 2, 2, 2]),
        predictor_raw=np.array([2018, 2019, 2020, 2020, 2017, 2018, 2019, 2020], dtype=float),
        response=np.array([110.0, 111.0, 113.0, 95.0, 100.0, 102.0, 101.0, 104.0]),
        group_count=3,
        changepoint=2000.0,
    )


@pytest.fixture
def hyperparameters():
    return HyperParameters(
        mu_intercept=100.0, sigma_intercept=5.0, mu_slope=0.5, sigma_slope=0.2, sigma_residual=2.0
    )


@pytest.fixture
def group_parameters():
    return GroupParameters(
        intercepts=np.array([105.0, 95.0, 100.0]), slopes=np.array([0.4, 0.6, 0.5])
    )


@pytest.fixture
def sampler_config():
    return SamplerConfig(chains=2, iterations=200, warmup=100, seed=1)


@pytest.fixture
def study_config(tmp_path, fixed_hyperparameters):
    """A study config writing into a tmp dir."""
    return StudyConfig(
        generator=GeneratorConfig(
            group_count=10, min_n=4, max_n=10, hyperparameters=dict(fixed_hyperparameters)
        ),
        sampler=SamplerConfig(chains=1, iterations=100, warmup=50),
        replicate_count=100,
        n_iterations=20,
        results_dir=str(tmp_path / "results"),
        seed=7,
    )
