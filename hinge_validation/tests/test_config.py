"""
Tests for the configuration dataclasses.
"""
import logging

import pytest
import numpy as np
import yaml

from hinge_validation.config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_STAN_FILE,
    GeneratorConfig,
    HyperPrior,
    SamplerConfig,
    StudyConfig,
    validate_quantiles,
)
from hinge_validation.errors import ConfigurationError


class TestGeneratorConfig:

    def test_defaults_valid(self):
        config = GeneratorConfig()
        assert config.group_count == 10
        assert config.fixed_hyperparameters() is None

    @pytest.mark.parametrize("kwargs", [
        {"group_count": 0},
        {"min_n": 0},
        {"min_n": 5, "max_n": 4},
        {"changepoint": float("nan")},
    ])
    def test_invalid_sizes(self, kwargs):
        with pytest.raises(ConfigurationError):
            GeneratorConfig(**kwargs)

    def test_fixed_hyperparameters(self, fixed_hyperparameters):
        config = GeneratorConfig(hyperparameters=fixed_hyperparameters)
        hyper = config.fixed_hyperparameters()
        assert hyper.mu_slope == 0.5
        assert hyper.sigma_residual == 2.0

    @pytest.mark.parametrize("name", ["sigma_intercept", "sigma_slope", "sigma_residual"])
    def test_zero_sigma_rejected(self, fixed_hyperparameters, name):
        fixed_hyperparameters[name] = 0.0
        with pytest.raises(ConfigurationError, match=name):
            GeneratorConfig(hyperparameters=fixed_hyperparameters)

    def test_zero_sigma_allowed_when_degenerate(self, fixed_hyperparameters):
        fixed_hyperparameters["sigma_residual"] = 0.0
        config = GeneratorConfig(hyperparameters=fixed_hyperparameters, allow_degenerate=True)
        assert config.fixed_hyperparameters().sigma_residual == 0.0

    def test_negative_sigma_rejected_even_when_degenerate(self, fixed_hyperparameters):
        fixed_hyperparameters["sigma_slope"] = -0.1
        with pytest.raises(ConfigurationError):
            GeneratorConfig(hyperparameters=fixed_hyperparameters, allow_degenerate=True)

    def test_missing_hyperparameter(self, fixed_hyperparameters):
        del fixed_hyperparameters["mu_slope"]
        with pytest.raises(ConfigurationError, match="Missing"):
            GeneratorConfig(hyperparameters=fixed_hyperparameters)

    def test_unknown_hyperparameter(self, fixed_hyperparameters):
        fixed_hyperparameters["tau"] = 1.0
        with pytest.raises(ConfigurationError, match="Unknown"):
            GeneratorConfig(hyperparameters=fixed_hyperparameters)

    def test_non_numeric_value(self, fixed_hyperparameters):
        fixed_hyperparameters["mu_intercept"] = "lots"
        with pytest.raises(ConfigurationError):
            GeneratorConfig(hyperparameters=fixed_hyperparameters)

    def test_low_group_count_warns(self):
        config = GeneratorConfig(group_count=3)
        assert any("group_count" in w for w in config.validate())

    def test_warnings_returned_without_logging(self, caplog):
        config = GeneratorConfig(group_count=3, min_n=2)
        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="hinge_validation.config"):
            warnings = config.validate(log_warnings=False)
        assert len(warnings) == 2
        assert caplog.records == []

    def test_warnings_logged_on_construction(self, caplog):
        with caplog.at_level(logging.WARNING, logger="hinge_validation.config"):
            GeneratorConfig(group_count=3)
        assert any("group_count" in r.getMessage() for r in caplog.records)


class TestHyperPrior:

    def test_from_spec(self):
        prior = HyperPrior.from_spec("mu_slope", {"distribution": "normal", "loc": 0, "scale": 2})
        assert prior.distribution == "normal"
        assert prior.params == {"loc": 0.0, "scale": 2.0}

    def test_unknown_distribution(self):
        with pytest.raises(ConfigurationError, match="unknown prior"):
            HyperPrior.from_spec("mu_slope", {"distribution": "cauchy", "scale": 1})

    def test_missing_argument(self):
        with pytest.raises(ConfigurationError, match="missing"):
            HyperPrior.from_spec("mu_slope", {"distribution": "normal", "loc": 0})

    def test_unexpected_argument(self):
        with pytest.raises(ConfigurationError, match="unexpected"):
            HyperPrior.from_spec("sigma_slope", {"distribution": "half_normal", "scale": 1, "loc": 0})

    def test_scale_parameter_needs_positive_support(self):
        with pytest.raises(ConfigurationError, match="positive support"):
            HyperPrior.from_spec("sigma_slope", {"distribution": "normal", "loc": 1, "scale": 1})

    def test_non_positive_scale(self):
        with pytest.raises(ConfigurationError):
            HyperPrior.from_spec("mu_slope", {"distribution": "normal", "loc": 0, "scale": 0})

    @pytest.mark.parametrize("spec", [
        {"distribution": "half_normal", "scale": 2.0},
        {"distribution": "exponential", "scale": 2.0},
        {"distribution": "lognormal", "mean": 0.0, "sigma": 0.5},
        {"distribution": "uniform", "low": 0.5, "high": 3.0},
    ])
    def test_draws_positive_for_scales(self, spec, rng):
        prior = HyperPrior.from_spec("sigma_residual", spec)
        draws = [prior.draw(rng) for _ in range(200)]
        assert min(draws) >= 0.0

    def test_draw_reproducible(self):
        prior = HyperPrior.from_spec("mu_intercept", {"distribution": "normal", "loc": 5, "scale": 1})
        a = prior.draw(np.random.default_rng(3))
        b = prior.draw(np.random.default_rng(3))
        assert a == b


class TestSamplerConfig:

    def test_defaults(self):
        config = SamplerConfig()
        assert config.sampling_iterations == 1000

    @pytest.mark.parametrize("kwargs", [
        {"chains": 0},
        {"warmup": -1},
        {"iterations": 10, "warmup": 20},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            SamplerConfig(**kwargs)

    def test_iterations_equal_warmup_allowed(self):
        assert SamplerConfig(iterations=100, warmup=100).sampling_iterations == 0


class TestStudyConfig:

    def test_defaults(self, tmp_path):
        config = StudyConfig(results_dir=str(tmp_path))
        assert config.stan_file == str(DEFAULT_STAN_FILE)
        assert config.summary_fn == "sd"
        assert isinstance(config.generator, GeneratorConfig)

    def test_nested_dicts_converted(self):
        config = StudyConfig(generator={"group_count": 7}, sampler={"chains": 2})
        assert config.generator.group_count == 7
        assert config.sampler.chains == 2

    @pytest.mark.parametrize("kwargs", [
        {"replicate_count": 0},
        {"summary_fn": "median_absolute_deviation"},
        {"quantiles": [0.5, 0.1]},
        {"n_iterations": 0},
        {"max_workers": 0},
        {"timeout": 0},
        {"rhat_threshold": 1.0},
        {"max_divergent_fraction": 1.5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            StudyConfig(**kwargs)

    def test_yaml_round_trip(self, tmp_path, study_config):
        path = tmp_path / "config.yaml"
        study_config.save_yaml(path)
        loaded = StudyConfig.from_yaml(path)
        assert loaded.to_dict() == study_config.to_dict()

    def test_from_dict_ignores_unknown_keys(self):
        config = StudyConfig.from_dict({"replicate_count": 200, "colour": "blue"})
        assert config.replicate_count == 200

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        config = StudyConfig.from_yaml(tmp_path / "absent.yaml")
        assert config.replicate_count == StudyConfig().replicate_count

    def test_shipped_config_loads(self):
        assert DEFAULT_CONFIG_PATH.exists()
        with open(DEFAULT_CONFIG_PATH) as f:
            raw = yaml.safe_load(f)
        config = StudyConfig.from_dict(raw)
        assert config.generator.hyperparameter_specs()["sigma_slope"].distribution == "half_normal"
        assert config.quantiles == [0.025, 0.25, 0.5, 0.75, 0.975]


class TestValidateQuantiles:

    def test_valid(self):
        validate_quantiles([0.05, 0.5, 0.95])
        validate_quantiles([0.5, 0.5])

    @pytest.mark.parametrize("levels", [[], [0.0, 0.5], [0.5, 1.0], [0.9, 0.1]])
    def test_invalid(self, levels):
        with pytest.raises(ConfigurationError):
            validate_quantiles(levels)
