"""
Hinge Validation

Simulation-based calibration and posterior predictive checking for a
two-level hierarchical regression with a fixed hinge changepoint.
"""
import logging

# Configure module-level logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

from .errors import ConfigurationError, InferenceFailure, RunCancelled, ShapeMismatchError
from . import hinge
from .data_model import (
    Dataset,
    DatasetShape,
    GroupParameters,
    HyperParameters,
    Observation,
    dataset_from_frame,
    dataset_from_records,
)
from .config import GeneratorConfig, SamplerConfig, StudyConfig
from .truth_generator import SimulatedTruth, TruthGenerator
from .inference import (
    CmdStanAdapter,
    InferenceAdapter,
    InferenceRequest,
    ModelSpec,
    PosteriorSample,
    point_estimates,
)
from .parameter_recovery import RecoveryComparator, RecoveryReport
from .summary_statistics import STATISTIC_UNDEFINED, SUMMARY_FUNCTIONS, get_summary_function
from .posterior_predictive import PosteriorPredictiveSimulator, SummaryStatisticDistribution
from .posterior_predictive_checks import (
    ComparisonReport,
    EmpiricalComparator,
    run_posterior_predictive_check,
)
from .calibration import CalibrationResult, CalibrationStudy

__all__ = [
    "ConfigurationError",
    "InferenceFailure",
    "RunCancelled",
    "ShapeMismatchError",
    "hinge",
    "Dataset",
    "DatasetShape",
    "GroupParameters",
    "HyperParameters",
    "Observation",
    "dataset_from_frame",
    "dataset_from_records",
    "GeneratorConfig",
    "SamplerConfig",
    "StudyConfig",
    "SimulatedTruth",
    "TruthGenerator",
    "CmdStanAdapter",
    "InferenceAdapter",
    "InferenceRequest",
    "ModelSpec",
    "PosteriorSample",
    "point_estimates",
    "RecoveryComparator",
    "RecoveryReport",
    "STATISTIC_UNDEFINED",
    "SUMMARY_FUNCTIONS",
    "get_summary_function",
    "PosteriorPredictiveSimulator",
    "SummaryStatisticDistribution",
    "ComparisonReport",
    "EmpiricalComparator",
    "run_posterior_predictive_check",
    "CalibrationResult",
    "CalibrationStudy",
]

__version__ = "0.1.0"
