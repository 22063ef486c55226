"""
Data model for the hierarchical hinge regression.

Entities are created once and never mutated afterwards: numpy arrays held by
these classes are copied on construction and flagged read-only, and
"regenerating" data always produces new instances.

Also hosts the ingestion-boundary helpers that turn ``{group_label,
predictor_raw, response}`` records into a :class:`Dataset` with a dense,
stable group-id mapping.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from . import hinge
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

HYPERPARAMETER_NAMES: Tuple[str, ...] = (
    "mu_intercept",
    "sigma_intercept",
    "mu_slope",
    "sigma_slope",
    "sigma_residual",
)
SCALE_PARAMETER_NAMES: Tuple[str, ...] = ("sigma_intercept", "sigma_slope", "sigma_residual")
GROUP_PARAMETER_NAMES: Tuple[str, ...] = ("intercept", "slope")


def _readonly(values: Any, dtype: Any) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


# ──────────────────────────────────────────────────────────────────────
# Parameters
# ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HyperParameters:
    """Population-level parameters of the intercept/slope distributions."""

    mu_intercept: float
    sigma_intercept: float
    mu_slope: float
    sigma_slope: float
    sigma_residual: float

    def validate(self, allow_degenerate: bool = False) -> None:
        """
        Check the scale parameters.

        Args:
            allow_degenerate: Accept ``sigma == 0`` (point-mass draws).
                Negative scales are always rejected.

        Raises:
            ConfigurationError: If a scale is non-positive (or negative when
                degenerate scales are allowed) or not finite.
        """
        for name in HYPERPARAMETER_NAMES:
            if not np.isfinite(getattr(self, name)):
                raise ConfigurationError(f"{name} must be finite, got {getattr(self, name)}")
        for name in SCALE_PARAMETER_NAMES:
            value = getattr(self, name)
            if value < 0 or (value == 0 and not allow_degenerate):
                bound = "≥ 0" if allow_degenerate else "> 0"
                raise ConfigurationError(f"{name} must be {bound}, got {value}")

    def to_dict(self) -> Dict[str, float]:
        return {k: float(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "HyperParameters":
        missing = [name for name in HYPERPARAMETER_NAMES if name not in d]
        if missing:
            raise ConfigurationError(f"Missing hyperparameters: {missing}")
        return cls(**{name: float(d[name]) for name in HYPERPARAMETER_NAMES})


@dataclass(frozen=True, eq=False)
class GroupParameters:
    """Per-group ``(intercept, slope)`` pairs, indexed by group id."""

    intercepts: np.ndarray
    slopes: np.ndarray

    def __post_init__(self):
        intercepts = _readonly(self.intercepts, float)
        slopes = _readonly(self.slopes, float)
        if intercepts.ndim != 1 or intercepts.shape != slopes.shape:
            raise ValueError(
                f"intercepts {intercepts.shape} and slopes {slopes.shape} "
                "must be 1-D arrays of equal length"
            )
        object.__setattr__(self, "intercepts", intercepts)
        object.__setattr__(self, "slopes", slopes)

    @property
    def group_count(self) -> int:
        return int(self.intercepts.shape[0])

    def __len__(self) -> int:
        return self.group_count

    def __getitem__(self, group_id: int) -> Tuple[float, float]:
        return float(self.intercepts[group_id]), float(self.slopes[group_id])

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        for g in range(self.group_count):
            yield self[g]

    def to_dict(self) -> Dict[str, List[float]]:
        return {"intercept": self.intercepts.tolist(), "slope": self.slopes.tolist()}


# ──────────────────────────────────────────────────────────────────────
# Observations and datasets
# ──────────────────────────────────────────────────────────────────────

class Observation(NamedTuple):
    group_id: int
    predictor_raw: float
    predictor_transformed: float
    response: float


@dataclass(frozen=True, eq=False)
class Dataset:
    """
    Ordered observations of a hierarchical hinge dataset, stored column-wise.

    Attributes:
        group_ids: Dense group id per observation, in ``[0, group_count)``.
        predictor_raw: Raw predictor value per observation.
        response: Response per observation.
        group_count: Number of groups.
        changepoint: Hinge location used for ``predictor_transformed``.
        predictor_transformed: Derived from ``predictor_raw`` when omitted;
            when supplied it must agree with the hinge transform.
    """

    group_ids: np.ndarray
    predictor_raw: np.ndarray
    response: np.ndarray
    group_count: int
    changepoint: float
    predictor_transformed: Optional[np.ndarray] = None

    def __post_init__(self):
        group_ids = _readonly(self.group_ids, int)
        predictor_raw = _readonly(self.predictor_raw, float)
        response = _readonly(self.response, float)

        n = group_ids.shape[0]
        if group_ids.ndim != 1 or predictor_raw.shape != (n,) or response.shape != (n,):
            raise ValueError(
                "group_ids, predictor_raw and response must be 1-D arrays of equal length"
            )
        if int(self.group_count) < 1:
            raise ValueError(f"group_count must be ≥ 1, got {self.group_count}")
        if n and (group_ids.min() < 0 or group_ids.max() >= self.group_count):
            raise ValueError(
                f"group ids must lie in [0, {self.group_count}), "
                f"got range [{group_ids.min()}, {group_ids.max()}]"
            )

        expected = hinge.transform(predictor_raw, self.changepoint)
        if self.predictor_transformed is None:
            transformed = _readonly(expected, float)
        else:
            transformed = _readonly(self.predictor_transformed, float)
            if transformed.shape != (n,) or not np.allclose(transformed, expected):
                raise ValueError(
                    f"predictor_transformed is inconsistent with changepoint {self.changepoint}"
                )

        object.__setattr__(self, "group_ids", group_ids)
        object.__setattr__(self, "predictor_raw", predictor_raw)
        object.__setattr__(self, "response", response)
        object.__setattr__(self, "predictor_transformed", transformed)
        object.__setattr__(self, "group_count", int(self.group_count))
        object.__setattr__(self, "changepoint", float(self.changepoint))

    def __len__(self) -> int:
        return int(self.group_ids.shape[0])

    def __iter__(self) -> Iterator[Observation]:
        for i in range(len(self)):
            yield Observation(
                int(self.group_ids[i]),
                float(self.predictor_raw[i]),
                float(self.predictor_transformed[i]),
                float(self.response[i]),
            )

    @property
    def observations(self) -> List[Observation]:
        return list(self)

    def group_sizes(self) -> np.ndarray:
        """Observation count per group (zero for groups without data)."""
        return np.bincount(self.group_ids, minlength=self.group_count)

    def group_indices(self) -> List[np.ndarray]:
        """Observation indices of each group, in dataset order."""
        return [np.flatnonzero(self.group_ids == g) for g in range(self.group_count)]

    def responses_by_group(self) -> List[np.ndarray]:
        return [self.response[idx] for idx in self.group_indices()]

    def with_responses(self, response: np.ndarray) -> "Dataset":
        """Return a new dataset with the same design and new responses."""
        return Dataset(
            group_ids=self.group_ids,
            predictor_raw=self.predictor_raw,
            response=response,
            group_count=self.group_count,
            changepoint=self.changepoint,
            predictor_transformed=self.predictor_transformed,
        )

    def shape(self) -> "DatasetShape":
        return DatasetShape.from_dataset(self)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "group_id": self.group_ids,
            "predictor_raw": self.predictor_raw,
            "predictor_transformed": self.predictor_transformed,
            "response": self.response,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_count": self.group_count,
            "changepoint": self.changepoint,
            "group_id": self.group_ids.tolist(),
            "predictor_raw": self.predictor_raw.tolist(),
            "predictor_transformed": self.predictor_transformed.tolist(),
            "response": self.response.tolist(),
        }


@dataclass(frozen=True, eq=False)
class DatasetShape:
    """
    The fixed design of a dataset: group count, changepoint and each group's
    raw predictor values.

    Posterior predictive replicates reuse this layout instead of resampling
    sample sizes, so variable-length (right-aligned) group histories are
    preserved exactly.
    """

    group_count: int
    changepoint: float
    predictors: Tuple[np.ndarray, ...]

    def __post_init__(self):
        predictors = tuple(_readonly(p, float) for p in self.predictors)
        if len(predictors) != int(self.group_count):
            raise ValueError(
                f"Expected predictor values for {self.group_count} groups, got {len(predictors)}"
            )
        if any(p.ndim != 1 for p in predictors):
            raise ValueError("Each group's predictor values must be 1-D")
        object.__setattr__(self, "predictors", predictors)
        object.__setattr__(self, "group_count", int(self.group_count))
        object.__setattr__(self, "changepoint", float(self.changepoint))

    @classmethod
    def from_dataset(cls, dataset: Dataset) -> "DatasetShape":
        return cls(
            group_count=dataset.group_count,
            changepoint=dataset.changepoint,
            predictors=tuple(dataset.predictor_raw[idx] for idx in dataset.group_indices()),
        )

    @property
    def group_sizes(self) -> np.ndarray:
        return np.array([p.shape[0] for p in self.predictors], dtype=int)

    @property
    def n_observations(self) -> int:
        return int(self.group_sizes.sum())

    def group_ids(self) -> np.ndarray:
        return np.repeat(np.arange(self.group_count), self.group_sizes)

    def predictor_raw(self) -> np.ndarray:
        if not self.predictors:
            return np.empty(0)
        return np.concatenate(self.predictors)


# ──────────────────────────────────────────────────────────────────────
# Ingestion boundary
# ──────────────────────────────────────────────────────────────────────

def index_group_labels(labels: Iterable[Hashable]) -> Dict[Hashable, int]:
    """
    Map arbitrary group labels to dense integer ids.

    Labels are sorted so the mapping is stable across runs and record
    orderings; labels of mixed, non-comparable types are sorted by their
    string form.
    """
    unique = set(labels)
    try:
        ordered = sorted(unique)
    except TypeError:
        ordered = sorted(unique, key=str)
    return {label: i for i, label in enumerate(ordered)}


def dataset_from_records(
    records: Iterable[Mapping[str, Any]],
    changepoint: float,
    group_mapping: Optional[Mapping[Hashable, int]] = None,
) -> Tuple[Dataset, Dict[Hashable, int]]:
    """
    Build a dataset from ``{group_label, predictor_raw, response}`` records.

    Observations are ordered by group id, then by raw predictor.

    Args:
        records: Iterable of mappings with the three keys above.
        changepoint: Hinge location.
        group_mapping: Optional pre-existing label → id mapping (for example
            to keep ids aligned with an earlier fit). Built with
            :func:`index_group_labels` when omitted.

    Returns:
        Tuple of (dataset, label → id mapping).

    Raises:
        ValueError: If there are no records or a label is not in the mapping.
    """
    rows = list(records)
    if not rows:
        raise ValueError("Cannot build a dataset from zero records")

    mapping = dict(group_mapping) if group_mapping is not None else index_group_labels(
        r["group_label"] for r in rows
    )
    try:
        group_ids = np.array([mapping[r["group_label"]] for r in rows], dtype=int)
    except KeyError as exc:
        raise ValueError(f"Group label {exc.args[0]!r} is not in the group mapping") from exc

    predictor_raw = np.array([r["predictor_raw"] for r in rows], dtype=float)
    response = np.array([r["response"] for r in rows], dtype=float)

    order = np.lexsort((predictor_raw, group_ids))
    dataset = Dataset(
        group_ids=group_ids[order],
        predictor_raw=predictor_raw[order],
        response=response[order],
        group_count=max(mapping.values()) + 1,
        changepoint=changepoint,
    )
    logger.info(
        "Ingested %d observations across %d groups (changepoint=%s)",
        len(dataset), dataset.group_count, changepoint,
    )
    return dataset, mapping


def dataset_from_frame(
    frame: pd.DataFrame,
    changepoint: float,
    group_column: str = "group",
    predictor_column: str = "predictor",
    response_column: str = "response",
    group_mapping: Optional[Mapping[Hashable, int]] = None,
) -> Tuple[Dataset, Dict[Hashable, int]]:
    """Build a dataset from an already-typed DataFrame (one row per observation)."""
    missing = {group_column, predictor_column, response_column} - set(frame.columns)
    if missing:
        raise ValueError(f"DataFrame is missing columns: {sorted(missing)}")
    clean = frame.dropna(subset=[group_column, predictor_column, response_column])
    dropped = len(frame) - len(clean)
    if dropped:
        logger.warning("Dropped %d rows with missing values", dropped)
    records = (
        {"group_label": g, "predictor_raw": x, "response": y}
        for g, x, y in zip(clean[group_column], clean[predictor_column], clean[response_column])
    )
    return dataset_from_records(records, changepoint, group_mapping=group_mapping)


# ──────────────────────────────────────────────────────────────────────
# Saving helpers
# ──────────────────────────────────────────────────────────────────────

def make_serializable(obj: Any) -> Any:
    """Recursively convert numpy types to Python builtins for JSON."""
    if isinstance(obj, dict):
        return {str(k): make_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [make_serializable(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        value = float(obj)
        return None if np.isnan(value) else value
    if isinstance(obj, float) and np.isnan(obj):
        return None
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.ndarray):
        return make_serializable(obj.tolist())
    return obj


def save_json(payload: Any, filepath: str | Path) -> Path:
    """Save a (possibly numpy-laden) payload as indented JSON."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as f:
        json.dump(make_serializable(payload), f, indent=2)
    logger.debug("Saved %s", filepath)
    return filepath


def save_dataset(dataset: Dataset, filepath: str | Path) -> Path:
    """Save a dataset as CSV (one row per observation)."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    dataset.to_frame().to_csv(filepath, index=False)
    logger.info("Saved dataset to %s (%d observations)", filepath, len(dataset))
    return filepath
