"""
Tests for the data model and the ingestion-boundary helpers.
"""
import json
import pytest
import numpy as np
import pandas as pd

from hinge_validation.data_model import (
    Dataset,
    DatasetShape,
    GroupParameters,
    HyperParameters,
    Observation,
    dataset_from_frame,
    dataset_from_records,
    index_group_labels,
    make_serializable,
    save_dataset,
    save_json,
)
from hinge_validation.errors import ConfigurationError


class TestHyperParameters:

    def test_validate_accepts_positive(self, hyperparameters):
        hyperparameters.validate()

    def test_zero_scale(self, hyperparameters):
        degenerate = HyperParameters(**{**hyperparameters.to_dict(), "sigma_slope": 0.0})
        with pytest.raises(ConfigurationError):
            degenerate.validate()
        degenerate.validate(allow_degenerate=True)

    def test_non_finite(self, hyperparameters):
        bad = HyperParameters(**{**hyperparameters.to_dict(), "mu_intercept": float("inf")})
        with pytest.raises(ConfigurationError):
            bad.validate()

    def test_dict_round_trip(self, hyperparameters):
        assert HyperParameters.from_dict(hyperparameters.to_dict()) == hyperparameters

    def test_from_dict_missing(self):
        with pytest.raises(ConfigurationError):
            HyperParameters.from_dict({"mu_intercept": 1.0})

    def test_frozen(self, hyperparameters):
        with pytest.raises(AttributeError):
            hyperparameters.mu_slope = 3.0


class TestGroupParameters:

    def test_pairs(self, group_parameters):
        assert len(group_parameters) == 3
        assert group_parameters[1] == (95.0, 0.6)
        assert list(group_parameters)[2] == (100.0, 0.5)

    def test_read_only(self, group_parameters):
        with pytest.raises(ValueError):
            group_parameters.intercepts[0] = 0.0

    def test_copy_on_construction(self):
        intercepts = np.array([1.0, 2.0])
        params = GroupParameters(intercepts=intercepts, slopes=np.array([0.1, 0.2]))
        intercepts[0] = 99.0
        assert params.intercepts[0] == 1.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            GroupParameters(intercepts=np.array([1.0, 2.0]), slopes=np.array([0.1]))


class TestDataset:

    def test_transformed_derived(self, small_dataset):
        np.testing.assert_array_equal(
            small_dataset.predictor_transformed, small_dataset.predictor_raw - 2000.0
        )

    def test_len_and_iteration(self, small_dataset):
        assert len(small_dataset) == 8
        first = next(iter(small_dataset))
        assert first == Observation(0, 2018.0, 18.0, 110.0)
        assert len(small_dataset.observations) == 8

    def test_group_sizes(self, small_dataset):
        np.testing.assert_array_equal(small_dataset.group_sizes(), [3, 1, 4])

    def test_responses_by_group(self, small_dataset):
        groups = small_dataset.responses_by_group()
        np.testing.assert_array_equal(groups[1], [95.0])

    def test_group_id_out_of_range(self):
        with pytest.raises(ValueError, match="group ids"):
            Dataset(
                group_ids=np.array([0, 3]),
                predictor_raw=np.array([1.0, 2.0]),
                response=np.array([1.0, 2.0]),
                group_count=3,
                changepoint=0.0,
            )

    def test_negative_group_id(self):
        with pytest.raises(ValueError):
            Dataset(
                group_ids=np.array([-1]),
                predictor_raw=np.array([1.0]),
                response=np.array([1.0]),
                group_count=1,
                changepoint=0.0,
            )

    def test_inconsistent_transform(self):
        with pytest.raises(ValueError, match="inconsistent"):
            Dataset(
                group_ids=np.array([0, 0]),
                predictor_raw=np.array([2001.0, 2002.0]),
                response=np.array([1.0, 2.0]),
                group_count=1,
                changepoint=2000.0,
                predictor_transformed=np.array([1.0, 3.0]),
            )

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            Dataset(
                group_ids=np.array([0, 0]),
                predictor_raw=np.array([1.0]),
                response=np.array([1.0, 2.0]),
                group_count=1,
                changepoint=0.0,
            )

    def test_arrays_read_only(self, small_dataset):
        with pytest.raises(ValueError):
            small_dataset.response[0] = 0.0

    def test_with_responses_is_new_instance(self, small_dataset):
        updated = small_dataset.with_responses(np.zeros(8))
        assert updated is not small_dataset
        assert small_dataset.response[0] == 110.0
        np.testing.assert_array_equal(updated.predictor_raw, small_dataset.predictor_raw)

    def test_to_frame(self, small_dataset):
        frame = small_dataset.to_frame()
        assert list(frame.columns) == ["group_id", "predictor_raw", "predictor_transformed", "response"]
        assert len(frame) == 8


class TestDatasetShape:

    def test_from_dataset(self, small_dataset):
        shape = small_dataset.shape()
        assert shape.group_count == 3
        assert shape.changepoint == 2000.0
        np.testing.assert_array_equal(shape.group_sizes, [3, 1, 4])
        assert shape.n_observations == 8
        np.testing.assert_array_equal(shape.predictors[2], [2017, 2018, 2019, 2020])

    def test_round_trip_design(self, small_dataset):
        shape = small_dataset.shape()
        np.testing.assert_array_equal(shape.group_ids(), small_dataset.group_ids)
        np.testing.assert_array_equal(shape.predictor_raw(), small_dataset.predictor_raw)

    def test_group_count_mismatch(self):
        with pytest.raises(ValueError):
            DatasetShape(group_count=2, changepoint=0.0, predictors=(np.array([1.0]),))


class TestIngestion:

    @pytest.fixture
    def records(self):
        return [
            {"group_label": "north", "predictor_raw": 2020, "response": 3.0},
            {"group_label": "east", "predictor_raw": 2019, "response": 1.0},
            {"group_label": "north", "predictor_raw": 2019, "response": 2.0},
            {"group_label": "east", "predictor_raw": 2020, "response": 4.0},
            {"group_label": "west", "predictor_raw": 2020, "response": 5.0},
        ]

    def test_index_group_labels_sorted(self):
        assert index_group_labels(["b", "a", "c", "a"]) == {"a": 0, "b": 1, "c": 2}

    def test_index_group_labels_mixed_types(self):
        mapping = index_group_labels([2, "a", 1])
        assert sorted(mapping.values()) == [0, 1, 2]

    def test_from_records(self, records):
        dataset, mapping = dataset_from_records(records, changepoint=2000.0)
        assert mapping == {"east": 0, "north": 1, "west": 2}
        assert dataset.group_count == 3
        np.testing.assert_array_equal(dataset.group_ids, [0, 0, 1, 1, 2])
        np.testing.assert_array_equal(dataset.response, [1.0, 4.0, 2.0, 3.0, 5.0])
        np.testing.assert_array_equal(dataset.predictor_transformed, [19, 20, 19, 20, 20])

    def test_mapping_independent_of_record_order(self, records):
        _, a = dataset_from_records(records, changepoint=2000.0)
        _, b = dataset_from_records(list(reversed(records)), changepoint=2000.0)
        assert a == b

    def test_existing_mapping(self, records):
        mapping = {"east": 2, "north": 1, "west": 0}
        dataset, returned = dataset_from_records(records, 2000.0, group_mapping=mapping)
        assert returned == mapping
        assert dataset.group_ids[0] == 0

    def test_label_not_in_mapping(self, records):
        with pytest.raises(ValueError, match="west"):
            dataset_from_records(records, 2000.0, group_mapping={"east": 0, "north": 1})

    def test_empty(self):
        with pytest.raises(ValueError):
            dataset_from_records([], 2000.0)

    def test_from_frame(self):
        frame = pd.DataFrame({
            "group": ["a", "a", "b", None],
            "predictor": [2001, 2002, 2002, 2003],
            "response": [1.0, 2.0, 3.0, 4.0],
        })
        dataset, mapping = dataset_from_frame(frame, changepoint=2000.0)
        assert len(dataset) == 3
        assert mapping == {"a": 0, "b": 1}

    def test_from_frame_missing_column(self):
        frame = pd.DataFrame({"group": ["a"], "predictor": [1.0]})
        with pytest.raises(ValueError, match="response"):
            dataset_from_frame(frame, changepoint=0.0)


class TestSaving:

    def test_make_serializable(self):
        payload = {"a": np.float64(1.5), "b": np.array([1, 2]), "c": float("nan"), 3: np.bool_(True)}
        assert make_serializable(payload) == {"a": 1.5, "b": [1, 2], "c": None, "3": True}

    def test_save_json(self, tmp_path):
        path = save_json({"x": np.arange(3)}, tmp_path / "nested" / "out.json")
        with open(path) as f:
            assert json.load(f) == {"x": [0, 1, 2]}

    def test_save_dataset(self, tmp_path, small_dataset):
        path = save_dataset(small_dataset, tmp_path / "data.csv")
        frame = pd.read_csv(path)
        assert len(frame) == 8
        assert frame["group_id"].tolist() == [0, 0, 0, 1, 2, 2, 2, 2]
