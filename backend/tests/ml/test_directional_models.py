"""
Tests for the directional model families (logistic regression and XGBoost).
"""

import numpy as np
import pytest

from cryptoadvisor.ml.models import MODEL_FAMILIES, LogRegModel, XGBoostModel
from cryptoadvisor.ml.models.base import as_training_arrays
from cryptoadvisor.utils.errors import ModelArtifactError, ModelTrainingError


FEATURES = ["f0", "f1", "f2", "f3"]


def _dataset(n=600, seed=3):
    rng = np.random.default_rng(seed)
    X = rng.normal(0.0, 1.0, size=(n, len(FEATURES)))
    y = (X[:, 0] + 0.5 * X[:, 1] > 0).astype(float)
    return X.tolist(), y.tolist()


FAST_OPTIONS = {
    LogRegModel: {},
    XGBoostModel: {"rounds": 40},
}


@pytest.fixture(params=[LogRegModel, XGBoostModel], ids=["logreg", "xgboost"])
def family(request):
    return request.param


@pytest.fixture
def trained(family):
    samples, labels = _dataset()
    return family.train(samples, labels, FEATURES, FAST_OPTIONS[family])


class TestModelFamilies:
    def test_registry_maps_keys_to_families(self):
        assert MODEL_FAMILIES == {"logreg": LogRegModel, "xgboost": XGBoostModel}

    def test_learns_direction(self, trained):
        up = trained.predict_prob([2.0, 1.0, 0.0, 0.0])
        down = trained.predict_prob([-2.0, -1.0, 0.0, 0.0])
        assert 0.0 <= down < 0.5 < up <= 1.0

    def test_round_trip_preserves_predictions(self, family, trained):
        restored = family.unmarshal_binary(trained.marshal_binary())
        probes = [[0.3, -0.2, 1.0, 0.0], [-1.5, 0.4, 0.0, 2.0]]
        for probe in probes:
            assert restored.predict_prob(probe) == pytest.approx(trained.predict_prob(probe), abs=1e-6)

    def test_batch_matches_single(self, trained):
        probes = [[0.3, -0.2, 1.0, 0.0], [-1.5, 0.4, 0.0, 2.0]]
        assert trained.predict_batch(probes) == pytest.approx(
            [trained.predict_prob(p) for p in probes], abs=1e-6
        )
        assert trained.predict_batch([]) == []

    def test_dimension_mismatch_is_neutral(self, trained):
        assert trained.predict_prob([1.0, 2.0]) == 0.5

    def test_hyperparameters_merge_defaults(self, family):
        params = family.hyperparameters({"extra": 1})
        assert params["extra"] == 1
        for key in family.default_options():
            assert key in params

    def test_rejects_single_class(self, family):
        samples, _ = _dataset(n=50)
        with pytest.raises(ModelTrainingError):
            family.train(samples, [1.0] * 50, FEATURES)

    def test_rejects_empty_artifact(self, family):
        with pytest.raises(ModelArtifactError):
            family.unmarshal_binary(b"")

    def test_rejects_garbage_artifact(self, family):
        with pytest.raises(ModelArtifactError):
            family.unmarshal_binary(b"not a model")


class TestLogRegArtifact:
    def test_rejects_parameter_length_mismatch(self):
        samples, labels = _dataset(n=200)
        model = LogRegModel.train(samples, labels, FEATURES)
        model.scales = model.scales[:-1]
        with pytest.raises(ModelArtifactError):
            LogRegModel.unmarshal_binary(model.marshal_binary())


class TestTrainingArrays:
    def test_binarizes_labels(self):
        X, y = as_training_arrays([[1.0], [2.0], [3.0]], [0.2, 0.7, 1.0])
        assert X.shape == (3, 1)
        assert y.tolist() == [0, 1, 1]

    def test_rejects_length_mismatch(self):
        with pytest.raises(ModelTrainingError):
            as_training_arrays([[1.0], [2.0]], [1.0])

    def test_rejects_empty(self):
        with pytest.raises(ModelTrainingError):
            as_training_arrays([], [])
