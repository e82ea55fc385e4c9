"""
Tests for the isolation-forest anomaly model.

Covers:
- Outliers score above inliers
- Artifact round-trip reproduces scores
- Dimension mismatch / uninitialized model scoring
- Artifact validation on load
"""

import json
from datetime import datetime

import numpy as np
import pytest

from cryptoadvisor.ml.models.iforest import IsolationForestModel, average_path_length
from cryptoadvisor.utils.errors import ModelArtifactError, ModelTrainingError


FEATURES = ["a", "b", "c"]


@pytest.fixture(scope="module")
def trained_model():
    rng = np.random.default_rng(42)
    samples = rng.normal(0.0, 1.0, size=(500, 3)).tolist()
    return IsolationForestModel.train(
        samples,
        FEATURES,
        model_key="iforest_1h",
        interval="1h",
        trained_from=datetime(2026, 1, 1),
        trained_to=datetime(2026, 2, 1),
        num_trees=100,
        sample_size=128,
    )


class TestAveragePathLength:
    def test_small_sizes(self):
        assert average_path_length(0) == 0.0
        assert average_path_length(1) == 0.0
        assert average_path_length(2) == 1.0

    def test_grows_with_sample_size(self):
        assert average_path_length(256) > average_path_length(16) > 1.0


class TestIsolationForestModel:
    def test_outlier_scores_higher_than_inlier(self, trained_model):
        inlier = trained_model.predict_score([0.0, 0.0, 0.0])
        outlier = trained_model.predict_score([8.0, -8.0, 8.0])
        assert 0.0 <= inlier <= 1.0
        assert 0.0 <= outlier <= 1.0
        assert outlier > inlier

    def test_round_trip_reproduces_scores(self, trained_model):
        restored = IsolationForestModel.unmarshal_binary(trained_model.marshal_binary())

        probes = [[0.0, 0.0, 0.0], [1.5, -0.3, 0.2], [8.0, -8.0, 8.0]]
        for probe in probes:
            assert restored.predict_score(probe) == pytest.approx(trained_model.predict_score(probe), abs=1e-9)

        assert restored.model_key == "iforest_1h"
        assert restored.interval == "1h"
        assert restored.feature_names == FEATURES
        assert restored.trained_to == datetime(2026, 2, 1)

    def test_predict_batch_matches_single_scores(self, trained_model):
        probes = [[0.0, 0.0, 0.0], [3.0, 3.0, 3.0]]
        batch = trained_model.predict_batch(probes)
        assert batch == pytest.approx([trained_model.predict_score(p) for p in probes], abs=1e-12)

    def test_dimension_mismatch_scores_zero(self, trained_model):
        assert trained_model.predict_score([1.0, 2.0]) == 0.0

    def test_artifact_layout(self, trained_model):
        artifact = json.loads(trained_model.marshal_binary())
        for key in ("model_key", "interval", "feature_names", "means", "stds", "options", "trees", "trained_from", "trained_to"):
            assert key in artifact
        assert len(artifact["means"]) == len(artifact["stds"]) == 3
        assert len(artifact["trees"]) == 100
        assert artifact["options"]["detection_type"] == "threshold"
        assert artifact["options"]["sample_size"] == 128

    def test_constant_feature_gets_unit_std(self):
        samples = [[1.0, float(i % 7)] for i in range(50)]
        model = IsolationForestModel.train(
            samples, ["const", "x"], "iforest_1h", "1h", datetime(2026, 1, 1), datetime(2026, 1, 2),
            num_trees=10, sample_size=32,
        )
        assert model.stds[0] == 1.0
        assert 0.0 <= model.predict_score([1.0, 3.0]) <= 1.0


class TestTrainingValidation:
    def test_rejects_empty_dataset(self):
        with pytest.raises(ModelTrainingError):
            IsolationForestModel.train([], FEATURES, "iforest_1h", "1h", datetime(2026, 1, 1), datetime(2026, 1, 2))

    def test_rejects_zero_width_vectors(self):
        with pytest.raises(ModelTrainingError):
            IsolationForestModel.train([[], []], FEATURES, "iforest_1h", "1h", datetime(2026, 1, 1), datetime(2026, 1, 2))


class TestArtifactValidation:
    def _artifact(self, trained_model):
        return json.loads(trained_model.marshal_binary())

    def test_rejects_empty_means(self, trained_model):
        artifact = self._artifact(trained_model)
        artifact["means"] = []
        artifact["stds"] = []
        with pytest.raises(ModelArtifactError):
            IsolationForestModel.unmarshal_binary(json.dumps(artifact).encode())

    def test_rejects_mismatched_stds(self, trained_model):
        artifact = self._artifact(trained_model)
        artifact["stds"] = artifact["stds"][:-1]
        with pytest.raises(ModelArtifactError):
            IsolationForestModel.unmarshal_binary(json.dumps(artifact).encode())

    def test_rejects_empty_trees(self, trained_model):
        artifact = self._artifact(trained_model)
        artifact["trees"] = []
        with pytest.raises(ModelArtifactError):
            IsolationForestModel.unmarshal_binary(json.dumps(artifact).encode())

    def test_rejects_malformed_json(self):
        with pytest.raises(ModelArtifactError):
            IsolationForestModel.unmarshal_binary(b"{not json")

    def test_uninitialized_model_scores_zero(self):
        model = IsolationForestModel("iforest_1h", "1h", [], [], [], {}, [], None, None)
        assert model.predict_score([0.0, 0.0, 0.0]) == 0.0
