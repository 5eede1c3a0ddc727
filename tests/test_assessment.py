"""Tests for estimation and assessment of trained estimators."""

import numpy as np
import pytest
import torch

from nbe.assessment import Assessment, AssessmentRecord, assess, estimate, estimate_collection
from nbe.data import DatasetCollection, ParameterSet
from nbe.estimator import TrainedEstimator
from nbe.exceptions import CardinalityMismatchError, ShapeMismatchError


class TestEstimate:
    """Tests for single-dataset and collection estimation."""

    def test_single_dataset(self, sample_mean_model):
        Z = torch.tensor([[1.0], [2.0], [6.0]])
        theta_hat = estimate(sample_mean_model, Z)
        assert theta_hat.shape == (1,)
        assert theta_hat.item() == pytest.approx(3.0)

    def test_trained_estimator(self, sample_mean_model):
        Z = np.array([[1.0], [3.0]])
        assert estimate(TrainedEstimator(sample_mean_model), Z).item() == pytest.approx(2.0)

    def test_wrong_replicate_shape(self, sample_mean_model):
        with pytest.raises(ShapeMismatchError):
            estimate(sample_mean_model, torch.randn(5, 2))

    def test_missing_replicate_axis(self, sample_mean_model):
        with pytest.raises(ShapeMismatchError):
            estimate(sample_mean_model, torch.randn(5))

    def test_collection_batches(self, sample_mean_model):
        Z = DatasetCollection.from_tensor(torch.randn(10, 4, 1))
        out = estimate_collection(sample_mean_model, Z, batch_size=3)
        assert out.shape == (10, 1)
        assert torch.allclose(out, Z.stack().mean(dim=1), atol=1e-6)

    def test_ragged_collection(self, sample_mean_model):
        Z = DatasetCollection([torch.randn(m, 1) for m in (2, 9, 4)])
        out = estimate_collection(sample_mean_model, Z)
        expected = torch.stack([z.mean(dim=0) for z in Z])
        assert torch.allclose(out, expected, atol=1e-6)

    def test_training_mode_left_untouched(self, small_model):
        small_model.train()
        estimate(small_model, torch.randn(10, 1))
        assert small_model.training


class TestAssess:
    """Tests for assess and Assessment summaries."""

    @pytest.fixture
    def known_data(self):
        # Sample means 1, 2, 3, 4 for true values 0, 2, 2, 4
        Z = DatasetCollection.from_tensor(
            torch.tensor([[[0.0], [2.0]], [[1.0], [3.0]], [[2.0], [4.0]], [[3.0], [5.0]]])
        )
        theta = ParameterSet([[0.0], [2.0], [2.0], [4.0]], names=["mu"])
        return theta, Z

    def test_records(self, sample_mean_model, known_data):
        theta, Z = known_data
        result = assess(sample_mean_model, theta, Z)
        assert isinstance(result, Assessment)
        assert len(result) == 4
        record = result[2]
        assert isinstance(record, AssessmentRecord)
        assert record.dataset_id == 2
        assert record.m == 2
        assert record.estimate.item() == pytest.approx(3.0)
        assert record.theta.item() == pytest.approx(2.0)

    def test_summaries(self, sample_mean_model, known_data):
        theta, Z = known_data
        result = assess(sample_mean_model, theta, Z)
        # Errors: 1, 0, 1, 0
        assert result.param_names == ["mu"]
        assert result.bias()["mu"] == pytest.approx(0.5)
        assert result.mae()["mu"] == pytest.approx(0.5)
        assert result.rmse()["mu"] == pytest.approx(np.sqrt(0.5))
        assert result.risk("absolute") == pytest.approx(0.5)
        assert result.risk("squared") == pytest.approx(0.5)
        assert result.metrics()["mu_bias"] == pytest.approx(0.5)

    def test_single_configuration(self, sample_mean_model, known_sigma_simulator, rng):
        theta = ParameterSet([0.7], names=["mu"])
        Z = known_sigma_simulator.simulate(theta.repeat(200), 25, rng)
        result = assess(sample_mean_model, theta, Z)
        assert len(result) == 200
        assert torch.all(result.thetas() == theta.values[0])
        assert result.empirical_mean().item() == pytest.approx(0.7, abs=0.05)
        assert result.empirical_std().item() == pytest.approx(0.2, abs=0.05)

    def test_cardinality_mismatch(self, sample_mean_model):
        theta = ParameterSet(np.zeros((3, 1)))
        Z = DatasetCollection.from_tensor(torch.randn(5, 4, 1))
        with pytest.raises(CardinalityMismatchError):
            assess(sample_mean_model, theta, Z)

    def test_parameter_count_mismatch(self, sample_mean_model):
        theta = ParameterSet(np.zeros((5, 2)))
        Z = DatasetCollection.from_tensor(torch.randn(5, 4, 1))
        with pytest.raises(ShapeMismatchError):
            assess(sample_mean_model, theta, Z)

    def test_estimator_param_names(self, sample_mean_model, known_data):
        theta, Z = known_data
        estimator = TrainedEstimator(sample_mean_model, param_names=["location"])
        assert assess(estimator, theta, Z).param_names == ["location"]
