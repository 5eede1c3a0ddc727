"""Pytest fixtures for nbe tests."""

import numpy as np
import pytest
import torch

from nbe.models import (
    ArchitectureConfig,
    DeepSetsNBE,
    LinearEstimator,
    MeanAggregation,
    MLPEncoder,
    build_estimator,
)
from nbe.priors import GammaPrior, JointPrior, NormalPrior
from nbe.simulator import GaussianSimulator
from nbe.training import TrainingConfig


@pytest.fixture
def seed():
    """Seed torch so that network initialisation is reproducible."""
    torch.manual_seed(42)
    return 42


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def gaussian_prior():
    """mu ~ N(0, 1), sigma ~ Gamma(1, 1)."""
    return JointPrior({"mu": NormalPrior(0.0, 1.0), "sigma": GammaPrior(1.0, 1.0)})


@pytest.fixture
def simulator():
    return GaussianSimulator()


@pytest.fixture
def known_sigma_simulator():
    return GaussianSimulator(sigma=1.0)


@pytest.fixture
def small_model(seed):
    """Small DeepSets estimator for (mu, sigma) with scalar replicates."""
    return build_estimator(
        ArchitectureConfig(
            input_shape=(1,),
            num_params=2,
            hidden_dim=16,
            encoder_layers=[16],
            phi_layers=[16],
        )
    )


@pytest.fixture
def sample_mean_model():
    """DeepSets network that returns the sample mean of scalar replicates exactly."""
    psi = MLPEncoder(input_shape=(1,), hidden_dim=1, hidden_layers=[])
    phi = LinearEstimator(input_dim=1, num_params=1)
    with torch.no_grad():
        psi.mlp[1].weight.fill_(1.0)
        psi.mlp[1].bias.zero_()
        phi.linear.weight.fill_(1.0)
        phi.linear.bias.zero_()
    return DeepSetsNBE(psi, MeanAggregation(), phi).eval()


@pytest.fixture
def quiet_config():
    """Short, silent training run."""
    return TrainingConfig(epochs=3, batch_size=32, verbose=False, seed=0)


@pytest.fixture
def gaussian_data(gaussian_prior, simulator, rng):
    """Training and validation sets of 256 / 64 datasets with m = 10."""
    theta_train = gaussian_prior.sample(256, rng)
    Z_train = simulator.simulate(theta_train, 10, rng)
    theta_val = gaussian_prior.sample(64, rng)
    Z_val = simulator.simulate(theta_val, 10, rng)
    return theta_train, Z_train, theta_val, Z_val
