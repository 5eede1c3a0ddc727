"""Data simulators: the interface consumed by the assembler and a reference model."""

from abc import ABC, abstractmethod
from typing import Tuple

import numpy as np

from .data import DatasetCollection, ParameterSet
from .priors import RNGLike, as_generator


class Simulator(ABC):
    """
    Abstract base class for data simulators.

    A simulator returns exactly one dataset of m replicates per parameter
    vector. Randomness comes only from the generator passed in.
    """

    @property
    @abstractmethod
    def feature_shape(self) -> Tuple[int, ...]:
        """Shape of a single replicate."""
        pass

    @abstractmethod
    def simulate(self, theta: ParameterSet, m: int, rng: RNGLike = None) -> DatasetCollection:
        """
        Simulate m replicates under each parameter vector.

        Args:
            theta: ParameterSet of size K
            m: Number of replicates per dataset
            rng: numpy Generator or seed

        Returns:
            DatasetCollection of size K
        """
        pass

    def __call__(self, theta: ParameterSet, m: int, rng: RNGLike = None) -> DatasetCollection:
        return self.simulate(theta, m, rng)


class GaussianSimulator(Simulator):
    """
    i.i.d. Gaussian replicates: Z_1, ..., Z_m ~ N(mu, sigma^2).

    Parameter vectors are (mu, sigma). When ``sigma`` is given at
    construction the model has the single parameter mu and sigma is fixed.
    Each replicate is a 1-vector, so datasets have shape (m, 1).

    Args:
        sigma: Optional known standard deviation
    """

    def __init__(self, sigma: float = None):
        self.sigma = sigma

    @property
    def feature_shape(self) -> Tuple[int, ...]:
        return (1,)

    @property
    def num_params(self) -> int:
        return 1 if self.sigma is not None else 2

    def simulate(self, theta: ParameterSet, m: int, rng: RNGLike = None) -> DatasetCollection:
        rng = as_generator(rng)
        values = theta.values.numpy().astype(np.float64)
        if values.shape[1] != self.num_params:
            raise ValueError(
                f"GaussianSimulator expects {self.num_params} parameter(s), "
                f"got {values.shape[1]}"
            )

        K = values.shape[0]
        # Reshape params for broadcasting: (K, 1)
        mu = values[:, 0].reshape(-1, 1)
        sigma = self.sigma if self.sigma is not None else values[:, 1].reshape(-1, 1)

        z = mu + sigma * rng.standard_normal(size=(K, m))
        return DatasetCollection.from_tensor(z[:, :, np.newaxis])
