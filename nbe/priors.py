"""Prior distributions for Neural Bayes Estimator training.

All samplers take an explicit ``numpy.random.Generator`` (or a seed) so that
parameter draws are reproducible and never touch global random state.
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

from .data import ParameterSet
from .exceptions import CardinalityMismatchError

RNGLike = Union[np.random.Generator, int, None]


def as_generator(rng: RNGLike = None) -> np.random.Generator:
    """Return ``rng`` if it is already a Generator, else seed a new one."""
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


class Prior(ABC):
    """Abstract base class for univariate prior distributions."""

    @abstractmethod
    def sample(self, n: int, rng: RNGLike = None) -> np.ndarray:
        """Sample n values from the prior."""
        pass


class UniformPrior(Prior):
    """Uniform prior on [low, high]."""

    def __init__(self, low: float, high: float):
        if high <= low:
            raise ValueError(f"UniformPrior requires low < high, got ({low}, {high})")
        self.low = low
        self.high = high

    def sample(self, n: int, rng: RNGLike = None) -> np.ndarray:
        return as_generator(rng).uniform(self.low, self.high, size=n)


class LogUniformPrior(Prior):
    """Log-uniform (Jeffreys) prior: log(x) ~ Uniform(log(low), log(high))."""

    def __init__(self, low: float, high: float):
        if not 0 < low < high:
            raise ValueError(f"LogUniformPrior requires 0 < low < high, got ({low}, {high})")
        self.log_low = np.log(low)
        self.log_high = np.log(high)

    def sample(self, n: int, rng: RNGLike = None) -> np.ndarray:
        log_samples = as_generator(rng).uniform(self.log_low, self.log_high, size=n)
        return np.exp(log_samples)


class NormalPrior(Prior):
    """Normal prior, optionally clipped to [low, high]."""

    def __init__(
        self, mean: float, std: float, low: float = None, high: float = None
    ):
        self.mean = mean
        self.std = std
        self.low = low
        self.high = high

    def sample(self, n: int, rng: RNGLike = None) -> np.ndarray:
        samples = as_generator(rng).normal(self.mean, self.std, size=n)
        if self.low is not None:
            samples = np.maximum(samples, self.low)
        if self.high is not None:
            samples = np.minimum(samples, self.high)
        return samples


class GammaPrior(Prior):
    """Gamma prior with shape k and scale s (mean k * s)."""

    def __init__(self, shape: float, scale: float = 1.0):
        if shape <= 0 or scale <= 0:
            raise ValueError("GammaPrior requires positive shape and scale")
        self.shape = shape
        self.scale = scale

    def sample(self, n: int, rng: RNGLike = None) -> np.ndarray:
        return as_generator(rng).gamma(self.shape, self.scale, size=n)


class JointPrior:
    """
    Product of independent univariate priors, one per parameter.

    Implements the parameter sampler interface ``sample(K, rng) -> ParameterSet``.
    Parameter order follows the insertion order of ``priors``.

    Example:
        >>> prior = JointPrior({"mu": NormalPrior(0, 1), "sigma": GammaPrior(1, 1)})
        >>> theta = prior.sample(1000, rng=np.random.default_rng(0))
        >>> theta.values.shape
        torch.Size([1000, 2])
    """

    def __init__(self, priors: Dict[str, Prior]):
        if not priors:
            raise ValueError("JointPrior needs at least one marginal prior")
        self.priors = dict(priors)

    @property
    def param_names(self):
        return list(self.priors)

    @property
    def num_params(self) -> int:
        return len(self.priors)

    def sample(self, K: int, rng: RNGLike = None) -> ParameterSet:
        rng = as_generator(rng)
        columns = [prior.sample(K, rng) for prior in self.priors.values()]
        return ParameterSet(np.stack(columns, axis=1), names=self.param_names)


def sample_parameters(sampler, K: int, rng: Optional[np.random.Generator] = None) -> ParameterSet:
    """Draw K parameter vectors from a sampler object or plain callable."""
    draw = getattr(sampler, "sample", sampler)
    theta = draw(K, rng)
    if not isinstance(theta, ParameterSet):
        theta = ParameterSet(theta)
    if len(theta) != K:
        raise CardinalityMismatchError(
            f"Sampler returned {len(theta)} parameter vectors, expected {K}"
        )
    return theta
