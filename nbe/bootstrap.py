"""
Bootstrap uncertainty quantification for trained estimators.

Non-parametric bootstrap: resample the m replicates of one observed dataset
with replacement J times and apply the estimator to every resample. This
needs neither the likelihood nor further simulation from the model.

Parametric bootstrap: simulate J datasets at a point estimate and apply the
estimator to each. This needs the simulator, but still no likelihood.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple, Union
import warnings
import numpy as np
import torch
from torch import Tensor

from .assessment import check_replicate_shape, estimate_collection, inference_network, network_device
from .data import ParameterSet, as_float_tensor, assemble
from .exceptions import CardinalityMismatchError, DegenerateBootstrapWarning, ShapeMismatchError
from .priors import RNGLike, as_generator

INTERVAL_METHODS = ("percentile", "basic")


class BootstrapDistribution:
    """
    J bootstrap estimates derived from one fixed dataset.

    Args:
        estimates: Tensor of shape (J, p)
        m: Replicate count of the source dataset
        param_names: Optional parameter names
    """

    def __init__(self, estimates: Tensor, m: int, param_names: Optional[List[str]] = None):
        self.estimates = estimates
        self.m = m
        self.param_names = list(param_names) if param_names is not None else None

    def __len__(self) -> int:
        return self.estimates.shape[0]

    def __getitem__(self, idx) -> Tensor:
        return self.estimates[idx]

    @property
    def num_params(self) -> int:
        return self.estimates.shape[1]

    def mean(self) -> Tensor:
        return self.estimates.mean(dim=0)

    def std(self) -> Tensor:
        return self.estimates.std(dim=0)

    def quantile(self, q: Union[float, Sequence[float]]) -> Tensor:
        q = torch.as_tensor(q, dtype=self.estimates.dtype)
        return torch.quantile(self.estimates, q, dim=0)

    def interval(
        self,
        level: float = 0.9,
        method: str = "percentile",
        estimate: Optional[Tensor] = None,
    ) -> Tensor:
        """
        Bootstrap confidence intervals for each parameter.

        Args:
            level: Nominal coverage, e.g. 0.9 for a 90% interval
            method: 'percentile' (quantiles of the bootstrap estimates) or
                    'basic' (reflected around the original estimate)
            estimate: Estimate from the original dataset; required for 'basic'

        Returns:
            Tensor of shape (p, 2) with lower and upper bounds
        """
        if not 0 < level < 1:
            raise ValueError(f"level must lie in (0, 1), got {level}")
        if method not in INTERVAL_METHODS:
            raise ValueError(f"Unknown interval method: {method}. Choose from {INTERVAL_METHODS}")

        alpha = 1.0 - level
        lower, upper = self.quantile([alpha / 2, 1 - alpha / 2])

        if method == "basic":
            if estimate is None:
                raise ValueError("The basic interval needs the original estimate")
            estimate = torch.as_tensor(estimate, dtype=self.estimates.dtype).reshape(-1)
            lower, upper = 2 * estimate - upper, 2 * estimate - lower

        return torch.stack([lower, upper], dim=1)

    def numpy(self) -> np.ndarray:
        return self.estimates.numpy()

    def __repr__(self) -> str:
        return f"BootstrapDistribution(J={len(self)}, p={self.num_params}, m={self.m})"


def bootstrap(
    estimator,
    Z,
    J: int,
    rng: RNGLike = None,
    batch_size: int = 256,
    num_workers: int = 0,
) -> BootstrapDistribution:
    """
    Non-parametric bootstrap of an estimator on a single dataset.

    All resampling indices are drawn up front from ``rng``, so the result
    does not depend on ``num_workers``.

    With m == 1 every resample equals the observed dataset, so all J
    estimates are identical; a DegenerateBootstrapWarning is issued.

    Args:
        estimator: TrainedEstimator or network
        Z: One dataset of shape (m, *input_shape)
        J: Number of bootstrap resamples
        rng: numpy Generator or seed
        batch_size: Resamples evaluated per forward pass
        num_workers: Threads used to evaluate chunks of resamples.
                     0 or 1 evaluates in the calling thread.

    Returns:
        BootstrapDistribution of size J

    Raises:
        ShapeMismatchError: If the replicate shape differs from the
            estimator's input shape.
    """
    if J < 1:
        raise ValueError(f"J must be a positive integer, got {J}")

    network = inference_network(estimator)
    Z = as_float_tensor(Z)
    if Z.dim() < 2 or Z.shape[0] == 0:
        raise ShapeMismatchError(f"Expected a dataset of shape (m, ...), got {tuple(Z.shape)}")
    check_replicate_shape(network, Z.shape[1:])

    m = Z.shape[0]
    if m == 1:
        warnings.warn(
            DegenerateBootstrapWarning(
                "Dataset has a single replicate: every bootstrap resample is identical "
                "and the bootstrap distribution has zero variance"
            ),
            stacklevel=2,
        )

    rng = as_generator(rng)
    indices = torch.from_numpy(rng.integers(0, m, size=(J, m)))
    device = network_device(network)

    def evaluate(chunk: Tuple[int, int]) -> Tensor:
        start, stop = chunk
        resamples = Z[indices[start:stop]]  # (n, m, *input_shape)
        with torch.no_grad():
            return network(resamples.to(device)).cpu()

    chunks = [(start, min(start + batch_size, J)) for start in range(0, J, batch_size)]
    if num_workers > 1:
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            results = list(pool.map(evaluate, chunks))
    else:
        results = [evaluate(chunk) for chunk in chunks]

    return BootstrapDistribution(
        torch.cat(results, dim=0), m, getattr(estimator, "param_names", None)
    )


def parametric_bootstrap(
    estimator,
    theta_hat,
    simulator,
    m: int,
    J: int,
    rng: RNGLike = None,
    batch_size: int = 256,
) -> BootstrapDistribution:
    """
    Parametric bootstrap: simulate J datasets at ``theta_hat`` and estimate each.

    Args:
        estimator: TrainedEstimator or network
        theta_hat: Point estimate, a single parameter vector
        simulator: Object with ``simulate(theta, m, rng)`` or callable
        m: Replicates per simulated dataset
        J: Number of bootstrap datasets
        rng: numpy Generator or seed

    Returns:
        BootstrapDistribution of size J
    """
    if J < 1:
        raise ValueError(f"J must be a positive integer, got {J}")
    if not isinstance(theta_hat, ParameterSet):
        theta_hat = ParameterSet(theta_hat)
    if len(theta_hat) != 1:
        raise CardinalityMismatchError(
            f"parametric_bootstrap needs one parameter vector, got {len(theta_hat)}"
        )

    expected_shape = getattr(inference_network(estimator), "input_shape", None)
    Z = assemble(theta_hat.repeat(J), simulator, m, as_generator(rng), expected_shape)
    estimates = estimate_collection(estimator, Z, batch_size=batch_size)
    return BootstrapDistribution(estimates, m, getattr(estimator, "param_names", None))


def interval_coverage(intervals: Tensor, theta) -> Tensor:
    """
    Fraction of intervals containing the true parameters.

    Args:
        intervals: Tensor of shape (n, p, 2), one interval per experiment
        theta: True parameters, shape (p,) or (n, p)

    Returns:
        Empirical coverage per parameter, shape (p,)
    """
    intervals = torch.as_tensor(intervals)
    theta = torch.as_tensor(theta, dtype=intervals.dtype)
    if theta.dim() == 1:
        theta = theta.unsqueeze(0)
    covered = (intervals[..., 0] <= theta) & (theta <= intervals[..., 1])
    return covered.float().mean(dim=0)
