"""
Assessment of trained estimators on held-out parameter/data pairs.

``estimate`` is the single-dataset forward evaluation. ``assess`` applies an
estimator to every (parameter, dataset) pair of a test set and returns an
Assessment, a sequence of AssessmentRecords with summary statistics (bias,
RMSE, risk) across the parameter space. None of these functions modify the
estimator.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
import copy
import torch
import torch.nn as nn
from torch import Tensor

from .data import DatasetCollection, ParameterSet, as_collection, as_float_tensor
from .estimator import TrainedEstimator
from .exceptions import CardinalityMismatchError, ShapeMismatchError
from .training.losses import get_loss
from .training.utils import compute_metrics, default_param_names


@dataclass(frozen=True, eq=False)
class AssessmentRecord:
    """
    True and estimated parameter vectors for one test dataset.

    Attributes:
        theta: True parameter vector, shape (p,)
        estimate: Estimated parameter vector, shape (p,)
        dataset_id: Index of the source dataset in the test collection
        m: Number of replicates in the source dataset
    """

    theta: Tensor
    estimate: Tensor
    dataset_id: int
    m: int


class Assessment(Sequence):
    """Sequence of AssessmentRecords with per-parameter summaries."""

    def __init__(self, records: List[AssessmentRecord], param_names: Optional[List[str]] = None):
        self.records = list(records)
        if param_names is None and self.records:
            param_names = default_param_names(self.records[0].theta.numel())
        self.param_names = list(param_names) if param_names is not None else []

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, idx):
        return self.records[idx]

    def thetas(self) -> Tensor:
        """True parameters, shape (n, p)."""
        return torch.stack([r.theta for r in self.records], dim=0)

    def estimates(self) -> Tensor:
        """Estimated parameters, shape (n, p)."""
        return torch.stack([r.estimate for r in self.records], dim=0)

    def _per_param(self, values: Tensor) -> Dict[str, float]:
        return {name: values[i].item() for i, name in enumerate(self.param_names)}

    def bias(self) -> Dict[str, float]:
        return self._per_param((self.estimates() - self.thetas()).mean(dim=0))

    def mae(self) -> Dict[str, float]:
        return self._per_param((self.estimates() - self.thetas()).abs().mean(dim=0))

    def rmse(self) -> Dict[str, float]:
        return self._per_param(((self.estimates() - self.thetas()) ** 2).mean(dim=0).sqrt())

    def risk(self, loss: Union[str, Callable] = "absolute") -> float:
        """Empirical risk of the estimates under ``loss``."""
        return float(get_loss(loss)(self.estimates(), self.thetas()))

    def metrics(self) -> Dict[str, float]:
        return compute_metrics(self.estimates(), self.thetas(), self.param_names)

    def empirical_mean(self) -> Tensor:
        """Mean estimate, shape (p,). Meaningful when all records share one theta."""
        return self.estimates().mean(dim=0)

    def empirical_std(self) -> Tensor:
        """Standard deviation of the estimates, shape (p,)."""
        return self.estimates().std(dim=0)

    def __repr__(self) -> str:
        return f"Assessment(n={len(self)}, params={self.param_names})"


def inference_network(estimator) -> nn.Module:
    """
    Network to evaluate for ``estimator`` without touching its state.

    A module left in training mode is copied and switched to evaluation
    mode on the copy.
    """
    if isinstance(estimator, TrainedEstimator):
        return estimator.network
    if estimator.training:
        return copy.deepcopy(estimator).eval()
    return estimator


def network_device(network: nn.Module) -> torch.device:
    try:
        return next(network.parameters()).device
    except StopIteration:
        return torch.device("cpu")


def check_replicate_shape(network: nn.Module, feature_shape) -> None:
    expected = getattr(network, "input_shape", None)
    if expected is not None and tuple(feature_shape) != tuple(expected):
        raise ShapeMismatchError(
            f"Replicate shape {tuple(feature_shape)} does not match the estimator "
            f"input shape {tuple(expected)}"
        )


def estimate(estimator, Z) -> Tensor:
    """
    Apply an estimator to a single dataset.

    Args:
        estimator: TrainedEstimator or network
        Z: One dataset of shape (m, *input_shape)

    Returns:
        Estimated parameter vector, shape (p,)

    Raises:
        ShapeMismatchError: If the replicate shape differs from the
            estimator's input shape.
    """
    network = inference_network(estimator)
    Z = as_float_tensor(Z)
    if Z.dim() < 2:
        raise ShapeMismatchError(f"Expected a dataset of shape (m, ...), got {tuple(Z.shape)}")
    check_replicate_shape(network, Z.shape[1:])

    with torch.no_grad():
        out = network(Z.unsqueeze(0).to(network_device(network)))
    return out[0].cpu()


def estimate_collection(estimator, Z, batch_size: int = 256) -> Tensor:
    """
    Apply an estimator to every dataset of a collection.

    Args:
        estimator: TrainedEstimator or network
        Z: DatasetCollection (or dense array / list of datasets)
        batch_size: Datasets evaluated per forward pass

    Returns:
        Estimates of shape (K, p)
    """
    network = inference_network(estimator)
    Z = as_collection(Z)
    check_replicate_shape(network, Z.feature_shape)
    device = network_device(network)

    outputs = []
    with torch.no_grad():
        for start in range(0, len(Z), batch_size):
            stop = min(start + batch_size, len(Z))
            if Z.is_uniform:
                batch = Z.stack()[start:stop].to(device)
            else:
                batch = [Z[i].to(device) for i in range(start, stop)]
            outputs.append(network(batch).cpu())
    return torch.cat(outputs, dim=0)


def assess(
    estimator,
    theta,
    Z,
    batch_size: int = 256,
    param_names: Optional[List[str]] = None,
) -> Assessment:
    """
    Assess an estimator on test parameters and datasets.

    Two cases are supported:
    - many configurations: theta has K rows, aligned with the K datasets of Z;
    - single configuration: theta has one row and Z holds J datasets all
      simulated under it (used to study the sampling distribution).

    Args:
        estimator: TrainedEstimator or network
        theta: ParameterSet (or array) of true parameters
        Z: DatasetCollection (or dense array / list of datasets)
        batch_size: Datasets evaluated per forward pass
        param_names: Parameter names for summaries

    Returns:
        Assessment with one record per dataset

    Raises:
        CardinalityMismatchError: If theta and Z cannot be aligned.
        ShapeMismatchError: If data or parameters do not fit the estimator.
    """
    theta = theta if isinstance(theta, ParameterSet) else ParameterSet(theta)
    Z = as_collection(Z)

    if len(theta) == 1 and len(Z) > 1:
        theta = theta.repeat(len(Z))
    if len(theta) != len(Z):
        raise CardinalityMismatchError(
            f"{len(theta)} parameter vectors but {len(Z)} datasets"
        )

    num_params = getattr(estimator, "num_params", None)
    if num_params is not None and theta.num_params != num_params:
        raise ShapeMismatchError(
            f"Parameter vectors have length {theta.num_params} but the estimator "
            f"outputs {num_params} values"
        )

    estimates = estimate_collection(estimator, Z, batch_size=batch_size)
    records = [
        AssessmentRecord(theta=theta[i], estimate=estimates[i], dataset_id=i, m=m)
        for i, m in enumerate(Z.replicate_counts)
    ]

    if param_names is None:
        param_names = getattr(estimator, "param_names", None) or theta.names
    return Assessment(records, param_names)
