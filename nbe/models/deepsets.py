"""
DeepSets Neural Bayes Estimator.

This module implements the DeepSets architecture from Zaheer et al. (2017)
for Neural Bayes Estimation as described in Sainsbury-Dale et al. (2024).

The architecture processes m exchangeable replicates through:
1. Psi (ψ): Encode each replicate independently
2. Aggregation (a): Combine encodings (permutation-invariant)
3. Phi (φ): Map to parameter estimates
4. (Optional) Output layer: Constrain estimates to a valid parameter space
"""

from bisect import bisect_left
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import torch
import torch.nn as nn
from torch import Tensor

from ..exceptions import ShapeMismatchError
from .base import BaseAggregation, BaseOutputLayer, BasePhiNetwork, BasePsiNetwork
from .aggregations import MaxAggregation, MeanAggregation, SumAggregation
from .encoders import CNNEncoder, MLPEncoder
from .estimators import LinearEstimator, MLPEstimator
from .output_layers import CholeskyCovariance, Compress, CovarianceMatrix


class DeepSetsNBE(nn.Module):
    """
    DeepSets Neural Bayes Estimator.

    Implements the DeepSets framework for parameter estimation from
    replicated data. The architecture is:

        Z → ψ(each replicate) → Aggregate → φ → (output layer) → θ̂

    All components are modular and can be swapped for different
    implementations, provided the shape contracts in ``models.base`` hold.

    Args:
        psi: Encoder network for individual replicates.
        aggregation: Permutation-invariant aggregation function.
        phi: Parameter estimation network.
        output_layer: Optional constraining layer applied to phi's output.

    Example:
        >>> psi = MLPEncoder(input_shape=(1,), hidden_dim=32)
        >>> phi = MLPEstimator(input_dim=32, num_params=2)
        >>> model = DeepSetsNBE(psi, MeanAggregation(), phi)
        >>> Z = torch.randn(16, 50, 1)  # (batch, m, d)
        >>> model(Z).shape
        torch.Size([16, 2])
    """

    def __init__(
        self,
        psi: BasePsiNetwork,
        aggregation: BaseAggregation,
        phi: BasePhiNetwork,
        output_layer: Optional[BaseOutputLayer] = None,
    ):
        super().__init__()
        if output_layer is not None and output_layer.input_dim != phi.num_params:
            raise ValueError(
                f"Output layer expects {output_layer.input_dim} inputs but phi "
                f"emits {phi.num_params}"
            )

        self.psi = psi
        self.aggregation = aggregation
        self.phi = phi
        self.output_layer = output_layer
        self.architecture = None

    @property
    def input_shape(self) -> Tuple[int, ...]:
        """Shape of a single replicate."""
        return tuple(self.psi.input_shape)

    @property
    def num_params(self) -> int:
        """Return the number of parameters being estimated."""
        if self.output_layer is not None:
            return self.output_layer.output_dim
        return self.phi.num_params

    def forward(self, x: Union[Tensor, Sequence[Tensor]]) -> Tensor:
        """
        Forward pass through the DeepSets architecture.

        Args:
            x: Either a dense tensor of shape (batch_size, m, *input_shape),
               or a sequence of tensors of shape (m_i, *input_shape) when
               the replicate count varies between datasets.

        Returns:
            Parameter estimates of shape (batch_size, num_params)

        Raises:
            ShapeMismatchError: If a replicate shape differs from input_shape
                or a dataset has no replicates.
        """
        if isinstance(x, Tensor):
            return self._forward_dense(x)
        return self._forward_list(list(x))

    def _forward_dense(self, x: Tensor) -> Tensor:
        self._check_replicates(x, leading_dims=2)
        batch_size, m = x.shape[:2]

        # Encode each replicate independently: (batch_size * m, hidden_dim)
        h = self.psi(x.reshape(batch_size * m, *self.input_shape))

        # Reshape back and aggregate over m
        h = h.view(batch_size, m, -1)
        return self._head(self.aggregation(h))

    def _forward_list(self, datasets: List[Tensor]) -> Tensor:
        if not datasets:
            raise ShapeMismatchError("Received an empty list of datasets")
        for z in datasets:
            self._check_replicates(z, leading_dims=1)

        # One encoder pass over all replicates, then split per dataset
        counts = [z.shape[0] for z in datasets]
        h = self.psi(torch.cat(datasets, dim=0))
        pooled = [self.aggregation(chunk.unsqueeze(0)) for chunk in torch.split(h, counts)]
        return self._head(torch.cat(pooled, dim=0))

    def _head(self, pooled: Tensor) -> Tensor:
        out = self.phi(pooled)
        if self.output_layer is not None:
            out = self.output_layer(out)
        return out

    def _check_replicates(self, x: Tensor, leading_dims: int):
        shape = tuple(x.shape)
        if len(shape) != leading_dims + len(self.input_shape) or shape[leading_dims:] != self.input_shape:
            raise ShapeMismatchError(
                f"Replicate shape {shape[leading_dims:]} (input shape {shape}) does not "
                f"match the estimator input shape {self.input_shape}"
            )
        if shape[leading_dims - 1] == 0:
            raise ShapeMismatchError("Dataset contains no replicates")


class PiecewiseEstimator(nn.Module):
    """
    Dispatch each dataset to one of several estimators by its replicate count.

    Estimator i handles datasets with breaks[i-1] < m <= breaks[i]; the last
    estimator handles everything above the last break. Useful when separate
    estimators were trained for small and large sample sizes.

    Args:
        estimators: Estimators sharing input shape and number of parameters
        breaks: Strictly increasing sample-size breakpoints,
                one fewer than the number of estimators
    """

    def __init__(self, estimators: Sequence[nn.Module], breaks: Sequence[int]):
        super().__init__()
        breaks = [int(b) for b in breaks]
        if len(breaks) != len(estimators) - 1:
            raise ValueError(
                f"{len(estimators)} estimators need {len(estimators) - 1} breaks, got {len(breaks)}"
            )
        if any(b2 <= b1 for b1, b2 in zip(breaks, breaks[1:])):
            raise ValueError(f"breaks must be strictly increasing, got {breaks}")
        shapes = {tuple(e.input_shape) for e in estimators}
        if len(shapes) != 1:
            raise ShapeMismatchError(f"Estimators disagree on input shape: {shapes}")

        self.estimators = nn.ModuleList(estimators)
        self.breaks = breaks

    @property
    def input_shape(self) -> Tuple[int, ...]:
        return tuple(self.estimators[0].input_shape)

    @property
    def num_params(self) -> int:
        return self.estimators[0].num_params

    def select(self, m: int) -> int:
        """Index of the estimator responsible for sample size m."""
        return bisect_left(self.breaks, m)

    def forward(self, x: Union[Tensor, Sequence[Tensor]]) -> Tensor:
        if isinstance(x, Tensor):
            if x.dim() < 2:
                raise ShapeMismatchError(f"Expected (batch, m, ...) input, got {tuple(x.shape)}")
            return self.estimators[self.select(x.shape[1])](x)

        datasets = list(x)
        groups: Dict[int, List[int]] = {}
        for i, z in enumerate(datasets):
            groups.setdefault(self.select(z.shape[0]), []).append(i)

        order, outputs = [], []
        for k, indices in sorted(groups.items()):
            outputs.append(self.estimators[k]([datasets[i] for i in indices]))
            order.extend(indices)
        out = torch.cat(outputs, dim=0)
        return out[torch.argsort(torch.as_tensor(order))]


ENCODERS = {
    "mlp": MLPEncoder,
    "cnn": CNNEncoder,
}

AGGREGATIONS = {
    "mean": MeanAggregation,
    "sum": SumAggregation,
    "max": MaxAggregation,
}

OUTPUT_LAYERS = {
    "compress": Compress,
    "cholesky": CholeskyCovariance,
    "covariance": CovarianceMatrix,
}


@dataclass
class ArchitectureConfig:
    """
    Layer specification for a DeepSetsNBE.

    Attributes:
        input_shape: Shape of one replicate, e.g. (d,) or (C, H, W)
        num_params: Number of parameters estimated (p)
        encoder: Encoder type ('mlp' or 'cnn')
        hidden_dim: Width of the encoded representation
        encoder_layers: Hidden sizes (mlp) or channel sizes (cnn); None for defaults
        aggregation: Aggregation type ('mean', 'sum' or 'max')
        phi: Estimator type ('mlp' or 'linear')
        phi_layers: Hidden layer sizes for the mlp estimator; None for defaults
        dropout: Dropout probability in the mlp estimator
        output_layer: Optional constraining layer ('compress', 'cholesky', 'covariance')
        output_layer_kwargs: Keyword arguments for the output layer
    """

    input_shape: Tuple[int, ...]
    num_params: int
    encoder: str = "mlp"
    hidden_dim: int = 64
    encoder_layers: Optional[List[int]] = None
    aggregation: str = "mean"
    phi: str = "mlp"
    phi_layers: Optional[List[int]] = None
    dropout: float = 0.0
    output_layer: Optional[str] = None
    output_layer_kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.input_shape, int):
            self.input_shape = (self.input_shape,)
        self.input_shape = tuple(int(s) for s in self.input_shape)
        if self.num_params < 1:
            raise ValueError(f"num_params must be positive, got {self.num_params}")
        if self.encoder not in ENCODERS:
            raise ValueError(f"Unknown encoder type: {self.encoder}")
        if self.aggregation not in AGGREGATIONS:
            raise ValueError(f"Unknown aggregation type: {self.aggregation}")
        if self.phi not in ("mlp", "linear"):
            raise ValueError(f"Unknown phi type: {self.phi}")
        if self.output_layer is not None and self.output_layer not in OUTPUT_LAYERS:
            raise ValueError(f"Unknown output layer: {self.output_layer}")

    def to_dict(self) -> Dict[str, Any]:
        config = asdict(self)
        config["input_shape"] = list(self.input_shape)
        return config

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ArchitectureConfig":
        return cls(**config)


def build_estimator(config: ArchitectureConfig) -> DeepSetsNBE:
    """
    Build a DeepSetsNBE from an ArchitectureConfig.

    Example:
        >>> config = ArchitectureConfig(input_shape=(1,), num_params=2)
        >>> model = build_estimator(config)
        >>> # Gridded data with bounded parameters
        >>> config = ArchitectureConfig(
        ...     input_shape=(1, 16, 16), num_params=2, encoder="cnn",
        ...     output_layer="compress",
        ...     output_layer_kwargs={"lower": [0, 0], "upper": [1, 5]},
        ... )
    """
    if isinstance(config, dict):
        config = ArchitectureConfig.from_dict(config)

    # Build encoder
    encoder_kwargs = {"input_shape": config.input_shape, "hidden_dim": config.hidden_dim}
    if config.encoder_layers is not None:
        key = "channels" if config.encoder == "cnn" else "hidden_layers"
        encoder_kwargs[key] = list(config.encoder_layers)
    psi = ENCODERS[config.encoder](**encoder_kwargs)

    aggregation = AGGREGATIONS[config.aggregation]()

    # Output layer decides how many unconstrained values phi must emit
    output_layer = None
    phi_outputs = config.num_params
    if config.output_layer is not None:
        output_layer = OUTPUT_LAYERS[config.output_layer](**config.output_layer_kwargs)
        if output_layer.output_dim != config.num_params:
            raise ValueError(
                f"Output layer '{config.output_layer}' produces {output_layer.output_dim} "
                f"values but num_params is {config.num_params}"
            )
        phi_outputs = output_layer.input_dim

    if config.phi == "linear":
        phi = LinearEstimator(config.hidden_dim, phi_outputs)
    else:
        phi = MLPEstimator(
            config.hidden_dim,
            phi_outputs,
            hidden_layers=config.phi_layers,
            dropout=config.dropout,
        )

    model = DeepSetsNBE(psi, aggregation, phi, output_layer)
    model.architecture = config
    return model
