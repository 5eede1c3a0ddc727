"""
Abstract base classes for Neural Bayes Estimator components.

These base classes define the interface for modular architecture swapping:
any encoder, aggregation, estimator or output layer honouring these shape
contracts can be combined into a DeepSetsNBE.
"""

from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple
import torch.nn as nn
from torch import Tensor


def dense_layers(
    in_features: int,
    hidden_layers: Sequence[int],
    out_features: int,
    dropout: float = 0.0,
) -> List[nn.Module]:
    """Linear → ReLU (→ Dropout) blocks followed by an output Linear with no activation."""
    layers = []
    for width in hidden_layers:
        layers += [nn.Linear(in_features, width), nn.ReLU(inplace=True)]
        if dropout > 0:
            layers.append(nn.Dropout(p=dropout))
        in_features = width
    layers.append(nn.Linear(in_features, out_features))
    return layers


class BasePsiNetwork(nn.Module, ABC):
    """
    Abstract base class for the psi (ψ) network - replicate encoder.

    The psi network encodes individual replicates into a fixed-dimensional
    representation. It is applied independently to each of the m replicates.
    """

    @abstractmethod
    def forward(self, x: Tensor) -> Tensor:
        """
        Encode a batch of individual replicates.

        Args:
            x: Input tensor of shape (n, *input_shape)

        Returns:
            Encoded tensor of shape (n, output_dim)
        """
        pass

    @property
    @abstractmethod
    def input_shape(self) -> Tuple[int, ...]:
        """Shape of a single replicate accepted by the encoder."""
        pass

    @property
    @abstractmethod
    def output_dim(self) -> int:
        """Return the output dimension (hidden_dim) of the encoder."""
        pass


class BaseAggregation(nn.Module, ABC):
    """
    Abstract base class for permutation-invariant aggregation functions.

    The aggregation function combines the encoded representations of m
    replicates into a single fixed-dimensional summary. It must be
    permutation-invariant (order of replicates should not matter).
    """

    @abstractmethod
    def forward(self, x: Tensor) -> Tensor:
        """
        Aggregate encoded representations over replicates.

        Args:
            x: Input tensor of shape (batch_size, m, hidden_dim)

        Returns:
            Aggregated tensor of shape (batch_size, hidden_dim)
        """
        pass


class BasePhiNetwork(nn.Module, ABC):
    """
    Abstract base class for the phi (φ) network - parameter estimator.

    The phi network maps the aggregated representation to the final
    parameter estimates (or to the unconstrained input of an output layer).
    """

    @abstractmethod
    def forward(self, x: Tensor) -> Tensor:
        """
        Map aggregated features to parameter estimates.

        Args:
            x: Input tensor of shape (batch_size, hidden_dim)

        Returns:
            Parameter estimates of shape (batch_size, num_params)
        """
        pass

    @property
    @abstractmethod
    def num_params(self) -> int:
        """Return the number of values emitted per dataset."""
        pass


class BaseOutputLayer(nn.Module, ABC):
    """
    Abstract base class for constraining output layers.

    An output layer maps the unconstrained output of phi onto a valid
    parameter subspace (bounded intervals, positive-definite matrices, ...).
    It acts row-wise and has no interaction with the aggregation.
    """

    @abstractmethod
    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Tensor of shape (batch_size, input_dim)

        Returns:
            Constrained tensor of shape (batch_size, output_dim)
        """
        pass

    @property
    @abstractmethod
    def input_dim(self) -> int:
        """Number of unconstrained inputs expected from phi."""
        pass

    @property
    @abstractmethod
    def output_dim(self) -> int:
        """Number of constrained parameters produced."""
        pass
