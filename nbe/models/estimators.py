"""
Phi networks: map the aggregated summary of a dataset to parameter estimates.

Outputs are unconstrained; bounded or structured parameters are handled by
an output layer appended after phi.
"""

from typing import List, Optional
import torch.nn as nn
from torch import Tensor

from .base import BasePhiNetwork, dense_layers


class MLPEstimator(BasePhiNetwork):
    """
    Fully connected phi network.

    Architecture:
        Linear → ReLU (→ Dropout) → ... → Linear

    Args:
        input_dim: Width of the aggregated summary (encoder hidden_dim)
        num_params: Number of values to emit per dataset
        hidden_layers: Hidden layer sizes. Default: [256, 128, 64]
        dropout: Dropout probability after each hidden layer. Default: 0.0
    """

    def __init__(
        self,
        input_dim: int,
        num_params: int,
        hidden_layers: Optional[List[int]] = None,
        dropout: float = 0.0,
    ):
        super().__init__()
        self._num_params = num_params
        if hidden_layers is None:
            hidden_layers = [256, 128, 64]
        self.mlp = nn.Sequential(*dense_layers(input_dim, hidden_layers, num_params, dropout))

    def forward(self, x: Tensor) -> Tensor:
        return self.mlp(x)

    @property
    def num_params(self) -> int:
        return self._num_params


class LinearEstimator(BasePhiNetwork):
    """
    Affine map from the aggregated summary to the estimates.

    Enough when the summary is already close to sufficient, e.g. a mean
    aggregation of identity encodings gives the sample mean.
    """

    def __init__(self, input_dim: int, num_params: int):
        super().__init__()
        self._num_params = num_params
        self.linear = nn.Linear(input_dim, num_params)

    def forward(self, x: Tensor) -> Tensor:
        return self.linear(x)

    @property
    def num_params(self) -> int:
        return self._num_params
