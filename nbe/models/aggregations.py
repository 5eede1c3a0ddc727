"""
Concrete aggregation implementations for combining replicate representations.

Aggregation functions must be permutation-invariant, meaning the output
should not depend on the order of the m replicates. This is the key property
of the DeepSets framework (Zaheer et al., 2017).

Floating-point addition is not associative, so mean and sum first sort the
encodings along the replicate axis: the reduction order is then fixed by the
values themselves and the result is bitwise identical under any permutation.
"""

import torch
from torch import Tensor

from .base import BaseAggregation


class MeanAggregation(BaseAggregation):
    """
    Elementwise mean aggregation over replicates.

    This is the default aggregation. It computes the average representation
    across all m replicates, so its scale does not depend on m.
    """

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Input tensor of shape (batch_size, m, hidden_dim)

        Returns:
            Aggregated tensor of shape (batch_size, hidden_dim)
        """
        return torch.sort(x, dim=1).values.mean(dim=1)


class SumAggregation(BaseAggregation):
    """
    Elementwise sum aggregation over replicates.

    Note: The magnitude scales with m, which may affect training when m
    varies widely.
    """

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Input tensor of shape (batch_size, m, hidden_dim)

        Returns:
            Aggregated tensor of shape (batch_size, hidden_dim)
        """
        return torch.sort(x, dim=1).values.sum(dim=1)


class MaxAggregation(BaseAggregation):
    """
    Elementwise max aggregation over replicates.

    Takes the maximum value across all m replicates for each feature.
    Useful when the most extreme features are most informative.
    """

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Input tensor of shape (batch_size, m, hidden_dim)

        Returns:
            Aggregated tensor of shape (batch_size, hidden_dim)
        """
        return x.max(dim=1)[0]
