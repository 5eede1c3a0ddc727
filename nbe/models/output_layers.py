"""
Output layers that constrain estimates to a valid parameter subspace.

These are optional post-processing stages appended after phi. They act on
each row independently and play no part in the permutation invariance of
the aggregation.
"""

from typing import Sequence
import torch
import torch.nn.functional as F
from torch import Tensor

from .base import BaseOutputLayer


class Compress(BaseOutputLayer):
    """
    Bounded outputs via a scaled logistic: lower + (upper - lower) * sigmoid(k * x).

    Args:
        lower: Lower bound for each parameter
        upper: Upper bound for each parameter
        k: Steepness of the logistic. Default: 1.0
    """

    def __init__(self, lower: Sequence[float], upper: Sequence[float], k: float = 1.0):
        super().__init__()
        lower = torch.as_tensor(lower, dtype=torch.float32).reshape(-1)
        upper = torch.as_tensor(upper, dtype=torch.float32).reshape(-1)
        if lower.shape != upper.shape:
            raise ValueError("Compress needs one lower and one upper bound per parameter")
        if not torch.all(lower < upper):
            raise ValueError("Compress requires lower < upper for every parameter")

        # Register bounds as buffers (not parameters)
        self.register_buffer("lower", lower)
        self.register_buffer("upper", upper)
        self.k = k

    def forward(self, x: Tensor) -> Tensor:
        return self.lower + (self.upper - self.lower) * torch.sigmoid(self.k * x)

    @property
    def input_dim(self) -> int:
        return self.lower.numel()

    @property
    def output_dim(self) -> int:
        return self.lower.numel()


class CholeskyCovariance(BaseOutputLayer):
    """
    Lower Cholesky factor of a d x d covariance matrix.

    Maps d(d+1)/2 unconstrained values to the row-major lower triangle of L,
    with a softplus on the diagonal so that L L^T is positive definite.

    Args:
        d: Dimension of the covariance matrix
    """

    def __init__(self, d: int):
        super().__init__()
        self.d = d
        rows, cols = torch.tril_indices(d, d)
        self.register_buffer("rows", rows)
        self.register_buffer("cols", cols)
        self.register_buffer("diagonal", rows == cols)

    def forward(self, x: Tensor) -> Tensor:
        return torch.where(self.diagonal, F.softplus(x), x)

    def to_matrix(self, v: Tensor) -> Tensor:
        """Unpack (batch, d(d+1)/2) lower-triangular entries into (batch, d, d)."""
        L = v.new_zeros(v.shape[0], self.d, self.d)
        L[:, self.rows, self.cols] = v
        return L

    @property
    def input_dim(self) -> int:
        return self.d * (self.d + 1) // 2

    @property
    def output_dim(self) -> int:
        return self.input_dim


class CovarianceMatrix(BaseOutputLayer):
    """
    Positive-definite covariance matrix Σ = L L^T, returned as vech(Σ).

    Args:
        d: Dimension of the covariance matrix
    """

    def __init__(self, d: int):
        super().__init__()
        self.cholesky = CholeskyCovariance(d)

    def forward(self, x: Tensor) -> Tensor:
        L = self.cholesky.to_matrix(self.cholesky(x))
        sigma = L @ L.transpose(-1, -2)
        return sigma[:, self.cholesky.rows, self.cholesky.cols]

    def to_matrix(self, v: Tensor) -> Tensor:
        """Unpack (batch, d(d+1)/2) vech entries into symmetric (batch, d, d) matrices."""
        lower = self.cholesky.to_matrix(v)
        return lower + lower.transpose(-1, -2) - torch.diag_embed(
            torch.diagonal(lower, dim1=-2, dim2=-1)
        )

    @property
    def input_dim(self) -> int:
        return self.cholesky.input_dim

    @property
    def output_dim(self) -> int:
        return self.cholesky.output_dim
