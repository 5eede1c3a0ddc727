"""
Loss functions for empirical Bayes risk minimisation.

The loss determines which Bayes estimator the network approximates:
absolute error gives the posterior median, squared error the posterior mean,
and the tanh loss approaches the 0-1 loss (posterior mode) as k -> 0.
"""

from typing import Callable, Union
import torch
import torch.nn as nn
from torch import Tensor


class TanhLoss(nn.Module):
    """
    Bounded surrogate for the 0-1 loss: mean(tanh(|θ̂ - θ| / k)).

    Args:
        k: Smoothing constant; smaller values are closer to the 0-1 loss.
           Default: 0.1
    """

    def __init__(self, k: float = 0.1):
        super().__init__()
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        self.k = k

    def forward(self, estimates: Tensor, targets: Tensor) -> Tensor:
        return torch.tanh((estimates - targets).abs() / self.k).mean()


LOSSES = {
    "absolute": nn.L1Loss,
    "mae": nn.L1Loss,
    "squared": nn.MSELoss,
    "mse": nn.MSELoss,
    "huber": nn.HuberLoss,
    "tanh": TanhLoss,
}


def get_loss(loss: Union[str, Callable]) -> Callable:
    """
    Resolve a loss name or callable into a function (estimates, targets) -> scalar.
    """
    if isinstance(loss, str):
        if loss not in LOSSES:
            raise ValueError(f"Unknown loss: {loss}. Choose from {sorted(LOSSES)}")
        return LOSSES[loss]()
    if callable(loss):
        return loss
    raise ValueError(f"loss must be a name or a callable, got {type(loss).__name__}")
