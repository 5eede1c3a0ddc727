"""
Training utilities for Neural Bayes Estimators.

Includes:
- Per-parameter error summaries of estimates against true parameters
- Early stopping on the validation risk
- Checkpointing (save/load)
"""

from pathlib import Path
from typing import Dict, List, Optional, Union
import torch
import torch.nn as nn
from torch import Tensor


def default_param_names(num_params: int) -> List[str]:
    return [f"theta_{i + 1}" for i in range(num_params)]


def compute_metrics(
    predictions: Tensor,
    targets: Tensor,
    param_names: Optional[List[str]] = None,
) -> Dict[str, float]:
    """
    Summarise the errors of parameter estimates.

    Args:
        predictions: Estimates, shape (n, p)
        targets: True parameters, shape (n, p)
        param_names: One name per column. Defaults to theta_1, ..., theta_p

    Returns:
        Flat dictionary with, for every parameter ``name``:
        ``name_mae``, ``name_mse``, ``name_rmse``, ``name_bias`` and
        ``name_rel_error`` (mean of |error| / |theta|), plus ``total_mae``
        and ``total_mse`` over all parameters.
    """
    if param_names is None:
        param_names = default_param_names(predictions.shape[1])

    error = predictions - targets
    mae = error.abs().mean(dim=0)
    mse = (error**2).mean(dim=0)
    bias = error.mean(dim=0)
    # Relative error, guarded against theta = 0
    rel_error = (error.abs() / (targets.abs() + 1e-8)).mean(dim=0)

    metrics = {}
    for i, name in enumerate(param_names):
        metrics[f"{name}_mae"] = mae[i].item()
        metrics[f"{name}_mse"] = mse[i].item()
        metrics[f"{name}_rmse"] = mse[i].sqrt().item()
        metrics[f"{name}_bias"] = bias[i].item()
        metrics[f"{name}_rel_error"] = rel_error[i].item()

    metrics["total_mae"] = error.abs().mean().item()
    metrics["total_mse"] = (error**2).mean().item()
    return metrics


class EarlyStopping:
    """
    Stop when the validation risk has not improved for ``patience`` epochs.

    A risk counts as an improvement only when it is below the best risk seen
    so far by more than ``min_delta``. With min_delta = 0 this is strict
    improvement: a risk equal to the best one does not reset the counter.

    Args:
        patience: Epochs without improvement before stopping. Default: 5
        min_delta: Absolute tolerance on the decrease. Default: 0.0

    Example:
        >>> early_stopping = EarlyStopping(patience=3)
        >>> for epoch in range(100):
        ...     if early_stopping(trainer.validate(val_loader)["risk"]):
        ...         break
    """

    def __init__(self, patience: int = 5, min_delta: float = 0.0):
        self.patience = patience
        self.min_delta = min_delta
        self.reset()

    def __call__(self, risk: float) -> bool:
        """Record one validation risk; return True once training should stop."""
        if risk < self.best_value - self.min_delta:
            self.best_value = risk
            self.counter = 0
        else:
            self.counter += 1
            self.should_stop = self.counter >= self.patience
        return self.should_stop

    def reset(self):
        self.counter = 0
        self.best_value = float("inf")
        self.should_stop = False


def save_checkpoint(
    model: nn.Module,
    optimizer: torch.optim.Optimizer,
    epoch: int,
    risk: float,
    path: Union[str, Path],
    **extra,
):
    """
    Write model and optimizer state with the epoch and validation risk.

    Extra keyword arguments (e.g. the architecture descriptor) are stored
    alongside.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(
        {
            "epoch": epoch,
            "risk": risk,
            "model_state_dict": model.state_dict(),
            "optimizer_state_dict": optimizer.state_dict(),
            **extra,
        },
        path,
    )


def load_checkpoint(
    path: Union[str, Path],
    model: nn.Module,
    optimizer: Optional[torch.optim.Optimizer] = None,
    device: str = "cpu",
) -> Dict:
    """
    Restore a checkpoint written by :func:`save_checkpoint` into ``model``
    (and ``optimizer`` when given).

    Returns:
        The checkpoint dictionary (epoch, risk, ...)
    """
    checkpoint = torch.load(path, map_location=device)
    model.load_state_dict(checkpoint["model_state_dict"])
    if optimizer is not None and "optimizer_state_dict" in checkpoint:
        optimizer.load_state_dict(checkpoint["optimizer_state_dict"])
    return checkpoint
