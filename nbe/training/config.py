"""
Configuration for Neural Bayes Estimator training.

TrainingConfig gathers every option of the risk-minimisation loop. It can be
built directly, from a dictionary, or from a YAML file (either the whole file
or its ``training`` section).
"""

from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
import torch
import yaml

from .losses import LOSSES

OPTIMIZERS = {
    "adam": torch.optim.Adam,
    "adamw": torch.optim.AdamW,
    "sgd": torch.optim.SGD,
    "rmsprop": torch.optim.RMSprop,
}


@dataclass
class TrainingConfig:
    """
    Options for the risk-minimisation loop.

    Attributes:
        epochs: Maximum number of epochs
        batch_size: Minibatch size over the K parameter/dataset pairs
        loss: 'absolute' (posterior median), 'squared' (posterior mean),
              'huber', 'tanh', or a callable (estimates, targets) -> scalar
        optimizer: Optimizer name ('adam', 'adamw', 'sgd', 'rmsprop')
        optimizer_params: Keyword arguments for the optimizer (lr, weight_decay, ...)
        early_stopping_patience: Epochs without validation improvement before
                                 stopping. None disables early stopping.
        min_delta: Absolute tolerance for what counts as an improvement.
                   0 means any strict decrease of the validation risk.
        restore_best: Return the parameters with the lowest validation risk
                      rather than those from the final epoch
        device: Torch device to train on
        seed: Seed for minibatch shuffling (and simulation when training
              with a simulator)
        log_dir: TensorBoard log directory. None disables TensorBoard.
        checkpoint_dir: Directory for best-model checkpoints. None disables them.
        verbose: Print progress and show progress bars
        epochs_per_theta_refresh: When training with a simulator, resample
                                  parameters every this many epochs
        epochs_per_Z_refresh: When training with a simulator, resimulate data
                              every this many epochs
    """

    epochs: int = 100
    batch_size: int = 32
    loss: Union[str, Callable] = "absolute"
    optimizer: str = "adam"
    optimizer_params: Dict[str, Any] = field(default_factory=lambda: {"lr": 1e-3})
    early_stopping_patience: Optional[int] = 5
    min_delta: float = 0.0
    restore_best: bool = True
    device: str = "cpu"
    seed: Optional[int] = None
    log_dir: Optional[str] = None
    checkpoint_dir: Optional[str] = None
    verbose: bool = True
    epochs_per_theta_refresh: int = 1
    epochs_per_Z_refresh: int = 1

    def __post_init__(self):
        if self.epochs < 1:
            raise ValueError(f"epochs must be positive, got {self.epochs}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if isinstance(self.loss, str) and self.loss not in LOSSES:
            raise ValueError(f"Unknown loss: {self.loss}. Choose from {sorted(LOSSES)}")
        if not isinstance(self.loss, str) and not callable(self.loss):
            raise ValueError("loss must be a loss name or a callable")
        if self.optimizer not in OPTIMIZERS:
            raise ValueError(f"Unknown optimizer: {self.optimizer}. Choose from {sorted(OPTIMIZERS)}")
        if self.early_stopping_patience is not None and self.early_stopping_patience < 1:
            raise ValueError("early_stopping_patience must be positive or None")
        if self.min_delta < 0:
            raise ValueError(f"min_delta must be non-negative, got {self.min_delta}")
        if self.epochs_per_Z_refresh < 1 or self.epochs_per_theta_refresh < 1:
            raise ValueError("Refresh intervals must be positive")
        if self.epochs_per_theta_refresh % self.epochs_per_Z_refresh != 0:
            raise ValueError(
                "epochs_per_theta_refresh must be a multiple of epochs_per_Z_refresh"
            )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "TrainingConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown training options: {sorted(unknown)}")
        return cls(**config)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TrainingConfig":
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        if "training" in config and isinstance(config["training"], dict):
            config = config["training"]
        return cls.from_dict(config)

    def to_dict(self) -> Dict[str, Any]:
        config = asdict(self)
        if callable(self.loss):
            config["loss"] = getattr(self.loss, "__name__", type(self.loss).__name__)
        return config

    def replace(self, **overrides) -> "TrainingConfig":
        return replace(self, **overrides)


def build_optimizer(config: TrainingConfig, parameters) -> torch.optim.Optimizer:
    """Instantiate the configured optimizer over ``parameters``."""
    return OPTIMIZERS[config.optimizer](parameters, **config.optimizer_params)
