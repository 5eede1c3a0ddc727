"""
Training module for Neural Bayes Estimators.

Provides training infrastructure including:
- NBETrainer: Main trainer class with TensorBoard logging
- train / train_with_simulation / train_for_sample_sizes: functional entry points
- TrainingConfig: Training options (dict / YAML loading)
- Loss functions, early stopping, metrics and checkpointing utilities
"""

from .config import TrainingConfig, OPTIMIZERS, build_optimizer
from .losses import LOSSES, TanhLoss, get_loss
from .trainer import (
    NBETrainer,
    TrainerState,
    train,
    train_with_simulation,
    train_for_sample_sizes,
)
from .utils import (
    compute_metrics,
    EarlyStopping,
    save_checkpoint,
    load_checkpoint,
)

__all__ = [
    "NBETrainer",
    "TrainerState",
    "train",
    "train_with_simulation",
    "train_for_sample_sizes",
    "TrainingConfig",
    "OPTIMIZERS",
    "build_optimizer",
    "LOSSES",
    "TanhLoss",
    "get_loss",
    "compute_metrics",
    "EarlyStopping",
    "save_checkpoint",
    "load_checkpoint",
]
