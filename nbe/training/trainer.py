"""
Training infrastructure for Neural Bayes Estimators.

The trainer minimises a Monte-Carlo approximation of the Bayes risk: the
average loss over sampled (parameter, data) pairs. No likelihood is ever
evaluated. Includes the NBETrainer class with TensorBoard logging support and
the functional entry points ``train``, ``train_with_simulation`` and
``train_for_sample_sizes``.
"""

from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
import copy
import math
import threading
import time
import warnings
import numpy as np
import torch
import torch.nn as nn
from torch.utils.data import DataLoader
from torch.utils.tensorboard import SummaryWriter
from tqdm import tqdm

from ..data import (
    DatasetCollection,
    ParameterSet,
    ReplicateDataset,
    as_collection,
    assemble,
    collate_replicates,
)
from ..estimator import TrainedEstimator, unwrap
from ..exceptions import (
    CardinalityMismatchError,
    ConvergenceStall,
    NonFiniteLossError,
    ShapeMismatchError,
)
from ..priors import as_generator, sample_parameters
from .config import TrainingConfig, build_optimizer
from .losses import get_loss
from .utils import EarlyStopping, compute_metrics, default_param_names, save_checkpoint

# Callable returning fresh (theta, Z) training data at the start of an epoch, or None
RefreshFn = Callable[[int], Optional[Tuple[ParameterSet, DatasetCollection]]]


class TrainerState(Enum):
    UNTRAINED = "untrained"
    TRAINING = "training"
    TRAINED = "trained"


class NBETrainer:
    """
    Trainer for Neural Bayes Estimators with TensorBoard logging.

    The trainer works on its own deep copy of the network and is the only
    component that mutates its parameters. ``fit`` moves the trainer from
    UNTRAINED through TRAINING to TRAINED and returns a TrainedEstimator
    holding the parameters with the lowest validation risk.

    Args:
        model: The network to train (left untouched; a copy is trained)
        config: Training options
        param_names: Names of parameters being estimated

    Example:
        >>> model = build_estimator(ArchitectureConfig(input_shape=(1,), num_params=2))
        >>> trainer = NBETrainer(model, TrainingConfig(epochs=50, loss="absolute"))
        >>> estimator = trainer.fit(theta_train, Z_train, theta_val, Z_val)
    """

    def __init__(
        self,
        model: nn.Module,
        config: Optional[TrainingConfig] = None,
        param_names: Optional[List[str]] = None,
    ):
        self.config = config if config is not None else TrainingConfig()
        self.device = torch.device(self.config.device)
        self.model = copy.deepcopy(unwrap(model)).to(self.device)
        self.optimizer = build_optimizer(self.config, self.model.parameters())
        self.loss_fn = get_loss(self.config.loss)
        self.param_names = param_names

        # Setup TensorBoard
        self.writer = None
        if self.config.log_dir is not None:
            self.writer = SummaryWriter(log_dir=str(self.config.log_dir))

        # Shuffling generator, shared across epochs
        self._generator = torch.Generator()
        if self.config.seed is not None:
            self._generator.manual_seed(self.config.seed)
        else:
            self._generator.seed()

        self.state = TrainerState.UNTRAINED
        self.global_step = 0
        self._stop_event = threading.Event()
        self._best_state = None
        self._best_risk = float("inf")
        self._best_epoch = 0

    def request_stop(self):
        """Ask training to stop at the next epoch boundary."""
        self._stop_event.set()

    def _loader(self, theta: ParameterSet, Z: DatasetCollection, shuffle: bool) -> DataLoader:
        return DataLoader(
            ReplicateDataset(theta, Z),
            batch_size=self.config.batch_size,
            shuffle=shuffle,
            collate_fn=collate_replicates,
            generator=self._generator if shuffle else None,
        )

    def _to_device(self, Z):
        if isinstance(Z, torch.Tensor):
            return Z.to(self.device)
        return [z.to(self.device) for z in Z]

    def train_epoch(self, dataloader: DataLoader, epoch: int = 0) -> Dict[str, float]:
        """
        Train for one epoch: one gradient step per minibatch.

        Args:
            dataloader: Training data loader
            epoch: Epoch number, used for error reporting

        Returns:
            Dictionary with the mean training risk over the epoch

        Raises:
            NonFiniteLossError: If a minibatch risk is NaN or infinite.
        """
        self.model.train()
        total_loss = 0.0
        num_samples = 0

        pbar = tqdm(dataloader, desc="Training", leave=False, disable=not self.config.verbose)

        for replicates, params in pbar:
            replicates = self._to_device(replicates)
            params = params.to(self.device)

            # Forward pass
            self.optimizer.zero_grad()
            estimates = self.model(replicates)

            # Empirical risk over the minibatch
            loss = self.loss_fn(estimates, params)
            if not torch.isfinite(loss):
                raise self._non_finite_error(epoch, "training")

            # Backward pass
            loss.backward()
            self.optimizer.step()

            batch_size = params.shape[0]
            total_loss += loss.item() * batch_size
            num_samples += batch_size

            pbar.set_postfix({"risk": loss.item()})

            if self.writer is not None:
                self.writer.add_scalar("Risk/train_batch", loss.item(), self.global_step)
            self.global_step += 1

        return {"risk": total_loss / num_samples}

    def validate(self, dataloader: DataLoader) -> Dict[str, float]:
        """
        Mean risk over the full validation set (no gradient step).

        Args:
            dataloader: Validation data loader

        Returns:
            Dictionary with validation risk and per-parameter metrics
        """
        self.model.eval()
        total_loss = 0.0
        num_samples = 0
        all_estimates = []
        all_targets = []

        with torch.no_grad():
            for replicates, params in dataloader:
                replicates = self._to_device(replicates)
                params = params.to(self.device)

                estimates = self.model(replicates)
                loss = self.loss_fn(estimates, params)

                total_loss += loss.item() * params.shape[0]
                num_samples += params.shape[0]
                all_estimates.append(estimates)
                all_targets.append(params)

        all_estimates = torch.cat(all_estimates, dim=0)
        all_targets = torch.cat(all_targets, dim=0)
        metrics = compute_metrics(all_estimates, all_targets, self._names(all_targets.shape[1]))
        metrics["risk"] = total_loss / num_samples

        return metrics

    def fit(
        self,
        theta_train: ParameterSet,
        Z_train: DatasetCollection,
        theta_val: ParameterSet,
        Z_val: DatasetCollection,
        refresh: Optional[RefreshFn] = None,
    ) -> TrainedEstimator:
        """
        Full training loop with early stopping and TensorBoard logging.

        Args:
            theta_train: Training parameters
            Z_train: Training datasets, index-aligned with theta_train
            theta_val: Validation parameters
            Z_val: Validation datasets, index-aligned with theta_val
            refresh: Optional callable invoked at the start of every epoch;
                     returning (theta, Z) replaces the training data

        Returns:
            TrainedEstimator holding the best parameters

        Raises:
            CardinalityMismatchError: If a ParameterSet and its DatasetCollection
                differ in size.
            ShapeMismatchError: If data or parameters do not fit the network.
            NonFiniteLossError: If a risk becomes non-finite; the error carries
                the best checkpoint so far.
        """
        if self.state is not TrainerState.UNTRAINED:
            raise RuntimeError(f"Trainer is already {self.state.value}; create a new NBETrainer")

        self._check_inputs(theta_train, Z_train)
        self._check_inputs(theta_val, Z_val)
        if self.param_names is None:
            self.param_names = theta_val.names

        self.state = TrainerState.TRAINING
        epochs = self.config.epochs
        history = {
            "train_risk": [],
            "val_risk": [],
            "learning_rate": [],
        }
        for name in self.param_names:
            history[f"val_{name}_mae"] = []

        early_stopping = None
        if self.config.early_stopping_patience is not None:
            early_stopping = EarlyStopping(
                patience=self.config.early_stopping_patience,
                min_delta=self.config.min_delta,
            )

        checkpoint_dir = None
        if self.config.checkpoint_dir is not None:
            checkpoint_dir = Path(self.config.checkpoint_dir)
            checkpoint_dir.mkdir(parents=True, exist_ok=True)

        start_time = time.time()
        stopped_early = False

        try:
            train_loader = self._loader(theta_train, Z_train, shuffle=True)
            val_loader = self._loader(theta_val, Z_val, shuffle=False)

            # Initial validation risk, before any gradient step
            initial = self.validate(val_loader)
            if not math.isfinite(initial["risk"]):
                raise self._non_finite_error(0, "validation")
            history["initial_val_risk"] = initial["risk"]
            self._update_best(initial["risk"], 0)
            if early_stopping is not None:
                early_stopping(initial["risk"])

            self._print(f"Starting training for {epochs} epochs...")
            self._print(f"Training samples: {len(Z_train)}")
            self._print(f"Validation samples: {len(Z_val)}")
            self._print(f"Initial validation risk: {initial['risk']:.4f}")
            self._print("-" * 60)

            for epoch in range(1, epochs + 1):
                if self._stop_event.is_set():
                    self._print(f"\nStop requested, ending training before epoch {epoch}")
                    break

                epoch_start = time.time()

                if refresh is not None:
                    fresh = refresh(epoch)
                    if fresh is not None:
                        theta_train, Z_train = fresh
                        self._check_inputs(theta_train, Z_train)
                        train_loader = self._loader(theta_train, Z_train, shuffle=True)

                # Train
                train_metrics = self.train_epoch(train_loader, epoch)

                # Validate
                val_metrics = self.validate(val_loader)
                if not math.isfinite(val_metrics["risk"]):
                    raise self._non_finite_error(epoch, "validation")

                current_lr = self.optimizer.param_groups[0]["lr"]
                history["train_risk"].append(train_metrics["risk"])
                history["val_risk"].append(val_metrics["risk"])
                history["learning_rate"].append(current_lr)
                for name in self.param_names:
                    history[f"val_{name}_mae"].append(val_metrics.get(f"{name}_mae", 0))

                self._log_epoch(epoch, train_metrics, val_metrics, current_lr)

                epoch_time = time.time() - epoch_start
                self._print(
                    f"Epoch {epoch:3d}/{epochs} | "
                    f"Train Risk: {train_metrics['risk']:.4f} | "
                    f"Val Risk: {val_metrics['risk']:.4f} | "
                    f"LR: {current_lr:.2e} | "
                    f"Time: {epoch_time:.1f}s"
                )

                if self._update_best(val_metrics["risk"], epoch) and checkpoint_dir is not None:
                    save_checkpoint(
                        self.model,
                        self.optimizer,
                        epoch,
                        val_metrics["risk"],
                        checkpoint_dir / "best_model.pt",
                        architecture=self._architecture_dict(),
                    )
                    self._print(f"  -> Saved best model (val_risk: {self._best_risk:.4f})")

                if early_stopping is not None and early_stopping(val_metrics["risk"]):
                    stopped_early = True
                    self._print(f"\nEarly stopping triggered at epoch {epoch}")
                    warnings.warn(
                        ConvergenceStall(
                            f"Validation risk did not improve for "
                            f"{self.config.early_stopping_patience} epoch(s); "
                            f"returning parameters from epoch {self._best_epoch}"
                        ),
                        stacklevel=2,
                    )
                    break
        finally:
            self.state = TrainerState.TRAINED
            self.close()

        total_time = time.time() - start_time
        self._print("-" * 60)
        self._print(f"Training completed in {total_time / 60:.1f} minutes")
        self._print(f"Best validation risk: {self._best_risk:.4f} (epoch {self._best_epoch})")

        if self.config.restore_best:
            self.model.load_state_dict(self._best_state)
            best_epoch = self._best_epoch
        else:
            best_epoch = len(history["train_risk"])

        return TrainedEstimator(
            self.model,
            architecture=getattr(self.model, "architecture", None),
            history=history,
            best_epoch=best_epoch,
            stopped_early=stopped_early,
            param_names=self.param_names,
        )

    def _names(self, num_params: int) -> List[str]:
        if self.param_names is not None and len(self.param_names) == num_params:
            return self.param_names
        return default_param_names(num_params)

    def _check_inputs(self, theta: ParameterSet, Z: DatasetCollection):
        if len(theta) != len(Z):
            raise CardinalityMismatchError(
                f"{len(theta)} parameter vectors but {len(Z)} datasets"
            )
        expected = getattr(self.model, "input_shape", None)
        if expected is not None and tuple(Z.feature_shape) != tuple(expected):
            raise ShapeMismatchError(
                f"Replicate shape {Z.feature_shape} does not match the estimator "
                f"input shape {tuple(expected)}"
            )
        num_params = getattr(self.model, "num_params", None)
        if num_params is not None and theta.num_params != num_params:
            raise ShapeMismatchError(
                f"Parameter vectors have length {theta.num_params} but the "
                f"estimator outputs {num_params} values"
            )

    def _update_best(self, risk: float, epoch: int) -> bool:
        """Snapshot the parameters when the validation risk is the lowest so far."""
        if risk < self._best_risk:
            self._best_risk = risk
            self._best_epoch = epoch
            self._best_state = copy.deepcopy(self.model.state_dict())
            return True
        return False

    def _snapshot(self) -> Optional[TrainedEstimator]:
        if self._best_state is None:
            return None
        model = copy.deepcopy(self.model)
        model.load_state_dict(self._best_state)
        return TrainedEstimator(
            model,
            architecture=getattr(model, "architecture", None),
            best_epoch=self._best_epoch,
            param_names=self.param_names,
        )

    def _non_finite_error(self, epoch: int, phase: str) -> NonFiniteLossError:
        return NonFiniteLossError(
            f"Non-finite {phase} risk at epoch {epoch}; "
            f"last valid checkpoint is from epoch {self._best_epoch}",
            epoch=epoch,
            checkpoint=self._snapshot(),
        )

    def _architecture_dict(self):
        architecture = getattr(self.model, "architecture", None)
        return architecture.to_dict() if architecture is not None else None

    def _print(self, message: str):
        if self.config.verbose:
            print(message)

    def _log_epoch(
        self,
        epoch: int,
        train_metrics: Dict[str, float],
        val_metrics: Dict[str, float],
        learning_rate: float,
    ):
        """Log epoch metrics to TensorBoard."""
        if self.writer is None:
            return

        self.writer.add_scalars(
            "Risk/epoch",
            {"train": train_metrics["risk"], "val": val_metrics["risk"]},
            epoch,
        )
        self.writer.add_scalar("LearningRate", learning_rate, epoch)

        # Per-parameter MAE and bias
        for name in self.param_names:
            self.writer.add_scalar(f"Params/{name}_mae", val_metrics.get(f"{name}_mae", 0), epoch)
            self.writer.add_scalar(f"Params/{name}_bias", val_metrics.get(f"{name}_bias", 0), epoch)

    def close(self):
        """Close TensorBoard writer."""
        if self.writer is not None:
            self.writer.close()

    def __del__(self):
        """Ensure TensorBoard writer is closed."""
        if getattr(self, "writer", None) is not None:
            self.writer.close()


def _resolve_config(config, overrides) -> TrainingConfig:
    if config is None:
        config = TrainingConfig()
    elif isinstance(config, dict):
        config = TrainingConfig.from_dict(config)
    if overrides:
        config = config.replace(**overrides)
    return config


def _as_parameter_set(theta) -> ParameterSet:
    return theta if isinstance(theta, ParameterSet) else ParameterSet(theta)


def train(
    estimator: nn.Module,
    theta_train,
    theta_val,
    Z_train,
    Z_val,
    config: Optional[Union[TrainingConfig, dict]] = None,
    **overrides,
) -> TrainedEstimator:
    """
    Train an estimator on fixed training and validation sets.

    Args:
        estimator: Network (or TrainedEstimator to warm-start from); not modified
        theta_train: Training ParameterSet (or (K, p) array)
        theta_val: Validation ParameterSet
        Z_train: Training DatasetCollection (or dense array / list of datasets)
        Z_val: Validation DatasetCollection
        config: TrainingConfig or dict of options
        **overrides: Individual options overriding ``config``

    Returns:
        TrainedEstimator
    """
    config = _resolve_config(config, overrides)
    trainer = NBETrainer(estimator, config)
    return trainer.fit(
        _as_parameter_set(theta_train),
        as_collection(Z_train),
        _as_parameter_set(theta_val),
        as_collection(Z_val),
    )


def train_with_simulation(
    estimator: nn.Module,
    sampler,
    simulator,
    m: int,
    K: int,
    K_val: Optional[int] = None,
    config: Optional[Union[TrainingConfig, dict]] = None,
    rng: Optional[np.random.Generator] = None,
    **overrides,
) -> TrainedEstimator:
    """
    Train with training data drawn from a sampler and simulator.

    Parameters are resampled every ``epochs_per_theta_refresh`` epochs and
    data resimulated every ``epochs_per_Z_refresh`` epochs; the validation
    set is simulated once and kept fixed.

    Args:
        estimator: Network to train (not modified)
        sampler: Object with ``sample(K, rng)`` or callable returning a ParameterSet
        simulator: Object with ``simulate(theta, m, rng)`` or callable
        m: Replicates per dataset
        K: Number of training parameter vectors
        K_val: Number of validation parameter vectors. Default: K // 5
        config: TrainingConfig or dict of options
        rng: numpy Generator; defaults to one seeded from ``config.seed``

    Returns:
        TrainedEstimator
    """
    config = _resolve_config(config, overrides)
    rng = as_generator(rng if rng is not None else config.seed)
    if K_val is None:
        K_val = max(K // 5, 1)
    expected_shape = getattr(unwrap(estimator), "input_shape", None)

    theta_val = sample_parameters(sampler, K_val, rng)
    Z_val = assemble(theta_val, simulator, m, rng, expected_shape)
    theta_train = sample_parameters(sampler, K, rng)
    Z_train = assemble(theta_train, simulator, m, rng, expected_shape)

    current = {"theta": theta_train}

    def refresh(epoch: int):
        if epoch == 1:
            return None
        if (epoch - 1) % config.epochs_per_theta_refresh == 0:
            current["theta"] = sample_parameters(sampler, K, rng)
        elif (epoch - 1) % config.epochs_per_Z_refresh != 0:
            return None
        theta = current["theta"]
        return theta, assemble(theta, simulator, m, rng, expected_shape)

    trainer = NBETrainer(estimator, config, param_names=theta_val.names)
    return trainer.fit(theta_train, Z_train, theta_val, Z_val, refresh=refresh)


def train_for_sample_sizes(
    estimator: nn.Module,
    theta_train,
    theta_val,
    Z_train,
    Z_val,
    sample_sizes: Sequence[int],
    config: Optional[Union[TrainingConfig, dict]] = None,
    **overrides,
) -> List[TrainedEstimator]:
    """
    Train one estimator per sample size, warm-starting each from the last.

    Sample sizes are processed in increasing order. For sample size m every
    dataset is truncated to its first m replicates, so Z_train and Z_val
    must hold at least max(sample_sizes) replicates per dataset.

    Returns:
        List of TrainedEstimators, one per sample size in increasing order
    """
    config = _resolve_config(config, overrides)
    theta_train = _as_parameter_set(theta_train)
    theta_val = _as_parameter_set(theta_val)
    Z_train = as_collection(Z_train)
    Z_val = as_collection(Z_val)

    estimators = []
    current = estimator
    for m in sorted(set(int(s) for s in sample_sizes)):
        if config.verbose:
            print(f"Training estimator for m = {m}")
        trained = train(
            current,
            theta_train,
            theta_val,
            Z_train.subset_replicates(m),
            Z_val.subset_replicates(m),
            config,
        )
        estimators.append(trained)
        current = trained
    return estimators
