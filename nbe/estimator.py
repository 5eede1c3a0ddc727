"""Trained estimators: an architecture descriptor paired with frozen parameters."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import torch
import torch.nn as nn
from torch import Tensor

from .models.deepsets import ArchitectureConfig, build_estimator


class TrainedEstimator:
    """
    A trained neural Bayes estimator.

    Holds the network (in evaluation mode) and, when the network was built
    from an ArchitectureConfig, the descriptor needed to rebuild it. Calling
    the estimator never records gradients, so a TrainedEstimator may be
    shared between threads for assessment and bootstrapping.

    Args:
        network: Trained network mapping data to estimates
        architecture: Descriptor used to rebuild the network, if any
        history: Training history recorded by the trainer: per-epoch lists
                 plus the scalar ``initial_val_risk``
        best_epoch: Epoch whose parameters the network holds (0 = initial)
        stopped_early: Whether training ended through early stopping
        param_names: Names of the estimated parameters
    """

    def __init__(
        self,
        network: nn.Module,
        architecture: Optional[ArchitectureConfig] = None,
        history: Optional[Dict[str, Union[float, List[float]]]] = None,
        best_epoch: Optional[int] = None,
        stopped_early: bool = False,
        param_names: Optional[Sequence[str]] = None,
    ):
        self.network = network.eval()
        self.architecture = architecture if architecture is not None else getattr(
            network, "architecture", None
        )
        self.history = history if history is not None else {}
        self.best_epoch = best_epoch
        self.stopped_early = stopped_early
        self.param_names = list(param_names) if param_names is not None else None

    @property
    def input_shape(self) -> Tuple[int, ...]:
        return tuple(self.network.input_shape)

    @property
    def num_params(self) -> int:
        return self.network.num_params

    @property
    def device(self) -> torch.device:
        return next(self.network.parameters()).device

    def __call__(self, Z: Union[Tensor, Sequence[Tensor]]) -> Tensor:
        with torch.no_grad():
            return self.network(Z)

    def state_dict(self) -> Dict[str, Any]:
        return self.network.state_dict()

    def save(self, path: Union[str, Path]):
        """Save architecture descriptor, parameters and training history."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(
            {
                "architecture": self.architecture.to_dict() if self.architecture else None,
                "model_state_dict": self.network.state_dict(),
                "history": self.history,
                "best_epoch": self.best_epoch,
                "stopped_early": self.stopped_early,
                "param_names": self.param_names,
            },
            path,
        )

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        network: Optional[nn.Module] = None,
        device: str = "cpu",
    ) -> "TrainedEstimator":
        """
        Load an estimator saved with :meth:`save`.

        Args:
            path: Checkpoint path
            network: Network to load parameters into. Required when the
                     checkpoint has no architecture descriptor.
            device: Device to map the parameters to
        """
        checkpoint = torch.load(path, map_location=device)
        architecture = None
        if checkpoint.get("architecture") is not None:
            architecture = ArchitectureConfig.from_dict(checkpoint["architecture"])
        if network is None:
            if architecture is None:
                raise ValueError(
                    "Checkpoint has no architecture descriptor; pass the network to load into"
                )
            network = build_estimator(architecture)
        network.load_state_dict(checkpoint["model_state_dict"])
        return cls(
            network.to(device),
            architecture=architecture,
            history=checkpoint.get("history"),
            best_epoch=checkpoint.get("best_epoch"),
            stopped_early=checkpoint.get("stopped_early", False),
            param_names=checkpoint.get("param_names"),
        )

    def __repr__(self) -> str:
        return (
            f"TrainedEstimator(input_shape={self.input_shape}, num_params={self.num_params}, "
            f"best_epoch={self.best_epoch})"
        )


def unwrap(estimator) -> nn.Module:
    """Return the underlying network of a TrainedEstimator (or the module itself)."""
    if isinstance(estimator, TrainedEstimator):
        return estimator.network
    return estimator
