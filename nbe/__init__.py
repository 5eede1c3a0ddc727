from .data import ParameterSet, DatasetCollection, assemble, ReplicateDataset, collate_replicates
from .priors import (
    Prior,
    UniformPrior,
    LogUniformPrior,
    NormalPrior,
    GammaPrior,
    JointPrior,
    sample_parameters,
)
from .simulator import Simulator, GaussianSimulator
from .estimator import TrainedEstimator
from .assessment import estimate, estimate_collection, assess, Assessment, AssessmentRecord
from .bootstrap import bootstrap, parametric_bootstrap, BootstrapDistribution, interval_coverage
from .exceptions import (
    NBEError,
    ShapeMismatchError,
    CardinalityMismatchError,
    NonFiniteLossError,
    ConvergenceStall,
    DegenerateBootstrapWarning,
)

# Models module
from . import models
from . import training
from .models import DeepSetsNBE, PiecewiseEstimator, ArchitectureConfig, build_estimator
from .training import (
    NBETrainer,
    TrainingConfig,
    train,
    train_with_simulation,
    train_for_sample_sizes,
)

__all__ = [
    # Data
    "ParameterSet",
    "DatasetCollection",
    "assemble",
    "ReplicateDataset",
    "collate_replicates",
    # Priors
    "Prior",
    "UniformPrior",
    "LogUniformPrior",
    "NormalPrior",
    "GammaPrior",
    "JointPrior",
    "sample_parameters",
    # Simulation
    "Simulator",
    "GaussianSimulator",
    # Estimators
    "DeepSetsNBE",
    "PiecewiseEstimator",
    "ArchitectureConfig",
    "build_estimator",
    "TrainedEstimator",
    # Training
    "NBETrainer",
    "TrainingConfig",
    "train",
    "train_with_simulation",
    "train_for_sample_sizes",
    # Assessment
    "estimate",
    "estimate_collection",
    "assess",
    "Assessment",
    "AssessmentRecord",
    # Bootstrap
    "bootstrap",
    "parametric_bootstrap",
    "BootstrapDistribution",
    "interval_coverage",
    # Errors and warnings
    "NBEError",
    "ShapeMismatchError",
    "CardinalityMismatchError",
    "NonFiniteLossError",
    "ConvergenceStall",
    "DegenerateBootstrapWarning",
    # Modules
    "models",
    "training",
]
