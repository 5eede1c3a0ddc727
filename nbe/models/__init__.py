"""
Neural Bayes Estimator models module.

This module provides modular components for building Neural Bayes Estimators
following the DeepSets architecture from Sainsbury-Dale et al. (2024).

Components:
- Base classes: Abstract interfaces for encoders, aggregations, estimators, output layers
- Encoders: Replicate encoders (MLP, 2D CNN)
- Aggregations: Permutation-invariant aggregations (mean, sum, max)
- Estimators: Parameter estimation networks (MLP, linear)
- Output layers: Constraints on the estimates (bounds, covariance matrices)
- DeepSetsNBE: Main model combining all components
"""

# Base classes
from .base import (
    BasePsiNetwork,
    BaseAggregation,
    BasePhiNetwork,
    BaseOutputLayer,
)

# Encoders
from .encoders import (
    MLPEncoder,
    CNNEncoder,
)

# Aggregations
from .aggregations import (
    MeanAggregation,
    SumAggregation,
    MaxAggregation,
)

# Estimators
from .estimators import (
    MLPEstimator,
    LinearEstimator,
)

# Output layers
from .output_layers import (
    Compress,
    CholeskyCovariance,
    CovarianceMatrix,
)

# Main model
from .deepsets import (
    DeepSetsNBE,
    PiecewiseEstimator,
    ArchitectureConfig,
    build_estimator,
)

__all__ = [
    # Base classes
    "BasePsiNetwork",
    "BaseAggregation",
    "BasePhiNetwork",
    "BaseOutputLayer",
    # Encoders
    "MLPEncoder",
    "CNNEncoder",
    # Aggregations
    "MeanAggregation",
    "SumAggregation",
    "MaxAggregation",
    # Estimators
    "MLPEstimator",
    "LinearEstimator",
    # Output layers
    "Compress",
    "CholeskyCovariance",
    "CovarianceMatrix",
    # Main model
    "DeepSetsNBE",
    "PiecewiseEstimator",
    "ArchitectureConfig",
    "build_estimator",
]
