"""
Error taxonomy for Neural Bayes Estimators.

Shape and cardinality errors are raised at the assembler/estimator boundary
and are fatal. Numeric failures during training raise NonFiniteLossError,
which carries the last valid checkpoint. Advisories (early-stopping stalls,
degenerate bootstrap resampling) are warnings, not errors.
"""

from typing import Optional


class NBEError(Exception):
    """Base class for all errors raised by nbe."""


class ShapeMismatchError(NBEError, ValueError):
    """Replicate or feature shape inconsistent with the architecture."""


class CardinalityMismatchError(NBEError, ValueError):
    """Number of datasets or replicates does not match what was requested."""


class NonFiniteLossError(NBEError, RuntimeError):
    """
    Raised when a computed risk is NaN or infinite during training.

    Args:
        message: Error description
        epoch: Epoch at which the non-finite risk was observed
        checkpoint: TrainedEstimator holding the best parameters seen
                    before the failure (never contains non-finite state)
    """

    def __init__(self, message: str, epoch: int, checkpoint: Optional[object] = None):
        super().__init__(message)
        self.epoch = epoch
        self.checkpoint = checkpoint


class ConvergenceStall(UserWarning):
    """Validation risk stopped improving for the configured patience window."""


class DegenerateBootstrapWarning(UserWarning):
    """Bootstrap on a single replicate: every resample equals the data."""
