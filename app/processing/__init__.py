"""Processing backends for uploaded audio."""

from .duration import (
    DEFAULT_STRATEGIES,
    DurationEstimate,
    DurationEstimator,
    EstimationInput,
    EstimationStrategy,
    EstimationStrategyError,
    estimate_from_file_size,
)

__all__ = [
    "DEFAULT_STRATEGIES",
    "DurationEstimate",
    "DurationEstimator",
    "EstimationInput",
    "EstimationStrategy",
    "EstimationStrategyError",
    "estimate_from_file_size",
]
