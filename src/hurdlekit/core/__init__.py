"""
Core data structures shared by every analysis stage.

1. FeatureMatrix: Expression matrix with sample covariates and feature metadata
2. FitStatus: Bitwise per-feature fit status flags
3. Exceptions: Call-level error taxonomy

Design Philosophy:
    - Immutability: All operations return new instances (functional style)
    - Failure isolation: per-feature problems are flags, never exceptions
"""

from hurdlekit.core.exceptions import (
    ConfigurationError,
    DesignError,
    DimensionMismatch,
    DuplicateColumn,
    DuplicateIdentifier,
    HurdleError,
    InvalidContrast,
)
from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.core.status import FitStatus

__all__ = [
    'FeatureMatrix',
    'FitStatus',
    'HurdleError',
    'DimensionMismatch',
    'DuplicateIdentifier',
    'DuplicateColumn',
    'InvalidContrast',
    'ConfigurationError',
    'DesignError',
]
