"""
Exception taxonomy for hurdle-model analysis.

Call-level errors are raised immediately and abort the single call that
triggered them. Per-feature failures (non-convergence, unidentifiable
continuous component) are never raised; they are recorded as
:class:`~hurdlekit.core.status.FitStatus` flags on the feature's result row.
"""

from __future__ import annotations

__all__ = [
    'HurdleError',
    'DimensionMismatch',
    'DuplicateIdentifier',
    'DuplicateColumn',
    'InvalidContrast',
    'ConfigurationError',
    'DesignError',
]


class HurdleError(Exception):
    """Base class for all hurdlekit errors."""
    pass


class DimensionMismatch(HurdleError, ValueError):
    """Raised when matrix, identifiers and metadata tables disagree in shape."""
    pass


class DuplicateIdentifier(DimensionMismatch):
    """Raised when feature or sample identifiers are not unique."""
    pass


class DuplicateColumn(HurdleError, ValueError):
    """Raised when attaching a sample covariate whose name already exists."""
    pass


class InvalidContrast(HurdleError, ValueError):
    """Raised when a contrast references coefficients absent from the design."""
    pass


class ConfigurationError(HurdleError, ValueError):
    """Raised for invalid analysis settings (e.g. zero bootstrap replicates)."""
    pass


class DesignError(HurdleError, ValueError):
    """Raised when a design specification cannot be resolved to a full-rank matrix."""
    pass
