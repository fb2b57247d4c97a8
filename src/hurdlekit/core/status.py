"""
Per-feature fit status flags.

Hurdle fits run over thousands of features and a failure on one feature
must never abort the batch. Instead each fitted feature carries a bitwise
status so that result tables can keep a row for every requested feature
and downstream code can decide which tests are defined.

Engineering Design:
    IntFlag enables cheap combination and checks:
    - Multiple flags per feature: NON_CONVERGED | UNIDENTIFIABLE
    - Fast checks: if status & FitStatus.UNIDENTIFIABLE
    - Composable with numpy integer arrays for vectorised filtering

Examples:
    >>> from hurdlekit.core.status import FitStatus
    >>> status = FitStatus.DISCRETE_BOUNDARY | FitStatus.UNIDENTIFIABLE
    >>> bool(status & FitStatus.UNIDENTIFIABLE)
    True
    >>> status.describe()
    'discrete_boundary|unidentifiable'
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['FitStatus']


class FitStatus(IntFlag):
    """
    Bitwise flags describing how a feature's hurdle fit went.

    Attributes:
        OK: Both components estimated (0)
        NON_CONVERGED: Discrete (logistic) solver failed or did not converge (1)
        UNIDENTIFIABLE: Continuous component not estimable from the
            detected samples (2)
        DISCRETE_BOUNDARY: Detection indicator is constant, so the logistic
            likelihood is maximised on the boundary (4)
        NOT_FITTED: Fit was cancelled before this feature was reached (8)
    """

    OK = 0
    """Both components estimated."""

    NON_CONVERGED = 1
    """
    Logistic regression raised or reported non-convergence.
    Discrete coefficients are NaN; the continuous component is still fitted.
    """

    UNIDENTIFIABLE = 2
    """
    Too few detected samples (fewer than design rank + 1), a rank-deficient
    design over the detected samples, or constant detected values.
    """

    DISCRETE_BOUNDARY = 4
    """
    Feature detected in all samples (or none). Log-likelihood is exactly 0
    for any design with an intercept; coefficients are undefined (NaN).
    """

    NOT_FITTED = 8
    """Batch was cancelled before this feature was fitted."""

    @property
    def discrete_defined(self) -> bool:
        """Whether a discrete log-likelihood is available."""
        return not (self & (FitStatus.NON_CONVERGED | FitStatus.NOT_FITTED))

    @property
    def continuous_defined(self) -> bool:
        """Whether a continuous log-likelihood is available."""
        return not (self & (FitStatus.UNIDENTIFIABLE | FitStatus.NOT_FITTED))

    def describe(self) -> str:
        """Lower-case, '|'-joined flag names ('ok' when no flag is set)."""
        if self == FitStatus.OK:
            return 'ok'
        names = [
            flag.name.lower() for flag in FitStatus
            if flag != FitStatus.OK and self & flag
        ]
        return '|'.join(names)
