"""
Post-fit hooks for the hurdle model fitter.

A hook is any callable ``hook(feature_id, fitted, residuals)`` passed to
:func:`~hurdlekit.stats.hurdle.fit_hurdle` as ``post_fit``. It runs once
per fitted feature, right after both components are estimated, and its
return value is stored on ``FittedHurdle.auxiliary``. Hooks run inside the
worker that fitted the feature and must not mutate shared state.

Two hooks are provided:
    residuals_hook: continuous-component residuals (NaN where undetected)
    combined_residuals_hook: residuals around the hurdle expected value,
        E[Y] = P(detected) * E[Y | detected]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from hurdlekit.stats.hurdle import FittedHurdle

__all__ = [
    'HurdleResiduals',
    'PostFitHook',
    'residuals_hook',
    'combined_residuals_hook',
]


@dataclass(frozen=True)
class HurdleResiduals:
    """Raw per-sample fit data handed to post-fit hooks.

    All arrays have one entry per sample (design row).

    Attributes:
        values: Observed expression values.
        detected: Detection indicator.
        discrete_fitted: Fitted detection probability (NaN if undefined).
        continuous_fitted: Fitted conditional mean X @ beta_C for every
            sample (NaN if the continuous component is undefined).
        continuous_scale: Residual variance of the continuous component.
    """

    values: NDArray[np.float64]
    detected: NDArray[np.bool_]
    discrete_fitted: NDArray[np.float64]
    continuous_fitted: NDArray[np.float64]
    continuous_scale: float

    @property
    def discrete(self) -> NDArray[np.float64]:
        """Response residuals of the discrete component (indicator - p_hat)."""
        return self.detected.astype(np.float64) - self.discrete_fitted

    @property
    def continuous(self) -> NDArray[np.float64]:
        """Continuous residuals on detected samples, NaN elsewhere."""
        resid = np.full(self.values.shape, np.nan)
        resid[self.detected] = self.values[self.detected] - self.continuous_fitted[self.detected]
        return resid


PostFitHook = Callable[[str, 'FittedHurdle', HurdleResiduals], Any]


def residuals_hook(feature_id: str, fitted: FittedHurdle, residuals: HurdleResiduals) -> NDArray[np.float64]:
    """Return the continuous residuals of a feature."""
    return residuals.continuous


def combined_residuals_hook(
    feature_id: str,
    fitted: FittedHurdle,
    residuals: HurdleResiduals,
) -> NDArray[np.float64]:
    """
    Residuals of the observed value around the hurdle expected value.

    For every sample, r = y - p_hat * mu_hat where p_hat is the fitted
    detection probability and mu_hat the fitted conditional mean. Samples
    where either component is undefined get NaN.
    """
    expected = residuals.discrete_fitted * residuals.continuous_fitted
    return residuals.values - expected
