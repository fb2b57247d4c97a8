"""
Two-part (hurdle) regression fitted independently for every feature.

For each feature the model is split at the detection threshold:

    discrete:    logit P(y > t) = X beta_D          (statsmodels GLM, Binomial)
    continuous:  y | y > t ~ N(X beta_C, sigma^2)   (statsmodels OLS, detected samples)

Both components share one design matrix. Their covariance is block
diagonal: no cross term is estimated analytically, which is why joint and
cross-feature inference relies on the bootstrap (see ``bootstrap.py``).

Failure isolation:
    A failure on one feature never aborts the batch. Non-convergence,
    unidentifiable continuous components and boundary discrete fits are
    recorded as :class:`~hurdlekit.core.status.FitStatus` flags with NaN
    coefficients, and every requested feature keeps an entry.

Determinism:
    There is no randomness here. Features are fitted by a pure function and
    merged by key in the requested order, so results are identical whether
    run serially or on a thread pool.

Warning convention:
    warnings.warn() -- user-facing (statsmodels warnings pass through; the
                       fitter never changes the process-wide warning filters)
    logger.warning() -- operator-facing (failures, cancellation)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.linalg import block_diag
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from hurdlekit.core.exceptions import DimensionMismatch
from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.core.status import FitStatus
from hurdlekit.stats.design_matrix import COMPONENTS, Design, DesignSpec, resolve_design
from hurdlekit.stats.hooks import HurdleResiduals, PostFitHook

if TYPE_CHECKING:
    from hurdlekit.config import HurdleConfig

logger = logging.getLogger(__name__)

__all__ = [
    'FittedComponent',
    'FittedHurdle',
    'HurdleFit',
    'fit_feature',
    'fit_hurdle',
]

# Relative residual sum of squares below which a continuous fit is treated
# as exact (zero residual variance, infinite likelihood).
_PERFECT_FIT_TOL = 1e-12


@dataclass(frozen=True)
class FittedComponent:
    """One component (discrete or continuous) of a feature's hurdle fit.

    Attributes:
        coef: Coefficient estimates indexed by coefficient name (NaN if undefined).
        cov: Coefficient covariance (NaN if undefined).
        llf: Maximised log-likelihood (NaN if undefined).
        n_obs: Observations used (all samples for D, detected samples for C).
        df_resid: Residual degrees of freedom.
        scale: Dispersion (residual variance for C, 1 for D).
    """

    coef: pd.Series
    cov: pd.DataFrame
    llf: float
    n_obs: int
    df_resid: float
    scale: float = 1.0

    @property
    def n_params(self) -> int:
        return len(self.coef)

    @property
    def defined(self) -> bool:
        return bool(np.isfinite(self.llf))

    @classmethod
    def undefined(cls, coef_names: Sequence[str], n_obs: int, llf: float = np.nan) -> FittedComponent:
        names = list(coef_names)
        return cls(
            coef=pd.Series(np.nan, index=names, dtype=np.float64),
            cov=pd.DataFrame(np.nan, index=names, columns=names, dtype=np.float64),
            llf=llf,
            n_obs=n_obs,
            df_resid=np.nan,
            scale=np.nan,
        )


@dataclass(frozen=True)
class FittedHurdle:
    """Hurdle fit of a single feature. Immutable once returned.

    Attributes:
        feature_id: Feature identifier.
        discrete: Logistic component.
        continuous: Conditional Gaussian component.
        status: Combined fit status flags.
        n_detected: Number of samples above the detection threshold.
        issue: Human-readable failure reasons (None when both fits succeeded).
        auxiliary: Value returned by the post-fit hook, if any.
    """

    feature_id: str
    discrete: FittedComponent
    continuous: FittedComponent
    status: FitStatus
    n_detected: int
    issue: str | None = None
    auxiliary: Any = None

    @property
    def coef_names(self) -> tuple[str, ...]:
        return tuple(self.discrete.coef.index)

    @property
    def df_used(self) -> int:
        """Number of coefficients estimated across the defined components."""
        return (
            (self.discrete.n_params if self.status.discrete_defined and not self.status & FitStatus.DISCRETE_BOUNDARY else 0)
            + (self.continuous.n_params if self.status.continuous_defined else 0)
        )

    @property
    def converged(self) -> bool:
        return not (self.status & (FitStatus.NON_CONVERGED | FitStatus.NOT_FITTED))

    def component(self, component: str) -> FittedComponent:
        if component == 'D':
            return self.discrete
        if component == 'C':
            return self.continuous
        raise ValueError(f"component must be 'D' or 'C', got {component!r}")

    def combined_coef(self) -> NDArray[np.float64]:
        """Concatenated [beta_D | beta_C]."""
        return np.concatenate([self.discrete.coef.values, self.continuous.coef.values])

    def combined_cov(self) -> NDArray[np.float64]:
        """Block-diagonal covariance of the combined coefficient vector."""
        return block_diag(self.discrete.cov.values, self.continuous.cov.values)


@dataclass
class HurdleFit:
    """Collection of per-feature hurdle fits for one design.

    Attributes:
        design: Resolved design shared by all features.
        fits: Feature id -> FittedHurdle, in requested order.
        detection_threshold: Threshold used for the detection indicator.
        cancelled: True if the batch was stopped early.
    """

    design: Design
    fits: dict[str, FittedHurdle]
    detection_threshold: float = 0.0
    cancelled: bool = False

    def __getitem__(self, feature_id: str) -> FittedHurdle:
        return self.fits[feature_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.fits)

    def __len__(self) -> int:
        return len(self.fits)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self.fits

    @property
    def feature_ids(self) -> list[str]:
        return list(self.fits)

    def status(self) -> pd.Series:
        """FitStatus per feature as integer flags."""
        return pd.Series(
            [int(f.status) for f in self.fits.values()],
            index=pd.Index(self.feature_ids, name='feature_id'),
            name='status',
        )

    def coefficients(self, component: str) -> pd.DataFrame:
        """Features × coefficients table for one component ('D' or 'C')."""
        rows = [self.fits[fid].component(component).coef.values for fid in self.fits]
        return pd.DataFrame(
            np.vstack(rows) if rows else np.empty((0, self.design.n_params)),
            index=pd.Index(self.feature_ids, name='feature_id'),
            columns=list(self.design.coef_names),
        )

    def combined_coefficients(self) -> NDArray[np.float64]:
        """Array (n_features, 2 * n_params) of [beta_D | beta_C]."""
        if not self.fits:
            return np.empty((0, 2 * self.design.n_params))
        return np.vstack([f.combined_coef() for f in self.fits.values()])

    def coefficient_table(self) -> pd.DataFrame:
        """
        Long-form coefficient table.

        Columns: feature_id, component, coefficient, estimate, se, status.
        """
        records = []
        for fid, fitted in self.fits.items():
            status = fitted.status.describe()
            for component in COMPONENTS:
                part = fitted.component(component)
                se = np.sqrt(np.diag(part.cov.values))
                for name, estimate, err in zip(part.coef.index, part.coef.values, se):
                    records.append({
                        'feature_id': fid,
                        'component': component,
                        'coefficient': name,
                        'estimate': estimate,
                        'se': err,
                        'status': status,
                    })
        return pd.DataFrame.from_records(
            records,
            columns=['feature_id', 'component', 'coefficient', 'estimate', 'se', 'status'],
        )

    def summary(self) -> dict[str, int]:
        """Count of features per status flag."""
        counts = {'n_features': len(self.fits), 'ok': 0}
        for flag in FitStatus:
            if flag != FitStatus.OK:
                counts[flag.name.lower()] = 0
        for fitted in self.fits.values():
            if fitted.status == FitStatus.OK:
                counts['ok'] += 1
            for flag in FitStatus:
                if flag != FitStatus.OK and fitted.status & flag:
                    counts[flag.name.lower()] += 1
        return counts


def _wrap_cov(cov: NDArray | pd.DataFrame, names: list[str]) -> pd.DataFrame:
    return pd.DataFrame(np.asarray(cov, dtype=np.float64), index=names, columns=names)


def _fit_discrete(
    indicator: NDArray[np.bool_],
    X: NDArray[np.float64],
    names: list[str],
) -> tuple[FittedComponent, FitStatus, NDArray[np.float64], str | None]:
    """Logistic regression of the detection indicator."""
    import statsmodels.api as sm

    n_obs = len(indicator)
    n_detected = int(indicator.sum())

    if n_detected == 0 or n_detected == n_obs:
        # Constant indicator: the likelihood supremum is 1 (llf = 0) on the boundary
        fitted = np.full(n_obs, n_detected / n_obs if n_obs else np.nan)
        return (
            FittedComponent.undefined(names, n_obs, llf=0.0),
            FitStatus.DISCRETE_BOUNDARY,
            fitted,
            None,
        )

    try:
        result = sm.GLM(indicator.astype(np.float64), X, family=sm.families.Binomial()).fit()
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
        return (
            FittedComponent.undefined(names, n_obs),
            FitStatus.NON_CONVERGED,
            np.full(n_obs, np.nan),
            f"discrete fit failed: {type(e).__name__}: {e}",
        )

    params = np.asarray(result.params, dtype=np.float64)
    # Complete separation: fitted probabilities reproduce the indicator
    separated = np.allclose(result.mu, indicator, atol=1e-6)
    converged = bool(getattr(result, 'converged', True))
    if separated or not converged or not np.all(np.isfinite(params)) or not np.isfinite(result.llf):
        n_iter = result.fit_history.get('iteration') if hasattr(result, 'fit_history') else None
        if separated:
            reason = 'discrete fit separated'
        elif n_iter is not None:
            reason = f'discrete fit did not converge after {n_iter} iterations'
        else:
            reason = 'discrete fit did not converge'
        return (
            FittedComponent.undefined(names, n_obs),
            FitStatus.NON_CONVERGED,
            np.full(n_obs, np.nan),
            reason,
        )

    component = FittedComponent(
        coef=pd.Series(params, index=names),
        cov=_wrap_cov(result.cov_params(), names),
        llf=float(result.llf),
        n_obs=n_obs,
        df_resid=float(result.df_resid),
        scale=1.0,
    )
    return component, FitStatus.OK, np.asarray(result.fittedvalues, dtype=np.float64), None


def _fit_continuous(
    y: NDArray[np.float64],
    indicator: NDArray[np.bool_],
    X: NDArray[np.float64],
    names: list[str],
    rank: int,
) -> tuple[FittedComponent, FitStatus, NDArray[np.float64], str | None]:
    """OLS of the value on the design over detected samples."""
    import statsmodels.api as sm

    n_detected = int(indicator.sum())
    undefined = (
        FittedComponent.undefined(names, n_detected),
        FitStatus.UNIDENTIFIABLE,
        np.full(len(y), np.nan),
    )

    # Exactly rank + 1 detected samples is accepted (one residual df)
    if n_detected < rank + 1:
        return (*undefined, f"continuous: {n_detected} detected samples < rank + 1 = {rank + 1}")

    X_det = X[indicator]
    y_det = y[indicator]
    if np.linalg.matrix_rank(X_det) < X.shape[1]:
        return (*undefined, "continuous: design is rank-deficient over detected samples")
    if np.ptp(y_det) == 0:
        return (*undefined, "continuous: detected values are constant")

    result = sm.OLS(y_det, X_det).fit()
    total_ss = float(np.sum((y_det - y_det.mean()) ** 2))
    if result.ssr <= _PERFECT_FIT_TOL * total_ss or not np.isfinite(result.llf):
        return (*undefined, "continuous: zero residual variance")

    component = FittedComponent(
        coef=pd.Series(np.asarray(result.params, dtype=np.float64), index=names),
        cov=_wrap_cov(result.cov_params(), names),
        llf=float(result.llf),
        n_obs=n_detected,
        df_resid=float(result.df_resid),
        scale=float(result.scale),
    )
    return component, FitStatus.OK, X @ component.coef.values, None


def fit_feature(
    feature_id: str,
    y: NDArray[np.float64],
    design: Design,
    detection_threshold: float = 0.0,
    post_fit: PostFitHook | None = None,
) -> FittedHurdle:
    """
    Fit both hurdle components for one feature.

    Never raises for numerical failures of the feature itself; they are
    reported through ``status`` and ``issue``.

    Args:
        feature_id: Feature identifier.
        y: Values for every sample (design row).
        design: Resolved design.
        detection_threshold: Values strictly above this count as detected.
        post_fit: Optional hook, see :mod:`hurdlekit.stats.hooks`.

    Returns:
        FittedHurdle for this feature.
    """
    y = np.asarray(y, dtype=np.float64)
    X = design.X
    names = list(design.coef_names)
    indicator = y > detection_threshold

    discrete, d_status, d_fitted, d_issue = _fit_discrete(indicator, X, names)
    continuous, c_status, c_fitted, c_issue = _fit_continuous(
        y, indicator, X, names, rank=design.n_params
    )

    issues = [i for i in (d_issue, c_issue) if i]
    fitted = FittedHurdle(
        feature_id=feature_id,
        discrete=discrete,
        continuous=continuous,
        status=d_status | c_status,
        n_detected=int(indicator.sum()),
        issue='; '.join(issues) if issues else None,
    )

    if post_fit is None:
        return fitted

    residuals = HurdleResiduals(
        values=y,
        detected=indicator,
        discrete_fitted=d_fitted,
        continuous_fitted=c_fitted,
        continuous_scale=continuous.scale,
    )
    try:
        auxiliary = post_fit(feature_id, fitted, residuals)
    except Exception as e:
        logger.warning("Post-fit hook failed for %s: %s: %s", feature_id, type(e).__name__, e)
        issues.append(f"post_fit hook failed: {type(e).__name__}: {e}")
        return FittedHurdle(
            feature_id=feature_id,
            discrete=discrete,
            continuous=continuous,
            status=fitted.status,
            n_detected=fitted.n_detected,
            issue='; '.join(issues),
        )

    return FittedHurdle(
        feature_id=feature_id,
        discrete=discrete,
        continuous=continuous,
        status=fitted.status,
        n_detected=fitted.n_detected,
        issue=fitted.issue,
        auxiliary=auxiliary,
    )


def _not_fitted(feature_id: str, design: Design, n_samples: int) -> FittedHurdle:
    names = list(design.coef_names)
    return FittedHurdle(
        feature_id=feature_id,
        discrete=FittedComponent.undefined(names, n_samples),
        continuous=FittedComponent.undefined(names, 0),
        status=FitStatus.NOT_FITTED,
        n_detected=0,
        issue='cancelled before fitting',
    )


def _guarded_fit(
    feature_id: str,
    y: NDArray[np.float64],
    design: Design,
    detection_threshold: float,
    post_fit: PostFitHook | None,
    cancel_event: threading.Event | None,
) -> FittedHurdle:
    if cancel_event is not None and cancel_event.is_set():
        return _not_fitted(feature_id, design, len(y))
    try:
        return fit_feature(feature_id, y, design, detection_threshold, post_fit)
    except Exception as e:
        # Isolate unexpected numerical failures to this feature
        logger.debug("Hurdle fit failed for %s", feature_id, exc_info=True)
        names = list(design.coef_names)
        return FittedHurdle(
            feature_id=feature_id,
            discrete=FittedComponent.undefined(names, len(y)),
            continuous=FittedComponent.undefined(names, 0),
            status=FitStatus.NON_CONVERGED | FitStatus.UNIDENTIFIABLE,
            n_detected=int(np.sum(y > detection_threshold)),
            issue=f"fit failed: {type(e).__name__}: {e}",
        )


def fit_hurdle(
    matrix: FeatureMatrix,
    design: DesignSpec | Design,
    features: Sequence[str] | None = None,
    *,
    detection_threshold: float | None = None,
    n_workers: int | None = None,
    post_fit: PostFitHook | None = None,
    cancel_event: threading.Event | None = None,
    config: HurdleConfig | None = None,
) -> HurdleFit:
    """
    Fit the hurdle model to every requested feature.

    Args:
        matrix: Expression store.
        design: DesignSpec (resolved against ``matrix.sample_metadata``) or a
            resolved Design with one row per sample.
        features: Feature ids to fit, in output order. Defaults to all.
        detection_threshold: Detection threshold (config default 0.0).
        n_workers: Thread pool size; 1 fits serially (config default 1).
        post_fit: Optional hook ``hook(feature_id, fitted, residuals)``.
        cancel_event: Once set, no further features are started; unfitted
            features are returned with ``FitStatus.NOT_FITTED``.
        config: Optional HurdleConfig supplying defaults.

    Returns:
        HurdleFit keyed by feature id, one entry per requested feature.

    Raises:
        DimensionMismatch: If a resolved design does not match the sample count.
        KeyError: If a requested feature is not in the matrix.
        DesignError: If a DesignSpec cannot be resolved.
    """
    from hurdlekit.config import HurdleConfig

    fit_config = (config or HurdleConfig()).fit
    threshold = fit_config.detection_threshold if detection_threshold is None else detection_threshold
    workers = fit_config.n_workers if n_workers is None else n_workers

    if isinstance(design, DesignSpec):
        design = resolve_design(design, matrix.sample_metadata)
    if design.n_samples != matrix.n_samples:
        raise DimensionMismatch(
            f"Design has {design.n_samples} rows but matrix has {matrix.n_samples} samples"
        )

    feature_ids = list(matrix.feature_ids) if features is None else list(features)
    positions = matrix.feature_ids.get_indexer(feature_ids)
    missing = [fid for fid, pos in zip(feature_ids, positions) if pos < 0]
    if missing:
        raise KeyError(f"Features not in matrix: {missing[:10]}")
    if len(set(feature_ids)) != len(feature_ids):
        raise ValueError("Requested features contain duplicates")

    logger.info(
        "Fitting hurdle model: %d features, %d samples, %d coefficients per component",
        len(feature_ids), matrix.n_samples, design.n_params,
    )

    data = matrix.data
    results: dict[str, FittedHurdle] = {}
    if workers <= 1:
        for fid, pos in zip(feature_ids, positions):
            results[fid] = _guarded_fit(fid, data[pos], design, threshold, post_fit, cancel_event)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                fid: executor.submit(
                    _guarded_fit, fid, data[pos], design, threshold, post_fit, cancel_event
                )
                for fid, pos in zip(feature_ids, positions)
            }
            for fid, future in futures.items():
                results[fid] = future.result()

    # Keyed merge: output order is the requested order, not completion order
    ordered = {fid: results[fid] for fid in feature_ids}
    cancelled = any(f.status & FitStatus.NOT_FITTED for f in ordered.values())

    fit = HurdleFit(
        design=design,
        fits=ordered,
        detection_threshold=threshold,
        cancelled=cancelled,
    )
    counts = fit.summary()
    if cancelled:
        logger.warning(
            "Hurdle fit cancelled: %d of %d features not fitted",
            counts['not_fitted'], counts['n_features'],
        )
    logger.info(
        "Hurdle fit complete: %d ok, %d non-converged, %d unidentifiable, %d boundary",
        counts['ok'], counts['non_converged'], counts['unidentifiable'], counts['discrete_boundary'],
    )
    return fit
