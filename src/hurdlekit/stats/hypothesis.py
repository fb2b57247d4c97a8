"""
Hypothesis tests on fitted hurdle models.

Two families of tests are provided, both returning one row per feature in
the input feature order (sorting is left to :func:`rank_results`):

Likelihood-ratio test (nested designs):
    stat_k = 2 * (llf_full_k - llf_restricted_k),   k in {discrete, continuous}
    df_k   = n_params_full - n_params_restricted   (0 for a boundary discrete fit)
    hurdle = stat_D + stat_C on df_D + df_C, only when both are defined

Wald test (linear contrast over [beta_D | beta_C]):
    W_k = (L_k b_k)' (L_k S_k L_k')^-1 (L_k b_k),  df_k = rank(L_k)
    hurdle = sum of W_k over the components the contrast touches
    For single-row contrasts also z = c'b / sqrt(c' S c) over the full space.

Per-feature failures never raise: statistics of undefined components are
NaN and the feature keeps its row, so multiplicity correction sees the
complete feature set. Multiplicity correction itself is applied by the
caller (see :func:`hurdlekit.stats.multitest.fdr_correction`).
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import expit

from hurdlekit.core.exceptions import InvalidContrast
from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.core.status import FitStatus
from hurdlekit.stats.design_matrix import Contrast, Design
from hurdlekit.stats.hurdle import FittedHurdle, HurdleFit, fit_hurdle

if TYPE_CHECKING:
    from hurdlekit.config import HurdleConfig

logger = logging.getLogger(__name__)

__all__ = [
    'lr_test',
    'lr_test_drop',
    'wald_test',
    'rank_results',
    'log_fold_change',
    'RESULT_COLUMNS',
]

RESULT_COLUMNS = [
    'feature_id', 'status',
    'discrete_stat', 'discrete_df', 'discrete_pvalue',
    'continuous_stat', 'continuous_df', 'continuous_pvalue',
    'hurdle_stat', 'hurdle_df', 'hurdle_pvalue',
]


def _chi2_pvalue(stat: float, df: float) -> float:
    if not np.isfinite(stat):
        return np.nan
    if df == 0:
        return 1.0
    return float(scipy_stats.chi2.sf(stat, df))


def _component_row(prefix: str, stat: float, df: float) -> dict[str, float]:
    return {
        f'{prefix}_stat': stat,
        f'{prefix}_df': df,
        f'{prefix}_pvalue': _chi2_pvalue(stat, df),
    }


def lr_test(full: HurdleFit, restricted: HurdleFit) -> pd.DataFrame:
    """
    Likelihood-ratio test between nested hurdle fits.

    Args:
        full: Fit of the larger design.
        restricted: Fit of a design whose coefficients are a subset of the
            full design's, over the same features and samples.

    Returns:
        DataFrame with RESULT_COLUMNS, one row per feature in ``full`` order.

    Raises:
        ValueError: If the fits cover different features, samples or
            detection thresholds.
        InvalidContrast: If the restricted design is not nested in the full one.
    """
    if set(full.feature_ids) != set(restricted.feature_ids):
        raise ValueError("Full and restricted fits must cover the same features")
    if full.design.n_samples != restricted.design.n_samples:
        raise ValueError(
            f"Full fit has {full.design.n_samples} samples, restricted has "
            f"{restricted.design.n_samples}"
        )
    if full.detection_threshold != restricted.detection_threshold:
        raise ValueError("Full and restricted fits used different detection thresholds")
    extra = set(restricted.design.coef_names) - set(full.design.coef_names)
    if extra:
        raise InvalidContrast(
            f"Restricted design is not nested in the full design; extra coefficients: {sorted(extra)}"
        )

    df = full.design.n_params - restricted.design.n_params
    boundary = FitStatus.DISCRETE_BOUNDARY

    rows = []
    for fid in full.feature_ids:
        f_fit = full[fid]
        r_fit = restricted[fid]
        status = f_fit.status | r_fit.status

        d_stat = np.nan
        if status.discrete_defined:
            d_stat = max(0.0, 2.0 * (f_fit.discrete.llf - r_fit.discrete.llf))
        c_stat = np.nan
        if status.continuous_defined:
            c_stat = max(0.0, 2.0 * (f_fit.continuous.llf - r_fit.continuous.llf))

        row = {'feature_id': fid, 'status': status.describe()}
        # A boundary discrete fit estimates no coefficients in either model
        d_df = 0 if status & boundary else df
        row.update(_component_row('discrete', d_stat, d_df))
        row.update(_component_row('continuous', c_stat, df))
        row.update(_component_row('hurdle', d_stat + c_stat, d_df + df))
        rows.append(row)

    logger.info("LRT on %d features, %d df per component", len(rows), df)
    return pd.DataFrame.from_records(rows, columns=RESULT_COLUMNS)


def lr_test_drop(
    matrix: FeatureMatrix,
    full: HurdleFit,
    drop: Sequence[str] | str,
    *,
    n_workers: int | None = None,
    cancel_event: threading.Event | None = None,
    config: HurdleConfig | None = None,
) -> pd.DataFrame:
    """
    Refit without the named terms/coefficients and run :func:`lr_test`.

    Args:
        matrix: The store ``full`` was fitted on.
        full: Fit of the full design.
        drop: Term names (all their coefficients) or coefficient names.

    Returns:
        LRT result table.
    """
    if isinstance(drop, str):
        drop = [drop]
    restricted_design = full.design.drop(*drop)
    restricted = fit_hurdle(
        matrix,
        restricted_design,
        features=full.feature_ids,
        detection_threshold=full.detection_threshold,
        n_workers=n_workers,
        cancel_event=cancel_event,
        config=config,
    )
    return lr_test(full, restricted)


def _wald_statistic(
    L: NDArray[np.float64],
    beta: NDArray[np.float64],
    cov: NDArray[np.float64],
) -> tuple[float, int]:
    """Chi-square Wald statistic for L beta = 0; NaN if any touched entry is undefined."""
    df = int(np.linalg.matrix_rank(L))
    touched = np.any(L != 0, axis=0)
    if not np.all(np.isfinite(beta[touched])) or not np.all(np.isfinite(cov[np.ix_(touched, touched)])):
        return np.nan, df
    Lb = L[:, touched] @ beta[touched]
    V = L[:, touched] @ cov[np.ix_(touched, touched)] @ L[:, touched].T
    stat = float(Lb @ np.linalg.pinv(V) @ Lb)
    return stat, df


def wald_test(fit: HurdleFit, contrast: Contrast) -> pd.DataFrame:
    """
    Wald test of a linear contrast over the combined coefficient space.

    Args:
        fit: Hurdle fit.
        contrast: Contrast built against ``fit.design``.

    Returns:
        DataFrame with RESULT_COLUMNS, plus ``estimate``, ``se`` and ``z``
        for single-row contrasts.

    Raises:
        InvalidContrast: If the contrast was built for a different design.
    """
    if tuple(contrast.coef_names) != fit.design.combined_names:
        raise InvalidContrast(
            f"Contrast coefficients {list(contrast.coef_names)} do not match the fitted "
            f"design {list(fit.design.combined_names)}"
        )

    L_D = contrast.discrete
    L_C = contrast.continuous
    single_row = contrast.n_rows == 1
    c = contrast.L[0]
    touched = c != 0

    rows = []
    for fid in fit.feature_ids:
        fitted = fit[fid]
        row = {'feature_id': fid, 'status': fitted.status.describe()}

        parts = []
        for prefix, L_k, component in (('discrete', L_D, fitted.discrete), ('continuous', L_C, fitted.continuous)):
            if L_k.shape[0] == 0:
                row.update({f'{prefix}_stat': np.nan, f'{prefix}_df': 0, f'{prefix}_pvalue': np.nan})
                continue
            stat, df = _wald_statistic(L_k, component.coef.values, component.cov.values)
            row.update(_component_row(prefix, stat, df))
            parts.append((stat, df))

        row.update(_component_row(
            'hurdle',
            float(sum(s for s, _ in parts)),
            sum(d for _, d in parts),
        ))

        if single_row:
            beta = fitted.combined_coef()
            cov = fitted.combined_cov()
            if np.all(np.isfinite(beta[touched])) and np.all(np.isfinite(cov[np.ix_(touched, touched)])):
                estimate = float(c[touched] @ beta[touched])
                se = float(np.sqrt(c[touched] @ cov[np.ix_(touched, touched)] @ c[touched]))
                z = estimate / se if se > 0 else np.nan
            else:
                estimate = se = z = np.nan
            row.update({'estimate': estimate, 'se': se, 'z': z})
        rows.append(row)

    columns = RESULT_COLUMNS + (['estimate', 'se', 'z'] if single_row else [])
    logger.info("Wald test on %d features, %d contrast rows", len(rows), contrast.n_rows)
    return pd.DataFrame.from_records(rows, columns=columns)


def rank_results(table: pd.DataFrame, column: str = 'hurdle_pvalue') -> pd.DataFrame:
    """Presentation order: ascending p-value, NaN last, ties in input order."""
    return table.sort_values(column, kind='mergesort', na_position='last').reset_index(drop=True)


def _design_vector(design: Design, values: Mapping[str, float] | Sequence[float] | NDArray) -> NDArray[np.float64]:
    if isinstance(values, Mapping):
        vec = np.zeros(design.n_params)
        for name, value in values.items():
            vec[design.index_of(name)] = value
        return vec
    vec = np.asarray(values, dtype=np.float64)
    if vec.shape != (design.n_params,):
        raise InvalidContrast(
            f"Covariate vector has shape {vec.shape}; design has {design.n_params} coefficients"
        )
    return vec


def _expected_value(fitted: FittedHurdle, x: NDArray[np.float64], n_samples: int):
    """E[Y|x] = P(detected|x) * E[Y|detected, x] with its gradient blocks."""
    beta_C = fitted.continuous.coef.values
    mu = float(x @ beta_C)
    if fitted.status & FitStatus.DISCRETE_BOUNDARY:
        p = fitted.n_detected / n_samples
        grad_D = np.zeros_like(x)
    else:
        p = float(expit(x @ fitted.discrete.coef.values))
        grad_D = p * (1.0 - p) * mu * x
    grad_C = p * x
    return p * mu, grad_D, grad_C


def log_fold_change(
    fit: HurdleFit,
    contrast0: Mapping[str, float] | Sequence[float],
    contrast1: Mapping[str, float] | Sequence[float],
) -> pd.DataFrame:
    """
    Hurdle log-fold change between two covariate profiles.

    logFC = E[Y | x1] - E[Y | x0], with E[Y | x] = expit(x'beta_D) * x'beta_C,
    i.e. the change in expected log-expression combining both components.
    The variance uses the delta method with the block-diagonal covariance.

    Args:
        fit: Hurdle fit.
        contrast0: Baseline covariate profile x0 (mapping of coefficient
            names to values, or a vector over the design coefficients).
        contrast1: Comparison profile x1.

    Returns:
        DataFrame with feature_id, logFC, varLogFC, z (NaN where undefined).

    Examples:
        >>> lfc = log_fold_change(fit, {'(Intercept)': 1}, {'(Intercept)': 1, 'conditionB': 1})
    """
    design = fit.design
    x0 = _design_vector(design, contrast0)
    x1 = _design_vector(design, contrast1)

    rows = []
    for fid in fit.feature_ids:
        fitted = fit[fid]
        e0, gD0, gC0 = _expected_value(fitted, x0, design.n_samples)
        e1, gD1, gC1 = _expected_value(fitted, x1, design.n_samples)
        lfc = e1 - e0
        grad = np.concatenate([gD1 - gD0, gC1 - gC0])
        cov = fitted.combined_cov()
        keep = grad != 0
        if np.isfinite(lfc) and np.all(np.isfinite(cov[np.ix_(keep, keep)])):
            var = float(grad[keep] @ cov[np.ix_(keep, keep)] @ grad[keep])
        else:
            var = np.nan
        z = lfc / np.sqrt(var) if np.isfinite(var) and var > 0 else np.nan
        rows.append({'feature_id': fid, 'logFC': lfc, 'varLogFC': var, 'z': z})

    return pd.DataFrame.from_records(rows, columns=['feature_id', 'logFC', 'varLogFC', 'z'])
