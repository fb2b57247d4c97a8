"""
Bootstrap covariance of hurdle coefficients across samples.

The analytic hurdle covariance is block diagonal per feature and says
nothing about how coefficient estimates co-vary *across* features. For
gene-set tests that correlation matters: co-regulated genes move together,
and treating them as independent understates the variance of a set
average. Resampling samples (cells) and refitting every feature on the
same draw preserves that correlation in the replicate ensemble.

Procedure:
    for r in 1..R:
        draw n sample indices uniformly with replacement
        refit every feature on the resampled store and re-indexed design
        record [beta_D | beta_C] per feature (NaN where undefined)

Reproducibility:
    A seed is mandatory. All R index vectors are drawn from one
    ``numpy.random.default_rng(seed)`` stream before any fitting, so the
    draws are bitwise identical across runs regardless of worker count.

Warning convention:
    warnings.warn() -- user-facing (convergence, sample size)
    logger.warning() -- operator-facing (failed or degenerate replicates)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from hurdlekit.core.exceptions import ConfigurationError, DimensionMismatch
from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.stats.design_matrix import Contrast, Design, DesignSpec, resolve_design
from hurdlekit.stats.hurdle import fit_hurdle

if TYPE_CHECKING:
    from hurdlekit.config import HurdleConfig

logger = logging.getLogger(__name__)

__all__ = [
    'BootstrapReplicates',
    'bootstrap_replicates',
    'draw_bootstrap_indices',
]


@dataclass(frozen=True)
class BootstrapReplicates:
    """Ensemble of bootstrap coefficient vectors.

    Attributes:
        coefficients: Array (R, n_features, 2 * n_params); NaN where a
            replicate could not estimate a feature. Positions align across
            replicates.
        feature_ids: Feature identifiers (axis 1).
        coef_names: Combined coefficient names (axis 2).
        indices: Array (R, n_samples) of the sample draws.
        seed: Seed the draws were generated from.
        cancelled: True if some replicates were skipped by cancellation.
    """

    coefficients: NDArray[np.float64]
    feature_ids: tuple[str, ...]
    coef_names: tuple[str, ...]
    indices: NDArray[np.intp]
    seed: int
    cancelled: bool = False

    @property
    def n_replicates(self) -> int:
        return self.coefficients.shape[0]

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[1]

    def contrast_values(self, contrast: Contrast, component: str) -> NDArray[np.float64]:
        """
        Per-replicate contrast value for one component.

        Uses the first contrast row that touches the component.

        Returns:
            Array (R, n_features) of c_k' beta_k.
        """
        if tuple(contrast.coef_names) != self.coef_names:
            raise ValueError("Contrast was built for a different design")
        rows = contrast.component(component)
        if rows.shape[0] == 0:
            return np.full((self.n_replicates, self.n_features), np.nan)
        n_params = contrast.n_params
        offset = 0 if component == 'D' else n_params
        c = rows[0]
        touched = np.flatnonzero(c != 0)
        block = self.coefficients[:, :, offset + touched]
        return block @ c[touched]

    def covariance(
        self,
        contrast: Contrast,
        component: str,
        features: Sequence[str] | None = None,
        min_periods: int = 2,
    ) -> pd.DataFrame:
        """
        Empirical covariance of the contrast value across replicates.

        Pairwise-complete: each entry uses the replicates in which both
        features are defined. Entries with fewer than ``min_periods``
        shared replicates are NaN.

        Args:
            contrast: Contrast over the combined coefficients.
            component: 'D' or 'C'.
            features: Subset of feature ids (default all).

        Returns:
            Features × features covariance DataFrame.
        """
        values = pd.DataFrame(
            self.contrast_values(contrast, component),
            columns=pd.Index(self.feature_ids, name='feature_id'),
        )
        if features is not None:
            values = values[list(features)]
        return values.cov(min_periods=min_periods)

    def variance(self, contrast: Contrast, component: str, min_periods: int = 2) -> pd.Series:
        """Per-feature bootstrap variance of the contrast value."""
        values = pd.DataFrame(
            self.contrast_values(contrast, component),
            columns=pd.Index(self.feature_ids, name='feature_id'),
        )
        counts = values.notna().sum()
        return values.var(ddof=1).where(counts >= min_periods)


def draw_bootstrap_indices(n_samples: int, n_replicates: int, seed: int) -> NDArray[np.intp]:
    """Draw (n_replicates, n_samples) indices uniformly with replacement."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, n_samples, size=(n_replicates, n_samples))


def _fit_replicate(
    r: int,
    matrix: FeatureMatrix,
    design: Design,
    indices: NDArray[np.intp],
    features: list[str],
    detection_threshold: float,
) -> NDArray[np.float64]:
    n_coef = 2 * design.n_params
    boot_design = design.take_rows(indices)
    if boot_design.rank < boot_design.n_params:
        logger.warning(
            "Bootstrap %d: resampled design is rank-deficient; replicate NaN-filled", r
        )
        return np.full((len(features), n_coef), np.nan)

    boot_matrix = matrix.take_samples(indices)
    fit = fit_hurdle(
        boot_matrix,
        boot_design,
        features=features,
        detection_threshold=detection_threshold,
        n_workers=1,
    )
    return fit.combined_coefficients()


def bootstrap_replicates(
    matrix: FeatureMatrix,
    design: DesignSpec | Design,
    n_replicates: int | None = None,
    seed: int | None = None,
    *,
    features: Sequence[str] | None = None,
    detection_threshold: float | None = None,
    n_workers: int | None = None,
    cancel_event: threading.Event | None = None,
    config: HurdleConfig | None = None,
) -> BootstrapReplicates:
    """
    Resample samples with replacement and refit the hurdle model R times.

    The design is resolved once on the original store and its rows are
    re-indexed per replicate, so every coefficient keeps its meaning across
    replicates. A replicate whose resampled design is rank deficient (e.g.
    a condition level was not drawn) is NaN-filled, never dropped.

    Args:
        matrix: Expression store.
        design: DesignSpec or resolved Design.
        n_replicates: Number of replicates R (config default). Must be >= 1.
        seed: Random seed. Required; record it with the results.
        features: Feature subset (default all).
        detection_threshold: Detection threshold (config default 0.0).
        n_workers: Replicates fitted concurrently (config default 1).
        cancel_event: Once set, no further replicates are started; skipped
            replicates stay NaN-filled.
        config: Optional HurdleConfig supplying defaults.

    Returns:
        BootstrapReplicates with R coefficient arrays.

    Raises:
        ConfigurationError: If R < 1 or no seed is given.
    """
    from hurdlekit.config import HurdleConfig

    cfg = config or HurdleConfig()
    n_replicates = cfg.bootstrap.n_replicates if n_replicates is None else n_replicates
    seed = cfg.bootstrap.seed if seed is None else seed
    workers = cfg.bootstrap.n_workers if n_workers is None else n_workers
    threshold = cfg.fit.detection_threshold if detection_threshold is None else detection_threshold

    if not isinstance(n_replicates, (int, np.integer)) or n_replicates < 1:
        raise ConfigurationError(
            f"n_replicates must be a positive integer (variance is undefined otherwise), got {n_replicates}"
        )
    if seed is None:
        raise ConfigurationError("A bootstrap seed is required for reproducible replicates")

    if isinstance(design, DesignSpec):
        design = resolve_design(design, matrix.sample_metadata)
    if design.n_samples != matrix.n_samples:
        raise DimensionMismatch(
            f"Design has {design.n_samples} rows but matrix has {matrix.n_samples} samples"
        )

    feature_list = list(matrix.feature_ids) if features is None else list(features)
    n_coef = 2 * design.n_params
    indices = draw_bootstrap_indices(matrix.n_samples, int(n_replicates), int(seed))
    coefficients = np.full((int(n_replicates), len(feature_list), n_coef), np.nan)

    logger.info(
        "Bootstrap: %d replicates, %d features, %d samples, seed=%d",
        n_replicates, len(feature_list), matrix.n_samples, seed,
    )

    def run(r: int) -> NDArray[np.float64] | None:
        if cancel_event is not None and cancel_event.is_set():
            return None
        return _fit_replicate(r, matrix, design, indices[r], feature_list, threshold)

    completed = 0
    if workers <= 1:
        for r in range(n_replicates):
            result = run(r)
            if result is not None:
                coefficients[r] = result
                completed += 1
            if (r + 1) % 50 == 0:
                logger.info("  Bootstrap %d/%d...", r + 1, n_replicates)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(run, r) for r in range(n_replicates)]
            for r, future in enumerate(futures):
                result = future.result()
                if result is not None:
                    coefficients[r] = result
                    completed += 1

    cancelled = completed < n_replicates
    if cancelled:
        logger.warning("Bootstrap cancelled after %d of %d replicates", completed, n_replicates)

    return BootstrapReplicates(
        coefficients=coefficients,
        feature_ids=tuple(feature_list),
        coef_names=design.combined_names,
        indices=indices,
        seed=int(seed),
        cancelled=cancelled,
    )
