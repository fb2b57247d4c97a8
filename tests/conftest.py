"""
Pytest configuration and shared fixtures.

This module provides a synthetic zero-inflated expression generator and
shared fixtures for all test suites.
"""

import numpy as np
import pandas as pd
import pytest

from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.stats.design_matrix import DesignSpec, Term, resolve_design


def generate_hurdle_matrix(
    n_features: int,
    n_samples: int,
    detection_rate: float = 0.8,
    baseline: float = 5.0,
    noise: float = 1.0,
    shift: float = 0.0,
    shifted: tuple = (),
    seed: int = 42,
) -> FeatureMatrix:
    """
    Generate a two-group single-cell style matrix.

    Args:
        n_features: Number of genes
        n_samples: Number of cells (first half 'A', second half 'B')
        detection_rate: Probability that a value is detected (non-zero)
        baseline: Mean log-expression of detected values
        noise: Standard deviation of detected values
        shift: Mean shift added to detected values of group B
        shifted: Feature positions that receive the shift
        seed: Random seed for reproducibility

    Returns:
        FeatureMatrix with a 'condition' sample covariate

    Design:
        - Detected values ~ N(baseline, noise), strictly positive
        - Detection is Bernoulli(detection_rate), independent of group
        - Only the continuous component of the shifted features changes
    """
    rng = np.random.default_rng(seed)

    condition = np.array(['A'] * (n_samples // 2) + ['B'] * (n_samples - n_samples // 2))
    is_b = condition == 'B'

    values = rng.normal(baseline, noise, size=(n_features, n_samples))
    for idx in shifted:
        values[idx, is_b] += shift
    values = np.clip(values, 0.1, None)

    detected = rng.random((n_features, n_samples)) < detection_rate
    data = np.where(detected, values, 0.0)

    return FeatureMatrix(
        data=data,
        feature_ids=pd.Index([f"GENE{i}" for i in range(n_features)]),
        sample_ids=pd.Index([f"cell{j}" for j in range(n_samples)]),
        sample_metadata=pd.DataFrame({'condition': condition}),
    )


@pytest.fixture
def ab_matrix():
    """
    10 features x 20 cells, 10 'A' and 10 'B'.

    GENE0 is detected everywhere with a +3 shift in B; the others are
    zero-inflated and unshifted.
    """
    matrix = generate_hurdle_matrix(10, 20, detection_rate=0.7, seed=7)
    rng = np.random.default_rng(11)
    data = matrix.data.copy()
    data[0] = np.concatenate([rng.normal(5.0, 0.5, 10), rng.normal(8.0, 0.5, 10)])
    return FeatureMatrix(
        data=data,
        feature_ids=matrix.feature_ids,
        sample_ids=matrix.sample_ids,
        sample_metadata=matrix.sample_metadata,
    )


@pytest.fixture
def condition_spec():
    """Intercept + condition (reference 'A')."""
    return DesignSpec([Term('condition', reference='A')])


@pytest.fixture
def ab_design(ab_matrix, condition_spec):
    """Resolved condition design for ab_matrix."""
    return resolve_design(condition_spec, ab_matrix.sample_metadata)
