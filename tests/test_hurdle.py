"""Tests for per-feature hurdle fitting."""

import threading
import warnings

import numpy as np
import pandas as pd
import pytest

from hurdlekit.core.exceptions import DimensionMismatch
from hurdlekit.core.feature_matrix import FeatureMatrix
from hurdlekit.core.status import FitStatus
from hurdlekit.stats.design_matrix import DesignSpec, resolve_design
from hurdlekit.stats.hooks import combined_residuals_hook, residuals_hook
from hurdlekit.stats.hurdle import fit_feature, fit_hurdle

from conftest import generate_hurdle_matrix


def _single_feature(values, condition=None):
    values = np.asarray(values, dtype=float)
    n = len(values)
    if condition is None:
        condition = ['A'] * (n // 2) + ['B'] * (n - n // 2)
    return FeatureMatrix(
        data=values.reshape(1, -1),
        feature_ids=['g'],
        sample_ids=[f"s{j}" for j in range(n)],
        sample_metadata=pd.DataFrame({'condition': condition}),
    )


class TestFitHurdle:
    """Batch fitting behaviour."""

    def test_one_entry_per_feature_in_order(self, ab_matrix, condition_spec):
        features = ['GENE3', 'GENE0', 'GENE7']
        fit = fit_hurdle(ab_matrix, condition_spec, features=features)
        assert fit.feature_ids == features
        assert len(fit) == 3
        assert 'GENE0' in fit

    def test_deterministic(self, ab_matrix, condition_spec):
        first = fit_hurdle(ab_matrix, condition_spec)
        second = fit_hurdle(ab_matrix, condition_spec)
        np.testing.assert_array_equal(first.combined_coefficients(), second.combined_coefficients())
        assert list(first.status()) == list(second.status())

    def test_threads_match_serial(self, ab_matrix, condition_spec):
        serial = fit_hurdle(ab_matrix, condition_spec, n_workers=1)
        threaded = fit_hurdle(ab_matrix, condition_spec, n_workers=4)
        assert threaded.feature_ids == serial.feature_ids
        np.testing.assert_array_equal(serial.combined_coefficients(), threaded.combined_coefficients())

    def test_threaded_fit_leaves_warning_filters_untouched(self, condition_spec):
        matrix = generate_hurdle_matrix(200, 40, detection_rate=0.5, seed=5)
        filters_before = list(warnings.filters)
        showwarning_before = warnings.showwarning
        fit_hurdle(matrix, condition_spec, n_workers=16)
        assert list(warnings.filters) == filters_before
        assert warnings.showwarning is showwarning_before

    def test_issue_text_independent_of_workers(self, condition_spec):
        matrix = generate_hurdle_matrix(60, 16, detection_rate=0.4, seed=12)
        serial = fit_hurdle(matrix, condition_spec, n_workers=1)
        threaded = fit_hurdle(matrix, condition_spec, n_workers=8)
        assert [serial[f].issue for f in serial] == [threaded[f].issue for f in threaded]

    def test_always_detected_feature_recovers_shift(self, ab_matrix, condition_spec):
        fitted = fit_hurdle(ab_matrix, condition_spec)['GENE0']
        assert fitted.status == FitStatus.DISCRETE_BOUNDARY
        assert fitted.discrete.llf == 0.0
        assert np.all(np.isnan(fitted.discrete.coef))
        assert fitted.continuous.coef['conditionB'] == pytest.approx(3.0, abs=1.0)
        assert fitted.n_detected == 20

    def test_unknown_feature(self, ab_matrix, condition_spec):
        with pytest.raises(KeyError):
            fit_hurdle(ab_matrix, condition_spec, features=['NOPE'])

    def test_duplicate_features(self, ab_matrix, condition_spec):
        with pytest.raises(ValueError):
            fit_hurdle(ab_matrix, condition_spec, features=['GENE1', 'GENE1'])

    def test_design_sample_mismatch(self, ab_matrix, condition_spec):
        smaller = ab_matrix.select_samples(np.arange(20) < 16)
        design = resolve_design(condition_spec, smaller.sample_metadata)
        with pytest.raises(DimensionMismatch):
            fit_hurdle(ab_matrix, design)

    def test_summary_counts(self, ab_matrix, condition_spec):
        fit = fit_hurdle(ab_matrix, condition_spec)
        counts = fit.summary()
        assert counts['n_features'] == 10
        assert counts['discrete_boundary'] >= 1
        assert set(counts) == {
            'n_features', 'ok', 'non_converged', 'unidentifiable', 'discrete_boundary', 'not_fitted'
        }

    def test_coefficient_table_long_form(self, ab_matrix, condition_spec):
        fit = fit_hurdle(ab_matrix, condition_spec, features=['GENE0', 'GENE1'])
        table = fit.coefficient_table()
        # 2 features x 2 components x 2 coefficients
        assert len(table) == 8
        row = table[(table.feature_id == 'GENE0') & (table.component == 'C')
                    & (table.coefficient == 'conditionB')]
        assert row['se'].iloc[0] > 0

    def test_combined_covariance_is_block_diagonal(self, ab_matrix, condition_spec):
        fitted = fit_hurdle(ab_matrix, condition_spec, features=['GENE0'])['GENE0']
        cov = fitted.combined_cov()
        assert cov.shape == (4, 4)
        assert np.all(cov[:2, 2:] == 0)


class TestFitStatus:
    """Per-feature failure isolation."""

    def test_constant_detected_values_unidentifiable(self):
        values = [0, 4, 4, 0, 4, 4, 0, 4, 4, 4, 0, 4, 4, 0, 4, 4]
        matrix = _single_feature(values)
        fitted = fit_hurdle(matrix, DesignSpec(['condition']))['g']
        assert fitted.status & FitStatus.UNIDENTIFIABLE
        assert not fitted.status & FitStatus.NON_CONVERGED
        assert np.all(np.isnan(fitted.continuous.coef))
        assert np.all(np.isfinite(fitted.discrete.coef))
        assert fitted.issue is not None

    def test_nonzero_constant_value(self):
        matrix = _single_feature(np.full(12, 4.0))
        fitted = fit_hurdle(matrix, DesignSpec(['condition']))['g']
        assert fitted.status == FitStatus.DISCRETE_BOUNDARY | FitStatus.UNIDENTIFIABLE
        assert fitted.n_detected == 12
        assert np.all(np.isnan(fitted.continuous.coef))
        assert 'constant' in fitted.issue

    def test_never_detected(self):
        matrix = _single_feature(np.zeros(12))
        fitted = fit_hurdle(matrix, DesignSpec(['condition']))['g']
        assert fitted.status == FitStatus.DISCRETE_BOUNDARY | FitStatus.UNIDENTIFIABLE
        assert fitted.n_detected == 0
        assert fitted.df_used == 0

    def test_rank_plus_one_detected_is_identifiable(self):
        # Two coefficients; three detected samples spanning both groups
        values = [2.0, 3.5, 0, 0, 0, 0, 5.0, 0, 0, 0, 0, 0]
        fitted = fit_hurdle(_single_feature(values), DesignSpec(['condition']))['g']
        assert not fitted.status & FitStatus.UNIDENTIFIABLE
        assert fitted.continuous.df_resid == 1

    def test_rank_detected_is_unidentifiable(self):
        values = [2.0, 0, 0, 0, 0, 0, 5.0, 0, 0, 0, 0, 0]
        fitted = fit_hurdle(_single_feature(values), DesignSpec(['condition']))['g']
        assert fitted.status & FitStatus.UNIDENTIFIABLE

    def test_detected_in_one_group_only(self):
        # Detected samples do not span condition B: rank deficient over detected
        values = [2.0, 3.0, 4.0, 5.0, 2.5, 3.5, 0, 0, 0, 0, 0, 0]
        fitted = fit_hurdle(_single_feature(values), DesignSpec(['condition']))['g']
        assert fitted.status & FitStatus.UNIDENTIFIABLE

    def test_detection_threshold(self):
        values = [0.5, 2.0, 0.5, 3.0, 2.5, 0.5, 4.0, 0.5, 3.5, 0.5, 2.2, 4.1]
        fit = fit_hurdle(_single_feature(values), DesignSpec(['condition']), detection_threshold=1.0)
        assert fit['g'].n_detected == 7
        assert fit.detection_threshold == 1.0


class TestPostFitHooks:
    """Hooks see every fitted feature."""

    def test_hook_called_for_every_feature(self, ab_matrix, condition_spec):
        seen = []
        lock = threading.Lock()

        def hook(feature_id, fitted, residuals):
            with lock:
                seen.append(feature_id)
            return residuals.values.shape

        fit = fit_hurdle(ab_matrix, condition_spec, post_fit=hook, n_workers=3)
        assert sorted(seen) == sorted(ab_matrix.feature_ids)
        assert all(fit[fid].auxiliary == (20,) for fid in fit)

    def test_residuals_hook(self, ab_matrix, condition_spec):
        fit = fit_hurdle(ab_matrix, condition_spec, post_fit=residuals_hook)
        resid = fit['GENE0'].auxiliary
        assert resid.shape == (20,)
        # OLS residuals with an intercept sum to zero
        assert np.nansum(resid) == pytest.approx(0.0, abs=1e-8)

        detected = ab_matrix.data[1] > 0
        resid1 = fit['GENE1'].auxiliary
        assert np.all(np.isnan(resid1[~detected]))

    def test_combined_residuals_boundary_feature(self, ab_matrix, ab_design):
        fitted = fit_feature('GENE0', ab_matrix.data[0], ab_design, post_fit=combined_residuals_hook)
        # Always detected: p_hat = 1, so combined residuals equal OLS residuals
        assert np.nansum(fitted.auxiliary) == pytest.approx(0.0, abs=1e-8)

    def test_failing_hook_is_recorded(self, ab_matrix, condition_spec):
        def hook(feature_id, fitted, residuals):
            raise RuntimeError("boom")

        fit = fit_hurdle(ab_matrix, condition_spec, features=['GENE0'], post_fit=hook)
        fitted = fit['GENE0']
        assert fitted.auxiliary is None
        assert 'post_fit hook failed' in fitted.issue
        assert fitted.status == FitStatus.DISCRETE_BOUNDARY


class TestCancellation:
    """Cancellation keeps every requested row."""

    def test_cancel_before_start(self, ab_matrix, condition_spec):
        event = threading.Event()
        event.set()
        fit = fit_hurdle(ab_matrix, condition_spec, cancel_event=event)
        assert fit.cancelled
        assert len(fit) == ab_matrix.n_features
        assert all(fit[fid].status == FitStatus.NOT_FITTED for fid in fit)
        assert fit.summary()['not_fitted'] == 10

    def test_cancel_from_hook(self, ab_matrix, condition_spec):
        event = threading.Event()

        def hook(feature_id, fitted, residuals):
            if feature_id == 'GENE2':
                event.set()

        fit = fit_hurdle(ab_matrix, condition_spec, post_fit=hook, cancel_event=event)
        assert fit.cancelled
        assert not fit['GENE2'].status & FitStatus.NOT_FITTED
        assert fit['GENE3'].status == FitStatus.NOT_FITTED
        assert len(fit) == 10
