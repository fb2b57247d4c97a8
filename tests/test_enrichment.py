"""Tests for bootstrap competitive gene-set enrichment."""

import numpy as np
import pytest

from hurdlekit.config import EnrichmentConfig, HurdleConfig
from hurdlekit.stats.bootstrap import bootstrap_replicates
from hurdlekit.stats.design_matrix import Contrast, DesignSpec, Term, resolve_design
from hurdlekit.stats.enrichment import ENRICHMENT_COLUMNS, enrich_modules, module_z, stouffer
from hurdlekit.stats.hurdle import fit_hurdle

from conftest import generate_hurdle_matrix


class TestStouffer:
    """Weighted Z combination."""

    def test_closed_form(self):
        assert stouffer([1.0, 2.0]) == pytest.approx(3.0 / np.sqrt(2.0))

    def test_weights(self):
        assert stouffer([1.0, 2.0], [2.0, 1.0]) == pytest.approx(4.0 / np.sqrt(5.0))

    def test_nan_component_skipped(self):
        assert stouffer([np.nan, 2.5]) == pytest.approx(2.5)

    def test_zero_weight_skipped(self):
        assert stouffer([1.0, 3.0], [0.0, 1.0]) == pytest.approx(3.0)

    def test_nothing_combinable(self):
        assert np.isnan(stouffer([np.nan, np.nan]))

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            stouffer([1.0, 2.0], [1.0])


class TestModuleZ:
    """Competitive Z for one module and component."""

    def test_matches_manual_computation(self):
        rng = np.random.default_rng(42)
        boot = rng.normal(0, 1, size=(30, 8))
        boot[:, 1] += 0.5 * boot[:, 0]
        theta = np.array([2.0, 1.5, 1.8, 0.1, -0.2, 0.0, 0.3, -0.1])
        is_member = np.array([True, True, True, False, False, False, False, False])

        mean_in, mean_out, z = module_z(theta, boot, is_member)

        cov_in = np.cov(boot[:, :3], rowvar=False, ddof=1)
        var_out = np.var(boot[:, 3:], axis=0, ddof=1)
        expected_var = cov_in.sum() / 9 + var_out.sum() / 25
        assert mean_in == pytest.approx(theta[:3].mean())
        assert mean_out == pytest.approx(theta[3:].mean())
        assert z == pytest.approx((mean_in - mean_out) / np.sqrt(expected_var))

    def test_correlated_members_inflate_variance(self):
        rng = np.random.default_rng(1)
        shared = rng.normal(0, 1, size=(40, 1))
        independent = rng.normal(0, 1, size=(40, 10))
        correlated = independent.copy()
        correlated[:, :4] = shared + 0.1 * independent[:, :4]
        theta = np.r_[np.ones(4), np.zeros(6)]
        is_member = np.r_[np.ones(4, bool), np.zeros(6, bool)]

        _, _, z_indep = module_z(theta, independent, is_member)
        _, _, z_corr = module_z(theta, correlated, is_member)
        assert abs(z_corr) < abs(z_indep)

    def test_no_background(self):
        theta = np.ones(3)
        mean_in, mean_out, z = module_z(theta, np.ones((5, 3)), np.ones(3, bool))
        assert np.isnan(z)

    def test_member_pair_without_shared_replicates(self):
        boot = np.random.default_rng(7).normal(size=(10, 5))
        boot[5:, 0] = np.nan
        boot[:5, 1] = np.nan
        theta = np.array([1.0, 2.0, 0.0, 0.1, -0.1])
        mean_in, mean_out, z = module_z(theta, boot, np.array([True, True, False, False, False]))
        assert mean_in == pytest.approx(1.5)
        assert np.isfinite(mean_out)
        assert np.isnan(z)

    def test_nan_members_dropped(self):
        boot = np.random.default_rng(3).normal(size=(10, 5))
        theta = np.array([1.0, np.nan, 0.0, 0.0, 0.0])
        mean_in, _, z = module_z(theta, boot, np.array([True, True, False, False, False]))
        assert mean_in == 1.0
        assert np.isfinite(z)


@pytest.fixture(scope='module')
def shifted_module_data():
    """
    100 genes x 60 cells; GENE0..GENE4 get a +2 continuous shift in B.

    Fit and R = 50 bootstrap replicates with a fixed seed.
    """
    matrix = generate_hurdle_matrix(
        100, 60, detection_rate=0.8, shift=2.0, shifted=tuple(range(5)), seed=2024
    )
    spec = DesignSpec([Term('condition', reference='A')])
    design = resolve_design(spec, matrix.sample_metadata)
    fit = fit_hurdle(matrix, design, n_workers=4)
    reps = bootstrap_replicates(matrix, design, n_replicates=50, seed=17, n_workers=4)
    contrast = Contrast.both(design, {'conditionB': 1.0})
    return matrix, fit, reps, contrast


class TestEnrichModules:
    """End-to-end enrichment."""

    def test_shifted_module_beats_random_controls(self, shifted_module_data):
        matrix, fit, reps, contrast = shifted_module_data
        rng = np.random.default_rng(99)
        background = [f"GENE{i}" for i in range(5, 100)]
        gene_sets = {'shifted': [f"GENE{i}" for i in range(5)]}
        for k in range(100):
            gene_sets[f"control{k}"] = list(rng.choice(background, size=5, replace=False))

        result = enrich_modules(fit, reps, gene_sets, contrast).set_index('module')
        target = result.loc['shifted', 'combined_z']
        controls = result.drop(index='shifted')['combined_z']
        assert target > np.nanpercentile(controls, 95)
        assert result.loc['shifted', 'continuous_z'] > 3
        assert result.loc['shifted', 'continuous_in'] == pytest.approx(2.0, abs=0.75)

    def test_columns_and_order(self, shifted_module_data):
        _, fit, reps, contrast = shifted_module_data
        gene_sets = {
            'b': [f"GENE{i}" for i in range(10, 20)],
            'a': [f"GENE{i}" for i in range(0, 10)],
        }
        result = enrich_modules(fit, reps, gene_sets, contrast)
        assert list(result.columns) == ENRICHMENT_COLUMNS
        assert list(result['module']) == ['b', 'a']
        assert (result['n_features'] == 10).all()
        assert ((result['adj_pvalue'] >= result['pvalue']) | result['pvalue'].isna()).all()

    def test_small_modules_excluded(self, shifted_module_data):
        _, fit, reps, contrast = shifted_module_data
        gene_sets = {
            'tiny': ['GENE0', 'GENE1'],
            'unknown_genes': ['NOT_A_GENE'] * 6,
            'ok': [f"GENE{i}" for i in range(5)],
        }
        result = enrich_modules(fit, reps, gene_sets, contrast, min_size=5)
        assert list(result['module']) == ['ok']

    def test_config_min_size(self, shifted_module_data):
        _, fit, reps, contrast = shifted_module_data
        config = HurdleConfig(enrichment=EnrichmentConfig(min_size=2))
        result = enrich_modules(fit, reps, {'pair': ['GENE0', 'GENE1']}, contrast, config=config)
        assert len(result) == 1

    def test_continuous_only_weights(self, shifted_module_data):
        _, fit, reps, contrast = shifted_module_data
        gene_sets = {'shifted': [f"GENE{i}" for i in range(5)]}
        result = enrich_modules(fit, reps, gene_sets, contrast, weights=(0.0, 1.0))
        assert result['combined_z'].iloc[0] == pytest.approx(result['continuous_z'].iloc[0])

    def test_design_mismatch(self, shifted_module_data):
        matrix, fit, reps, _ = shifted_module_data
        meta = matrix.sample_metadata
        meta['depth'] = np.linspace(0, 1, len(meta))
        other = resolve_design(DesignSpec(['condition', 'depth']), meta)
        contrast = Contrast.both(other, {'depth': 1.0})
        with pytest.raises(ValueError):
            enrich_modules(fit, reps, {'m': [f"GENE{i}" for i in range(5)]}, contrast)
