"""Tests for log2 fold change shrinkage."""

import numpy as np
import pytest
from scipy.stats import norm

import nbdiff as nd


class TestPriorVariance:

    def test_quantile_matching(self):
        lfc = np.linspace(-3, 3, 101)
        se = np.ones(101)
        q = np.quantile(np.abs(lfc), 0.95)
        expected = (q / norm.ppf(0.975)) ** 2
        assert nd.estimate_lfc_prior_var(lfc, se) == pytest.approx(expected)

    def test_ignores_outliers_and_missing(self):
        lfc = np.array([1.0, -1.0, 50.0, np.nan])
        se = np.array([0.5, 0.5, 0.5, 0.5])
        status = np.array([nd.GeneStatus.SHRUNK, nd.GeneStatus.SHRUNK,
                           nd.GeneStatus.OUTLIER, nd.GeneStatus.SHRUNK], dtype=object)
        expected = (1.0 / norm.ppf(0.975)) ** 2
        assert nd.estimate_lfc_prior_var(lfc, se, status) == pytest.approx(expected)

    def test_floor(self):
        with pytest.warns(nd.NumericUnderflow):
            v = nd.estimate_lfc_prior_var(np.zeros(10), np.ones(10))
        assert v == pytest.approx(1e-6)

    def test_no_usable_genes(self):
        with pytest.raises(nd.InsufficientDataError):
            nd.estimate_lfc_prior_var(np.array([np.nan]), np.array([1.0]))


@pytest.fixture(scope="module")
def shrunk_normal(sim_wald):
    return nd.shrink_lfc(sim_wald)


@pytest.fixture(scope="module")
def shrunk_cauchy(sim_wald):
    return nd.shrink_lfc(sim_wald, prior='cauchy')


class TestShrinkLfc:

    @pytest.mark.parametrize("which", ["shrunk_normal", "shrunk_cauchy"])
    def test_never_increases_magnitude(self, which, sim_wald, request):
        shrunk = request.getfixturevalue(which)
        raw = sim_wald['table']['log2FoldChange'].to_numpy()
        post = shrunk['table']['log2FoldChange'].to_numpy()
        ok = np.isfinite(raw)
        assert np.all(np.abs(post[ok]) <= np.abs(raw[ok]) + 1e-12)
        assert np.all(np.sign(post[ok]) * np.sign(raw[ok]) >= 0)

    @pytest.mark.parametrize("which", ["shrunk_normal", "shrunk_cauchy"])
    def test_tests_unchanged(self, which, sim_wald, request):
        shrunk = request.getfixturevalue(which)
        for col in ('pValue', 'adjustedPValue', 'waldStatistic', 'baseMean', 'fitNotes'):
            assert shrunk['table'][col].equals(sim_wald['table'][col])

    def test_normal_posterior(self, shrunk_normal, sim_wald):
        v = shrunk_normal['prior.var']
        raw = sim_wald['table']['log2FoldChange'].to_numpy()
        se = sim_wald['table']['lfcStandardError'].to_numpy()
        np.testing.assert_allclose(shrunk_normal['table']['log2FoldChange'],
                                   raw * v / (v + se ** 2))
        np.testing.assert_allclose(shrunk_normal['table']['lfcStandardError'],
                                   np.sqrt(1 / (1 / v + 1 / se ** 2)))

    def test_cauchy_shrinks_large_effects_less(self, shrunk_normal, shrunk_cauchy, sim_wald):
        raw = sim_wald['table']['log2FoldChange'].to_numpy()
        big = np.nanargmax(np.abs(sim_wald['table']['waldStatistic'].to_numpy()))
        keep_n = abs(shrunk_normal['table']['log2FoldChange'].iloc[big] / raw[big])
        keep_c = abs(shrunk_cauchy['table']['log2FoldChange'].iloc[big] / raw[big])
        assert keep_c >= keep_n - 1e-6

    def test_metadata(self, shrunk_normal, sim_wald):
        assert shrunk_normal['prior.type'] == 'normal'
        assert shrunk_normal['shrunk'] is True
        assert 'prior.var' not in sim_wald

    def test_cauchy_n_jobs(self, sim_wald, shrunk_cauchy):
        par = nd.shrink_lfc(sim_wald, prior='cauchy', n_jobs=2)
        np.testing.assert_allclose(par['table']['log2FoldChange'],
                                   shrunk_cauchy['table']['log2FoldChange'], rtol=1e-12)

    def test_bad_prior(self, sim_wald):
        with pytest.raises(ValueError):
            nd.shrink_lfc(sim_wald, prior='t')
