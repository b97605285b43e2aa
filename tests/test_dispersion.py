"""Tests for dispersion estimation: gene-wise MLE, trend, shrinkage, outliers."""

import warnings

import numpy as np
import pytest
from scipy.stats import median_abs_deviation, nbinom

import nbdiff as nd
from nbdiff import dispersion as disp_mod
from nbdiff.dispersion_lowlevel import (initial_dispersion,
                                        robust_moments_dispersion)


# ── Low-level likelihoods ────────────────────────────────────────────

class TestLowLevel:

    def test_nb_log_lik_matches_scipy(self):
        y = np.array([0, 3, 10, 25], dtype=float)
        mu = np.array([2.0, 4.0, 8.0, 20.0])
        alpha = 0.3
        r = 1 / alpha
        expected = np.sum(nbinom.logpmf(y, r, r / (r + mu)))
        assert nd.nb_log_lik(y, mu, alpha) == pytest.approx(expected, rel=1e-10)

    def test_nb_log_lik_rows(self):
        y = np.array([[0, 3, 10], [5, 5, 5]], dtype=float)
        mu = np.array([[1.0, 4.0, 9.0], [5.0, 5.0, 5.0]])
        out = nd.nb_log_lik(y, mu, np.array([0.1, 0.5]))
        assert out.shape == (2,)
        assert out[0] == pytest.approx(nd.nb_log_lik(y[0], mu[0], 0.1))
        assert out[1] == pytest.approx(nd.nb_log_lik(y[1], mu[1], 0.5))

    def test_cox_reid_penalty(self):
        y = np.array([10, 12, 30, 28], dtype=float)
        mu = np.array([11.0, 11.0, 29.0, 29.0])
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        la = np.log(0.1)
        ll = nd.nb_log_lik(y, mu, 0.1)
        w = mu / (1 + 0.1 * mu)
        penalty = -0.5 * np.log(np.linalg.det(design.T @ (w[:, None] * design)))
        assert nd.cox_reid_profile_lik(la, y, mu, design) == pytest.approx(ll + penalty)

    def test_moments_dispersion_poisson_near_zero(self, rng):
        y = rng.poisson(100, (500, 6)).astype(float)
        est = nd.moments_dispersion(y, np.ones(6))
        assert abs(np.median(est)) < 0.01

    def test_initial_dispersion_bounds(self):
        y = np.array([[0, 0, 0, 1], [10, 50, 2, 90]], dtype=float)
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        est = initial_dispersion(y, np.ones(4), design, 1e-8, 10)
        assert np.all(est >= 1e-8) and np.all(est <= 10)

    def test_robust_moments_ignores_single_outlier(self):
        y = np.array([[20, 21, 19, 20, 22, 18],
                      [5000, 21, 19, 20, 22, 18]], dtype=float)
        cells = np.array(['a', 'a', 'a', 'b', 'b', 'b'])
        robust = robust_moments_dispersion(y, cells)
        plain = nd.moments_dispersion(y, np.ones(6))
        assert robust[1] == pytest.approx(0.04)
        assert plain[1] > 1


# ── Gene-wise estimates ──────────────────────────────────────────────

class TestGenewise:

    def test_shapes_and_bounds(self, sim_disp, sim_dataset):
        gw = sim_disp['dispersion.genewise']
        assert gw.shape == (sim_dataset.nrow,)
        assert np.all(np.isfinite(gw))
        assert np.all(gw >= 1e-8)
        assert np.all(gw <= 10)

    def test_components(self, sim_disp):
        for key in ('dispersion.genewise', 'dispersion.converged', 'fitted.values',
                    'base.mean', 'trend.genes', 'prior.genes'):
            assert key in sim_disp
        assert 'base.var' not in sim_disp
        assert 'dispersion.moments' not in sim_disp

    def test_recovers_trend_level(self, sim_disp):
        # simulated dispersion is 0.05 + 1 / mean
        gw = sim_disp['dispersion.genewise']
        bm = sim_disp['base.mean']
        high = bm > 500
        assert 0.02 < np.median(gw[high]) < 0.15

    def test_nonconvergence_falls_back(self, sim_dataset, monkeypatch):
        sub = sim_dataset[:30]
        monkeypatch.setattr(disp_mod, 'fit_genewise_mle', _failing_mle)
        with pytest.warns(nd.GeneFitNonConvergence, match="30"):
            fit = nd.estimate_genewise_dispersions(sub)
        assert not fit['dispersion.converged'].any()
        assert np.all(np.isfinite(fit['dispersion.genewise']))

    def test_n_jobs_identical(self, sim_dataset):
        sub = sim_dataset[:40]
        serial = nd.estimate_genewise_dispersions(sub, n_jobs=1)
        parallel = nd.estimate_genewise_dispersions(sub, n_jobs=2)
        np.testing.assert_allclose(serial['dispersion.genewise'],
                                   parallel['dispersion.genewise'], rtol=1e-12)


def _failing_mle(idx, y, mu, design, log_lo, log_hi, tol):
    return np.full(len(idx), np.nan), np.zeros(len(idx), dtype=bool)


# ── Trend ────────────────────────────────────────────────────────────

class TestTrend:

    def test_parametric_coefficients_positive(self, sim_disp):
        assert sim_disp['trend.type'] == 'parametric'
        coefs = sim_disp['trend.coefficients']
        assert coefs['asymptotic'] > 0
        assert coefs['extra'] > 0

    def test_trend_non_increasing(self, sim_disp):
        bm = sim_disp['base.mean']
        grid = np.linspace(bm.min(), bm.max(), 200)
        assert np.all(np.diff(sim_disp.trend(grid)) <= 0)
        o = np.argsort(bm)
        assert np.all(np.diff(sim_disp['dispersion.trend'][o]) <= 1e-15)

    def test_mean_trend(self, sim_disp):
        fit = nd.fit_dispersion_trend(sim_disp, fit_type='mean')
        assert fit['trend.type'] == 'mean'
        assert fit['trend.coefficients']['extra'] == 0
        assert np.ptp(fit['dispersion.trend']) == 0

    def test_parametric_failure_falls_back_to_mean(self, sim_disp, monkeypatch):
        monkeypatch.setattr(disp_mod, '_parametric_trend', lambda means, disps: None)
        with pytest.warns(UserWarning, match="Parametric dispersion trend"):
            fit = nd.fit_dispersion_trend(sim_disp)
        assert fit['trend.type'] == 'mean'

    def test_too_few_genes(self, sim_disp):
        with pytest.raises(nd.TrendFitError):
            nd.fit_dispersion_trend(sim_disp, min_trend_genes=10 ** 6)

    def test_bad_fit_type(self, sim_disp):
        with pytest.raises(ValueError):
            nd.fit_dispersion_trend(sim_disp, fit_type='local')


# ── Shrinkage and outliers ───────────────────────────────────────────

class TestShrinkage:

    def test_prior_var_floor(self, sim_disp):
        assert sim_disp['prior.var'] >= 0.25
        assert sim_disp['sampling.var'] == pytest.approx(nd.utils.trigamma(2.0))

    def test_prior_var_excludes_high_outliers(self, sim_disp):
        gw = np.array(sim_disp['dispersion.genewise'])
        use = sim_disp['trend.genes']
        bumped = np.flatnonzero(use)[::5]
        gw[bumped] = sim_disp['dispersion.trend'][bumped] * np.exp(10.0)
        fit = nd.estimate_dispersion_prior_var(sim_disp.derive(dispersion_genewise=gw))

        assert not fit['prior.genes'][bumped].any()
        assert np.all(use[fit['prior.genes']])
        resid = np.log(gw[use]) - np.log(sim_disp['dispersion.trend'][use])
        pooled = max(median_abs_deviation(resid, scale='normal') ** 2
                     - fit['sampling.var'], 0.25)
        assert fit['prior.var'] <= pooled

    def test_outliers_keep_genewise(self, sim_disp):
        out = sim_disp['dispersion.outlier']
        np.testing.assert_array_equal(sim_disp['dispersion'][out],
                                      sim_disp['dispersion.genewise'][out])
        assert all(s == nd.GeneStatus.OUTLIER for s in sim_disp['status'][out])

    def test_outlier_rule(self, sim_disp):
        log_gw = np.log(sim_disp['dispersion.genewise'])
        log_tr = np.log(sim_disp['dispersion.trend'])
        expected = log_gw > log_tr + 2.0 * np.sqrt(sim_disp['prior.var'])
        np.testing.assert_array_equal(sim_disp['dispersion.outlier'], expected)

    def test_final_between_genewise_and_trend(self, sim_disp):
        keep = ~sim_disp['dispersion.outlier']
        gw = sim_disp['dispersion.genewise'][keep]
        tr = sim_disp['dispersion.trend'][keep]
        final = sim_disp['dispersion'][keep]
        lo = np.minimum(gw, tr) * (1 - 1e-10)
        hi = np.maximum(gw, tr) * (1 + 1e-10)
        assert np.all((final >= lo) & (final <= hi))

    def test_status_values(self, sim_disp):
        allowed = {nd.GeneStatus.SHRUNK, nd.GeneStatus.OUTLIER,
                   nd.GeneStatus.NON_CONVERGED}
        assert set(sim_disp['status']) <= allowed

    def test_no_shrinkage(self, sim_disp):
        fit = nd.shrink_dispersions(sim_disp, shrink=False)
        np.testing.assert_array_equal(fit['dispersion'], fit['dispersion.genewise'])
        assert not fit['dispersion.outlier'].any()

    def test_outlier_sd_controls_flags(self, sim_disp):
        loose = nd.shrink_dispersions(sim_disp, outlier_sd=0.0)
        strict = nd.shrink_dispersions(sim_disp, outlier_sd=1e6)
        assert loose['dispersion.outlier'].sum() >= sim_disp['dispersion.outlier'].sum()
        assert strict['dispersion.outlier'].sum() == 0

    def test_inputs_not_mutated(self, sim_disp):
        before = sim_disp['dispersion'].copy()
        nd.shrink_dispersions(sim_disp, outlier_sd=0.5)
        np.testing.assert_array_equal(sim_disp['dispersion'], before)

    def test_deterministic(self, sim_dataset, sim_disp):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            again = nd.estimate_dispersions(sim_dataset)
        np.testing.assert_array_equal(again['dispersion'], sim_disp['dispersion'])
