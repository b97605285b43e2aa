"""
Low-level dispersion estimation functions for nbdiff.

Negative binomial log-likelihoods, the Cox-Reid adjusted profile
likelihood, moment-based starting values and the per-gene bounded
maximum-likelihood search.
"""

import math

import numpy as np
from numba import njit
from scipy.optimize import minimize_scalar
from scipy.stats import trim_mean


@njit(cache=True)
def _nb_loglik_gene(y, mu, alpha):
    """Numba kernel: NB log-likelihood of one gene (variance mu + alpha mu^2)."""
    r = 1.0 / alpha
    lgr = math.lgamma(r)
    total = 0.0
    for j in range(y.shape[0]):
        m = mu[j]
        if m < 1e-300:
            m = 1e-300
        yj = y[j]
        total += (math.lgamma(yj + r) - lgr - math.lgamma(yj + 1.0)
                  + r * math.log(r / (r + m)))
        if yj > 0.0:
            total += yj * math.log(m / (r + m))
    return total


@njit(cache=True)
def _nb_loglik_rows(y, mu, alpha, out):
    """Numba kernel: row-wise NB log-likelihoods for a genes x samples matrix."""
    for g in range(y.shape[0]):
        out[g] = _nb_loglik_gene(y[g], mu[g], alpha[g])


def nb_log_lik(y, mu, dispersion):
    """Negative binomial log-likelihood per gene.

    Parameters
    ----------
    y, mu : ndarray
        Counts and means (genes x samples, or one gene as a vector).
    dispersion : float or ndarray
        One dispersion per gene (or a scalar).

    Returns
    -------
    ndarray of log-likelihoods (one per gene), or a float for vector input.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.asarray(mu, dtype=np.float64)
    single = y.ndim == 1
    y = np.atleast_2d(y)
    mu = np.broadcast_to(np.atleast_2d(mu), y.shape)
    alpha = np.broadcast_to(np.atleast_1d(np.asarray(dispersion, dtype=np.float64)),
                            (y.shape[0],))
    out = np.empty(y.shape[0])
    _nb_loglik_rows(np.ascontiguousarray(y), np.ascontiguousarray(mu),
                    np.ascontiguousarray(alpha), out)
    return float(out[0]) if single else out


def cox_reid_profile_lik(log_alpha, y, mu, design):
    """Cox-Reid adjusted profile log-likelihood of one gene's dispersion.

    ``loglik(y; mu, alpha) - 0.5 * log det(X' W X)`` with
    ``W = diag(mu / (1 + alpha mu))``.
    """
    alpha = math.exp(log_alpha)
    ll = _nb_loglik_gene(y, mu, alpha)
    w = mu / (1.0 + alpha * mu)
    xtwx = design.T @ (w[:, None] * design)
    sign, logdet = np.linalg.slogdet(xtwx)
    cr = -0.5 * logdet if sign > 0 else 0.0
    return ll + cr


def rough_dispersion(normalized, design):
    """Dispersion from a linear model on normalized counts.

    ``sum(((y - mu)^2 - mu) / mu^2) / (m - p)`` per gene, floored at zero.
    """
    normalized = np.asarray(normalized, dtype=np.float64)
    m, p = design.shape
    coef, *_ = np.linalg.lstsq(design, normalized.T, rcond=None)
    mu = np.maximum((design @ coef).T, 1.0)
    est = np.sum(((normalized - mu) ** 2 - mu) / mu ** 2, axis=1) / (m - p)
    return np.maximum(est, 0.0)


def moments_dispersion(normalized, size_factors):
    """Method-of-moments dispersion ``(var - xim * mean) / mean^2``."""
    normalized = np.asarray(normalized, dtype=np.float64)
    xim = np.mean(1.0 / np.asarray(size_factors, dtype=np.float64))
    bm = normalized.mean(axis=1)
    bv = normalized.var(axis=1, ddof=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        est = (bv - xim * bm) / bm ** 2
    return est


def initial_dispersion(normalized, size_factors, design, min_disp, max_disp):
    """Starting dispersions: the smaller of rough and moments estimates."""
    rough = rough_dispersion(normalized, design)
    moments = moments_dispersion(normalized, size_factors)
    est = np.fmin(rough, moments)
    est[~np.isfinite(est)] = 0.1
    return np.clip(est, min_disp, max_disp)


def fit_genewise_mle(idx, y, mu, design, log_lo, log_hi, tol):
    """Maximize the Cox-Reid profile likelihood for a block of genes.

    Module-level worker for ``utils.run_chunked``.

    Returns
    -------
    (ndarray, ndarray)
        Log dispersions and convergence flags for ``idx``.
    """
    log_alpha = np.empty(len(idx))
    converged = np.zeros(len(idx), dtype=bool)
    for k, g in enumerate(idx):
        y_g = np.ascontiguousarray(y[g], dtype=np.float64)
        mu_g = np.ascontiguousarray(mu[g], dtype=np.float64)

        def fun(la):
            return -cox_reid_profile_lik(la, y_g, mu_g, design)

        with np.errstate(all='ignore'):
            res = minimize_scalar(fun, bounds=(log_lo, log_hi), method='bounded',
                                  options={'xatol': tol})
        ok = bool(res.success) and np.isfinite(res.fun) and np.isfinite(res.x)
        log_alpha[k] = res.x if ok else np.nan
        converged[k] = ok
    return log_alpha, converged


def _trim_params(n):
    """Trim proportion and variance rescaling for a cell of size n."""
    if n <= 3.5:
        return 1 / 3, 2.04
    if n <= 23.5:
        return 1 / 4, 1.86
    return 1 / 8, 1.51


def robust_moments_dispersion(normalized, cells=None, min_cell_size=3,
                              min_disp=0.04):
    """Method-of-moments dispersion from trimmed variances.

    With ``cells`` (a condition label per sample), the variance is the
    largest trimmed within-cell variance over cells holding at least
    ``min_cell_size`` samples; otherwise a trimmed variance over all
    samples is used. Single extreme counts barely move the estimate.
    """
    normalized = np.asarray(normalized, dtype=np.float64)
    m = normalized.mean(axis=1)

    groups = []
    if cells is not None:
        cells = np.asarray(cells)
        for lvl in np.unique(cells):
            sel = cells == lvl
            if np.sum(sel) >= min_cell_size:
                groups.append(sel)

    if groups:
        v = np.zeros(normalized.shape[0])
        for sel in groups:
            x = normalized[:, sel]
            trim, scale = _trim_params(x.shape[1])
            center = trim_mean(x, trim, axis=1)
            sqerr = (x - center[:, None]) ** 2
            v = np.maximum(v, scale * trim_mean(sqerr, trim, axis=1))
    else:
        center = trim_mean(normalized, 1 / 8, axis=1)
        sqerr = (normalized - center[:, None]) ** 2
        v = 1.51 * trim_mean(sqerr, 1 / 8, axis=1)

    with np.errstate(divide='ignore', invalid='ignore'):
        alpha = (v - m) / m ** 2
    alpha[~np.isfinite(alpha)] = min_disp
    return np.maximum(alpha, min_disp)
