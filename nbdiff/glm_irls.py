"""
Ridge-penalized IRLS fitting for negative binomial GLMs.

Fisher scoring on the log link with size factors as a fixed offset and
dispersions held fixed, plus the NB deviance.
"""

import numpy as np

from .dispersion_lowlevel import _nb_loglik_gene

# Coefficients beyond this magnitude (log2 scale) are treated as divergent.
LARGE_BETA = 30.0


def nb_glm_irls(y, design, dispersion, size_factors, ridge=1e-6, maxit=100,
                tol=1e-8, min_mu=0.5, coef_start=None, n_jobs=1):
    """Fit genewise negative binomial GLMs by ridge-penalized IRLS.

    Parameters
    ----------
    y : ndarray
        Count matrix (genes x samples).
    design : ndarray
        Design matrix (samples x coefficients).
    dispersion : float or ndarray
        NB dispersions, one per gene.
    size_factors : ndarray
        One size factor per sample; enters as ``log`` offset.
    ridge : float
        Ridge penalty on log2-scale coefficients.
    maxit : int
        Maximum iterations.
    tol : float
        Convergence tolerance on the relative change in deviance.
    min_mu : float
        Lower bound on fitted means during iteration.
    coef_start : ndarray, optional
        Starting natural-log coefficients (genes x coefficients).
    n_jobs : int
        Worker processes.

    Returns
    -------
    dict with 'coefficients', 'standard.errors', 'fitted.values',
    'hat.values', 'deviance', 'iter', 'converged', 'diverged'.
    """
    from .utils import run_chunked

    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    ngenes, nlibs = y.shape

    design = np.asarray(design, dtype=np.float64)
    if design.ndim == 1:
        design = design.reshape(-1, 1)
    if design.shape[0] != nlibs:
        raise ValueError("nrow(design) disagrees with ncol(y)")

    disp = np.broadcast_to(np.atleast_1d(np.asarray(dispersion, dtype=np.float64)),
                           (ngenes,)).copy()
    if np.any(~np.isfinite(disp)) or np.any(disp <= 0):
        raise ValueError("Dispersions must be positive and finite")

    sf = np.asarray(size_factors, dtype=np.float64)
    if coef_start is None:
        coef_start = _get_irls_start(y, design, sf)

    coef, se, mu, hat, dev, n_iter, converged, diverged = run_chunked(
        _irls_block, ngenes, n_jobs, y, design, disp, sf, np.asarray(coef_start),
        ridge, maxit, tol, min_mu)

    return {
        'coefficients': coef,
        'standard.errors': se,
        'fitted.values': mu,
        'hat.values': hat,
        'deviance': dev,
        'iter': n_iter,
        'converged': converged,
        'diverged': diverged,
    }


def _get_irls_start(y, design, sf):
    """Least-squares fit to log normalized counts as starting values."""
    log_norm = np.log(y / sf[None, :] + 0.1)
    beta, *_ = np.linalg.lstsq(design, log_norm.T, rcond=None)
    return beta.T


def _irls_block(idx, y, design, disp, sf, coef_start, ridge, maxit, tol, min_mu):
    """Module-level IRLS worker for a block of genes."""
    nb = len(idx)
    nlibs, ncoefs = design.shape
    lam = np.diag(np.full(ncoefs, ridge / np.log(2) ** 2))
    large = LARGE_BETA * np.log(2)
    log_sf = np.log(sf)

    coef = np.zeros((nb, ncoefs))
    se = np.zeros((nb, ncoefs))
    mu_out = np.zeros((nb, nlibs))
    hat = np.zeros((nb, nlibs))
    dev_out = np.zeros(nb)
    n_iter = np.zeros(nb, dtype=int)
    converged = np.zeros(nb, dtype=bool)
    diverged = np.zeros(nb, dtype=bool)

    for k, g in enumerate(idx):
        y_g = np.ascontiguousarray(y[g])
        alpha = disp[g]
        beta = np.array(coef_start[g], dtype=np.float64)
        with np.errstate(over='ignore', under='ignore'):
            mu = np.maximum(sf * np.exp(np.clip(design @ beta, -large, large)), min_mu)
        dev = -2.0 * _nb_loglik_gene(y_g, mu, alpha)

        for it in range(maxit):
            n_iter[k] = it + 1
            w = mu / (1.0 + alpha * mu)
            z = np.log(mu) - log_sf + (y_g - mu) / mu
            xtwx = design.T @ (w[:, None] * design)
            try:
                beta_new = np.linalg.solve(xtwx + lam, design.T @ (w * z))
            except np.linalg.LinAlgError:
                break
            if np.any(~np.isfinite(beta_new)) or np.any(np.abs(beta_new) > large):
                beta = np.clip(np.nan_to_num(beta_new, nan=0.0), -large, large)
                diverged[k] = True
                break
            beta = beta_new
            with np.errstate(over='ignore', under='ignore'):
                mu = np.maximum(sf * np.exp(design @ beta), min_mu)
            dev_old = dev
            dev = -2.0 * _nb_loglik_gene(y_g, mu, alpha)
            if abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
                converged[k] = True
                break

        with np.errstate(over='ignore', under='ignore'):
            mu = sf * np.exp(np.clip(design @ beta, -large, large))
        w = mu / (1.0 + alpha * mu)
        xtwx = design.T @ (w[:, None] * design)
        try:
            inv = np.linalg.inv(xtwx + lam)
        except np.linalg.LinAlgError:
            inv = np.linalg.pinv(xtwx + lam)
        sigma = inv @ xtwx @ inv
        wx = np.sqrt(w)[:, None] * design
        hat[k] = np.sum((wx @ inv) * wx, axis=1)

        coef[k] = beta
        se[k] = np.sqrt(np.maximum(np.diag(sigma), 0.0))
        mu_out[k] = mu
        dev_out[k] = nbinom_deviance(y_g, mu, alpha)

    return coef, se, mu_out, hat, dev_out, n_iter, converged, diverged


def nbinom_deviance(y, mean, dispersion):
    """Residual deviances for row-wise negative binomial GLMs.

    Vectorized over genes; returns a float for vector input.
    """
    y = np.asarray(y, dtype=np.float64)
    mean = np.asarray(mean, dtype=np.float64)
    single = y.ndim == 1
    y = np.atleast_2d(y)
    mean = np.maximum(np.atleast_2d(mean), 1e-300)
    d = np.atleast_1d(np.asarray(dispersion, dtype=np.float64))
    d_mat = np.broadcast_to(d[:, None] if d.size == y.shape[0] else d.ravel()[0], y.shape)

    unit_dev = np.zeros_like(y)
    pos = y > 0
    if np.any(pos):
        d_pos = d_mat[pos]
        unit_dev[pos] = 2 * (y[pos] * np.log(y[pos] / mean[pos]) -
                              (y[pos] + 1.0 / d_pos) * np.log((1 + d_pos * y[pos]) /
                                                                (1 + d_pos * mean[pos])))
    zero = ~pos
    if np.any(zero):
        d_zero = d_mat[zero]
        unit_dev[zero] = 2.0 / d_zero * np.log(1 + d_zero * mean[zero])

    unit_dev = np.maximum(unit_dev, 0)
    dev = np.sum(unit_dev, axis=1)
    return float(dev[0]) if single else dev
