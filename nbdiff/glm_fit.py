"""
Negative binomial GLM fitting for nbdiff.

Wraps the ridge IRLS fitter around a dataset and its dispersions, adds
Cook's distances and per-gene fit annotations.
"""

import warnings

import numpy as np

from .classes import NBGLMFit, GeneStatus
from .dataset import get_size_factors, condition_replicates
from .dispersion_lowlevel import robust_moments_dispersion
from .errors import GeneFitNonConvergence, NumericOverflow
from .glm_irls import nb_glm_irls
from .normalization import normalized_counts

# Floor on the dispersion used to scale Cook's distances.
MIN_COOKS_DISPERSION = 0.04


def nb_glm_fit(dataset, dispersion_fit, ridge=1e-6, maxit=100, tol=1e-8,
               n_jobs=1):
    """Fit one negative binomial GLM per gene with fixed dispersions.

    Parameters
    ----------
    dataset : CountDataSet
        Dataset with size factors.
    dispersion_fit : DispersionFit
        Output of ``estimate_dispersions``; its final dispersions are used.
    ridge : float
        Ridge penalty on log2-scale coefficients.
    maxit : int
        Maximum IRLS iterations.
    tol : float
        Convergence tolerance on the relative deviance change.
    n_jobs : int
        Worker processes.

    Returns
    -------
    NBGLMFit
    """
    y = dataset['counts']
    sf = get_size_factors(dataset)
    design = dataset['design']
    ngenes = y.shape[0]
    if len(dispersion_fit['dispersion']) != ngenes:
        raise ValueError("dispersion_fit does not match the dataset's genes")
    dispersion = dispersion_fit['dispersion']

    fit = nb_glm_irls(y, design, dispersion, sf, ridge=ridge, maxit=maxit,
                      tol=tol, n_jobs=n_jobs)

    cells = dataset['samples'][dataset['condition']].astype(str).to_numpy()
    robust_disp = robust_moments_dispersion(normalized_counts(dataset), cells,
                                            min_disp=MIN_COOKS_DISPERSION)
    cooks = cooks_distance(y, fit['fitted.values'], fit['hat.values'],
                           robust_disp, design.shape[1])

    converged = fit['converged']
    diverged = fit['diverged']
    status = dispersion_fit['status']
    disp_converged = dispersion_fit['dispersion.converged']

    n_noconv = int(np.sum(~converged & ~diverged))
    if n_noconv > 0:
        warnings.warn(f"{n_noconv} gene(s) did not converge in {maxit} IRLS iterations",
                      GeneFitNonConvergence, stacklevel=2)
    n_div = int(np.sum(diverged))
    if n_div > 0:
        warnings.warn(f"{n_div} gene(s) had diverging coefficients; "
                      f"clipped to the coefficient bound",
                      NumericOverflow, stacklevel=2)

    notes = np.empty(ngenes, dtype=object)
    for g in range(ngenes):
        gene_notes = []
        if diverged[g]:
            gene_notes.append("coefficient diverged")
        elif not converged[g]:
            gene_notes.append("glm did not converge")
        if status[g] == GeneStatus.OUTLIER:
            gene_notes.append("dispersion outlier")
        if not disp_converged[g]:
            gene_notes.append("dispersion did not converge")
        notes[g] = tuple(gene_notes)

    return NBGLMFit({
        'gene.names': dataset.gene_names,
        'counts': y,
        'coefficients': fit['coefficients'],
        'standard.errors': fit['standard.errors'],
        'converged': converged,
        'diverged': diverged,
        'iter': fit['iter'],
        'deviance': fit['deviance'],
        'fitted.values': fit['fitted.values'],
        'hat.values': fit['hat.values'],
        'cooks': cooks,
        'cooks.dispersion': robust_disp,
        'dispersion': dispersion,
        'status': status,
        'base.mean': dispersion_fit['base.mean'],
        'fit.notes': notes,
        'design': design,
        'coef.names': dataset['coef.names'],
        'condition': dataset['condition'],
        'samples': dataset['samples'],
        'replicates': condition_replicates(dataset),
        'ridge': ridge,
    })


def cooks_distance(y, mu, hat, dispersion, ncoefs):
    """Cook's distances of every count.

    ``(y - mu)^2 / (mu + alpha mu^2) * h / (p (1 - h)^2)``

    Parameters
    ----------
    y, mu, hat : ndarray
        Counts, fitted means and hat diagonals (genes x samples).
    dispersion : float or ndarray
        One dispersion per gene.
    ncoefs : int
        Number of model coefficients.

    Returns
    -------
    ndarray (genes x samples)
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.asarray(mu, dtype=np.float64)
    hat = np.asarray(hat, dtype=np.float64)
    alpha = np.broadcast_to(np.atleast_1d(np.asarray(dispersion, dtype=np.float64)),
                            (y.shape[0],))[:, None]
    with np.errstate(divide='ignore', invalid='ignore'):
        pearson_sq = (y - mu) ** 2 / (mu + alpha * mu ** 2)
        h = np.minimum(hat, 1.0 - 1e-12)
        cooks = pearson_sq / ncoefs * h / (1.0 - h) ** 2
    return np.where(np.isfinite(cooks), cooks, np.nan)
