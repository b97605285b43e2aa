"""
Dispersion estimation for nbdiff.

Gene-wise maximum likelihood, the parametric mean-dispersion trend,
empirical Bayes shrinkage toward the trend and dispersion outlier
detection.
"""

import warnings

import numpy as np
import statsmodels.api as sm
from scipy import stats

from .classes import DispersionFit, GeneStatus
from .dispersion_lowlevel import initial_dispersion, fit_genewise_mle
from .errors import GeneFitNonConvergence, InsufficientDataError, TrendFitError
from .glm_irls import nb_glm_irls
from .normalization import normalized_counts
from .utils import run_chunked, trigamma


def estimate_dispersions(dataset, fit_type='parametric', min_disp=1e-8,
                         outlier_sd=2.0, min_trend_genes=10, niter=1,
                         ridge=1e-6, maxit=100, tol=1e-8, shrink=True,
                         n_jobs=1, verbose=False):
    """Estimate gene-wise, trended and final dispersions.

    Runs :func:`estimate_genewise_dispersions`, :func:`fit_dispersion_trend`,
    :func:`estimate_dispersion_prior_var` and :func:`shrink_dispersions` in
    turn.

    Parameters
    ----------
    dataset : CountDataSet
        Count-filtered dataset with size factors.
    fit_type : str
        'parametric' (``asymptotic + extra / mean``) or 'mean'.
    min_disp : float
        Smallest dispersion considered.
    outlier_sd : float
        Prior standard deviations above the trend beyond which a gene keeps
        its gene-wise estimate.
    min_trend_genes : int
        Minimum number of usable genes for the trend.
    niter : int
        Alternations between mean fitting and dispersion estimation.
    ridge, maxit, tol : float, int, float
        Passed to the IRLS mean fits.
    shrink : bool
        If False, final dispersions are the gene-wise estimates.
    n_jobs : int
        Worker processes for per-gene work.
    verbose : bool
        Print progress.

    Returns
    -------
    DispersionFit
    """
    fit = estimate_genewise_dispersions(dataset, min_disp=min_disp, niter=niter,
                                        ridge=ridge, maxit=maxit, tol=tol,
                                        n_jobs=n_jobs)
    if verbose:
        print(f"Gene-wise dispersions estimated for {len(fit['dispersion.genewise'])} genes.")
    fit = fit_dispersion_trend(fit, fit_type=fit_type, min_trend_genes=min_trend_genes)
    if verbose:
        c = fit['trend.coefficients']
        print(f"Fitted {fit['trend.type']} trend: asymptotic={c['asymptotic']:.4g}, "
              f"extra={c['extra']:.4g}.")
    fit = estimate_dispersion_prior_var(fit, outlier_sd=outlier_sd)
    fit = shrink_dispersions(fit, outlier_sd=outlier_sd, shrink=shrink)
    if verbose:
        print(f"Final dispersions: {int(np.sum(fit['dispersion.outlier']))} outliers "
              f"kept at gene-wise values.")
    return fit


def estimate_genewise_dispersions(dataset, min_disp=1e-8, niter=1, ridge=1e-6,
                                  maxit=100, tol=1e-8, n_jobs=1):
    """Maximum Cox-Reid adjusted likelihood dispersion for each gene.

    Means come from an IRLS fit with moment-based starting dispersions,
    refit ``niter`` times. Genes whose bounded search fails keep the
    starting value and are flagged as not converged.

    Returns
    -------
    DispersionFit
        With 'dispersion.genewise', 'dispersion.converged', 'fitted.values'
        and 'base.mean'.
    """
    from .dataset import get_size_factors

    y = dataset['counts']
    sf = get_size_factors(dataset)
    design = dataset['design']
    nlibs, ncoefs = design.shape
    ngenes = y.shape[0]
    if nlibs <= ncoefs:
        raise InsufficientDataError(
            "The number of samples and the number of model coefficients are "
            "equal, so there are no replicates to estimate dispersion")
    if niter < 1:
        raise ValueError("niter must be at least 1")

    norm = normalized_counts(dataset)
    max_disp = max(10.0, float(nlibs))
    alpha_init = initial_dispersion(norm, sf, design, min_disp, max_disp)

    alpha = alpha_init
    converged = np.ones(ngenes, dtype=bool)
    mu = None
    for _ in range(niter):
        mean_fit = nb_glm_irls(y, design, alpha, sf, ridge=ridge, maxit=maxit,
                               tol=tol, n_jobs=n_jobs)
        mu = mean_fit['fitted.values']
        log_alpha, converged = run_chunked(
            fit_genewise_mle, ngenes, n_jobs, y, mu, design,
            np.log(min_disp), np.log(max_disp), 1e-6)
        alpha = np.where(converged, np.exp(log_alpha), alpha_init)
        alpha = np.clip(alpha, min_disp, max_disp)

    n_failed = int(np.sum(~converged))
    if n_failed > 0:
        warnings.warn(f"{n_failed} gene-wise dispersion estimate(s) did not converge; "
                      f"using moment-based values for those genes",
                      GeneFitNonConvergence, stacklevel=2)

    return DispersionFit({
        'gene.names': dataset.gene_names,
        'dispersion.genewise': alpha,
        'dispersion.converged': converged,
        'fitted.values': mu,
        'base.mean': norm.mean(axis=1),
        'min.disp': min_disp,
        'max.disp': max_disp,
        'df.residual': nlibs - ncoefs,
    })


def fit_dispersion_trend(fit, fit_type='parametric', min_trend_genes=10):
    """Fit the mean-dispersion trend across genes.

    The parametric curve ``asymptotic + extra / mean`` is fitted with a
    Gamma-family identity-link GLM, iteratively dropping genes whose
    residual ratio lies outside ``[1e-4, 15]``. Both coefficients must be
    positive; otherwise a warning is issued and the trimmed mean of the
    gene-wise estimates is used as a constant trend.

    Raises
    ------
    TrendFitError
        Fewer than ``min_trend_genes`` genes are usable.
    """
    if fit_type not in ('parametric', 'mean'):
        raise ValueError("fit_type must be 'parametric' or 'mean'")

    gw = fit['dispersion.genewise']
    means = fit['base.mean']
    min_disp = fit['min.disp']
    use = np.isfinite(gw) & (gw >= 100 * min_disp) & (means > 0)
    if np.sum(use) < min_trend_genes:
        raise TrendFitError(
            f"Only {int(np.sum(use))} gene(s) have usable gene-wise dispersions "
            f"(need {min_trend_genes}); cannot fit a dispersion trend")

    coefs = None
    if fit_type == 'parametric':
        coefs = _parametric_trend(means[use], gw[use])
        if coefs is None:
            warnings.warn("Parametric dispersion trend failed to fit; "
                          "using the mean of gene-wise dispersions instead",
                          stacklevel=2)
            fit_type = 'mean'
    if fit_type == 'mean':
        coefs = {'asymptotic': float(stats.trim_mean(gw[use], 0.001)), 'extra': 0.0}

    trend = coefs['asymptotic'] + coefs['extra'] / np.maximum(means, 1e-300)
    trend = np.clip(trend, min_disp, fit['max.disp'])
    return fit.derive(dispersion_trend=trend, trend_coefficients=coefs,
                      trend_type=fit_type, trend_genes=use)


def _parametric_trend(means, disps, maxit=10):
    """Gamma-GLM fit of ``disps ~ asymptotic + extra / means``.

    Returns the coefficient dict, or None when the fit fails.
    """
    coefs = np.array([0.1, 1.0])
    family = sm.families.Gamma(link=sm.families.links.Identity())
    for _ in range(maxit):
        residuals = disps / (coefs[0] + coefs[1] / means)
        good = (residuals > 1e-4) & (residuals < 15)
        if np.sum(good) < 3:
            return None
        X = np.column_stack([np.ones(np.sum(good)), 1.0 / means[good]])
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                with np.errstate(all='ignore'):
                    res = sm.GLM(disps[good], X, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError, FloatingPointError):
            return None
        new = np.asarray(res.params, dtype=np.float64)
        if np.any(~np.isfinite(new)) or np.any(new <= 0):
            return None
        delta = np.sum(np.log(new / coefs) ** 2)
        coefs = new
        if delta < 1e-6:
            return {'asymptotic': float(coefs[0]), 'extra': float(coefs[1])}
    return None


def estimate_dispersion_prior_var(fit, outlier_sd=2.0):
    """Spread of log gene-wise dispersions around the trend.

    ``MAD^2`` of the log residuals minus the expected sampling variance
    ``trigamma(df / 2)``, floored at 0.25. With three or fewer residual
    degrees of freedom the sampling-variance approximation is unreliable
    and ``MAD^2`` itself (floored at 0.25) is used. Genes lying more than
    ``outlier_sd`` prior standard deviations above the trend are left out
    and the spread is estimated once more from the remaining genes.
    """
    gw = fit['dispersion.genewise']
    trend = fit['dispersion.trend']
    df = fit['df.residual']
    expected = float(trigamma(df / 2.0))
    resid = np.log(gw) - np.log(trend)

    def _prior_var(use):
        var_log = float(stats.median_abs_deviation(resid[use], scale='normal') ** 2)
        if df > 3:
            return max(var_log - expected, 0.25), var_log
        return max(var_log, 0.25), var_log

    use = np.asarray(fit['trend.genes'], dtype=bool)
    prior_var, var_log = _prior_var(use)
    inliers = use & (resid <= outlier_sd * np.sqrt(prior_var))
    if 0 < np.sum(inliers) < np.sum(use):
        use = inliers
        prior_var, var_log = _prior_var(use)
    return fit.derive(prior_var=prior_var, sampling_var=expected,
                      var_log_disp=var_log, prior_genes=use)


def shrink_dispersions(fit, outlier_sd=2.0, shrink=True):
    """Posterior-mode dispersions and outlier flags.

    In log space the gene-wise estimate (precision ``1 / sampling_var``)
    and the trend (precision ``1 / prior_var``) are combined by their
    precisions. Genes whose gene-wise estimate lies more than
    ``outlier_sd`` prior standard deviations above the trend keep the
    gene-wise value.
    """
    gw = fit['dispersion.genewise']
    trend = fit['dispersion.trend']
    converged = fit['dispersion.converged']
    ngenes = len(gw)

    if not shrink:
        status = np.array([GeneStatus.NORMAL] * ngenes, dtype=object)
        status[~converged] = GeneStatus.NON_CONVERGED
        return fit.derive(dispersion=gw, dispersion_outlier=np.zeros(ngenes, dtype=bool),
                          status=status)

    prior_var = fit['prior.var']
    sampling_var = fit['sampling.var']
    log_gw = np.log(gw)
    log_trend = np.log(trend)

    w_gene = 1.0 / sampling_var
    w_prior = 1.0 / prior_var
    log_post = (w_gene * log_gw + w_prior * log_trend) / (w_gene + w_prior)
    final = np.exp(log_post)

    outlier = log_gw > log_trend + outlier_sd * np.sqrt(prior_var)
    final = np.where(outlier, gw, final)

    status = np.array([GeneStatus.SHRUNK] * ngenes, dtype=object)
    status[~converged] = GeneStatus.NON_CONVERGED
    status[outlier] = GeneStatus.OUTLIER

    return fit.derive(dispersion=final, dispersion_outlier=outlier, status=status)
