"""
Empirical Bayes shrinkage of log2 fold changes in nbdiff.

A zero-centred prior is matched to the upper quantile of the observed
absolute fold changes; each gene's estimate is replaced by its posterior
mean (normal prior) or mode (Cauchy prior). Tests are not redone.
"""

import warnings

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.stats import norm

from .classes import GeneStatus
from .errors import InsufficientDataError, NumericUnderflow
from .utils import run_chunked

MIN_PRIOR_VAR = 1e-6


def estimate_lfc_prior_var(lfc, se, status=None, upper_quantile=0.05):
    """Variance of a zero-centred prior matched to observed fold changes.

    The prior's ``1 - upper_quantile / 2`` normal quantile is set to the
    ``1 - upper_quantile`` quantile of ``|lfc|``, using genes with finite
    estimates that are not dispersion outliers.
    """
    lfc = np.asarray(lfc, dtype=np.float64)
    se = np.asarray(se, dtype=np.float64)
    use = np.isfinite(lfc) & np.isfinite(se) & (se > 0)
    if status is not None:
        use &= np.array([s != GeneStatus.OUTLIER for s in status], dtype=bool)
    if not np.any(use):
        raise InsufficientDataError(
            "No genes with finite log2 fold changes to estimate the prior")

    q = np.quantile(np.abs(lfc[use]), 1 - upper_quantile)
    prior_var = (q / norm.ppf(1 - upper_quantile / 2)) ** 2
    if prior_var < MIN_PRIOR_VAR:
        warnings.warn(f"Fold-change prior variance {prior_var:.3g} is below "
                      f"{MIN_PRIOR_VAR:g}; using the floor",
                      NumericUnderflow, stacklevel=2)
        prior_var = MIN_PRIOR_VAR
    return float(prior_var)


def shrink_lfc(wald_test, prior='normal', upper_quantile=0.05, n_jobs=1):
    """Shrink the log2 fold changes of a Wald test.

    Parameters
    ----------
    wald_test : WaldTest
        Output of ``nbinom_wald_test``.
    prior : str
        'normal' (closed-form posterior) or 'cauchy' (posterior mode,
        heavier tails so large effects shrink less).
    upper_quantile : float
        Tail probability used to match the prior width.
    n_jobs : int
        Worker processes for the Cauchy posterior modes.

    Returns
    -------
    WaldTest
        Same genes and columns; 'log2FoldChange' and 'lfcStandardError'
        hold posterior values, p-values and statistics are unchanged.
    """
    if prior not in ('normal', 'cauchy'):
        raise ValueError("prior must be 'normal' or 'cauchy'")

    table = wald_test['table']
    lfc = table['log2FoldChange'].to_numpy(dtype=np.float64)
    se = table['lfcStandardError'].to_numpy(dtype=np.float64)
    prior_var = estimate_lfc_prior_var(lfc, se, status=wald_test.get('status'),
                                       upper_quantile=upper_quantile)

    ok = np.isfinite(lfc) & np.isfinite(se) & (se > 0)
    if prior == 'normal':
        post, post_se = _normal_posterior(lfc, se, prior_var)
    else:
        post, post_se = run_chunked(_cauchy_block, len(lfc), n_jobs, lfc, se, prior_var)
    post = np.where(ok, post, lfc)
    post_se = np.where(ok, post_se, se)

    shrunk = table.copy()
    shrunk['log2FoldChange'] = post
    shrunk['lfcStandardError'] = post_se
    return wald_test.derive(table=shrunk, prior_var=prior_var, prior_type=prior,
                            shrunk=True)


def _normal_posterior(lfc, se, prior_var):
    with np.errstate(divide='ignore', invalid='ignore'):
        se2 = se ** 2
        post = lfc * prior_var / (prior_var + se2)
        post_se = np.sqrt(1.0 / (1.0 / prior_var + 1.0 / se2))
    return post, post_se


def _cauchy_block(idx, lfc, se, scale2):
    """Posterior modes under a Cauchy prior for a block of genes."""
    post = np.full(len(idx), np.nan)
    post_se = np.full(len(idx), np.nan)
    for k, g in enumerate(idx):
        b_hat, s = lfc[g], se[g]
        if not (np.isfinite(b_hat) and np.isfinite(s) and s > 0):
            continue
        if b_hat == 0:
            mode = 0.0
        else:
            def objective(b):
                return (b - b_hat) ** 2 / (2 * s ** 2) + np.log1p(b ** 2 / scale2)
            lo, hi = min(0.0, b_hat), max(0.0, b_hat)
            res = minimize_scalar(objective, bounds=(lo, hi), method='bounded',
                                  options={'xatol': 1e-10})
            mode = float(np.clip(res.x, lo, hi))
        curv = 1.0 / s ** 2 + 2 * (scale2 - mode ** 2) / (scale2 + mode ** 2) ** 2
        post[k] = mode
        post_se[k] = 1.0 / np.sqrt(curv) if curv > 0 else s
    return post, post_se
