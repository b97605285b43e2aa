"""
Size factor estimation for nbdiff.

Median-of-ratios scaling (Anders & Huber 2010) and its positive-count
variant for data where every gene contains a zero.
"""

import numpy as np

from .errors import InsufficientDataError


def estimate_size_factors(dataset, method='ratio', control_genes=None):
    """Estimate one size factor per sample.

    Parameters
    ----------
    dataset : CountDataSet
    method : str
        'ratio' (median of ratios to the per-gene geometric mean) or
        'poscounts' (geometric mean over positive counts only, factors
        rescaled to a geometric mean of one).
    control_genes : array-like of bool or int, optional
        Genes to use for the ratios; all genes by default.

    Returns
    -------
    CountDataSet
        A new dataset with ``'size.factors'`` set.
    """
    sf = size_factors_for_matrix(dataset['counts'], method=method,
                                 control_genes=control_genes)
    return dataset.derive(size_factors=sf)


def size_factors_for_matrix(counts, method='ratio', control_genes=None):
    """Median-of-ratios size factors for a count matrix (genes x samples)."""
    x = np.asarray(counts, dtype=np.float64)
    if x.ndim != 2:
        raise ValueError("counts must be a 2D array")
    if method not in ('ratio', 'poscounts'):
        raise ValueError("method must be 'ratio' or 'poscounts'")
    if control_genes is not None:
        x = x[np.asarray(control_genes)]
    if x.shape[0] == 0:
        raise InsufficientDataError("No genes available to estimate size factors")

    if method == 'ratio':
        with np.errstate(divide='ignore'):
            log_geo = np.mean(np.log(x), axis=1)
    else:
        with np.errstate(divide='ignore'):
            logx = np.where(x > 0, np.log(np.maximum(x, 1)), 0.0)
        log_geo = np.sum(logx, axis=1) / x.shape[1]
        log_geo[np.all(x == 0, axis=1)] = -np.inf

    pos = np.isfinite(log_geo)
    if not np.any(pos):
        raise InsufficientDataError(
            "Every gene contains at least one zero, cannot compute log "
            "geometric means; try method='poscounts'")

    sf = _calc_factor_median_ratio(x[pos], log_geo[pos], positive_only=method == 'poscounts')

    if method == 'poscounts':
        sf = sf / np.exp(np.mean(np.log(sf)))

    bad = ~np.isfinite(sf) | (sf <= 0)
    if np.any(bad):
        raise InsufficientDataError(
            f"Size factor is zero or non-finite for sample(s) {np.where(bad)[0].tolist()}")
    return sf


def _calc_factor_median_ratio(data, log_geo, positive_only=False):
    """Per-sample median of count / geometric-mean ratios."""
    result = np.zeros(data.shape[1])
    for j in range(data.shape[1]):
        col = data[:, j]
        use = col > 0 if positive_only else np.ones(len(col), dtype=bool)
        if not np.any(use):
            result[j] = np.nan
            continue
        with np.errstate(divide='ignore'):
            ratio = np.log(col[use]) - log_geo[use]
        result[j] = np.exp(np.median(ratio))
    return result


def normalized_counts(dataset):
    """Counts divided by their sample's size factor."""
    from .dataset import get_size_factors
    return dataset['counts'] / get_size_factors(dataset)[None, :]


def base_mean(dataset):
    """Mean of normalized counts per gene."""
    return normalized_counts(dataset).mean(axis=1)
