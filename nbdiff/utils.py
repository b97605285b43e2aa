"""
Utility functions for nbdiff.

Design-matrix construction from formulas, rank checks, coefficient lookup
and the gene-block executor used by every per-gene stage.
"""

import re
from concurrent.futures import ProcessPoolExecutor
from itertools import repeat

import numpy as np
import pandas as pd


def non_estimable(x):
    """Indices of non-estimable coefficients in a design matrix, or None."""
    x = np.asarray(x, dtype=np.float64)
    p = x.shape[1]
    if p == 0:
        return None
    _, R = np.linalg.qr(x)
    d = np.abs(np.diag(R))
    if len(d) == 0:
        return np.arange(p)
    tol = np.max(d) * max(x.shape) * np.finfo(np.float64).eps
    non_est = np.where(d < tol)[0]
    if len(non_est) == 0:
        return None
    return non_est


def is_fullrank(x):
    """Check if a matrix is full column rank."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    return np.linalg.matrix_rank(x) == x.shape[1]


_TREATMENT_TERM = re.compile(r'^(?P<var>[^\[]+)\[T\.(?P<level>.+)\]$')


def model_matrix(formula, data):
    """Create a design matrix from an R-style formula.

    Uses patsy with treatment coding. Categorical columns use their first
    category as the reference level, so a pandas Categorical whose
    categories start with the reference yields ``<level> vs <reference>``
    coefficients.

    Parameters
    ----------
    formula : str
        e.g. ``'~ condition'`` or ``'~ batch + condition'``.
    data : DataFrame or dict
        Sample-level data; column names are the formula variables.

    Returns
    -------
    (ndarray, list of str)
        Design matrix (samples x coefficients) and coefficient names in
        the form ``Intercept`` / ``condition_treated_vs_untreated``.

    Examples
    --------
    >>> df = pd.DataFrame({'condition': ['A', 'A', 'B', 'B']})
    >>> X, names = model_matrix('~ condition', df)
    >>> names
    ['Intercept', 'condition_B_vs_A']
    """
    import patsy

    if isinstance(data, dict):
        data = pd.DataFrame(data)
    if not isinstance(data, pd.DataFrame):
        raise ValueError("data must be a DataFrame for formula-based design")

    dm = patsy.dmatrix(formula, data=data, return_type='dataframe')
    names = [_coef_name(c, data) for c in dm.columns]
    return np.asarray(dm, dtype=np.float64), names


def _coef_name(column, data):
    """Rename a patsy column to the ``var_level_vs_reference`` convention."""
    m = _TREATMENT_TERM.match(column)
    if m is None:
        return column
    var, level = m.group('var'), m.group('level')
    if var in data.columns:
        levels = _levels(data[var])
        if len(levels) > 0:
            return f"{var}_{level}_vs_{levels[0]}"
    return f"{var}_{level}"


def _levels(x):
    if isinstance(x.dtype, pd.CategoricalDtype):
        return list(x.cat.categories)
    return sorted(pd.unique(x.dropna()).tolist(), key=str)


def result_names(obj):
    """Coefficient names of a dataset or fit."""
    return list(obj['coef.names'])


def resolve_coef(coef, names, condition=None):
    """Turn a coefficient index or name into an integer index.

    With ``coef=None`` the last ``<condition>_...`` column is used, as DESeq
    tests the last variable of the design. Without a condition term the
    second column is used.
    """
    ncoef = len(names)
    if coef is None:
        if ncoef < 2:
            raise ValueError("Need at least two columns for design")
        if condition is not None:
            terms = [k for k, name in enumerate(names)
                     if name.startswith(f"{condition}_")]
            if terms:
                return terms[-1]
        return 1
    if isinstance(coef, str):
        if coef not in names:
            raise ValueError(f"Coefficient '{coef}' not found in {names}")
        return names.index(coef)
    coef = int(coef)
    if not 0 <= coef < ncoef:
        raise ValueError(f"coef must lie in [0, {ncoef - 1}]")
    return coef


def gene_blocks(ngenes, n_jobs):
    """Split gene indices into contiguous blocks, one or more per worker."""
    nblocks = max(1, min(ngenes, n_jobs * 4 if n_jobs > 1 else 1))
    return [b for b in np.array_split(np.arange(ngenes), nblocks) if len(b) > 0]


def run_chunked(func, ngenes, n_jobs, *shared):
    """Apply a per-gene worker over gene blocks and stitch the results.

    ``func(idx, *shared)`` must be a module-level function returning a
    tuple of arrays whose first axis runs over ``idx``. Blocks are
    reassembled in index order, so the output does not depend on
    ``n_jobs``.
    """
    blocks = gene_blocks(ngenes, n_jobs)
    if n_jobs > 1 and len(blocks) > 1:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            parts = list(executor.map(func, blocks, *[repeat(s) for s in shared]))
    else:
        parts = [func(b, *shared) for b in blocks]

    if not parts:
        return ()
    return tuple(np.concatenate([p[k] for p in parts], axis=0)
                 for k in range(len(parts[0])))


def trigamma(x):
    """Trigamma function."""
    from scipy.special import polygamma
    return polygamma(1, x)
