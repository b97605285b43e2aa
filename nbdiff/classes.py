"""
Core data classes for nbdiff.

Every pipeline stage returns one of these artifacts: a read-only dict with
attribute access, row/column subsetting and display. Arrays stored in an
artifact are frozen, and new stages derive new artifacts instead of
writing into old ones.
"""

from enum import Enum

import numpy as np
import pandas as pd


class GeneStatus(str, Enum):
    """Per-gene dispersion handling carried through the pipeline."""
    NORMAL = 'normal'
    SHRUNK = 'shrunk'
    OUTLIER = 'outlier'
    NON_CONVERGED = 'non_converged'


def _freeze(value):
    """Return value with any ndarray marked read-only."""
    if isinstance(value, np.ndarray):
        if value.flags.writeable:
            value = value.copy()
            value.flags.writeable = False
        return value
    if isinstance(value, dict) and not isinstance(value, _ArtifactBase):
        return {k: _freeze(v) for k, v in value.items()}
    return value


class _ArtifactBase(dict):
    """Base class providing read-only dict access, derivation and display."""

    def __init__(self, *args, **kwargs):
        super().__init__()
        for k, v in dict(*args, **kwargs).items():
            dict.__setitem__(self, k, _freeze(v))

    def __getattr__(self, name):
        for key in (name, name.replace('_', '.')):
            if key in self:
                return self[key]
        raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        raise TypeError(f"{type(self).__name__} is read-only; use derive()")

    def __setitem__(self, key, value):
        raise TypeError(f"{type(self).__name__} is read-only; use derive()")

    def __delitem__(self, key):
        raise TypeError(f"{type(self).__name__} is read-only; use derive()")

    def _readonly(self, *args, **kwargs):
        raise TypeError(f"{type(self).__name__} is read-only; use derive()")

    update = pop = popitem = clear = setdefault = _readonly

    def __reduce__(self):
        return (type(self), (dict(self),))

    def derive(self, cls=None, **changes):
        """New artifact holding this one's components plus ``changes``.

        Keyword names map underscores to dots, so ``size_factors=`` sets
        the ``'size.factors'`` component.
        """
        cls = cls or type(self)
        items = dict(self)
        for k, v in changes.items():
            items[k.replace('_', '.')] = v
        return cls(items)

    @property
    def shape(self):
        if 'counts' in self:
            return self['counts'].shape
        if 'table' in self and self['table'] is not None:
            return self['table'].shape
        return None

    @property
    def gene_names(self):
        return self.get('gene.names')

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def head(self, n=5):
        """Show first n rows."""
        if 'table' in self and self['table'] is not None:
            return self['table'].head(n)
        if 'counts' in self:
            return pd.DataFrame(self['counts'][:n], index=self.gene_names[:n],
                                columns=_get_colnames(self))
        return None

    def tail(self, n=5):
        """Show last n rows."""
        if 'table' in self and self['table'] is not None:
            return self['table'].tail(n)
        if 'counts' in self:
            return pd.DataFrame(self['counts'][-n:], index=self.gene_names[-n:],
                                columns=_get_colnames(self))
        return None


def _get_colnames(obj):
    """Get column names from samples."""
    if 'samples' in obj and obj['samples'] is not None:
        return list(obj['samples'].index)
    return None


def _subset_matrix_or_df(x, i=None, j=None):
    """Subset a matrix, DataFrame, or vector by row (i) and/or column (j)."""
    if x is None:
        return None
    if isinstance(x, pd.DataFrame):
        if i is not None and j is not None:
            return x.iloc[i, j]
        elif i is not None:
            return x.iloc[i]
        elif j is not None:
            return x.iloc[:, j]
        return x
    if isinstance(x, np.ndarray):
        if x.ndim == 2:
            if i is not None and j is not None:
                return x[np.ix_(np.atleast_1d(i), np.atleast_1d(j))] if not isinstance(i, slice) else x[i, :][:, j]
            elif i is not None:
                return x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
            elif j is not None:
                return x[:, j] if isinstance(j, slice) else x[:, np.atleast_1d(j)]
        elif x.ndim == 1:
            if i is not None:
                return x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
        return x
    return x


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return idx
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O') and names is not None:
        names_arr = np.asarray(names)
        result = []
        for name in idx:
            matches = np.where(names_arr == name)[0]
            if len(matches) == 0:
                raise KeyError(f"Name '{name}' not found")
            result.append(matches[0])
        return np.array(result)
    return idx.astype(int)


class _GeneIndexed(_ArtifactBase):
    """Artifact whose per-gene components can be subset by row."""

    _IJ = frozenset()
    _I = frozenset()
    _J = frozenset()

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if isinstance(key, tuple):
            if len(key) == 2:
                i, j = key
            else:
                raise IndexError("Two subscripts required")
        else:
            i, j = key, None

        if j is not None and not self._J:
            raise IndexError(f"Subsetting columns not allowed for {type(self).__name__} objects.")

        i_idx = _resolve_index(i, self.gene_names)
        j_idx = _resolve_index(j, _get_colnames(self))

        out = dict(self)
        for k in self._IJ:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx, j_idx)
        for k in self._I:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], i_idx)
        for k in self._J:
            if out.get(k) is not None:
                out[k] = _subset_matrix_or_df(out[k], j_idx)
        return type(self)(out)

    @property
    def nrow(self):
        names = self.gene_names
        return 0 if names is None else len(names)


class CountDataSet(_GeneIndexed):
    """Validated counts with their sample table and design.

    Attributes
    ----------
    counts : ndarray
        Non-negative integer counts (genes x samples), float64.
    gene.names : ndarray
        Unique gene identifiers.
    samples : DataFrame
        Sample table indexed by sample id, aligned with the count columns.
    condition : str
        Name of the condition column (a Categorical, reference first).
    design : ndarray
        Design matrix (samples x coefficients).
    coef.names : list of str
    formula : str
    size.factors : ndarray or None
    filtered.genes : ndarray
        Names of genes removed by the total-count filter.
    """

    _IJ = frozenset({'counts'})
    _I = frozenset({'gene.names'})
    _J = frozenset({'samples', 'size.factors', 'design'})

    @property
    def ncol(self):
        return self['counts'].shape[1]

    def to_dataframe(self):
        """Counts as a DataFrame."""
        return pd.DataFrame(self['counts'], index=self.gene_names,
                            columns=_get_colnames(self))


class DispersionFit(_GeneIndexed):
    """Gene-wise, trended and final dispersions.

    Attributes
    ----------
    dispersion.genewise, dispersion.trend, dispersion : ndarray
    dispersion.outlier, dispersion.converged : ndarray of bool
    status : ndarray of GeneStatus
    base.mean : ndarray
    trend.coefficients : dict
        ``{'asymptotic': float, 'extra': float}``.
    trend.type : str
    prior.var : float
    """

    _IJ = frozenset({'counts', 'fitted.values'})
    _I = frozenset({'gene.names', 'dispersion.genewise', 'dispersion.trend',
                    'dispersion', 'dispersion.outlier', 'dispersion.converged',
                    'status', 'base.mean', 'trend.genes', 'prior.genes'})

    def trend(self, mean):
        """Evaluate the fitted mean-dispersion curve."""
        coefs = self['trend.coefficients']
        mean = np.asarray(mean, dtype=np.float64)
        return coefs['asymptotic'] + coefs['extra'] / mean


class NBGLMFit(_GeneIndexed):
    """Per-gene negative binomial GLM fits.

    Attributes
    ----------
    coefficients, standard.errors : ndarray
        Natural-log scale (genes x coefficients).
    converged : ndarray of bool
    iter : ndarray of int
    deviance : ndarray
    fitted.values, hat.values, cooks : ndarray (genes x samples)
    fit.notes : ndarray of tuple
    condition : str
        Condition column; its last term is the default tested coefficient.
    """

    _IJ = frozenset({'counts', 'fitted.values', 'hat.values', 'cooks'})
    _I = frozenset({'gene.names', 'coefficients', 'standard.errors', 'converged',
                    'diverged', 'cooks.dispersion',
                    'iter', 'deviance', 'dispersion', 'status', 'base.mean',
                    'fit.notes'})


class WaldTest(_ArtifactBase):
    """Wald test results.

    Attributes
    ----------
    table : DataFrame
        baseMean, log2FoldChange, lfcStandardError, waldStatistic,
        pValue, adjustedPValue, fitNotes.
    comparison : str
    lfc.threshold : float
    alt.hypothesis : str
    filter.threshold : float
    filter.numRej : DataFrame
    """

    def __repr__(self):
        out = f"Coefficient: {self.get('comparison', '')}\n"
        if self.get('table') is not None:
            out += str(self['table'])
        return out


class DEResults(_ArtifactBase):
    """Output of a full pipeline run.

    Attributes
    ----------
    table : DataFrame
        Raw results.
    shrunk.table : DataFrame or None
        Results with posterior log2 fold changes.
    dataset, dispersion.fit, glm.fit, wald.test : artifacts of each stage
    config : DEConfig
    """

    def __repr__(self):
        out = f"DEResults: {self.get('comparison', '')}\n"
        if self.get('table') is not None:
            out += str(self['table'])
        return out
