"""
CountDataSet construction, validation, and accessors.

Turns a raw count table plus a sample table into a validated, aligned,
count-filtered dataset with its design matrix.
"""

import warnings

import numpy as np
import pandas as pd

from .classes import CountDataSet
from .errors import SchemaMismatchError, InsufficientDataError
from .utils import model_matrix, non_estimable


def make_dataset(counts, samples, condition='condition', design=None,
                 reference=None, min_total_count=10, gene_names=None,
                 sample_names=None):
    """Construct a CountDataSet from counts and sample metadata.

    Parameters
    ----------
    counts : DataFrame or array-like
        Counts (genes x samples). A DataFrame supplies gene names from its
        index and sample names from its columns.
    samples : DataFrame
        Sample table indexed by sample id. Must contain ``condition``.
    condition : str
        Column naming the condition of interest.
    design : str, optional
        Formula; defaults to ``'~ <condition>'``.
    reference : str, optional
        Reference level of ``condition``; defaults to the alphabetically
        first level.
    min_total_count : int
        Genes whose total count across samples is below this (and all-zero
        genes) are removed.
    gene_names, sample_names : array-like, optional
        Labels for ndarray input.

    Returns
    -------
    CountDataSet
    """
    counts, gene_names, sample_names = validate_counts(counts, gene_names, sample_names,
                                                       samples=samples)
    samples = align_samples(samples, sample_names)

    if condition not in samples.columns:
        raise SchemaMismatchError(f"Sample table has no '{condition}' column")
    samples = samples.copy()
    samples[condition] = _condition_factor(samples[condition], reference)

    formula = design if design is not None else f"~ {condition}"
    design_mat, coef_names = model_matrix(formula, samples)
    ne = non_estimable(design_mat)
    if ne is not None:
        names = [coef_names[i] for i in ne]
        raise SchemaMismatchError(f"Design matrix not of full rank. Non-estimable: {names}")
    if design_mat.shape[0] <= design_mat.shape[1]:
        raise InsufficientDataError(
            "No residual degrees of freedom: need more samples than coefficients")

    counts, gene_names, dropped = filter_total_count(counts, gene_names, min_total_count)
    if counts.shape[0] == 0:
        raise InsufficientDataError(
            f"No genes have a total count of at least {min_total_count}")

    return CountDataSet({
        'counts': counts,
        'gene.names': gene_names,
        'samples': samples,
        'condition': condition,
        'design': design_mat,
        'coef.names': coef_names,
        'formula': formula,
        'size.factors': None,
        'filtered.genes': dropped,
        'min.total.count': min_total_count,
    })


def validate_counts(counts, gene_names=None, sample_names=None, samples=None):
    """Check a count table and resolve its labels.

    Returns
    -------
    (ndarray, ndarray, ndarray)
        float64 counts, gene names and sample names.
    """
    if isinstance(counts, pd.DataFrame):
        if gene_names is None:
            gene_names = counts.index.astype(str).to_numpy()
        if sample_names is None:
            sample_names = counts.columns.astype(str).to_numpy()
        numeric = counts.dtypes.apply(lambda dt: np.issubdtype(dt, np.number))
        if not numeric.all():
            bad = list(counts.columns[~numeric])
            raise SchemaMismatchError(f"Non-numeric count columns: {bad}")
        values = counts.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(counts, dtype=np.float64)
    if values.ndim != 2:
        raise SchemaMismatchError("counts must be a 2D table shaped (genes, samples)")

    ngenes, nsamples = values.shape
    if values.size == 0:
        raise SchemaMismatchError("'counts' must contain at least one value")
    if np.any(~np.isfinite(values)):
        raise SchemaMismatchError("NA/non-finite counts not allowed")
    if np.min(values) < 0:
        raise SchemaMismatchError("Negative counts not allowed")
    if np.any(values != np.round(values)):
        raise SchemaMismatchError("Counts must be integers")

    if gene_names is None:
        gene_names = np.array([f"gene{i+1}" for i in range(ngenes)])
    if sample_names is None:
        if samples is not None and len(samples.index) == nsamples:
            sample_names = samples.index.astype(str).to_numpy()
        else:
            sample_names = np.array([f"Sample{i+1}" for i in range(nsamples)])
    gene_names = np.asarray(gene_names).astype(str)
    sample_names = np.asarray(sample_names).astype(str)

    if len(gene_names) != ngenes:
        raise SchemaMismatchError("gene_names length does not match rows of counts")
    if len(sample_names) != nsamples:
        raise SchemaMismatchError("sample_names length does not match columns of counts")
    if len(np.unique(gene_names)) != ngenes:
        raise SchemaMismatchError("Gene identifiers must be unique")
    if len(np.unique(sample_names)) != nsamples:
        raise SchemaMismatchError("Sample identifiers must be unique")

    return values, gene_names, sample_names


def align_samples(samples, sample_names):
    """Reorder a sample table to match the count columns.

    Raises SchemaMismatchError when the two sets of identifiers differ.
    """
    if not isinstance(samples, pd.DataFrame):
        raise SchemaMismatchError("samples must be a DataFrame indexed by sample id")
    index = samples.index.astype(str)
    if not index.is_unique:
        raise SchemaMismatchError("Sample table index must be unique")
    expected = set(sample_names)
    found = set(index)
    if expected != found:
        missing = sorted(expected - found)
        extra = sorted(found - expected)
        raise SchemaMismatchError(
            f"Sample identifiers differ between counts and sample table "
            f"(missing from table: {missing}, not in counts: {extra})")
    samples = samples.copy()
    samples.index = index
    return samples.loc[list(sample_names)]


def _condition_factor(x, reference=None):
    """Categorical condition with the reference level first."""
    if x.isna().any():
        raise SchemaMismatchError("Condition contains missing values")
    values = x.astype(str)
    levels = sorted(pd.unique(values))
    if len(levels) < 2:
        raise SchemaMismatchError("Condition must have at least two levels")
    if reference is None:
        reference = levels[0]
    reference = str(reference)
    if reference not in levels:
        raise SchemaMismatchError(f"Reference level '{reference}' not found in {levels}")
    ordered = [reference] + [lv for lv in levels if lv != reference]
    return pd.Categorical(values, categories=ordered)


def filter_total_count(counts, gene_names, min_total_count=10):
    """Keep genes whose total count is at least ``min_total_count``.

    All-zero genes are always removed.

    Returns
    -------
    (ndarray, ndarray, ndarray)
        Kept counts, kept gene names and names of removed genes.
    """
    total = counts.sum(axis=1)
    keep = (total >= min_total_count) & (total > 0)
    return counts[keep], gene_names[keep], gene_names[~keep]


def get_counts(dataset, normalized=False):
    """Raw or size-factor-normalized counts as a DataFrame."""
    y = dataset['counts']
    if normalized:
        sf = get_size_factors(dataset)
        y = y / sf[None, :]
    return pd.DataFrame(y, index=dataset.gene_names, columns=list(dataset['samples'].index))


def get_size_factors(dataset):
    """Size factors of a dataset, or raise if they are not estimated yet."""
    sf = dataset.get('size.factors')
    if sf is None:
        raise ValueError("Size factors have not been estimated; "
                         "run estimate_size_factors first")
    return sf


def condition_replicates(dataset):
    """Number of samples sharing each sample's condition level."""
    cond = dataset['samples'][dataset['condition']].astype(str)
    reps = cond.map(cond.value_counts()).to_numpy(dtype=int)
    if np.min(reps) < 2:
        warnings.warn("At least one condition level has a single sample",
                      stacklevel=2)
    return reps
