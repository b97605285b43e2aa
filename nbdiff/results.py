"""
Results tables for nbdiff.

Assembles per-gene result tables and provides DESeq-style summaries,
top-gene selection and up/down calls.
"""

import numpy as np
import pandas as pd

from .wald_test import TABLE_COLUMNS


def results(wald_test, shrunk=None):
    """Per-gene results table.

    Parameters
    ----------
    wald_test : WaldTest
        Output of ``nbinom_wald_test``.
    shrunk : WaldTest, optional
        Output of ``shrink_lfc`` on the same test. When given, the returned
        table carries its posterior fold changes and standard errors.

    Returns
    -------
    DataFrame indexed by gene with columns baseMean, log2FoldChange,
    lfcStandardError, waldStatistic, pValue, adjustedPValue, fitNotes.
    """
    table = wald_test['table']
    if shrunk is None:
        return table[TABLE_COLUMNS].copy()

    stab = shrunk['table']
    if not stab.index.equals(table.index):
        raise ValueError("shrunk results do not cover the same genes")
    out = table[TABLE_COLUMNS].copy()
    out['log2FoldChange'] = stab['log2FoldChange'].to_numpy()
    out['lfcStandardError'] = stab['lfcStandardError'].to_numpy()
    return out


def summarize_results(table, alpha=0.05):
    """Counts of up, down, outlier and low-count genes.

    Like DESeq's ``summary``: significant genes are those with
    ``adjustedPValue < alpha``.

    Returns
    -------
    dict with 'n.genes', 'alpha', 'up', 'down', 'outliers', 'low.counts'
    and 'low.count.threshold' (smallest baseMean surviving the filter).
    """
    padj = table['adjustedPValue'].to_numpy(dtype=np.float64)
    lfc = table['log2FoldChange'].to_numpy(dtype=np.float64)
    notes = table['fitNotes'].astype(str)
    sig = np.isfinite(padj) & (padj < alpha)

    outliers = notes.str.contains("count outlier").to_numpy()
    low = notes.str.contains("independent filtering").to_numpy()
    kept = ~low
    threshold = float(table['baseMean'][kept].min()) if kept.any() else np.nan

    return {
        'n.genes': len(table),
        'alpha': alpha,
        'up': int(np.sum(sig & (lfc > 0))),
        'down': int(np.sum(sig & (lfc < 0))),
        'outliers': int(np.sum(outliers)),
        'low.counts': int(np.sum(low)),
        'low.count.threshold': threshold,
    }


def top_genes(table, n=10, sort_by='pValue', alpha=1.0):
    """The ``n`` top genes of a results table.

    Parameters
    ----------
    table : DataFrame
        Results table.
    n : int
        Number of genes to return.
    sort_by : str
        'pValue', 'adjustedPValue', 'log2FoldChange' (by absolute value),
        'baseMean' or 'none'.
    alpha : float
        Keep only genes with ``adjustedPValue <= alpha`` when below 1.

    Returns
    -------
    DataFrame
    """
    if sort_by in ('pValue', 'adjustedPValue'):
        alfc = table['log2FoldChange'].abs().to_numpy()
        o = np.lexsort((-alfc, table[sort_by].to_numpy(dtype=np.float64)))
    elif sort_by == 'log2FoldChange':
        o = np.argsort(-table['log2FoldChange'].abs().to_numpy(), kind='stable')
    elif sort_by == 'baseMean':
        o = np.argsort(-table['baseMean'].to_numpy(), kind='stable')
    elif sort_by == 'none':
        o = np.arange(len(table))
    else:
        raise ValueError("sort_by must be 'pValue', 'adjustedPValue', "
                         "'log2FoldChange', 'baseMean' or 'none'")

    tab = table.iloc[o]
    if alpha < 1:
        tab = tab[tab['adjustedPValue'] <= alpha]
    return tab.iloc[:max(0, int(n))].copy()


def decide_tests(table, alpha=0.05, lfc=0):
    """Classify genes as up (1), down (-1) or not significant (0).

    Genes with a missing adjusted p-value are never called.
    """
    padj = table['adjustedPValue'].to_numpy(dtype=np.float64)
    log_fc = table['log2FoldChange'].to_numpy(dtype=np.float64)

    is_de = (np.isfinite(padj) & (padj < alpha)).astype(int)
    is_de[is_de.astype(bool) & (log_fc < 0)] = -1
    is_de[np.abs(log_fc) < lfc] = 0
    return is_de
