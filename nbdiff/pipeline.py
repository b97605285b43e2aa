"""
End-to-end differential expression run for nbdiff.
"""

from .classes import DEResults
from .config import DEConfig
from .dataset import make_dataset
from .dispersion import estimate_dispersions
from .glm_fit import nb_glm_fit
from .normalization import estimate_size_factors
from .results import results
from .shrinkage import shrink_lfc
from .wald_test import nbinom_wald_test


def run_pipeline(counts, samples, config=DEConfig(), shrink=True, verbose=False):
    """Run every stage from raw counts to results tables.

    Parameters
    ----------
    counts : DataFrame or array-like
        Counts (genes x samples).
    samples : DataFrame
        Sample table indexed by sample id.
    config : DEConfig or dict
        Run configuration. A dict is passed through
        ``DEConfig.from_mapping``.
    shrink : bool
        Also compute the table with shrunken log2 fold changes.
    verbose : bool
        Print one progress line per stage.

    Returns
    -------
    DEResults
        With 'table', 'shrunk.table' (None if ``shrink`` is False),
        'dataset', 'dispersion.fit', 'glm.fit', 'wald.test',
        'shrunk.test', 'comparison' and 'config'.
    """
    if isinstance(config, dict):
        config = DEConfig.from_mapping(config)

    dataset = make_dataset(counts, samples, condition=config.condition,
                           design=config.design, reference=config.reference,
                           min_total_count=config.min_total_count)
    if verbose:
        print(f"Dataset: {dataset.nrow} genes x {dataset.ncol} samples "
              f"({len(dataset['filtered.genes'])} removed by total count filter).")

    dataset = estimate_size_factors(dataset, method=config.size_factor_method)
    if verbose:
        sf = ', '.join(f"{v:.3f}" for v in dataset['size.factors'])
        print(f"Size factors: {sf}.")

    disp = estimate_dispersions(dataset, fit_type=config.fit_type,
                                min_disp=config.min_disp,
                                outlier_sd=config.outlier_sd,
                                min_trend_genes=config.min_trend_genes,
                                niter=config.disp_niter, ridge=config.ridge,
                                maxit=config.maxit, tol=config.beta_tol,
                                n_jobs=config.n_jobs, verbose=verbose)

    glm = nb_glm_fit(dataset, disp, ridge=config.ridge, maxit=config.maxit,
                     tol=config.beta_tol, n_jobs=config.n_jobs)
    if verbose:
        print(f"GLM fitted: {int((~glm['converged']).sum())} gene(s) not converged.")

    wald = nbinom_wald_test(glm, coef=config.coef,
                            lfc_threshold=config.lfc_threshold,
                            alt_hypothesis=config.alt_hypothesis,
                            alpha=config.alpha,
                            independent_filter=config.independent_filter,
                            cooks_cutoff=config.cooks_cutoff,
                            min_replicates_for_cooks=config.min_replicates_for_cooks)
    if verbose:
        n_sig = int((wald['table']['adjustedPValue'] < config.alpha).sum())
        print(f"Wald test on {wald['comparison']}: {n_sig} gene(s) with "
              f"adjusted p-value < {config.alpha}.")

    shrunk = None
    if shrink:
        shrunk = shrink_lfc(wald, prior=config.shrink_prior, n_jobs=config.n_jobs)
        if verbose:
            print(f"Shrunk log2 fold changes with a {config.shrink_prior} prior "
                  f"(variance {shrunk['prior.var']:.4g}).")

    return DEResults({
        'table': results(wald),
        'shrunk.table': None if shrunk is None else results(wald, shrunk),
        'dataset': dataset,
        'dispersion.fit': disp,
        'glm.fit': glm,
        'wald.test': wald,
        'shrunk.test': shrunk,
        'comparison': wald['comparison'],
        'config': config,
    })
