"""
Run configuration for the nbdiff pipeline.
"""

from dataclasses import dataclass, fields, asdict


_ALT_HYPOTHESES = ('greaterAbs', 'lessAbs', 'greater', 'less')


@dataclass(frozen=True)
class DEConfig:
    """Every tunable of a differential-expression run.

    Attributes
    ----------
    condition : str
        Column of the sample table holding the condition of interest.
    design : str, optional
        Formula such as ``'~ batch + condition'``. Defaults to
        ``'~ <condition>'``.
    reference : str, optional
        Reference level of the condition. Defaults to the alphabetically
        first level.
    min_total_count : int
        Genes whose total count is below this are dropped before any
        estimation.
    lfc_threshold : float
        Log2 fold-change threshold of the Wald test.
    alt_hypothesis : str
        'greaterAbs', 'lessAbs', 'greater' or 'less'.
    alpha : float
        Significance level targeted by independent filtering.
    coef : int or str, optional
        Coefficient to test and shrink. Defaults to the last term of the
        condition column, so ``~ batch + condition`` tests the condition.
    size_factor_method : str
        'ratio' or 'poscounts'.
    fit_type : str
        'parametric' or 'mean' dispersion trend.
    min_disp : float
        Lower bound of dispersion estimates.
    outlier_sd : float
        Number of prior standard deviations above the trend beyond which
        a gene-wise dispersion is not shrunk.
    min_trend_genes : int
        Minimum number of usable genes needed to fit the trend.
    disp_niter : int
        Number of mean/dispersion alternations for gene-wise estimates.
    ridge : float
        Ridge penalty on log2-scale coefficients of the GLM.
    maxit : int
        Maximum IRLS iterations.
    beta_tol : float
        Relative deviance change treated as convergence.
    independent_filter : bool
        Apply independent filtering on baseMean.
    cooks_cutoff : float, optional
        Cook's distance cutoff. Defaults to the 0.99 quantile of
        F(p, m - p). Set to ``float('inf')`` to disable.
    min_replicates_for_cooks : int
        Samples only count toward outlier flagging when their condition
        level has at least this many replicates.
    shrink_prior : str
        'normal' or 'cauchy'.
    n_jobs : int
        Worker processes for per-gene work.
    """
    condition: str = 'condition'
    design: str = None
    reference: str = None
    min_total_count: int = 10
    lfc_threshold: float = 0.0
    alt_hypothesis: str = 'greaterAbs'
    alpha: float = 0.05
    coef: object = None
    size_factor_method: str = 'ratio'
    fit_type: str = 'parametric'
    min_disp: float = 1e-8
    outlier_sd: float = 2.0
    min_trend_genes: int = 10
    disp_niter: int = 1
    ridge: float = 1e-6
    maxit: int = 100
    beta_tol: float = 1e-8
    independent_filter: bool = True
    cooks_cutoff: float = None
    min_replicates_for_cooks: int = 3
    shrink_prior: str = 'normal'
    n_jobs: int = 1

    def __post_init__(self):
        if self.lfc_threshold < 0:
            raise ValueError("lfc_threshold has to be non-negative")
        if self.alt_hypothesis not in _ALT_HYPOTHESES:
            raise ValueError(f"alt_hypothesis must be one of {_ALT_HYPOTHESES}")
        if not 0 < self.alpha < 1:
            raise ValueError("alpha must lie in (0, 1)")
        if self.size_factor_method not in ('ratio', 'poscounts'):
            raise ValueError("size_factor_method must be 'ratio' or 'poscounts'")
        if self.fit_type not in ('parametric', 'mean'):
            raise ValueError("fit_type must be 'parametric' or 'mean'")
        if self.shrink_prior not in ('normal', 'cauchy'):
            raise ValueError("shrink_prior must be 'normal' or 'cauchy'")
        if self.min_disp <= 0:
            raise ValueError("min_disp must be positive")
        if self.n_jobs < 1:
            raise ValueError("n_jobs must be at least 1")

    @classmethod
    def from_mapping(cls, mapping):
        """Build a config from a plain dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**dict(mapping))

    def to_dict(self):
        return asdict(self)

    @property
    def formula(self):
        if self.design is not None:
            return self.design
        return f"~ {self.condition}"
