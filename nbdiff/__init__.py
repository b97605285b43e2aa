"""
nbdiff: negative binomial differential expression for count data.

Size factors, dispersion shrinkage, ridge GLM fits, Wald tests with
independent filtering, and fold-change shrinkage.
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import (CountDataSet, DispersionFit, NBGLMFit, WaldTest,
                      DEResults, GeneStatus)

# --- Configuration & errors ---
from .config import DEConfig
from .errors import (
    NBDiffError,
    SchemaMismatchError,
    InsufficientDataError,
    TrendFitError,
    GeneFitNonConvergence,
    NumericOverflow,
    NumericUnderflow,
)

# --- Dataset construction & accessors ---
from .dataset import (
    make_dataset,
    validate_counts,
    align_samples,
    filter_total_count,
    get_counts,
    get_size_factors,
)

# --- Normalization ---
from .normalization import estimate_size_factors, normalized_counts, base_mean

# --- Dispersion estimation ---
from .dispersion import (
    estimate_dispersions,
    estimate_genewise_dispersions,
    fit_dispersion_trend,
    estimate_dispersion_prior_var,
    shrink_dispersions,
)
from .dispersion_lowlevel import (
    nb_log_lik,
    cox_reid_profile_lik,
    rough_dispersion,
    moments_dispersion,
    fit_genewise_mle,
)

# --- GLM fitting ---
from .glm_fit import nb_glm_fit, cooks_distance
from .glm_irls import nb_glm_irls, nbinom_deviance

# --- Testing ---
from .wald_test import (
    nbinom_wald_test,
    wald_pvalues,
    independent_filtering,
    p_adjust_bh,
    flag_count_outliers,
)

# --- Shrinkage ---
from .shrinkage import estimate_lfc_prior_var, shrink_lfc

# --- Results ---
from .results import results, summarize_results, top_genes, decide_tests

# --- Pipeline ---
from .pipeline import run_pipeline

# --- Utilities ---
from .utils import (model_matrix, result_names, resolve_coef, is_fullrank,
                    non_estimable, run_chunked)
