"""
Error and warning categories for nbdiff.

Fatal conditions are exceptions and abort a run before any results table
is produced. Per-gene problems are warnings: the gene keeps its best
available estimate and is annotated in the results.
"""


class NBDiffError(Exception):
    """Base class for fatal nbdiff errors."""


class SchemaMismatchError(NBDiffError, ValueError):
    """Input counts or sample metadata violate the input contract."""


class InsufficientDataError(NBDiffError, ValueError):
    """Not enough samples, genes or residual df to estimate a quantity."""


class TrendFitError(NBDiffError, RuntimeError):
    """The mean-dispersion trend could not be fitted."""


class GeneFitNonConvergence(UserWarning):
    """One or more per-gene fits did not converge."""


class NumericOverflow(RuntimeWarning):
    """A per-gene optimization overflowed and was clipped to a bound."""


class NumericUnderflow(RuntimeWarning):
    """A per-gene optimization underflowed and was clipped to a bound."""
