"""cohortmatch: covariate matching and balance assessment for observational studies.

This package provides tools for estimating propensity scores, matching or
stratifying treated and control units, deriving analysis weights, and
assessing covariate balance before and after matching.
"""

__version__ = "0.1.0"

from cohortmatch.utils.logging import configure_logging

# Configure default logging (INFO level, to stdout)
logger = configure_logging()

# Import and expose key classes and functions
from cohortmatch.datatypes import (  # noqa: E402
    UNASSIGNED,
    Assignment,
    Diagnostic,
    DistanceMatrix,
    MatcherConfig,
    MatchResults,
)
from cohortmatch.exceptions import (  # noqa: E402
    CohortMatchError,
    DegenerateStratumError,
    InfeasibleAssignmentWarning,
    ModelFitError,
    NonconvergenceError,
    SingularCovarianceError,
)
from cohortmatch.matcher import Matcher  # noqa: E402
from cohortmatch.metrics.utils import get_caliper_for_matching  # noqa: E402
from cohortmatch.reporting import (  # noqa: E402
    BalanceReport,
    assemble_balance_report,
    export_tables,
)
from cohortmatch.validation import validate_data, validate_matcher_config  # noqa: E402
from cohortmatch.weights import calculate_weights, effective_sample_size  # noqa: E402

__all__ = [
    "UNASSIGNED",
    "Assignment",
    "BalanceReport",
    "CohortMatchError",
    "DegenerateStratumError",
    "Diagnostic",
    "DistanceMatrix",
    "InfeasibleAssignmentWarning",
    "MatchResults",
    "Matcher",
    "MatcherConfig",
    "ModelFitError",
    "NonconvergenceError",
    "SingularCovarianceError",
    "assemble_balance_report",
    "calculate_weights",
    "configure_logging",
    "effective_sample_size",
    "export_tables",
    "get_caliper_for_matching",
    "validate_data",
    "validate_matcher_config",
]
