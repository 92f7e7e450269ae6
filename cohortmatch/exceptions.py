"""
Exceptions and warnings raised by cohortmatch.

Fatal conditions (model fitting, singular covariance, solver budget) are
exceptions that carry enough context to diagnose the failure without
re-running. Recoverable conditions (degenerate strata, units without a
feasible partner) are caught inside the pipeline and recorded as
diagnostics on the results.
"""

from typing import Any, List, Optional, Sequence


class CohortMatchError(Exception):
    """Base exception class for cohortmatch errors."""
    pass


class ModelFitError(CohortMatchError):
    """Raised when the propensity score model fails to converge."""

    def __init__(self, message: str, covariates: Optional[Sequence[str]] = None,
                 iterations: Optional[int] = None):
        super().__init__(message)
        self.covariates = list(covariates) if covariates is not None else []
        self.iterations = iterations


class SingularCovarianceError(CohortMatchError):
    """Raised when the Mahalanobis covariance matrix cannot be inverted."""

    def __init__(self, message: str, covariates: Optional[Sequence[str]] = None,
                 condition_number: Optional[float] = None):
        super().__init__(message)
        self.covariates = list(covariates) if covariates is not None else []
        self.condition_number = condition_number


class NonconvergenceError(CohortMatchError):
    """Raised when the optimal full matching solver exhausts its budget.

    Attributes:
        partial_assignment: Best assignment recovered from the solver state,
            or None if the solver returned no usable solution
        iterations: Number of iterations the solver performed
        tolerance: Feasibility tolerance that was requested
    """

    def __init__(self, message: str, partial_assignment: Any = None,
                 iterations: Optional[int] = None, tolerance: Optional[float] = None):
        super().__init__(message)
        self.partial_assignment = partial_assignment
        self.iterations = iterations
        self.tolerance = tolerance


class DegenerateStratumError(CohortMatchError):
    """Raised when a stratum has a stratum propensity score of 0 or 1."""

    def __init__(self, message: str, stratum: Any = None,
                 n_treated: int = 0, n_control: int = 0):
        super().__init__(message)
        self.stratum = stratum
        self.n_treated = n_treated
        self.n_control = n_control


class InfeasibleAssignmentWarning(UserWarning):
    """Emitted when units have no feasible partner under the constraints."""

    def __init__(self, message: str, units: Optional[List[Any]] = None):
        super().__init__(message)
        self.units = list(units) if units is not None else []
