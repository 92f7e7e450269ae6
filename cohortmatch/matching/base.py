"""Common contract for the assignment solvers.

Every matching strategy consumes a :class:`MatchingProblem` and returns an
:class:`~cohortmatch.datatypes.Assignment`. Strategies register themselves
by name so that the matcher can dispatch on the configured method.
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Assignment, DistanceMatrix
from cohortmatch.exceptions import InfeasibleAssignmentWarning
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MatchingProblem:
    """Inputs shared by all assignment solvers.

    Only units retained after common-support filtering appear here. Solvers
    use the fields their strategy needs and ignore the rest.

    Attributes:
        treated_ids: Retained treated unit ids, in data order
        control_ids: Retained control unit ids, in data order
        estimand: 'att', 'ate' or 'atc'; for pair strategies, 'atc' makes the
            controls the focal group that receives matches
        distances: Filtered treated x control distance matrix
        covariates: Design matrix of covariate terms for retained units
        exact_data: Raw exact-match columns for retained units
        scores: Propensity scores for retained units
        rng: Random generator for random ordering
    """
    treated_ids: List[Any]
    control_ids: List[Any]
    estimand: str = "att"
    distances: Optional[DistanceMatrix] = None
    covariates: Optional[pd.DataFrame] = None
    exact_data: Optional[pd.DataFrame] = None
    scores: Optional[pd.Series] = None
    ratio: int = 1
    replace: bool = False
    order: str = "largest"
    order_retries: int = 1
    rng: np.random.Generator = field(default_factory=np.random.default_rng)
    tolerance: float = 1e-7
    max_iter: int = 100000
    subclass_count: int = 6
    cutpoints: Optional[Dict[str, Union[int, str, List[float]]]] = None

    @property
    def focal_treated(self) -> bool:
        return self.estimand != "atc"

    @property
    def focal_ids(self) -> List[Any]:
        return self.treated_ids if self.focal_treated else self.control_ids

    @property
    def reference_ids(self) -> List[Any]:
        return self.control_ids if self.focal_treated else self.treated_ids

    def focal_distances(self) -> DistanceMatrix:
        """Distance matrix with focal units as rows."""
        if self.distances is None:
            raise ValueError("This matching method requires a distance matrix")
        return self.distances if self.focal_treated else self.distances.transpose()

    def all_ids(self) -> List[Any]:
        return list(self.treated_ids) + list(self.control_ids)


class AssignmentSolver(ABC):
    """Abstract base class for all matching strategies."""

    name: str = ""
    pair_based: bool = False

    def solve(self, problem: MatchingProblem) -> Assignment:
        """Solve the matching problem and enforce stratum validity."""
        logger.info(f"Starting {self.name} matching")
        logger.debug(f"Treated units: {len(problem.treated_ids)}, "
                     f"control units: {len(problem.control_ids)}")

        assignment = self._solve(problem).drop_invalid_strata()

        if assignment.unmatched:
            message = (f"{len(assignment.unmatched)} units have no feasible match under "
                       "the current constraints and were left unassigned")
            logger.warning(message)
            warnings.warn(InfeasibleAssignmentWarning(message, assignment.unmatched), stacklevel=2)

        logger.info(f"{self.name} matching complete: {assignment.n_strata} strata, "
                    f"{len(assignment.assigned_ids())} units assigned")
        return assignment

    @abstractmethod
    def _solve(self, problem: MatchingProblem) -> Assignment:
        """Strategy-specific assignment."""


SOLVERS: Dict[str, Type[AssignmentSolver]] = {}


def register_solver(name: str) -> Callable[[Type[AssignmentSolver]], Type[AssignmentSolver]]:
    """Class decorator registering a solver under a method name."""

    def decorator(cls: Type[AssignmentSolver]) -> Type[AssignmentSolver]:
        cls.name = name
        SOLVERS[name] = cls
        return cls

    return decorator


def get_solver(method: str) -> AssignmentSolver:
    """Instantiate the solver registered for a method name."""
    try:
        return SOLVERS[method]()
    except KeyError:
        raise ValueError(
            f"Unknown matching method: {method}. Must be one of: {', '.join(sorted(SOLVERS))}"
        ) from None


def pair_assignment(
    method: str,
    problem: MatchingProblem,
    match_groups: Dict[Any, List[Any]],
    match_distances: List[float],
    unmatched: List[Any],
) -> Assignment:
    """Turn focal-unit match groups into an assignment with one stratum per group."""
    strata = {}
    for stratum_id, (focal_id, others) in enumerate(match_groups.items()):
        strata[stratum_id] = [focal_id] + list(others)
    return Assignment.from_strata(
        method,
        problem.treated_ids,
        problem.control_ids,
        strata,
        match_groups=match_groups,
        match_distances=match_distances,
        unmatched=unmatched,
        pair_based=True,
        focal_treated=problem.focal_treated,
    )
