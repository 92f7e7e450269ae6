"""
Subclassification on the propensity score.

Units are binned into ``subclass_count`` strata at quantiles of the
propensity score. The quantiles are taken over the treated units for ATT,
the controls for ATC and all units for ATE, so that the target group is
spread evenly across subclasses.
"""

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Assignment
from cohortmatch.matching.base import AssignmentSolver, MatchingProblem, register_solver
from cohortmatch.matching.exact import exact_strata, strata_assignment
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


def subclass_breaks(reference_scores: np.ndarray, n_subclasses: int) -> np.ndarray:
    """Interior quantile cut points of the reference scores, duplicates removed."""
    probs = np.linspace(0, 1, n_subclasses + 1)[1:-1]
    return np.unique(np.quantile(reference_scores, probs))


def assign_subclasses(scores: pd.Series, breaks: np.ndarray) -> pd.Series:
    """Subclass code (0-based, ascending in score) for every unit."""
    edges = np.concatenate([[-np.inf], breaks, [np.inf]])
    codes = pd.cut(scores, bins=edges, labels=False, right=True)
    return codes.astype(int)


@register_solver("subclass")
class SubclassSolver(AssignmentSolver):
    """Propensity score subclassification, optionally within exact-match cells."""

    def _solve(self, problem: MatchingProblem) -> Assignment:
        if problem.scores is None:
            raise ValueError("Subclassification requires propensity scores")

        ids = problem.all_ids()
        scores = problem.scores.loc[ids]

        if problem.estimand == "att":
            reference = problem.scores.loc[problem.treated_ids]
        elif problem.estimand == "atc":
            reference = problem.scores.loc[problem.control_ids]
        else:
            reference = scores

        breaks = subclass_breaks(reference.to_numpy(dtype=float), problem.subclass_count)
        if len(breaks) + 1 < problem.subclass_count:
            logger.warning(f"Only {len(breaks) + 1} distinct subclasses could be formed "
                           f"(requested {problem.subclass_count}) due to tied scores")
        logger.debug(f"Subclass breaks: {np.round(breaks, 4).tolist()}")

        keys = assign_subclasses(scores, breaks).to_frame("subclass")
        if problem.exact_data is not None and not problem.exact_data.empty:
            keys = keys.join(problem.exact_data.loc[ids])

        # Number strata by subclass first so ids ascend with the score
        keys = keys.sort_values("subclass", kind="stable")
        return strata_assignment(self.name, problem, exact_strata(keys))
