"""
Exact and coarsened exact matching.

Units are grouped into strata of identical value tuples. Coarsened exact
matching first bins each numeric covariate, then matches exactly on the
bins. Strata without both a treated and a control unit are dropped.
"""

from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Assignment
from cohortmatch.formula import is_binary
from cohortmatch.matching.base import AssignmentSolver, MatchingProblem, register_solver
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)

Cutpoint = Union[int, str, List[float]]


def exact_strata(keys: pd.DataFrame) -> pd.Series:
    """Stratum code per unit; units with identical rows share a code.

    Codes are numbered in order of first appearance.
    """
    columns = list(keys.columns)
    return keys.groupby(columns, sort=False, dropna=False).ngroup()


def sturges_bins(n: int) -> int:
    """Number of bins by Sturges' rule."""
    return int(np.ceil(np.log2(max(n, 1)) + 1))


def coarsen(values: pd.Series, cut: Optional[Cutpoint] = None) -> pd.Series:
    """Bin a column for coarsened exact matching.

    Args:
        values: Column to coarsen
        cut: Number of equal-width bins, explicit interior cut points,
            ``"q<n>"`` for n quantile bins, or None for Sturges' rule.
            With None, binary and non-numeric columns and columns with no
            more distinct values than bins are left as they are.

    Returns:
        Series of bin codes (or the original values when left as is)
    """
    if cut is None:
        if not pd.api.types.is_numeric_dtype(values) or is_binary(values):
            return values
        n_bins = sturges_bins(len(values))
        if values.nunique() <= n_bins:
            return values
        return pd.cut(values, bins=n_bins, labels=False, include_lowest=True)

    if isinstance(cut, str):
        if not cut.startswith("q") or not cut[1:].isdigit():
            raise ValueError(f"Cut specification '{cut}' not recognized; use e.g. 'q4'")
        return pd.qcut(values, int(cut[1:]), labels=False, duplicates="drop")

    if isinstance(cut, (int, np.integer)):
        if cut < 1:
            raise ValueError(f"Number of bins must be positive, got {cut}")
        return pd.cut(values, bins=int(cut), labels=False, include_lowest=True)

    edges = np.concatenate([[-np.inf], np.sort(np.asarray(cut, dtype=float)), [np.inf]])
    return pd.cut(values, bins=edges, labels=False)


def strata_assignment(
    method: str,
    problem: MatchingProblem,
    codes: pd.Series,
) -> Assignment:
    """Assignment from a stratum code per unit, keeping strata with both groups."""
    treated = set(problem.treated_ids)

    strata: Dict[int, List[Any]] = {}
    for uid, code in codes.items():
        strata.setdefault(int(code), []).append(uid)

    has_both = {
        code for code, members in strata.items()
        if any(uid in treated for uid in members) and any(uid not in treated for uid in members)
    }
    logger.debug(f"Found {len(strata)} unique value combinations, {len(has_both)} with both groups")

    if problem.estimand == "ate":
        focal = set(problem.all_ids())
    else:
        focal = set(problem.focal_ids)
    unmatched = [uid for uid, code in codes.items()
                 if uid in focal and int(code) not in has_both]

    # Renumber surviving strata consecutively
    renumbered = {new_id: strata[code] for new_id, code in enumerate(sorted(has_both))}
    return Assignment.from_strata(
        method, problem.treated_ids, problem.control_ids, renumbered, unmatched=unmatched
    )


@register_solver("exact")
class ExactSolver(AssignmentSolver):
    """Strata of identical covariate values (or exact-match column values)."""

    def _solve(self, problem: MatchingProblem) -> Assignment:
        ids = problem.all_ids()
        if problem.exact_data is not None and not problem.exact_data.empty:
            keys = problem.exact_data.loc[ids]
        elif problem.covariates is not None:
            keys = problem.covariates.loc[ids]
        else:
            raise ValueError("Exact matching requires covariates or exact-match columns")
        return strata_assignment(self.name, problem, exact_strata(keys))


@register_solver("cem")
class CoarsenedExactSolver(AssignmentSolver):
    """Exact matching on coarsened covariates."""

    def _solve(self, problem: MatchingProblem) -> Assignment:
        if problem.covariates is None:
            raise ValueError("Coarsened exact matching requires covariates")
        ids = problem.all_ids()
        cutpoints = problem.cutpoints or {}

        unknown = set(cutpoints) - set(problem.covariates.columns)
        if unknown:
            raise ValueError(f"Cutpoints given for unknown covariates: {sorted(unknown)}")

        covariates = problem.covariates.loc[ids]
        keys = pd.DataFrame(
            {col: coarsen(covariates[col], cutpoints.get(col)) for col in covariates.columns},
            index=covariates.index,
        )
        if problem.exact_data is not None and not problem.exact_data.empty:
            exact = problem.exact_data.loc[ids]
            keys = keys.join(exact.add_prefix("exact:"))

        logger.debug(f"Coarsened {covariates.shape[1]} covariates "
                     f"({len(cutpoints)} with explicit cutpoints)")
        return strata_assignment(self.name, problem, exact_strata(keys))
