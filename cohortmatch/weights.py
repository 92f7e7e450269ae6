"""
Analysis weights derived from a stratum assignment.

Pair strategies give matched units unit weight (or usage-based weights with
replacement). Stratified strategies (full matching, exact, coarsened exact
and subclassification) weight every unit by the stratum propensity score
``p = n_treated / n_stratum`` so that the weighted sample targets the
requested estimand.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Assignment, Diagnostic
from cohortmatch.exceptions import DegenerateStratumError
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class WeightResult:
    """Weights and the per-stratum quantities they were derived from.

    Attributes:
        weights: Non-negative weight per unit, aligned with the treatment index
        stratum_scores: Stratum propensity score per stratum id
        degenerate_strata: Strata excluded because every member is in one group
        diagnostics: Diagnostics raised while computing the weights
    """
    weights: pd.Series
    stratum_scores: Dict[int, float] = field(default_factory=dict)
    degenerate_strata: List[int] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


def stratum_weight(n_treated: int, n_control: int, estimand: str, treated: bool,
                   stratum: Any = None) -> float:
    """Weight of a treated or control member of a stratum.

    Args:
        n_treated: Number of treated units in the stratum
        n_control: Number of control units in the stratum
        estimand: 'att', 'ate' or 'atc'
        treated: Whether the weight is for a treated member
        stratum: Stratum id, reported in the error

    Returns:
        The weight for that member

    Raises:
        DegenerateStratumError: If the stratum score is 0 or 1
    """
    n = n_treated + n_control
    if n_treated == 0 or n_control == 0:
        raise DegenerateStratumError(
            f"Stratum {stratum} has {n_treated} treated and {n_control} control units",
            stratum=stratum, n_treated=n_treated, n_control=n_control,
        )
    p = n_treated / n

    if estimand == "att":
        return 1.0 if treated else p / (1 - p)
    if estimand == "atc":
        return (1 - p) / p if treated else 1.0
    if estimand == "ate":
        return 1 / p if treated else 1 / (1 - p)
    raise ValueError(f"Estimand '{estimand}' not recognized.")


def calculate_weights(
    assignment: Assignment,
    treatment: pd.Series,
    estimand: str = "att",
    replace: bool = False,
    strict: bool = False,
) -> WeightResult:
    """Compute analysis weights for every unit.

    Units that are not assigned to any stratum get weight 0.

    Args:
        assignment: Stratum memberships from a solver
        treatment: Binary treatment indicator for all units
        estimand: 'att', 'ate' or 'atc'
        replace: Whether the pair strategy matched with replacement
        strict: Re-raise DegenerateStratumError instead of excluding the stratum

    Returns:
        WeightResult with the weights aligned to ``treatment.index``
    """
    weights = pd.Series(0.0, index=treatment.index, name="weights")
    is_treated = treatment == 1
    result = WeightResult(weights=weights)

    if assignment.pair_based:
        _pair_weights(assignment, is_treated, replace, weights)
    else:
        _stratum_weights(assignment, is_treated, estimand, strict, result)

    logger.debug(f"Weights computed: {int((weights > 0).sum())} units with positive weight, "
                 f"ESS treated {effective_sample_size(weights[is_treated]):.1f}, "
                 f"ESS control {effective_sample_size(weights[~is_treated]):.1f}")
    return result


def _pair_weights(
    assignment: Assignment,
    is_treated: pd.Series,
    replace: bool,
    weights: pd.Series,
) -> None:
    if not replace:
        assigned = assignment.assigned_ids()
        weights.loc[assigned] = 1.0
        return

    for members in assignment.strata().values():
        focal = [uid for uid in members if bool(is_treated[uid]) == assignment.focal_treated]
        others = [uid for uid in members if bool(is_treated[uid]) != assignment.focal_treated]
        weights.loc[focal] = 1.0
        for uid in others:
            weights[uid] += len(focal) / len(others)


def _stratum_weights(
    assignment: Assignment,
    is_treated: pd.Series,
    estimand: str,
    strict: bool,
    result: WeightResult,
) -> None:
    weights = result.weights
    for stratum_id, members in assignment.strata().items():
        n_treated = int(sum(bool(is_treated[uid]) for uid in members))
        n_control = len(members) - n_treated
        try:
            w_treated = stratum_weight(n_treated, n_control, estimand, True, stratum_id)
            w_control = stratum_weight(n_treated, n_control, estimand, False, stratum_id)
        except DegenerateStratumError as e:
            if strict:
                raise
            logger.warning(f"Excluding degenerate stratum {stratum_id}: {e}")
            result.degenerate_strata.append(stratum_id)
            result.diagnostics.append(Diagnostic(
                level="warning", code="degenerate_stratum", message=str(e), units=list(members),
            ))
            continue

        result.stratum_scores[stratum_id] = n_treated / len(members)
        for uid in members:
            weights[uid] = w_treated if is_treated[uid] else w_control


def effective_sample_size(weights: pd.Series) -> float:
    """Kish effective sample size ``(sum w)^2 / sum w^2``."""
    w = np.asarray(weights, dtype=float)
    denom = float(np.sum(w ** 2))
    if denom == 0:
        return 0.0
    return float(np.sum(w)) ** 2 / denom
