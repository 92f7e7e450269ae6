"""Constraint filtering for the candidate pair space.

Constraints compose conjunctively: common-support discards remove units from
candidacy altogether, while calipers and exact-match requirements mark
individual treated/control pairs as infeasible by setting their distance to
infinity. All functions return new objects and leave their inputs intact.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from cohortmatch.datatypes import DistanceMatrix
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FilterResult:
    """Outcome of constraint filtering.

    Attributes:
        distances: Filtered distance matrix restricted to retained units, or
            None when the method does not use pairwise distances
        keep: Boolean mask over all units, False for discarded units
        discarded: Ids of units removed by common-support rules
        estimand_restricted: True if units of the focal group were discarded,
            so estimates no longer target the full population of the estimand
        removed_pairs: Number of pairs made infeasible by each constraint
    """
    distances: Optional[DistanceMatrix]
    keep: pd.Series
    discarded: List[Any] = field(default_factory=list)
    estimand_restricted: bool = False
    removed_pairs: Dict[str, int] = field(default_factory=dict)


def common_support_discard(
    scores: pd.Series,
    treatment: pd.Series,
    discard: str = "none",
) -> pd.Series:
    """Mask of units inside the common support of the propensity score.

    Args:
        scores: Propensity score per unit
        treatment: Binary treatment indicator per unit
        discard: 'none', 'treated' (drop treated outside the control range),
            'control' (drop controls outside the treated range) or 'both'

    Returns:
        Boolean Series, True for retained units
    """
    keep = pd.Series(True, index=scores.index)
    if discard == "none":
        return keep

    treat_mask = treatment == 1
    control_mask = treatment == 0
    t_min, t_max = scores[treat_mask].min(), scores[treat_mask].max()
    c_min, c_max = scores[control_mask].min(), scores[control_mask].max()

    if discard == "treated":
        keep[treat_mask & ((scores < c_min) | (scores > c_max))] = False
    elif discard == "control":
        keep[control_mask & ((scores < t_min) | (scores > t_max))] = False
    elif discard == "both":
        common_min = max(t_min, c_min)
        common_max = min(t_max, c_max)
        keep[(scores < common_min) | (scores > common_max)] = False
    else:
        raise ValueError(f"Discard option '{discard}' not recognized.")

    logger.debug(f"Common support: treated [{t_min:.4f}, {t_max:.4f}], "
                 f"control [{c_min:.4f}, {c_max:.4f}]")
    return keep


def apply_caliper(distances: DistanceMatrix, threshold: float) -> DistanceMatrix:
    """Mark pairs whose primary distance exceeds the caliper as infeasible."""
    filtered = distances.copy()
    filtered.values[filtered.values > threshold] = np.inf
    return filtered


def apply_covariate_caliper(
    distances: DistanceMatrix,
    values: pd.Series,
    threshold: float,
) -> DistanceMatrix:
    """Mark pairs whose absolute difference on a covariate exceeds the threshold."""
    treat_vals = values.loc[distances.treated_ids].to_numpy(dtype=float)
    control_vals = values.loc[distances.control_ids].to_numpy(dtype=float)
    too_far = np.abs(treat_vals[:, None] - control_vals[None, :]) > threshold

    filtered = distances.copy()
    filtered.values[too_far] = np.inf
    return filtered


def apply_exact_constraint(
    distances: DistanceMatrix,
    data: pd.DataFrame,
    columns: List[str],
) -> DistanceMatrix:
    """Mark pairs that differ on any exact-match column as infeasible."""
    n_treat = len(distances.treated_ids)
    combined = data.loc[list(distances.treated_ids) + list(distances.control_ids), columns]
    codes = combined.groupby(columns, sort=False).ngroup().to_numpy()
    treat_keys, control_keys = codes[:n_treat], codes[n_treat:]

    logger.debug(f"Found {len(set(treat_keys))} unique exact-match combinations in treatment group")

    match_matrix = treat_keys[:, None] == control_keys[None, :]
    filtered = distances.copy()
    filtered.values[~match_matrix] = np.inf
    return filtered


def apply_constraints(
    treatment: pd.Series,
    distances: Optional[DistanceMatrix] = None,
    scores: Optional[pd.Series] = None,
    data: Optional[pd.DataFrame] = None,
    discard: str = "none",
    caliper: Optional[float] = None,
    covariate_calipers: Optional[Dict[str, float]] = None,
    exact_match_cols: Optional[List[str]] = None,
    estimand: str = "att",
) -> FilterResult:
    """Apply common support, caliper and exact-match constraints.

    Args:
        treatment: Binary treatment indicator per unit
        distances: Treated x control distance matrix, if the method uses one
        scores: Propensity scores, required when discard is not 'none'
        data: Raw data, required for covariate calipers and exact constraints
        discard: Common support rule
        caliper: Threshold on the primary distance
        covariate_calipers: Thresholds on absolute differences of data columns
        exact_match_cols: Columns on which pairs must agree exactly
        estimand: 'att', 'ate' or 'atc'; decides which discards restrict it

    Returns:
        FilterResult with the filtered matrix and the discarded units
    """
    if discard != "none":
        if scores is None:
            raise ValueError("Common support discarding requires propensity scores")
        keep = common_support_discard(scores, treatment, discard)
    else:
        keep = pd.Series(True, index=treatment.index)

    discarded = keep.index[~keep].tolist()
    discarded_treated = int(((treatment == 1) & ~keep).sum())
    discarded_control = int(((treatment == 0) & ~keep).sum())

    if estimand == "att":
        estimand_restricted = discarded_treated > 0
    elif estimand == "atc":
        estimand_restricted = discarded_control > 0
    else:
        estimand_restricted = len(discarded) > 0

    if discarded:
        logger.warning(
            f"Discarding {len(discarded)} units outside common support ({discard}): "
            f"{discarded_treated} treated, {discarded_control} control"
        )
    if estimand_restricted:
        logger.warning(
            f"Discarded units belong to the {estimand.upper()} target population; "
            "estimates now refer to the units within common support"
        )

    removed_pairs: Dict[str, int] = {}
    if distances is not None:
        kept_ids = set(keep.index[keep])
        distances = distances.subset(
            [uid for uid in distances.treated_ids if uid in kept_ids],
            [uid for uid in distances.control_ids if uid in kept_ids],
        )

        if exact_match_cols:
            if data is None:
                raise ValueError("Exact-match constraints require the data")
            n_before = distances.n_feasible()
            distances = apply_exact_constraint(distances, data, exact_match_cols)
            removed_pairs["exact"] = n_before - distances.n_feasible()
            logger.debug(f"Exact matching removed {removed_pairs['exact']} potential matches")

        if caliper is not None:
            n_before = distances.n_feasible()
            distances = apply_caliper(distances, caliper)
            removed_pairs["caliper"] = n_before - distances.n_feasible()
            logger.debug(f"Caliper {caliper:.4f} removed {removed_pairs['caliper']} potential matches")

        for column, threshold in (covariate_calipers or {}).items():
            if data is None or column not in data.columns:
                raise ValueError(f"Caliper column '{column}' not found in data")
            n_before = distances.n_feasible()
            distances = apply_covariate_caliper(distances, data[column], threshold)
            removed_pairs[f"caliper:{column}"] = n_before - distances.n_feasible()
            logger.debug(f"Caliper on '{column}' ({threshold}) removed "
                         f"{removed_pairs[f'caliper:{column}']} potential matches")

    return FilterResult(
        distances=distances,
        keep=keep,
        discarded=discarded,
        estimand_restricted=estimand_restricted,
        removed_pairs=removed_pairs,
    )
