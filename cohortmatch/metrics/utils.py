"""
Utility functions shared by the matching pipeline.

This module resolves caliper specifications into numeric thresholds.
"""

from typing import Dict, Optional, Tuple, Union

import numpy as np
from scipy.special import logit

from cohortmatch.datatypes import DistanceMatrix
from cohortmatch.utils.logging import get_logger

# Set up logger
logger = get_logger(__name__)


def calculate_recommended_caliper(
    propensity_scores: Optional[np.ndarray] = None,
    distance_matrix: Optional[DistanceMatrix] = None,
    method: str = "propensity",
    caliper_scale: float = 0.2,
    logit_transform: bool = False,
    percentile: float = 90.0
) -> Optional[float]:
    """Calculate recommended caliper based on method and data.

    For propensity score distances the recommended caliper is
    caliper_scale × standard deviation of the score on the scale distances
    are measured on (logit when logit_transform is set; Austin 2011 uses
    0.2). For Mahalanobis and euclidean distances the caliper is a
    percentile (Mahalanobis) or the median (euclidean) of the finite
    distances.

    Returns:
        Recommended caliper value, or None if caliper cannot be calculated
    """
    if method == "propensity":
        if propensity_scores is None:
            logger.warning("Cannot calculate recommended caliper: propensity scores not provided")
            return None

        scores = np.asarray(propensity_scores, dtype=float)
        if logit_transform:
            scores = logit(np.clip(scores, 0.001, 0.999))

        score_sd = np.std(scores, ddof=1) if len(scores) > 1 else 0.0
        rec_caliper = caliper_scale * score_sd
        logger.info(f"Recommended caliper for {method} distance: {rec_caliper:.4f} "
                    f"({caliper_scale} × SD of score={score_sd:.4f})")
        return rec_caliper

    if distance_matrix is not None:
        finite_mask = np.isfinite(distance_matrix.values)
        if not np.any(finite_mask):
            logger.warning("Cannot calculate recommended caliper: no finite distances in matrix")
            return None

        finite_distances = distance_matrix.values[finite_mask]

        if method == "mahalanobis":
            rec_caliper = np.percentile(finite_distances, percentile)
            logger.info(f"Recommended caliper for {method} distance: {rec_caliper:.4f} "
                        f"({percentile}th percentile of distance distribution)")
        else:
            rec_caliper = np.median(finite_distances)
            logger.info(f"Recommended caliper for {method} distance: {rec_caliper:.4f} "
                        f"(median of distance distribution)")

        return float(rec_caliper)

    logger.warning(f"Cannot calculate recommended caliper for {method} distance: "
                   "neither propensity scores nor distance matrix provided")
    return None


def get_caliper_for_matching(
    config_caliper: Union[float, str, Dict[str, Union[float, str]], None],
    propensity_scores: Optional[np.ndarray] = None,
    distance_matrix: Optional[DistanceMatrix] = None,
    method: str = "propensity",
    caliper_scale: float = 0.2,
    logit_transform: bool = False,
) -> Tuple[Optional[float], Dict[str, float]]:
    """Resolve the configured caliper into numeric thresholds.

    Args:
        config_caliper: Number or 'auto' for the primary distance, or a mapping
            of names to thresholds where the key 'distance' is the primary
            distance and any other key is a data column
        propensity_scores: Scores used for the 'auto' propensity caliper
        distance_matrix: Distances used for the 'auto' covariate-distance caliper
        method: Distance calculation method
        caliper_scale: Scaling factor for automatic caliper calculation
        logit_transform: Whether propensity distances are on the logit scale

    Returns:
        Tuple of (primary distance caliper or None, {column: threshold})
    """
    if config_caliper is None:
        return None, {}

    if isinstance(config_caliper, dict):
        column_calipers = {k: float(v) for k, v in config_caliper.items() if k != "distance"}
        primary, _ = get_caliper_for_matching(
            config_caliper.get("distance"), propensity_scores, distance_matrix,
            method, caliper_scale, logit_transform,
        )
        return primary, column_calipers

    if isinstance(config_caliper, (int, float)):
        return float(config_caliper), {}

    if isinstance(config_caliper, str) and config_caliper.lower() == "auto":
        return calculate_recommended_caliper(
            propensity_scores=propensity_scores,
            distance_matrix=distance_matrix,
            method=method,
            caliper_scale=caliper_scale,
            logit_transform=logit_transform,
        ), {}

    raise ValueError(f"Invalid caliper specification: {config_caliper}. "
                     "Must be a positive number, 'auto', a mapping, or None.")
