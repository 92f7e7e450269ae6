"""Optimal pair matching using the Hungarian algorithm.

This module finds the 1:k matching without replacement that minimizes the
total distance across all pairs.
"""

from typing import Dict, List, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment

from cohortmatch.datatypes import Assignment
from cohortmatch.matching.base import (
    AssignmentSolver,
    MatchingProblem,
    pair_assignment,
    register_solver,
)
from cohortmatch.utils.logging import get_logger

# Create a logger for this module
logger = get_logger(__name__)


def optimal_match(
    distance_matrix: np.ndarray,
    ratio: int = 1,
) -> Tuple[Dict[int, List[int]], List[float]]:
    """Implement optimal matching using the Hungarian algorithm.

    Each focal row is repeated ``ratio`` times so that the assignment gives
    every focal unit up to ``ratio`` distinct reference units. Infeasible
    (infinite) pairs are replaced by a penalty larger than any feasible
    total, so the solver first maximizes the number of feasible pairs and
    then minimizes their total distance; penalized pairs are discarded.

    Args:
        distance_matrix: Filtered distance matrix (n_focal x n_reference)
        ratio: Number of matches per focal unit

    Returns:
        Tuple of (match_pairs, match_distances) keyed by row position
    """
    logger.debug(f"Distance matrix shape: {distance_matrix.shape}")

    n_focal = distance_matrix.shape[0]
    feasible = np.isfinite(distance_matrix)
    if not feasible.any():
        logger.debug("No feasible pairs; nothing to assign")
        return {}, []

    expanded = np.tile(distance_matrix, (ratio, 1)) if ratio > 1 else distance_matrix
    logger.debug(f"Expanded distance matrix shape: {expanded.shape}")

    finite_values = distance_matrix[feasible]
    penalty = (float(np.abs(finite_values).sum()) + 1.0) * 2.0
    cost_matrix = np.where(np.isfinite(expanded), expanded, penalty)

    logger.debug("Running Hungarian algorithm for optimal assignment")
    row_ind, col_ind = linear_sum_assignment(cost_matrix)

    collected: Dict[int, List[Tuple[float, int]]] = {}
    for i, j in zip(row_ind, col_ind):
        t_pos = int(i % n_focal)
        if not np.isfinite(distance_matrix[t_pos, j]):
            continue
        collected.setdefault(t_pos, []).append((float(distance_matrix[t_pos, j]), int(j)))

    match_pairs: Dict[int, List[int]] = {}
    match_distances: List[float] = []
    for t_pos in sorted(collected):
        for dist, c_pos in sorted(collected[t_pos]):
            match_pairs.setdefault(t_pos, []).append(c_pos)
            match_distances.append(dist)

    logger.info(f"Optimal matching complete: {len(match_pairs)} focal units matched")
    if match_distances:
        logger.debug(f"Match distances - min: {min(match_distances):.4f}, "
                     f"mean: {np.mean(match_distances):.4f}, "
                     f"max: {max(match_distances):.4f}")

    return match_pairs, match_distances


@register_solver("optimal_pair")
class OptimalPairSolver(AssignmentSolver):
    """Minimum total distance 1:k matching without replacement."""

    pair_based = True

    def _solve(self, problem: MatchingProblem) -> Assignment:
        if problem.replace:
            logger.warning("Optimal pair matching does not reuse units; ignoring replace=True")

        distances = problem.focal_distances()
        pairs, dists = optimal_match(distances.values, problem.ratio)

        focal_ids = distances.treated_ids
        reference_ids = distances.control_ids
        match_groups = {
            focal_ids[t_pos]: [reference_ids[c_pos] for c_pos in c_positions]
            for t_pos, c_positions in pairs.items()
        }
        unmatched = [uid for pos, uid in enumerate(focal_ids) if pos not in pairs]

        return pair_assignment(self.name, problem, match_groups, dists, unmatched)
