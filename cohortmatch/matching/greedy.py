"""
Greedy nearest-neighbor matching.

Focal units are visited once, in the order given by the ordering policy,
and each takes its k nearest still-available reference units. Earlier
choices are never revisited.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np

from cohortmatch.datatypes import Assignment
from cohortmatch.matching.base import (
    AssignmentSolver,
    MatchingProblem,
    pair_assignment,
    register_solver,
)
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


def greedy_match(
    distance_matrix: np.ndarray,
    order: Optional[np.ndarray] = None,
    ratio: int = 1,
    replace: bool = False,
) -> Tuple[Dict[int, List[int]], List[float]]:
    """Implement greedy matching on a focal x reference distance matrix.

    Indices in the returned dictionary are row and column positions of the
    matrix, not data ids. Infinite distances are never matched. Among
    equidistant candidates the lowest column position wins.

    Args:
        distance_matrix: Filtered distance matrix (n_focal x n_reference)
        order: Row positions in the order they are matched; defaults to row order
        ratio: Number of matches per focal unit (e.g., 2 means 1:2 matching)
        replace: Whether reference units may be matched more than once

    Returns:
        Tuple of (match_pairs, match_distances); match_pairs only holds rows
        that received at least one match, in matching order
    """
    n_focal, n_reference = distance_matrix.shape
    if order is None:
        order = np.arange(n_focal)

    logger.debug(f"Distance matrix shape: {distance_matrix.shape}")
    logger.debug(f"Matching with replacement: {replace}, ratio: {ratio}")

    available_mask = np.ones(n_reference, dtype=bool)

    match_pairs: Dict[int, List[int]] = {}
    match_distances: List[float] = []

    for t_pos in order:
        t_distances = distance_matrix[t_pos].copy()
        if not replace:
            t_distances[~available_mask] = np.inf

        found: List[int] = []
        for match_idx in range(ratio):
            if np.all(np.isinf(t_distances)):
                logger.debug(f"No more valid matches for focal unit {t_pos} at match_idx {match_idx}")
                break

            c_pos = int(np.argmin(t_distances))
            found.append(c_pos)
            match_distances.append(float(t_distances[c_pos]))

            if not replace:
                available_mask[c_pos] = False
            t_distances[c_pos] = np.inf

        if found:
            match_pairs[int(t_pos)] = found

    n_total = sum(len(c) for c in match_pairs.values())
    logger.debug(f"Final matches: {len(match_pairs)}/{n_focal} focal units matched "
                 f"with {n_total} total matches")
    if match_distances:
        logger.debug(f"Match distances - min: {min(match_distances):.4f}, "
                     f"mean: {np.mean(match_distances):.4f}, "
                     f"max: {max(match_distances):.4f}")

    return match_pairs, match_distances


def matching_order(
    problem: MatchingProblem,
    n_focal: int,
) -> np.ndarray:
    """Row positions of the focal units in the configured matching order."""
    order = problem.order
    if order in ("largest", "smallest") and problem.scores is None:
        logger.debug(f"No propensity scores available for '{order}' ordering, using data order")
        order = "data"

    if order == "data":
        return np.arange(n_focal)
    if order == "random":
        return problem.rng.permutation(n_focal)

    focal_scores = problem.scores.loc[problem.focal_ids].to_numpy(dtype=float)
    if order == "largest":
        return np.argsort(-focal_scores, kind="stable")
    return np.argsort(focal_scores, kind="stable")


@register_solver("nearest")
class NearestNeighborSolver(AssignmentSolver):
    """Greedy nearest-neighbor matching with optional replacement."""

    pair_based = True

    def _solve(self, problem: MatchingProblem) -> Assignment:
        distances = problem.focal_distances()
        n_focal = len(distances.treated_ids)

        tries = problem.order_retries if problem.order == "random" else 1
        best = None
        for attempt in range(tries):
            order = matching_order(problem, n_focal)
            pairs, dists = greedy_match(distances.values, order, problem.ratio, problem.replace)
            # Prefer more matched units, then a smaller total distance
            key = (-len(pairs), float(np.sum(dists)) if dists else 0.0)
            if best is None or key < best[0]:
                best = (key, pairs, dists)
            logger.debug(f"Ordering attempt {attempt + 1}/{tries}: {len(pairs)} matched, "
                         f"total distance {key[1]:.4f}")

        _, pairs, dists = best
        focal_ids = distances.treated_ids
        reference_ids = distances.control_ids
        match_groups = {
            focal_ids[t_pos]: [reference_ids[c_pos] for c_pos in c_positions]
            for t_pos, c_positions in pairs.items()
        }
        unmatched = [uid for pos, uid in enumerate(focal_ids) if pos not in pairs]

        return pair_assignment(self.name, problem, match_groups, dists, unmatched)
