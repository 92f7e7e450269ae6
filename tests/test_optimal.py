"""
Test suite for optimal matching algorithm in cohortmatch.matching.optimal module.

These tests validate the functionality of the optimal pair matching algorithm.
"""

import numpy as np
import pytest

from cohortmatch.datatypes import DistanceMatrix
from cohortmatch.matching.base import MatchingProblem, get_solver
from cohortmatch.matching.greedy import greedy_match
from cohortmatch.matching.optimal import optimal_match


class TestOptimalMatching:
    """Test suite for optimal matching algorithm."""

    @pytest.fixture
    def distance_matrix(self):
        """Simple distance matrix (3 treatment x 4 control)."""
        return np.array(
            [
                [0.1, 0.3, 0.5, 0.9],
                [0.7, 0.2, 0.4, 0.8],
                [0.6, 0.5, 0.3, 0.7],
            ]
        )

    def test_simple_optimal_matching(self, distance_matrix):
        """Test basic optimal matching without constraints."""
        # The optimal assignment is the diagonal
        pairs, distances = optimal_match(distance_matrix)

        assert pairs == {0: [0], 1: [1], 2: [2]}
        np.testing.assert_allclose(sorted(distances), [0.1, 0.2, 0.3])

    def test_optimal_beats_greedy(self):
        """Greedy takes the locally best pair first and pays for it later."""
        distance_matrix = np.array([[0.1, 0.2], [0.15, 1.0]])

        greedy_pairs, greedy_distances = greedy_match(distance_matrix)
        optimal_pairs, optimal_distances = optimal_match(distance_matrix)

        assert greedy_pairs == {0: [0], 1: [1]}
        assert optimal_pairs == {0: [1], 1: [0]}
        assert sum(optimal_distances) == pytest.approx(0.35)
        assert sum(greedy_distances) == pytest.approx(1.1)

    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    def test_total_never_exceeds_greedy(self, seed):
        """On fully feasible problems optimal total distance is at most greedy's."""
        rng = np.random.default_rng(seed)
        distance_matrix = rng.uniform(size=(6, 9))

        _, greedy_distances = greedy_match(distance_matrix)
        pairs, optimal_distances = optimal_match(distance_matrix)

        assert len(pairs) == 6
        assert sum(optimal_distances) <= sum(greedy_distances) + 1e-12

    def test_infeasible_pairs_are_avoided(self):
        """The solver prefers matching more units over a smaller total."""
        distance_matrix = np.array([[0.1, 0.5], [0.2, np.inf]])

        pairs, distances = optimal_match(distance_matrix)

        assert pairs == {0: [1], 1: [0]}
        np.testing.assert_allclose(distances, [0.5, 0.2])

    def test_no_feasible_pairs(self):
        pairs, distances = optimal_match(np.full((2, 3), np.inf))
        assert pairs == {}
        assert distances == []

    def test_optimal_matching_with_ratio(self):
        """Test optimal matching with 1:2 ratio."""
        distance_matrix = np.array(
            [
                [0.1, 0.2, 0.3, 0.4],
                [0.15, 0.25, 0.35, 0.45],
            ]
        )

        pairs, distances = optimal_match(distance_matrix, ratio=2)

        assert all(len(controls) == 2 for controls in pairs.values())
        all_controls = [c for controls in pairs.values() for c in controls]
        assert sorted(all_controls) == [0, 1, 2, 3]
        assert sum(distances) == pytest.approx(1.1)

        # Controls within a group are listed nearest first
        for t_pos, c_positions in pairs.items():
            group = [distance_matrix[t_pos, c] for c in c_positions]
            assert group == sorted(group)


class TestOptimalPairSolver:
    """Tests for the registered optimal pair solver."""

    def test_solver_maps_positions_to_ids(self):
        values = np.array([[0.1, 0.2], [0.15, 1.0]])
        problem = MatchingProblem(
            treated_ids=["t1", "t2"],
            control_ids=["c1", "c2"],
            distances=DistanceMatrix(values, ["t1", "t2"], ["c1", "c2"]),
        )

        assignment = get_solver("optimal_pair").solve(problem)

        assert sorted(assignment.pairs) == [("t1", "c2"), ("t2", "c1")]
        assert assignment.total_distance == pytest.approx(0.35)
        assert assignment.pair_based
        assert not assignment.has_replacement

    def test_replace_is_ignored(self):
        values = np.array([[0.1, 0.9], [0.2, 0.8]])
        problem = MatchingProblem(
            treated_ids=["t1", "t2"],
            control_ids=["c1", "c2"],
            distances=DistanceMatrix(values, ["t1", "t2"], ["c1", "c2"]),
            replace=True,
        )

        assignment = get_solver("optimal_pair").solve(problem)

        assert max(assignment.usage_counts().values()) == 1
        assert len(assignment.pairs) == 2

    def test_unmatched_focal_units_warn(self):
        values = np.array([[0.1, np.inf], [0.2, np.inf], [np.inf, np.inf]])
        problem = MatchingProblem(
            treated_ids=["t1", "t2", "t3"],
            control_ids=["c1", "c2"],
            distances=DistanceMatrix(values, ["t1", "t2", "t3"], ["c1", "c2"]),
        )

        with pytest.warns(UserWarning):
            assignment = get_solver("optimal_pair").solve(problem)

        assert len(assignment.pairs) == 1
        assert len(assignment.unmatched) == 2
        assert "t3" in assignment.unmatched
