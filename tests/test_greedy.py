"""
Test suite for greedy matching algorithm in cohortmatch.matching.greedy module.

These tests validate the greedy nearest-neighbor matcher and its ordering policies.
"""

import numpy as np
import pandas as pd
import pytest

from cohortmatch.datatypes import DistanceMatrix
from cohortmatch.exceptions import InfeasibleAssignmentWarning
from cohortmatch.matching.base import MatchingProblem, get_solver
from cohortmatch.matching.greedy import greedy_match, matching_order


def make_problem(values, treated_ids, control_ids, scores=None, **kwargs):
    """MatchingProblem over an explicit treated x control matrix."""
    distances = DistanceMatrix(np.asarray(values, dtype=float), treated_ids, control_ids)
    return MatchingProblem(
        treated_ids=treated_ids,
        control_ids=control_ids,
        distances=distances,
        scores=scores,
        **kwargs,
    )


class TestGreedyMatching:
    """Test suite for the greedy matching routine."""

    @pytest.fixture
    def distance_matrix(self):
        """Simple distance matrix (3 treatment x 4 control)."""
        return np.array([
            [0.1, 0.3, 0.5, 0.9],
            [0.7, 0.2, 0.4, 0.8],
            [0.6, 0.5, 0.3, 0.7],
        ])

    def test_simple_greedy_matching(self, distance_matrix):
        """Each row takes its nearest available column in row order."""
        pairs, distances = greedy_match(distance_matrix)

        assert pairs == {0: [0], 1: [1], 2: [2]}
        np.testing.assert_allclose(distances, [0.1, 0.2, 0.3])

    def test_infinite_distances_never_matched(self, distance_matrix):
        """Pairs removed by a caliper are never selected."""
        filtered = np.where(distance_matrix > 0.4, np.inf, distance_matrix)
        pairs, distances = greedy_match(filtered)

        assert all(d <= 0.4 for d in distances)
        for t_pos, c_positions in pairs.items():
            for c_pos in c_positions:
                assert np.isfinite(filtered[t_pos, c_pos])

    def test_greedy_matching_with_replacement(self):
        """With replacement every row can take the same best column."""
        distance_matrix = np.array([
            [0.1, 0.3, 0.5, 0.9],
            [0.2, 0.4, 0.6, 0.8],
            [0.3, 0.5, 0.7, 1.0],
        ])

        pairs_no_replace, distances_no_replace = greedy_match(distance_matrix, replace=False)
        pairs_with_replace, distances_with_replace = greedy_match(distance_matrix, replace=True)

        all_controls = [c for controls in pairs_no_replace.values() for c in controls]
        assert len(all_controls) == len(set(all_controls))

        assert all(controls == [0] for controls in pairs_with_replace.values())
        assert np.mean(distances_with_replace) <= np.mean(distances_no_replace)

    def test_greedy_matching_with_ratio(self, distance_matrix):
        """Each row receives up to k columns, nearest first."""
        pairs, distances = greedy_match(distance_matrix, ratio=2)

        assert all(len(controls) <= 2 for controls in pairs.values())
        all_controls = [c for controls in pairs.values() for c in controls]
        assert len(all_controls) == len(set(all_controls))

        for t_pos, c_positions in pairs.items():
            if len(c_positions) == 2:
                assert distance_matrix[t_pos, c_positions[0]] <= distance_matrix[t_pos, c_positions[1]]

    def test_greedy_match_with_few_controls(self):
        """Ratio k with fewer eligible controls gives as many as available."""
        distance_matrix = np.array([
            [0.5, 1.5],
            [1.0, 0.5],
            [1.5, 1.0],
        ])

        pairs, distances = greedy_match(distance_matrix, ratio=2)

        all_controls = [c for controls in pairs.values() for c in controls]
        assert sorted(all_controls) == [0, 1]
        assert pairs == {0: [0, 1]}

    def test_order_changes_result(self, distance_matrix):
        """Matching order decides who gets contested controls."""
        contested = np.array([
            [0.1, 0.5],
            [0.2, 0.9],
        ])
        first, _ = greedy_match(contested, order=np.array([0, 1]))
        second, _ = greedy_match(contested, order=np.array([1, 0]))

        assert first == {0: [0], 1: [1]}
        assert second == {1: [0], 0: [1]}

    def test_ties_go_to_first_control(self):
        """Equidistant controls: the first in data order wins."""
        pairs, distances = greedy_match(np.array([[0.3, 0.3, 0.3]]))
        assert pairs == {0: [0]}


class TestMatchingOrder:
    """Tests for the focal ordering policies."""

    @pytest.fixture
    def scores(self):
        return pd.Series([0.2, 0.9, 0.5, 0.4, 0.6], index=["t1", "t2", "t3", "c1", "c2"])

    def test_largest_first(self, scores):
        problem = make_problem(np.zeros((3, 2)), ["t1", "t2", "t3"], ["c1", "c2"],
                               scores=scores, order="largest")
        np.testing.assert_array_equal(matching_order(problem, 3), [1, 2, 0])

    def test_smallest_first(self, scores):
        problem = make_problem(np.zeros((3, 2)), ["t1", "t2", "t3"], ["c1", "c2"],
                               scores=scores, order="smallest")
        np.testing.assert_array_equal(matching_order(problem, 3), [0, 2, 1])

    def test_falls_back_to_data_order_without_scores(self):
        problem = make_problem(np.zeros((3, 2)), ["t1", "t2", "t3"], ["c1", "c2"],
                               order="largest")
        np.testing.assert_array_equal(matching_order(problem, 3), [0, 1, 2])

    def test_random_order_is_seeded(self, scores):
        orders = []
        for _ in range(2):
            problem = make_problem(np.zeros((3, 2)), ["t1", "t2", "t3"], ["c1", "c2"],
                                   order="random", rng=np.random.default_rng(7))
            orders.append(matching_order(problem, 3))
        np.testing.assert_array_equal(orders[0], orders[1])
        assert sorted(orders[0]) == [0, 1, 2]


class TestNearestNeighborSolver:
    """Tests for the registered nearest-neighbor solver."""

    @pytest.fixture
    def offset_scores(self):
        """Ten treated scores 0.95 .. 0.05 and controls 0.02 above each."""
        treated = np.round(np.arange(0.95, 0.0, -0.1), 2)
        controls = treated + 0.02
        treated_ids = [f"t{i}" for i in range(10)]
        control_ids = [f"c{i}" for i in range(10)]
        scores = pd.Series(np.concatenate([treated, controls]), index=treated_ids + control_ids)
        values = np.abs(treated[:, None] - controls[None, :])
        return values, treated_ids, control_ids, scores

    def test_each_treated_matches_its_offset_control(self, offset_scores):
        values, treated_ids, control_ids, scores = offset_scores
        problem = make_problem(values, treated_ids, control_ids, scores=scores, order="largest")

        assignment = get_solver("nearest").solve(problem)

        assert assignment.pairs == [(f"t{i}", f"c{i}") for i in range(10)]
        np.testing.assert_allclose(assignment.match_distances, [0.02] * 10)
        assert assignment.total_distance == pytest.approx(0.20)

    def test_tight_caliper_leaves_everyone_unassigned(self, offset_scores):
        values, treated_ids, control_ids, scores = offset_scores
        values = np.where(values > 0.01, np.inf, values)
        problem = make_problem(values, treated_ids, control_ids, scores=scores)

        with pytest.warns(InfeasibleAssignmentWarning) as record:
            assignment = get_solver("nearest").solve(problem)

        assert assignment.pairs == []
        assert assignment.assigned_ids() == []
        assert sorted(assignment.unmatched) == sorted(treated_ids)
        assert len(record) == 1

    def test_controls_disjoint_without_replacement(self):
        rng = np.random.default_rng(0)
        values = rng.uniform(size=(8, 12))
        treated_ids = list(range(8))
        control_ids = list(range(8, 20))
        problem = make_problem(values, treated_ids, control_ids, ratio=2, order="data")

        assignment = get_solver("nearest").solve(problem)

        chosen = [c for controls in assignment.match_groups.values() for c in controls]
        assert len(chosen) == len(set(chosen))
        assert len(chosen) <= len(control_ids)
        for members in assignment.strata().values():
            assert any(uid in treated_ids for uid in members)
            assert any(uid in control_ids for uid in members)

    def test_replacement_reuses_controls(self):
        values = np.array([[0.1, 0.9], [0.2, 0.8], [0.3, 0.7]])
        problem = make_problem(values, ["t1", "t2", "t3"], ["c1", "c2"],
                               replace=True, order="data")

        assignment = get_solver("nearest").solve(problem)

        assert assignment.has_replacement
        assert assignment.usage_counts()["c1"] == 3
        with pytest.raises(ValueError):
            assignment.stratum_of("c1")

    def test_atc_matches_controls_to_treated(self):
        values = np.array([[0.1, 0.4, 0.5], [0.6, 0.2, 0.3]])
        problem = make_problem(values, ["t1", "t2"], ["c1", "c2", "c3"],
                               estimand="atc", order="data", replace=True)

        assignment = get_solver("nearest").solve(problem)

        assert set(assignment.match_groups) == {"c1", "c2", "c3"}
        assert ("t1", "c1") in assignment.pairs
        assert ("t2", "c3") in assignment.pairs

    def test_random_order_with_retries_is_reproducible(self):
        rng = np.random.default_rng(3)
        values = rng.uniform(size=(6, 6))
        ids_t, ids_c = list(range(6)), list(range(6, 12))

        results = []
        for _ in range(2):
            problem = make_problem(values, ids_t, ids_c, order="random", order_retries=5,
                                   rng=np.random.default_rng(11))
            results.append(get_solver("nearest").solve(problem).pairs)

        assert results[0] == results[1]
