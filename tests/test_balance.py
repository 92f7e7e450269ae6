"""Test suite for balance assessment in cohortmatch.metrics.balance module.

These tests validate the functionality of balance assessment metrics and tools.
"""

import numpy as np
import pandas as pd
import pytest

from cohortmatch.datatypes import Assignment
from cohortmatch.metrics.balance import (
    calculate_balance_stats,
    calculate_rubin_rules,
    calculate_sample_sizes,
    calculate_subclass_balance,
    ecdf_difference,
    percent_improvement,
    standardization_factor,
    standardized_mean_difference,
    summarize_balance,
    variance_ratio,
    weighted_mean,
    weighted_variance,
)


class TestBalanceMetrics:
    """Test suite for balance metrics functionality."""

    @pytest.fixture
    def unbalanced_data(self):
        """Create unbalanced sample data for balance assessment testing."""
        np.random.seed(42)
        n = 200

        # Treatment group has higher values
        treat_size = n // 4
        control_size = n - treat_size
        X1 = np.concatenate([np.random.normal(1.0, 1.0, treat_size),
                             np.random.normal(0.0, 1.0, control_size)])
        X2 = np.concatenate([np.random.normal(0.5, 1.2, treat_size),
                             np.random.normal(0.0, 1.0, control_size)])
        X3 = np.concatenate([np.random.binomial(1, 0.7, treat_size),
                             np.random.binomial(1, 0.3, control_size)])
        treatment = np.concatenate([np.ones(treat_size), np.zeros(control_size)]).astype(int)

        return pd.DataFrame({"treatment": treatment, "X1": X1, "X2": X2, "X3": X3})

    @pytest.fixture
    def mirrored_data(self):
        """Treated and control groups with identical covariate values."""
        values = [0.5, 1.0, 2.5, 4.0, 7.0]
        return pd.DataFrame(
            {
                "treatment": [1] * 5 + [0] * 5,
                "x": values + values,
                "flag": [0, 1, 1, 0, 1] * 2,
            }
        )

    def test_weighted_moments(self):
        x = np.array([1.0, 2.0, 3.0, 4.0])
        ones = np.ones(4)

        assert weighted_mean(x, ones) == pytest.approx(2.5)
        assert weighted_variance(x, ones) == pytest.approx(np.var(x, ddof=1))
        assert weighted_mean(x, np.array([0.0, 0.0, 1.0, 1.0])) == pytest.approx(3.5)
        assert np.isnan(weighted_mean(x, np.zeros(4)))

    def test_standardization_factor(self):
        x_t = np.array([1.0, 2.0, 3.0])
        x_c = np.array([2.0, 4.0, 6.0])

        assert standardization_factor(x_t, x_c, "att") == pytest.approx(1.0)
        assert standardization_factor(x_t, x_c, "atc") == pytest.approx(2.0)
        assert standardization_factor(x_t, x_c, "ate") == pytest.approx(np.sqrt(2.5))

    def test_standardized_mean_difference(self):
        assert standardized_mean_difference(-1.0, 2.0) == pytest.approx(-0.5)
        assert standardized_mean_difference(0.0, 0.0) == 0.0
        assert standardized_mean_difference(1.0, 0.0) == np.inf
        assert np.isnan(standardized_mean_difference(np.nan, 1.0))

    def test_variance_ratio(self):
        x_t = np.array([1.0, 3.0, 5.0])
        x_c = np.array([2.0, 3.0, 4.0])
        ones = np.ones(3)

        assert variance_ratio(x_t, ones, x_c, ones) == pytest.approx(4.0)
        assert variance_ratio(np.ones(3), ones, np.ones(3), ones) == 1.0
        assert variance_ratio(x_t, ones, np.ones(3), ones) == np.inf

    def test_ecdf_difference(self):
        x_t = np.array([1.0, 2.0])
        x_c = np.array([3.0, 4.0])
        ones = np.ones(2)

        ecdf_mean, ecdf_max = ecdf_difference(x_t, ones, x_c, ones)

        # Evaluated at 1, 2, 3, 4: |0.5-0|, |1-0|, |1-0.5|, |1-1|
        assert ecdf_mean == pytest.approx(0.5)
        assert ecdf_max == pytest.approx(1.0)

    def test_percent_improvement(self):
        assert percent_improvement(0.8, 0.08) == pytest.approx(90.0)
        assert percent_improvement(-0.5, 0.25) == pytest.approx(50.0)
        assert percent_improvement(0.1, 0.2) == pytest.approx(-100.0)
        assert np.isnan(percent_improvement(0.0, 0.1))

        result = percent_improvement(np.array([0.8, 0.0]), np.array([0.08, 0.0]))
        assert result[0] == pytest.approx(90.0)
        assert np.isnan(result[1])

    def test_identical_groups_are_balanced(self, mirrored_data):
        """Identical distributions give SMD 0, variance ratio 1 and eCDF 0."""
        X = mirrored_data[["x", "flag"]]
        weights = pd.Series(1.0, index=X.index)

        df = calculate_balance_stats(X, mirrored_data["treatment"], weights)

        for stage in ("before", "after"):
            np.testing.assert_allclose(df[f"smd_{stage}"], 0.0, atol=1e-12)
            np.testing.assert_allclose(df[f"ecdf_mean_{stage}"], 0.0, atol=1e-12)
            np.testing.assert_allclose(df[f"ecdf_max_{stage}"], 0.0, atol=1e-12)
            assert df.loc[0, f"var_ratio_{stage}"] == pytest.approx(1.0)

        # Binary terms carry no variance ratio
        assert df.loc[1, "type"] == "binary"
        assert np.isnan(df.loc[1, "var_ratio_before"])

    def test_calculate_balance_stats(self, unbalanced_data):
        X = unbalanced_data[["X1", "X2", "X3"]]
        treatment = unbalanced_data["treatment"]
        weights = pd.Series(1.0, index=X.index)

        df = calculate_balance_stats(X, treatment, weights)

        assert df["variable"].tolist() == ["X1", "X2", "X3"]
        assert df["type"].tolist() == ["continuous", "continuous", "binary"]
        for stat in ("smd", "var_ratio", "ecdf_mean", "ecdf_max"):
            assert f"{stat}_before" in df.columns
            assert f"{stat}_after" in df.columns
            assert f"{stat}_improvement" in df.columns

        # Treated have higher means, so SMDs are positive
        assert (df["smd_before"] > 0).all()
        # Unit weights after matching reproduce the before statistics
        np.testing.assert_allclose(df["smd_after"], df["smd_before"])
        np.testing.assert_allclose(df.loc[df["type"] == "continuous", "smd_improvement"], 0.0,
                                   atol=1e-10)

    def test_after_uses_weights(self, unbalanced_data):
        X = unbalanced_data[["X1"]]
        treatment = unbalanced_data["treatment"]
        weights = pd.Series(0.0, index=X.index)
        weights[treatment == 1] = 1.0
        # Keep the upper third of controls
        controls = X.loc[treatment == 0, "X1"]
        weights[controls.nlargest(50).index] = 1.0

        df = calculate_balance_stats(X, treatment, weights)

        x_t = X.loc[treatment == 1, "X1"]
        expected_diff = x_t.mean() - controls.nlargest(50).mean()
        assert df.loc[0, "mean_diff_after"] == pytest.approx(expected_diff)
        assert df.loc[0, "smd_after"] == pytest.approx(expected_diff / x_t.std(ddof=1))
        assert abs(df.loc[0, "smd_after"]) < abs(df.loc[0, "smd_before"])

    def test_no_matched_units(self, mirrored_data):
        X = mirrored_data[["x"]]
        weights = pd.Series(0.0, index=X.index)

        df = calculate_balance_stats(X, mirrored_data["treatment"], weights)

        assert np.isnan(df.loc[0, "smd_after"])
        assert df.loc[0, "smd_before"] == pytest.approx(0.0)

    def test_summarize_balance(self, unbalanced_data):
        X = unbalanced_data[["X1", "X2", "X3"]]
        treatment = unbalanced_data["treatment"]
        weights = pd.Series(1.0, index=X.index)
        df = calculate_balance_stats(X, treatment, weights)

        summary = summarize_balance(df, threshold=0.1)

        assert summary["n_terms"] == 3
        assert summary["max_smd_before"] == pytest.approx(df["smd_before"].abs().max())
        assert summary["mean_smd_before"] == pytest.approx(df["smd_before"].abs().mean())
        assert summary["n_above_threshold_before"] == 3
        assert summary["prop_balanced_before"] == 0.0
        assert summary["max_ecdf_after"] == pytest.approx(df["ecdf_max_after"].max())

    def test_calculate_rubin_rules(self):
        df = pd.DataFrame(
            {
                "smd_before": [0.5, 0.6, 0.4],
                "smd_after": [0.1, 0.3, 0.05],
                "var_ratio_before": [2.5, 3.0, np.nan],
                "var_ratio_after": [1.0, 3.0, np.nan],
            }
        )

        rubin = calculate_rubin_rules(df)

        assert rubin["n_variables_total"] == 3
        assert rubin["n_smd_small"] == 2
        assert rubin["pct_smd_small"] == pytest.approx(200 / 3)
        assert rubin["n_var_ratio_good"] == 1
        assert rubin["pct_var_ratio_good"] == pytest.approx(50.0)
        assert rubin["n_both_good"] == 2

    def test_rubin_rules_fall_back_to_before(self):
        df = pd.DataFrame(
            {
                "smd_before": [0.1, 0.3],
                "smd_after": [np.nan, np.nan],
                "var_ratio_before": [1.0, 1.0],
                "var_ratio_after": [np.nan, np.nan],
            }
        )

        rubin = calculate_rubin_rules(df)

        assert rubin["n_smd_small"] == 1
        assert rubin["n_var_ratio_good"] == 2


class TestSubclassAndSampleSizes:
    """Tests for per-stratum balance and the sample size table."""

    @pytest.fixture
    def frame(self):
        return pd.DataFrame(
            {"treatment": [1, 1, 0, 0, 0], "x": [1.0, 3.0, 1.0, 2.0, 5.0]},
            index=["t1", "t2", "c1", "c2", "c3"],
        )

    def test_subclass_balance(self, frame):
        assignment = Assignment.from_strata(
            "subclass", ["t1", "t2"], ["c1", "c2", "c3"],
            {0: ["t1", "c1", "c2"], 1: ["t2", "c3"]},
        )

        tables = calculate_subclass_balance(frame[["x"]], frame["treatment"], assignment)

        assert sorted(tables) == [0, 1]
        first = tables[0].iloc[0]
        assert first["n_treated"] == 1
        assert first["n_control"] == 2
        assert first["mean_diff"] == pytest.approx(1.0 - 1.5)
        # Treated SD of [1, 3] is sqrt(2)
        assert first["smd"] == pytest.approx(-0.5 / np.sqrt(2))
        assert tables[1].iloc[0]["mean_diff"] == pytest.approx(-2.0)

    def test_sample_sizes(self, frame):
        weights = pd.Series([1.0, 0.0, 1.0, 0.0, 0.0], index=frame.index)

        table = calculate_sample_sizes(frame["treatment"], weights, discarded=["c3"])

        assert list(table.columns) == ["Control", "Treated"]
        assert table.loc["All", "Control"] == 3
        assert table.loc["All", "Treated"] == 2
        assert table.loc["Matched (ESS)", "Control"] == pytest.approx(1.0)
        assert table.loc["Matched (Unweighted)", "Treated"] == 1
        assert table.loc["Unmatched", "Control"] == 1
        assert table.loc["Unmatched", "Treated"] == 1
        assert table.loc["Discarded", "Control"] == 1
        assert table.loc["Discarded", "Treated"] == 0
