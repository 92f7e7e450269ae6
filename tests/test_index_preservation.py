"""Tests for index preservation in cohortmatch.

These tests verify that matching reports units by their original index labels,
handling various index types and formats.
"""

import numpy as np
import pandas as pd
import pytest
from pandas import DataFrame

from cohortmatch.datatypes import MatcherConfig
from cohortmatch.matcher import Matcher


def generate_data(index_values: list, random_state: int = 42) -> DataFrame:
    """Generate test data with a specific index.

    Args:
        index_values: Values to use as index for the returned DataFrame
        random_state: Random seed for reproducibility

    Returns:
        DataFrame with specified index containing synthetic data
    """
    n_samples = len(index_values)
    rng = np.random.RandomState(random_state)

    treatment = rng.binomial(1, 0.4, size=n_samples)
    age = rng.normal(50, 10, size=n_samples) + treatment * 3
    blood_pressure = rng.normal(120, 20, size=n_samples)
    site = rng.choice(["a", "b"], size=n_samples)

    return pd.DataFrame(
        {
            "treatment": treatment,
            "age": age,
            "blood_pressure": blood_pressure,
            "site": site,
        },
        index=index_values,
    )


def assert_labels_preserved(data, results):
    original = set(data.index)
    assert set(results.matched_data.index) <= original
    assert set(results.weights.index) == original
    assert set(results.assignment.assigned_ids()) <= original

    pairs = results.get_match_pairs()
    assert set(pairs["treatment_id"]) <= set(data.index[data["treatment"] == 1])
    assert set(pairs["control_id"]) <= set(data.index[data["treatment"] == 0])


@pytest.mark.parametrize(
    "method,extra",
    [
        ("nearest", {}),
        ("optimal_pair", {}),
        ("optimal_full", {}),
        ("exact", {"exact_match_cols": ["site"]}),
    ],
)
def test_integer_index_preservation(method, extra):
    """Non-sequential integer indices are carried through every method."""
    rng = np.random.RandomState(123)
    indices = sorted(rng.choice(range(1000, 10000), size=80, replace=False))
    data = generate_data(indices)

    config = MatcherConfig(
        treatment_col="treatment",
        covariates=["age", "blood_pressure"],
        method=method,
        random_state=42,
        **extra,
    )
    results = Matcher(data, config).match().get_results()

    assert_labels_preserved(data, results)


def test_string_index_preservation():
    """String indices are preserved."""
    base_strings = ["patient", "subject", "participant", "id", "case"]
    indices = [f"{base_strings[i % 5]}_{i:03d}" for i in range(80)]
    data = generate_data(indices)

    config = MatcherConfig(treatment_col="treatment", covariates=["age", "blood_pressure"])
    results = Matcher(data, config).match().get_results()

    assert_labels_preserved(data, results)
    assert results.matched_data.index.dtype == data.index.dtype
    assert pd.api.types.is_string_dtype(results.matched_data.index)


def test_shuffled_index_order():
    """Shuffling the rows does not change the optimal total distance."""
    data = generate_data(list(range(80)))
    shuffled = data.sample(frac=1.0, random_state=0)

    config = MatcherConfig(
        treatment_col="treatment", covariates=["age", "blood_pressure"], method="optimal_pair"
    )
    original = Matcher(data, config).match().get_results()
    reordered = Matcher(shuffled, config).match().get_results()

    assert np.isclose(original.assignment.total_distance, reordered.assignment.total_distance)


def test_mixed_index_types():
    """Mixed index types are rejected."""
    indices = [i * 10 if i % 2 == 0 else f"ID_{i:03d}" for i in range(40)]
    data = generate_data(indices)
    config = MatcherConfig(treatment_col="treatment", covariates=["age"])

    with pytest.raises(TypeError):
        Matcher(data, config)


def test_unsupported_index_type():
    """Non-string, non-integer indices are rejected."""
    data = generate_data([float(i) + 0.5 for i in range(40)])
    config = MatcherConfig(treatment_col="treatment", covariates=["age"])

    with pytest.raises(TypeError):
        Matcher(data, config)


def test_duplicate_index():
    data = generate_data([1, 2, 3] + list(range(3, 40)))
    config = MatcherConfig(treatment_col="treatment", covariates=["age"])

    with pytest.raises(ValueError):
        Matcher(data, config)
