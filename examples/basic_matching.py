#!/usr/bin/env python
"""Basic Matching Example for cohortmatch

This example demonstrates the core workflow of cohortmatch:
1. Creating synthetic data with confounded treatment assignment
2. Configuring and running nearest-neighbor propensity score matching
3. Inspecting covariate balance before and after matching
4. Comparing with optimal full matching on the same data
5. Exporting the result tables

The example is self-contained and can be run directly.
"""

import logging
import os

import numpy as np
import pandas as pd

from cohortmatch import Matcher, MatcherConfig, configure_logging, export_tables

# Set up logging - use DEBUG for more detail; the solvers are kept at WARNING
configure_logging(level=logging.INFO, solver_level="warning")


def generate_synthetic_data(n_samples=1000, random_state=42):
    """Generate synthetic data where treatment depends on the covariates."""
    np.random.seed(random_state)

    age = np.random.normal(45, 12, n_samples)
    income = np.random.lognormal(10, 0.5, n_samples)
    score = np.random.normal(0, 1, n_samples)
    region = np.random.choice(["north", "south", "west"], n_samples)

    # Older units with higher scores are more likely to be treated
    linear = 0.04 * (age - 45) + 0.8 * score - 0.3 * (region == "west") - 0.5
    propensity = 1 / (1 + np.exp(-linear))
    treatment = (np.random.random(n_samples) < propensity).astype(int)

    data = pd.DataFrame(
        {
            "treatment": treatment,
            "age": age,
            "income": income,
            "score": score,
            "region": region,
        },
        index=[f"unit_{i:04d}" for i in range(n_samples)],
    )

    print(f"Generated data with {n_samples} samples")
    print(f"Treatment group: {data['treatment'].sum()} units")
    print(f"Control group: {n_samples - data['treatment'].sum()} units")

    return data


def print_balance(results, title):
    """Print the balance table and summary for a set of results."""
    balance_df = results.balance_statistics
    print(f"\n{title}")
    print(balance_df[["variable", "smd_before", "smd_after", "var_ratio_before", "var_ratio_after"]])

    summary = results.balance_summary
    print(
        f"Max |SMD| - Before: {summary['max_smd_before']:.4f}, After: {summary['max_smd_after']:.4f}"
    )


def main():
    """Run the complete matching workflow."""
    data = generate_synthetic_data(n_samples=1000)

    # 1:1 nearest neighbor matching on the propensity score with an automatic caliper
    config = MatcherConfig.from_formula(
        "treatment ~ age + income + score + C(region)",
        method="nearest",
        distance="propensity",
        caliper="auto",
        ratio=1,
        random_state=42,
    )

    results = Matcher(data, config).match().get_results()

    summary = results.get_match_summary()
    print("\nMatching Summary:")
    for key, value in summary.items():
        print(f"  {key}: {value}")

    print_balance(results, "Balance after nearest neighbor matching:")

    # Optimal full matching keeps every unit and targets the ATE
    full_config = MatcherConfig.from_formula(
        "treatment ~ age + income + score + C(region)",
        method="optimal_full",
        estimand="ate",
        balance_order="smd_before",
    )
    full_results = Matcher(data, full_config).match().get_results()

    print(f"\nFull matching formed {full_results.assignment.n_strata} strata")
    print_balance(full_results, "Balance after optimal full matching:")

    print("\nSample sizes:")
    print(full_results.sample_sizes)

    # Export the tables
    output_dir = os.path.join("examples", "output")
    if os.path.basename(os.getcwd()) == "examples":
        output_dir = "output"

    absolute_output_dir = os.path.abspath(output_dir)
    print(f"\nSaving tables to: {absolute_output_dir}")

    table_paths = export_tables(full_results, absolute_output_dir, prefix="full_matching")
    for name, path in table_paths.items():
        print(f"  {name}: {path}")


if __name__ == "__main__":
    main()
