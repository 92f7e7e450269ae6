"""Data validation utilities for cohortmatch.

This module provides centralized validation functions to ensure input data
and configuration meet the requirements of the matching pipeline.
"""

from dataclasses import replace
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from cohortmatch.utils.logging import get_logger

# Create a logger for this module
logger = get_logger(__name__)

if TYPE_CHECKING:
    from cohortmatch.datatypes import MatcherConfig

METHODS = ["none", "nearest", "optimal_pair", "optimal_full", "exact", "cem", "subclass"]
METHOD_ALIASES = {
    "optimal-pair": "optimal_pair",
    "optimal": "optimal_pair",
    "optimal-full": "optimal_full",
    "full": "optimal_full",
    "coarsened-exact": "cem",
    "coarsened_exact": "cem",
    "greedy": "nearest",
}
PAIR_METHODS = {"nearest", "optimal_pair"}
DISTANCE_METHODS = {"optimal_full"} | PAIR_METHODS
DISTANCES = ["propensity", "mahalanobis", "euclidean"]
PROPENSITY_MODELS = ["logistic", "probit", "random_forest", "custom"]
DISCARD_OPTIONS = ["none", "treated", "control", "both"]
ESTIMANDS = ["att", "ate", "atc"]
ORDERS = ["largest", "smallest", "random", "data"]
BALANCE_ORDERS = ["input", "smd_before", "smd_after", "alphabetical"]


def normalize_method(method: str) -> str:
    """Map accepted aliases ("optimal-full", "coarsened-exact", ...) to method names."""
    method = method.lower()
    return METHOD_ALIASES.get(method, method)


def validate_dataframe_index(
    data: pd.DataFrame, allow_duplicates: bool = False
) -> None:
    """Validate that the dataframe index has an acceptable type and is unique.

    Args:
        data: DataFrame to validate
        allow_duplicates: Whether to allow duplicate indices

    Raises:
        TypeError: If index has mixed types or unsupported types
        ValueError: If index is not unique and duplicates are not allowed
    """
    if data.empty:
        return

    index_types = set(type(idx) for idx in data.index.tolist())

    if len(index_types) > 1:
        raise TypeError(
            f"DataFrame index has mixed types: {index_types}. All indices must be of the same type."
        )

    index_type = next(iter(index_types))
    if not issubclass(index_type, (str, int, np.integer)):
        raise TypeError(
            f"DataFrame index has unsupported type: {index_type}. Supported types are str and int."
        )

    if not allow_duplicates and not data.index.is_unique:
        raise ValueError("DataFrame index must be unique")


def validate_data(
    data: pd.DataFrame,
    treatment_col: str,
    columns: list[str] | None = None,
    propensity_col: str | None = None,
    exact_match_cols: list[str] | None = None,
    require_both_groups: bool = True,
) -> None:
    """Validate input data for matching.

    Covariate terms are checked when they are expanded into a design matrix;
    ``columns`` lists raw columns that must exist without missing values.

    Args:
        data: DataFrame containing the data
        treatment_col: Name of the treatment column
        columns: Raw columns that must be present and complete
        propensity_col: Name of propensity score column
        exact_match_cols: Columns to use for exact matching
        require_both_groups: Whether to require both treatment and control groups

    Raises:
        ValueError: If there's a validation error
    """
    validate_dataframe_index(data)

    logger.debug(f"Validating data with {len(data)} observations")

    if treatment_col not in data.columns:
        raise ValueError(f"Treatment column '{treatment_col}' not found in data")
    validate_no_missing_values(data, [treatment_col])
    validate_treatment_column(data, treatment_col, require_both_groups)

    if columns:
        missing = [col for col in columns if col not in data.columns]
        if missing:
            raise ValueError(f"Columns not found in data: {missing}")
        validate_no_missing_values(data, columns)

    if propensity_col is not None:
        logger.debug(f"Validating propensity score column: {propensity_col}")
        if propensity_col not in data.columns:
            raise ValueError(f"Propensity column '{propensity_col}' not found in data")
        validate_numeric_columns(data, [propensity_col])
        validate_no_missing_values(data, [propensity_col])
        validate_propensity_scores(data, propensity_col)

    if exact_match_cols:
        logger.debug(f"Validating {len(exact_match_cols)} exact match columns")
        missing_exact_cols = [col for col in exact_match_cols if col not in data.columns]
        if missing_exact_cols:
            raise ValueError(
                f"Exact match columns not found in data: {missing_exact_cols}"
            )
        validate_no_missing_values(data, exact_match_cols)

    logger.debug("Data validation successful")


def validate_treatment_column(
    data: pd.DataFrame, treatment_col: str, require_both_groups: bool = True
) -> None:
    """Validate that treatment column contains only binary values (0/1).

    Raises:
        ValueError: If treatment column validation fails
    """
    treatment_values = data[treatment_col].unique()
    if not set(treatment_values).issubset({0, 1}):
        raise ValueError(
            f"Treatment column '{treatment_col}' must contain only binary values (0/1), "
            f"found: {sorted(treatment_values, key=str)}"
        )

    n_treatment = (data[treatment_col] == 1).sum()
    n_control = (data[treatment_col] == 0).sum()

    if n_treatment == 0:
        raise ValueError(f"No treatment units found in '{treatment_col}' (no 1s)")

    if require_both_groups and n_control == 0:
        raise ValueError(f"No control units found in '{treatment_col}' (no 0s)")


def validate_numeric_columns(data: pd.DataFrame, columns: list[str]) -> None:
    """Validate that columns contain only numeric data.

    Raises:
        ValueError: If any column contains non-numeric data
    """
    for col in columns:
        if not np.issubdtype(data[col].dtype, np.number):
            raise ValueError(
                f"Column '{col}' must contain only numeric values, "
                f"but has dtype {data[col].dtype}"
            )


def validate_no_missing_values(data: pd.DataFrame, columns: list[str]) -> None:
    """Validate that columns have no missing values.

    Raises:
        ValueError: If any column contains missing values
    """
    for col in columns:
        if data[col].isna().any():
            n_missing = data[col].isna().sum()
            raise ValueError(
                f"Column '{col}' contains {n_missing} missing values. "
                f"Please handle missing values before matching."
            )


def validate_propensity_scores(data: pd.DataFrame, propensity_col: str) -> None:
    """Validate that propensity scores are between 0 and 1.

    Raises:
        ValueError: If propensity scores are outside [0, 1]
    """
    p_scores = data[propensity_col]
    if (p_scores < 0).any() or (p_scores > 1).any():
        raise ValueError(
            f"Propensity scores in '{propensity_col}' must be between 0 and 1. "
            f"Found min={p_scores.min()}, max={p_scores.max()}"
        )


def validate_matcher_config(config: "MatcherConfig") -> "MatcherConfig":
    """Validate MatcherConfig for required fields and proper values.

    The given configuration is left untouched.

    Returns:
        A copy with method aliases resolved, the estimand lower-cased and the
        ratio as an int

    Raises:
        ValueError: If configuration fails validation checks
    """
    logger.debug("Validating matcher configuration")

    if not getattr(config, "treatment_col", None):
        raise ValueError("treatment_col is required in MatcherConfig")

    if not getattr(config, "covariates", None):
        raise ValueError("covariates list is required in MatcherConfig")

    method = normalize_method(config.method)
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}, got {method}")

    if config.distance not in DISTANCES:
        raise ValueError(f"distance must be one of {DISTANCES}, got {config.distance}")

    estimand = config.estimand.lower()
    if estimand not in ESTIMANDS:
        raise ValueError(f"estimand must be one of {ESTIMANDS}, got {estimand}")

    if method in PAIR_METHODS and estimand == "ate":
        raise ValueError(
            f"estimand 'ate' is not available for method '{method}'; "
            "use 'att' or 'atc', or a stratifying method"
        )

    if isinstance(config.ratio, bool) or int(config.ratio) != config.ratio or config.ratio < 1:
        raise ValueError(f"ratio must be a positive integer, got {config.ratio}")

    if config.discard not in DISCARD_OPTIONS:
        raise ValueError(f"discard must be one of {DISCARD_OPTIONS}, got {config.discard}")

    needs_scores = method == "subclass" or config.discard != "none"
    if needs_scores and config.distance != "propensity":
        raise ValueError(
            f"method '{method}' with discard '{config.discard}' requires "
            "distance='propensity'"
        )

    if config.distance == "propensity" and config.propensity_col is None:
        if config.propensity_model not in PROPENSITY_MODELS:
            raise ValueError(
                f"propensity_model must be one of {PROPENSITY_MODELS}, got {config.propensity_model}"
            )
        if config.cv_folds is not None and config.cv_folds < 2:
            raise ValueError(f"cv_folds must be at least 2, got {config.cv_folds}")

    if config.order not in ORDERS:
        raise ValueError(f"order must be one of {ORDERS}, got {config.order}")

    if config.order_retries < 1:
        raise ValueError(f"order_retries must be at least 1, got {config.order_retries}")

    if config.subclass_count < 1:
        raise ValueError(f"subclass_count must be positive, got {config.subclass_count}")

    if config.tolerance <= 0:
        raise ValueError(f"tolerance must be positive, got {config.tolerance}")

    if config.max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {config.max_iter}")

    if config.mahalanobis_covariance not in ("pooled", "control"):
        raise ValueError(
            f"mahalanobis_covariance must be 'pooled' or 'control', got {config.mahalanobis_covariance}"
        )

    if config.balance_order not in BALANCE_ORDERS:
        raise ValueError(
            f"balance_order must be one of {BALANCE_ORDERS}, got {config.balance_order}"
        )

    validate_caliper(config.caliper)

    logger.debug("Matcher configuration validation successful")
    return replace(config, method=method, estimand=estimand, ratio=int(config.ratio))


def validate_caliper(caliper) -> None:
    """Validate a caliper given as a number, 'auto', a mapping, or None.

    Raises:
        ValueError: If the caliper specification is invalid
    """
    if caliper is None:
        return
    if isinstance(caliper, str):
        if caliper.lower() != "auto":
            raise ValueError(f"Invalid caliper specification: {caliper}")
        return
    if isinstance(caliper, dict):
        for name, value in caliper.items():
            if isinstance(value, str) and name == "distance" and value.lower() == "auto":
                continue
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"Caliper for '{name}' must be a positive number, got {value}")
        return
    if not isinstance(caliper, (int, float)) or caliper <= 0:
        raise ValueError(
            f"Invalid caliper specification: {caliper}. "
            "Must be a positive number, 'auto', a mapping, or None."
        )
