"""Distance calculation functions for matching algorithms.

This module provides functions for calculating distances between treatment and control units,
which are used by the matching algorithms.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from scipy.special import logit
from sklearn.preprocessing import StandardScaler

from cohortmatch.datatypes import DistanceMatrix
from cohortmatch.exceptions import SingularCovarianceError
from cohortmatch.utils.logging import get_logger

# Create a logger for this module
logger = get_logger(__name__)

# Covariance matrices with a larger condition number are treated as singular
MAX_CONDITION_NUMBER = 1e12


def calculate_distance_matrix(
    X_treat: np.ndarray,
    X_control: np.ndarray,
    method: str = "euclidean",
    standardize: bool = True,
    weights: np.ndarray | None = None,
    cov_matrix: np.ndarray | None = None,
    logit_transform: bool = False,
    covariance: str = "pooled",
    feature_names: Sequence[str] | None = None,
) -> np.ndarray:
    """Calculate distance matrix between treatment and control groups.

    Args:
        X_treat: Array of treatment group features, shape (n_treatment, n_features)
        X_control: Array of control group features, shape (n_control, n_features)
        method: Distance calculation method ('euclidean', 'mahalanobis', 'propensity')
        standardize: Whether to standardize features before euclidean distances
        weights: Feature weights for euclidean distance, shape (n_features,)
        cov_matrix: Covariance matrix for Mahalanobis distance, shape (n_features, n_features)
        logit_transform: Whether to compare propensity scores on the logit scale
        covariance: Mahalanobis covariance estimated on 'pooled' units or 'control' units
        feature_names: Names of the features, reported in errors

    Returns:
        Distance matrix, shape (n_treatment, n_control)

    Raises:
        SingularCovarianceError: If the Mahalanobis covariance cannot be inverted
    """
    logger.debug(f"Calculating distance matrix using method: {method}")
    logger.debug(
        f"Input dimensions: X_treat {X_treat.shape}, X_control {X_control.shape}"
    )

    if X_treat.ndim != 2 or X_control.ndim != 2:
        raise ValueError("X_treat and X_control must be 2D arrays")

    if X_treat.shape[1] != X_control.shape[1]:
        raise ValueError("X_treat and X_control must have same number of features")

    if method not in {"euclidean", "mahalanobis", "propensity"}:
        raise ValueError(f"Unknown distance method: {method}")

    if weights is not None:
        logger.debug(f"Using feature weights with shape: {weights.shape}")
        if len(weights) != X_treat.shape[1]:
            raise ValueError("Weights length must match number of features")

    if method == "propensity":
        return _calculate_propensity_distances(X_treat, X_control, logit_transform)

    if method == "euclidean":
        if standardize:
            logger.debug("Standardizing data before distance calculation")
            X_treat, X_control = _standardize_data(X_treat, X_control)

        if weights is not None:
            logger.debug("Applying feature weights to Euclidean distance calculation")
            weights_sqrt = np.sqrt(weights.ravel())
            X_treat = X_treat * weights_sqrt
            X_control = X_control * weights_sqrt

        distance_matrix = cdist(X_treat, X_control, metric="euclidean")
    else:
        if cov_matrix is None:
            if covariance == "control":
                logger.debug("Estimating covariance matrix from control units")
                cov_matrix = np.cov(X_control, rowvar=False)
            else:
                logger.debug("Estimating pooled covariance matrix from all units")
                cov_matrix = np.cov(np.vstack((X_treat, X_control)), rowvar=False)
        cov_inv = _invert_covariance(np.atleast_2d(cov_matrix), feature_names)
        distance_matrix = cdist(X_treat, X_control, metric="mahalanobis", VI=cov_inv)

    logger.debug(f"Distance matrix calculated with shape: {distance_matrix.shape}")
    if distance_matrix.size:
        logger.debug(
            f"Distance matrix stats: min={distance_matrix.min():.4f}, "
            f"mean={distance_matrix.mean():.4f}, max={distance_matrix.max():.4f}"
        )

    return distance_matrix


def propensity_distance_matrix(
    scores: pd.Series,
    treatment: pd.Series,
    logit_transform: bool = False,
) -> DistanceMatrix:
    """Pairwise |score(t) - score(c)| between treated rows and control columns."""
    treat_mask = (treatment == 1).to_numpy()
    values = np.asarray(scores, dtype=float)
    matrix = calculate_distance_matrix(
        values[treat_mask].reshape(-1, 1),
        values[~treat_mask].reshape(-1, 1),
        method="propensity",
        logit_transform=logit_transform,
    )
    return DistanceMatrix(
        matrix,
        treatment.index[treat_mask].tolist(),
        treatment.index[~treat_mask].tolist(),
        method="propensity",
    )


def covariate_distance_matrix(
    X: pd.DataFrame,
    treatment: pd.Series,
    method: str = "mahalanobis",
    standardize: bool = True,
    weights: Optional[dict] = None,
    covariance: str = "pooled",
) -> DistanceMatrix:
    """Mahalanobis or euclidean distances over the covariate design matrix."""
    treat_mask = (treatment == 1).to_numpy()
    values = X.to_numpy(dtype=float)

    weight_array = None
    if weights:
        weight_array = np.array([weights.get(col, 1.0) for col in X.columns])

    matrix = calculate_distance_matrix(
        values[treat_mask],
        values[~treat_mask],
        method=method,
        standardize=standardize,
        weights=weight_array,
        covariance=covariance,
        feature_names=list(X.columns),
    )
    return DistanceMatrix(
        matrix,
        X.index[treat_mask].tolist(),
        X.index[~treat_mask].tolist(),
        method=method,
    )


def _invert_covariance(cov_matrix: np.ndarray, feature_names: Sequence[str] | None) -> np.ndarray:
    """Invert a covariance matrix, refusing singular or near-singular ones."""
    names = list(feature_names) if feature_names is not None else []
    condition_number = np.linalg.cond(cov_matrix)
    if not np.isfinite(condition_number) or condition_number > MAX_CONDITION_NUMBER:
        raise SingularCovarianceError(
            f"Mahalanobis covariance matrix is singular (condition number "
            f"{condition_number:.3g}); drop collinear or constant covariates",
            covariates=names,
            condition_number=float(condition_number),
        )
    try:
        return np.linalg.inv(cov_matrix)
    except np.linalg.LinAlgError as e:
        raise SingularCovarianceError(
            f"Mahalanobis covariance matrix inversion failed: {e}",
            covariates=names,
            condition_number=float(condition_number),
        ) from e


def _standardize_data(
    X_treat: np.ndarray, X_control: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Standardize treatment and control data using sklearn's StandardScaler."""
    X_combined = np.vstack((X_treat, X_control))
    scaler = StandardScaler()
    scaler.fit(X_combined)

    zero_std_features = np.where(scaler.scale_ < 1e-10)[0]
    if len(zero_std_features) > 0:
        logger.warning(
            f"Found {len(zero_std_features)} feature(s) with near-zero standard deviation. "
            f"These will be set to zero in the standardized data."
        )

    return scaler.transform(X_treat), scaler.transform(X_control)


def _calculate_propensity_distances(
    X_treat: np.ndarray, X_control: np.ndarray, logit_transform: bool
) -> np.ndarray:
    """Calculate absolute score differences, optionally on the logit scale."""
    X_treat_1d = X_treat.ravel()
    X_control_1d = X_control.ravel()

    if X_treat_1d.size and X_control_1d.size:
        logger.debug(
            f"Propensity score ranges - Treatment: [{X_treat_1d.min():.4f}, {X_treat_1d.max():.4f}], "
            f"Control: [{X_control_1d.min():.4f}, {X_control_1d.max():.4f}]"
        )

    if logit_transform:
        logger.debug("Applying logit transformation with clipping to [0.001, 0.999]")
        X_treat_1d = logit(np.clip(X_treat_1d, 0.001, 0.999))
        X_control_1d = logit(np.clip(X_control_1d, 0.001, 0.999))

    return np.abs(X_treat_1d[:, None] - X_control_1d[None, :])
