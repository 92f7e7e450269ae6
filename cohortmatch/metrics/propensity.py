"""Propensity score estimation for cohortmatch.

This module fits the scoring model that maps covariates to the probability
of treatment, and provides utilities for assessing propensity score overlap.
Logistic and probit links are fitted by maximum likelihood with statsmodels;
scikit-learn estimators (a random forest or any user-supplied classifier
with ``predict_proba``) are also accepted.
"""

import functools
import warnings
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from sklearn.base import clone
from sklearn.ensemble import RandomForestClassifier
from sklearn.exceptions import ConvergenceWarning as SklearnConvergenceWarning
from sklearn.metrics import roc_auc_score
from sklearn.model_selection import StratifiedKFold, cross_val_predict
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from cohortmatch.exceptions import ModelFitError
from cohortmatch.formula import build_design_matrix
from cohortmatch.utils.logging import get_logger

# Create a logger for this module
logger = get_logger(__name__)

STATSMODELS_LINKS = {"logistic": sm.Logit, "probit": sm.Probit}


def suppress_warnings(func):
    """Decorator to suppress warnings in a function."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return func(*args, **kwargs)

    return wrapper


def estimate_propensity_scores(
    data: pd.DataFrame,
    treatment_col: str,
    covariates: List[str],
    model_type: str = "logistic",
    model_params: Optional[Dict[str, Any]] = None,
    cv: Optional[int] = None,
    random_state: Optional[int] = None,
) -> Dict[str, Any]:
    """Estimate propensity scores with the requested scoring model.

    Args:
        data: DataFrame containing the data
        treatment_col: Name of the column containing treatment indicators
        covariates: Covariate terms used by the propensity model
        model_type: "logistic", "probit", "random_forest" or "custom"
        model_params: Parameters for the model. For "custom", ``model`` holds
            a scikit-learn style classifier or a callable returning scores
        cv: Number of folds for cross-fitted scores (scikit-learn models only)
        random_state: Random state for reproducibility

    Returns:
        Dictionary with 'propensity_scores' (Series aligned to data.index),
        'model', 'model_type' and 'metrics'

    Raises:
        ModelFitError: If the model does not converge
    """
    model_params = dict(model_params) if model_params else {}
    y = data[treatment_col].astype(int).to_numpy()

    logger.info(f"Estimating propensity scores using {model_type} model")
    logger.debug(
        f"Treatment prevalence: {np.mean(y):.3f} ({np.sum(y)} out of {len(y)} units)"
    )

    if model_type in STATSMODELS_LINKS:
        X = build_design_matrix(data, covariates, intercept=True)
        scores, model = _fit_glm(X, y, model_type, covariates, model_params)
    elif model_type in ("random_forest", "custom"):
        X = build_design_matrix(data, covariates, intercept=False)
        estimator = get_propensity_model(model_type, model_params, random_state)
        if callable(estimator) and not hasattr(estimator, "predict_proba"):
            scores, model = _score_with_callable(estimator, X, covariates), estimator
        else:
            scores, model = _fit_sklearn(X, y, estimator, covariates, cv, random_state)
    else:
        raise ValueError(f"Unknown model type: {model_type}")

    scores = np.asarray(scores, dtype=float)
    if np.any((scores < 0) | (scores > 1)) or np.any(~np.isfinite(scores)):
        raise ModelFitError(
            f"{model_type} model produced scores outside [0, 1]", covariates=covariates
        )

    metrics = {"auc": roc_auc_score(y, scores)}
    logger.info(f"Propensity score estimation complete. AUC: {metrics['auc']:.3f}")

    return {
        "propensity_scores": pd.Series(scores, index=data.index, name="distance"),
        "model": model,
        "model_type": model_type,
        "metrics": metrics,
    }


def get_propensity_model(
    model_type: str,
    model_params: Optional[Dict[str, Any]] = None,
    random_state: Optional[int] = None,
) -> Any:
    """Create a scikit-learn propensity model based on the specified type.

    Returns:
        A scikit-learn compatible model instance, or the user-supplied scorer
    """
    model_params = dict(model_params) if model_params else {}

    if model_type == "random_forest":
        if random_state is not None:
            model_params.setdefault("random_state", random_state)
        return RandomForestClassifier(n_estimators=model_params.pop("n_estimators", 100),
                                      **model_params)
    if model_type == "custom":
        if "model" not in model_params:
            raise ValueError(
                "For custom model type, you must provide a 'model' in model_params"
            )
        return model_params["model"]
    raise ValueError(f"Unknown model type: {model_type}")


def _fit_glm(
    X: pd.DataFrame,
    y: np.ndarray,
    model_type: str,
    covariates: List[str],
    model_params: Dict[str, Any],
):
    """Fit a logit or probit model by maximum likelihood."""
    max_iter = model_params.get("max_iter", 100)
    model_cls = STATSMODELS_LINKS[model_type]
    logger.debug(f"Fitting {model_cls.__name__} with {X.shape[1]} design columns")

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = model_cls(y, X).fit(disp=0, maxiter=max_iter)
        except (PerfectSeparationError, np.linalg.LinAlgError) as e:
            raise ModelFitError(
                f"{model_type} propensity model failed: {e}", covariates=covariates
            ) from e

    retvals = getattr(result, "mle_retvals", None) or {}
    iterations = retvals.get("iterations")
    if any(issubclass(w.category, PerfectSeparationWarning) for w in caught):
        raise ModelFitError(
            f"{model_type} propensity model: perfect separation detected",
            covariates=covariates,
            iterations=iterations,
        )
    if not retvals.get("converged", True) or any(
        issubclass(w.category, ConvergenceWarning) for w in caught
    ):
        raise ModelFitError(
            f"{model_type} propensity model did not converge after {iterations} iterations",
            covariates=covariates,
            iterations=iterations,
        )

    logger.debug(f"{model_type} model converged in {iterations} iterations")
    return result.predict(X), result


def _fit_sklearn(
    X: pd.DataFrame,
    y: np.ndarray,
    estimator: Any,
    covariates: List[str],
    cv: Optional[int],
    random_state: Optional[int],
):
    """Fit a scikit-learn classifier, optionally returning cross-fitted scores."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        model = clone(estimator)
        model.fit(X.to_numpy(), y)
        if cv:
            logger.debug(f"Cross-fitting propensity scores with {cv} folds")
            splitter = StratifiedKFold(n_splits=cv, shuffle=True, random_state=random_state)
            scores = cross_val_predict(
                clone(estimator), X.to_numpy(), y, cv=splitter, method="predict_proba"
            )[:, 1]
        else:
            scores = model.predict_proba(X.to_numpy())[:, 1]

    if any(issubclass(w.category, SklearnConvergenceWarning) for w in caught):
        raise ModelFitError(
            f"{type(estimator).__name__} propensity model did not converge",
            covariates=covariates,
            iterations=getattr(model, "n_iter_", None),
        )
    return scores, model


def _score_with_callable(scorer: Callable, X: pd.DataFrame, covariates: List[str]) -> np.ndarray:
    """Score units with a user-supplied function of the design matrix."""
    try:
        scores = np.asarray(scorer(X), dtype=float).ravel()
    except (ValueError, TypeError, ArithmeticError) as e:
        raise ModelFitError(f"User-supplied scorer failed: {e}", covariates=covariates) from e
    if len(scores) != len(X):
        raise ModelFitError(
            f"User-supplied scorer returned {len(scores)} scores for {len(X)} units",
            covariates=covariates,
        )
    return scores


def assess_common_support(
    propensity_scores: np.ndarray, treatment: np.ndarray, bins: int = 20
) -> Dict[str, Any]:
    """Assess common support between treatment and control propensity distributions.

    Args:
        propensity_scores: Array of propensity scores
        treatment: Binary treatment indicator array
        bins: Number of bins for histogram

    Returns:
        Dictionary with common support metrics
    """
    propensity_scores = np.asarray(propensity_scores, dtype=float)
    treatment = np.asarray(treatment)

    if len(propensity_scores) != len(treatment):
        raise ValueError("Propensity scores and treatment must have the same length")

    if len(propensity_scores) == 0:
        raise ValueError("Propensity scores array is empty")

    if np.any(propensity_scores < 0) or np.any(propensity_scores > 1):
        raise ValueError(
            f"Propensity scores must be between 0 and 1, found min={np.min(propensity_scores)}, "
            f"max={np.max(propensity_scores)}"
        )

    if bins < 2:
        raise ValueError(f"Number of bins must be at least 2, got {bins}")

    treated_ps = propensity_scores[treatment == 1]
    control_ps = propensity_scores[treatment == 0]

    if len(treated_ps) == 0:
        raise ValueError("No treatment units found (no 1s in treatment array)")

    if len(control_ps) == 0:
        raise ValueError("No control units found (no 0s in treatment array)")

    min_treated, max_treated = np.min(treated_ps), np.max(treated_ps)
    min_control, max_control = np.min(control_ps), np.max(control_ps)

    cs_min = max(min_treated, min_control)
    cs_max = min(max_treated, max_control)

    all_range = (min(min_treated, min_control), max(max_treated, max_control))
    if all_range[1] == all_range[0]:
        overlap = 1.0
        hist_treated = hist_control = bin_edges = None
    else:
        hist_treated, bin_edges = np.histogram(
            treated_ps, bins=bins, range=all_range, density=True
        )
        hist_control, _ = np.histogram(control_ps, bins=bins, range=all_range, density=True)
        bin_width = (all_range[1] - all_range[0]) / bins
        overlap = float(np.sum(np.minimum(hist_treated, hist_control) * bin_width))

    return {
        "common_support_min": cs_min,
        "common_support_max": cs_max,
        "overlap_coefficient": overlap,
        "hist_treated": hist_treated,
        "hist_control": hist_control,
        "bin_edges": bin_edges,
    }


@suppress_warnings
def assess_propensity_overlap(
    propensity_scores: pd.Series,
    treatment: pd.Series,
) -> Dict[str, Any]:
    """Assess the overlap of propensity scores between treatment and control groups.

    Returns:
        Dictionary with overlap metrics:
        - ks_statistic: Kolmogorov-Smirnov statistic (smaller is better)
        - ks_pvalue: p-value for the KS test
        - overlap_coefficient: Overlap coefficient between distributions (higher is better)
        - common_support_range: Range of common support as a tuple (min, max)
        - treated_range / control_range: Score range of each group
        - prop_treated_in_cs / prop_control_in_cs: Share of each group inside common support
    """
    ps = np.asarray(propensity_scores, dtype=float)
    treat = np.asarray(treatment)

    treated_ps = ps[treat == 1]
    control_ps = ps[treat == 0]

    ks_statistic, ks_pvalue = stats.ks_2samp(treated_ps, control_ps)
    common_support = assess_common_support(ps, treat)

    cs_min = common_support["common_support_min"]
    cs_max = common_support["common_support_max"]

    return {
        "ks_statistic": ks_statistic,
        "ks_pvalue": ks_pvalue,
        "overlap_coefficient": common_support["overlap_coefficient"],
        "common_support_range": (cs_min, cs_max),
        "treated_range": (np.min(treated_ps), np.max(treated_ps)),
        "control_range": (np.min(control_ps), np.max(control_ps)),
        "prop_in_common_support": ((ps >= cs_min) & (ps <= cs_max)).mean(),
        "prop_treated_in_cs": ((treated_ps >= cs_min) & (treated_ps <= cs_max)).mean(),
        "prop_control_in_cs": ((control_ps >= cs_min) & (control_ps <= cs_max)).mean(),
    }
