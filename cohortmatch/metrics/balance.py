"""
Balance assessment metrics for cohortmatch.

This module provides functions for assessing balance between treatment and control groups
before and after matching, including standardized mean differences, variance ratios,
eCDF statistics, percent improvement and aggregate summaries.

"Before" statistics use unit weights on all units; "after" statistics use the matching
weights. Standardization factors for the SMD are always taken from the unmatched sample.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Assignment
from cohortmatch.formula import is_binary
from cohortmatch.utils.logging import get_logger
from cohortmatch.weights import effective_sample_size

# Create a logger for this module
logger = get_logger(__name__)

# Columns holding statistics whose percent improvement is reported
IMPROVEMENT_STATS = ["smd", "var_ratio", "ecdf_mean", "ecdf_max"]


def weighted_mean(x: np.ndarray, w: np.ndarray) -> float:
    """Weighted mean; NaN when the weights sum to zero."""
    total = np.sum(w)
    if len(x) == 0 or total == 0:
        return np.nan
    return float(np.sum(w * x) / total)


def weighted_variance(x: np.ndarray, w: np.ndarray) -> float:
    """Unbiased weighted variance with reliability weights.

    ``sum w (x - m)^2 * sum w / ((sum w)^2 - sum w^2)``, which reduces to the
    sample variance (ddof=1) for unit weights.
    """
    sum_w = np.sum(w)
    denom = sum_w ** 2 - np.sum(w ** 2)
    if len(x) == 0 or sum_w == 0 or denom <= 0:
        return np.nan
    m = np.sum(w * x) / sum_w
    return float(np.sum(w * (x - m) ** 2) * sum_w / denom)


def standardization_factor(x_treat: np.ndarray, x_control: np.ndarray, estimand: str = "att") -> float:
    """SD used to standardize mean differences, from the unmatched sample.

    ATT uses the treated SD, ATC the control SD and ATE the pooled
    ``sqrt((s_t^2 + s_c^2) / 2)``.
    """
    var_t = np.var(x_treat, ddof=1) if len(x_treat) > 1 else 0.0
    var_c = np.var(x_control, ddof=1) if len(x_control) > 1 else 0.0

    if estimand == "att":
        return float(np.sqrt(var_t))
    if estimand == "atc":
        return float(np.sqrt(var_c))
    return float(np.sqrt((var_t + var_c) / 2))


def standardized_mean_difference(mean_diff: float, factor: float) -> float:
    """Signed SMD; a zero factor gives 0 for a zero difference and +/-inf otherwise."""
    if np.isnan(mean_diff):
        return np.nan
    if factor == 0:
        if mean_diff == 0:
            return 0.0
        return np.inf if mean_diff > 0 else -np.inf
    return mean_diff / factor


def variance_ratio(x_treat: np.ndarray, w_treat: np.ndarray,
                   x_control: np.ndarray, w_control: np.ndarray) -> float:
    """Weighted variance ratio Var(treated) / Var(control)."""
    var_t = weighted_variance(x_treat, w_treat)
    var_c = weighted_variance(x_control, w_control)

    if np.isnan(var_t) or np.isnan(var_c):
        return np.nan
    # Handle zero variance
    if var_t == 0 and var_c == 0:
        return 1.0
    if var_c == 0:
        return np.inf
    return var_t / var_c


def weighted_ecdf(x: np.ndarray, w: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Weighted empirical CDF of ``x`` evaluated at ``points``."""
    order = np.argsort(x, kind="stable")
    xs = x[order]
    cum_w = np.cumsum(w[order]) / np.sum(w)
    idx = np.searchsorted(xs, points, side="right")
    return np.where(idx > 0, cum_w[idx - 1], 0.0)


def ecdf_difference(x_treat: np.ndarray, w_treat: np.ndarray,
                    x_control: np.ndarray, w_control: np.ndarray) -> Tuple[float, float]:
    """Mean and maximum absolute difference between the two weighted eCDFs.

    The eCDFs are evaluated at every distinct value observed among units
    with positive weight in either group.

    Returns:
        Tuple of (ecdf_mean, ecdf_max)
    """
    if np.sum(w_treat) == 0 or np.sum(w_control) == 0:
        return np.nan, np.nan

    points = np.unique(np.concatenate([x_treat[w_treat > 0], x_control[w_control > 0]]))
    diffs = np.abs(
        weighted_ecdf(x_treat, w_treat, points) - weighted_ecdf(x_control, w_control, points)
    )
    return float(np.mean(diffs)), float(np.max(diffs))


def percent_improvement(before: Any, after: Any) -> Any:
    """Percent improvement ``100 * (|before| - |after|) / |before|``.

    Works on scalars and arrays. Undefined (NaN) where ``before`` is 0.
    """
    before_abs = np.abs(np.asarray(before, dtype=float))
    after_abs = np.abs(np.asarray(after, dtype=float))
    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.where(before_abs == 0, np.nan, 100 * (before_abs - after_abs) / before_abs)
    if result.ndim == 0:
        return float(result)
    return result


def _term_stats(
    x_treat: np.ndarray,
    w_treat: np.ndarray,
    x_control: np.ndarray,
    w_control: np.ndarray,
    factor: float,
    binary: bool,
) -> Dict[str, float]:
    mean_t = weighted_mean(x_treat, w_treat)
    mean_c = weighted_mean(x_control, w_control)
    mean_diff = mean_t - mean_c
    ecdf_mean, ecdf_max = ecdf_difference(x_treat, w_treat, x_control, w_control)
    return {
        "mean_treated": mean_t,
        "mean_control": mean_c,
        "mean_diff": mean_diff,
        "smd": standardized_mean_difference(mean_diff, factor),
        "var_ratio": np.nan if binary else variance_ratio(x_treat, w_treat, x_control, w_control),
        "ecdf_mean": ecdf_mean,
        "ecdf_max": ecdf_max,
    }


def calculate_balance_stats(
    X: pd.DataFrame,
    treatment: pd.Series,
    weights: pd.Series,
    estimand: str = "att",
) -> pd.DataFrame:
    """Calculate balance statistics before and after matching.

    Args:
        X: Numeric design matrix, one column per term, for all units
        treatment: Binary treatment indicator aligned with X
        weights: Matching weights aligned with X (0 for unmatched units)
        estimand: 'att', 'ate' or 'atc'; selects the SMD standardization factor

    Returns:
        DataFrame with one row per term, in column order of X
    """
    treat_mask = (treatment == 1).to_numpy()
    w_after = weights.reindex(X.index).fillna(0).to_numpy(dtype=float)
    ones = np.ones(len(X))

    if not (w_after[treat_mask] > 0).any() or not (w_after[~treat_mask] > 0).any():
        logger.warning(
            "Matched sample lacks treated or control units with positive weight. "
            "Balance statistics after matching cannot be calculated."
        )

    results = []
    for term in X.columns:
        x = X[term].to_numpy(dtype=float)
        x_t, x_c = x[treat_mask], x[~treat_mask]
        binary = is_binary(X[term])
        factor = standardization_factor(x_t, x_c, estimand)

        before = _term_stats(x_t, ones[treat_mask], x_c, ones[~treat_mask], factor, binary)
        after = _term_stats(x_t, w_after[treat_mask], x_c, w_after[~treat_mask], factor, binary)

        row = {"variable": term, "type": "binary" if binary else "continuous"}
        row.update({f"{k}_before": v for k, v in before.items()})
        row.update({f"{k}_after": v for k, v in after.items()})
        results.append(row)

    df = pd.DataFrame(results)
    if df.empty:
        return df

    df["smd_improvement"] = percent_improvement(df["smd_before"], df["smd_after"])
    with np.errstate(divide="ignore", invalid="ignore"):
        df["var_ratio_improvement"] = percent_improvement(
            np.log(df["var_ratio_before"].to_numpy(dtype=float)),
            np.log(df["var_ratio_after"].to_numpy(dtype=float)),
        )
    df["ecdf_mean_improvement"] = percent_improvement(df["ecdf_mean_before"], df["ecdf_mean_after"])
    df["ecdf_max_improvement"] = percent_improvement(df["ecdf_max_before"], df["ecdf_max_after"])

    logger.debug(f"Balance statistics computed for {len(df)} terms")
    return df


def summarize_balance(balance_df: pd.DataFrame, threshold: float = 0.1) -> Dict[str, float]:
    """Calculate aggregate balance metrics across all terms.

    Args:
        balance_df: DataFrame with balance statistics from calculate_balance_stats
        threshold: |SMD| at or above which a term counts as imbalanced

    Returns:
        Dictionary with overall balance metrics:
        - max_smd_before / max_smd_after: Largest |SMD|
        - mean_smd_before / mean_smd_after: Average |SMD|
        - max_ecdf_before / max_ecdf_after: Largest eCDF max difference
        - n_above_threshold_before / n_above_threshold_after: Terms with |SMD| >= threshold
        - prop_balanced_before / prop_balanced_after: Share of terms with |SMD| < threshold
    """
    logger.debug("Calculating overall balance metrics")

    results: Dict[str, float] = {"n_terms": len(balance_df), "threshold": threshold}
    for stage in ("before", "after"):
        smd = balance_df[f"smd_{stage}"].abs() if len(balance_df) else pd.Series(dtype=float)
        ecdf = balance_df[f"ecdf_max_{stage}"] if len(balance_df) else pd.Series(dtype=float)
        results.update({
            f"max_smd_{stage}": smd.max(),
            f"mean_smd_{stage}": smd.mean(),
            f"max_ecdf_{stage}": ecdf.max(),
            f"n_above_threshold_{stage}": int((smd >= threshold).sum()),
            f"prop_balanced_{stage}": (smd < threshold).mean() if len(smd) else np.nan,
        })

    logger.debug(
        f"Overall balance metrics: max |SMD| before={results['max_smd_before']:.3f}, "
        f"after={results['max_smd_after']:.3f}"
    )
    return results


def calculate_rubin_rules(balance_df: pd.DataFrame) -> Dict[str, float]:
    """Calculate Rubin's rules for assessing balance.

    Rubin suggested that for balanced matching:
    1. Standardized mean differences should be < 0.25 in absolute value
    2. Variance ratios should be between 0.5 and 2

    Terms without a variance ratio (binary terms) only enter the SMD rule.

    Args:
        balance_df: DataFrame with balance statistics

    Returns:
        Dictionary with Rubin's rules results
    """
    logger.debug("Calculating Rubin's rules for balance assessment")

    has_after_stats = len(balance_df) > 0 and not balance_df["smd_after"].isna().all()
    stage = "after" if has_after_stats else "before"
    if not has_after_stats:
        logger.warning(
            "No after-matching statistics available, using before-matching statistics for Rubin's rules"
        )

    valid_df = balance_df[~balance_df[f"smd_{stage}"].isna()]
    smd_small = valid_df[f"smd_{stage}"].abs() < 0.25
    vr = valid_df[f"var_ratio_{stage}"]
    has_vr = ~vr.isna()
    vr_good = (vr >= 0.5) & (vr <= 2)

    n_smd_small = int(smd_small.sum())
    n_var_ratio_good = int(vr_good.sum())
    n_both_good = int((smd_small & (vr_good | ~has_vr)).sum())
    n_valid = len(valid_df)
    n_vr = int(has_vr.sum())

    pct_smd_small = 100 * n_smd_small / n_valid if n_valid > 0 else np.nan
    pct_var_ratio_good = 100 * n_var_ratio_good / n_vr if n_vr > 0 else np.nan
    pct_both_good = 100 * n_both_good / n_valid if n_valid > 0 else np.nan

    logger.debug(
        f"Rubin's rules results: {pct_smd_small:.1f}% have |SMD| < 0.25, "
        f"{pct_var_ratio_good:.1f}% have variance ratio between 0.5-2"
    )

    return {
        "n_variables_total": len(balance_df),
        "n_smd_small": n_smd_small,
        "pct_smd_small": pct_smd_small,
        "n_var_ratio_good": n_var_ratio_good,
        "pct_var_ratio_good": pct_var_ratio_good,
        "n_both_good": n_both_good,
        "pct_both_good": pct_both_good,
    }


def calculate_subclass_balance(
    X: pd.DataFrame,
    treatment: pd.Series,
    assignment: Assignment,
    estimand: str = "att",
) -> Dict[int, pd.DataFrame]:
    """Balance inside each stratum.

    Means are unweighted within a stratum, since all members of a group share
    the same weight there. SMDs use the same unmatched-sample standardization
    factors as the overall table.

    Returns:
        Mapping of stratum id to a DataFrame with one row per term
    """
    treat_mask = (treatment == 1)
    factors = {
        term: standardization_factor(
            X.loc[treat_mask, term].to_numpy(dtype=float),
            X.loc[~treat_mask, term].to_numpy(dtype=float),
            estimand,
        )
        for term in X.columns
    }

    tables: Dict[int, pd.DataFrame] = {}
    for stratum_id, members in assignment.strata().items():
        members_t = [uid for uid in members if treat_mask[uid]]
        members_c = [uid for uid in members if not treat_mask[uid]]
        rows = []
        for term in X.columns:
            mean_t = X.loc[members_t, term].mean()
            mean_c = X.loc[members_c, term].mean()
            rows.append({
                "variable": term,
                "n_treated": len(members_t),
                "n_control": len(members_c),
                "mean_treated": mean_t,
                "mean_control": mean_c,
                "mean_diff": mean_t - mean_c,
                "smd": standardized_mean_difference(mean_t - mean_c, factors[term]),
            })
        tables[stratum_id] = pd.DataFrame(rows)

    logger.debug(f"Subclass balance computed for {len(tables)} strata")
    return tables


def calculate_sample_sizes(
    treatment: pd.Series,
    weights: pd.Series,
    discarded: Optional[List[Any]] = None,
) -> pd.DataFrame:
    """Sample size table by group.

    Rows: All, Matched (ESS), Matched (Unweighted), Unmatched, Discarded.
    Unmatched counts retained units with zero weight; discarded units are
    counted separately.
    """
    discarded_mask = treatment.index.isin(discarded or [])
    weights = weights.reindex(treatment.index).fillna(0)

    table = {}
    for label, group_mask in (("Control", treatment == 0), ("Treated", treatment == 1)):
        w = weights[group_mask]
        table[label] = {
            "All": int(group_mask.sum()),
            "Matched (ESS)": effective_sample_size(w),
            "Matched (Unweighted)": int((w > 0).sum()),
            "Unmatched": int(((weights == 0) & group_mask & ~discarded_mask).sum()),
            "Discarded": int((group_mask & discarded_mask).sum()),
        }

    return pd.DataFrame(table)
