"""
Datatypes for cohortmatch.

This module defines the data structures shared by the matching pipeline:
the configuration, the distance matrix, the stratum assignment produced by
the solvers, diagnostics, and the result container.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from cohortmatch.formula import parse_formula

# Flat-view value for units that belong to no stratum
UNASSIGNED = -1


@dataclass
class MatcherConfig:
    """Unified configuration for Matcher with flattened parameters."""
    # Core parameters
    treatment_col: str
    covariates: List[str]

    # Matching parameters
    method: str = "nearest"  # "none", "nearest", "optimal_pair", "optimal_full", "exact", "cem", "subclass"
    distance: str = "propensity"  # "propensity", "mahalanobis", "euclidean"
    ratio: int = 1
    replace: bool = False
    caliper: Optional[Union[float, str, Dict[str, float]]] = None  # number, "auto", or {term: threshold}
    caliper_scale: float = 0.2  # Scaling factor for automatic caliper calculation
    discard: str = "none"  # "none", "treated", "control", "both"
    exact_match_cols: List[str] = field(default_factory=list)
    cutpoints: Optional[Dict[str, Union[int, str, List[float]]]] = None
    subclass_count: int = 6
    estimand: str = "att"  # "att", "ate", "atc"
    order: str = "largest"  # "largest", "smallest", "random", "data"
    order_retries: int = 1
    tolerance: float = 1e-7
    max_iter: int = 100000
    random_state: Optional[int] = None

    # Distance parameters
    standardize: bool = True
    weights: Optional[Dict[str, float]] = None
    mahalanobis_covariance: str = "pooled"  # "pooled", "control"

    # Propensity parameters
    propensity_col: Optional[str] = None
    propensity_model: str = "logistic"  # "logistic", "probit", "random_forest", "custom"
    model_params: Dict[str, Any] = field(default_factory=dict)
    logit_transform: bool = False
    cv_folds: Optional[int] = None

    # Balance parameters
    calculate_balance: bool = True
    balance_terms: List[str] = field(default_factory=list)
    balance_order: str = "input"  # "input", "smd_before", "smd_after", "alphabetical"
    max_standardized_diff: float = 0.1

    # Output parameters
    keep_unmatched: bool = False

    @classmethod
    def from_formula(cls, formula: str, **kwargs: Any) -> "MatcherConfig":
        """Build a configuration from a ``"treat ~ x1 + x2"`` formula."""
        treatment_col, covariates = parse_formula(formula)
        return cls(treatment_col=treatment_col, covariates=covariates, **kwargs)


@dataclass
class DistanceMatrix:
    """Distances between treated (rows) and control (columns) units.

    Infeasible pairs hold ``np.inf``.
    """
    values: np.ndarray
    treated_ids: List[Any]
    control_ids: List[Any]
    method: str = "propensity"

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=float)
        if self.values.shape != (len(self.treated_ids), len(self.control_ids)):
            raise ValueError(
                f"Distance values have shape {self.values.shape}, expected "
                f"({len(self.treated_ids)}, {len(self.control_ids)})"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def n_feasible(self) -> int:
        """Number of finite (feasible) pairs."""
        return int(np.isfinite(self.values).sum())

    def copy(self) -> "DistanceMatrix":
        return DistanceMatrix(self.values.copy(), list(self.treated_ids),
                              list(self.control_ids), self.method)

    def transpose(self) -> "DistanceMatrix":
        """Swap the roles of rows and columns."""
        return DistanceMatrix(self.values.T.copy(), list(self.control_ids),
                              list(self.treated_ids), self.method)

    def subset(self, row_ids: Iterable[Any], col_ids: Iterable[Any]) -> "DistanceMatrix":
        """Restrict the matrix to the given row and column ids, keeping order."""
        row_pos = {uid: i for i, uid in enumerate(self.treated_ids)}
        col_pos = {uid: j for j, uid in enumerate(self.control_ids)}
        rows = [uid for uid in row_ids]
        cols = [uid for uid in col_ids]
        values = self.values[np.ix_([row_pos[r] for r in rows], [col_pos[c] for c in cols])]
        return DistanceMatrix(values, rows, cols, self.method)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.treated_ids, columns=self.control_ids)


@dataclass
class Assignment:
    """Stratum memberships produced by an assignment solver.

    ``memberships`` maps every unit id to the set of stratum ids it belongs
    to. An empty set means the unit is unassigned. Without replacement each
    unit belongs to at most one stratum.

    For pair-based strategies ``match_groups`` maps each focal unit to the
    ordered list of units matched to it, and ``match_distances`` holds the
    distance of every pair in the same order as :attr:`pairs`.
    """
    method: str
    treated_ids: List[Any]
    control_ids: List[Any]
    memberships: Dict[Any, FrozenSet[int]]
    match_groups: Dict[Any, List[Any]] = field(default_factory=dict)
    match_distances: List[float] = field(default_factory=list)
    unmatched: List[Any] = field(default_factory=list)
    pair_based: bool = False
    focal_treated: bool = True

    @classmethod
    def from_strata(
        cls,
        method: str,
        treated_ids: List[Any],
        control_ids: List[Any],
        strata: Dict[int, Iterable[Any]],
        **kwargs: Any,
    ) -> "Assignment":
        """Build an assignment from a mapping of stratum id to member ids."""
        members: Dict[Any, set] = {uid: set() for uid in list(treated_ids) + list(control_ids)}
        for stratum_id, units in strata.items():
            for uid in units:
                members[uid].add(int(stratum_id))
        memberships = {uid: frozenset(s) for uid, s in members.items()}
        return cls(method=method, treated_ids=list(treated_ids),
                   control_ids=list(control_ids), memberships=memberships, **kwargs)

    @property
    def pairs(self) -> List[Tuple[Any, Any]]:
        """Matched pairs as (treated_id, control_id) tuples."""
        result = []
        for focal_id, others in self.match_groups.items():
            for other_id in others:
                if self.focal_treated:
                    result.append((focal_id, other_id))
                else:
                    result.append((other_id, focal_id))
        return result

    @property
    def total_distance(self) -> float:
        return float(np.sum(self.match_distances)) if self.match_distances else 0.0

    @property
    def has_replacement(self) -> bool:
        return any(len(s) > 1 for s in self.memberships.values())

    def strata(self) -> Dict[int, List[Any]]:
        """Members of every stratum, keyed by stratum id in ascending order."""
        result: Dict[int, List[Any]] = {}
        for uid, stratum_ids in self.memberships.items():
            for stratum_id in stratum_ids:
                result.setdefault(stratum_id, []).append(uid)
        return dict(sorted(result.items()))

    @property
    def n_strata(self) -> int:
        return len(self.strata())

    def is_assigned(self, unit_id: Any) -> bool:
        return len(self.memberships.get(unit_id, ())) > 0

    def assigned_ids(self) -> List[Any]:
        return [uid for uid, s in self.memberships.items() if s]

    def unassigned_ids(self) -> List[Any]:
        return [uid for uid, s in self.memberships.items() if not s]

    def stratum_of(self, unit_id: Any) -> int:
        """Single stratum of a unit, or ``UNASSIGNED``.

        Raises:
            ValueError: If the unit belongs to several strata (replacement)
        """
        stratum_ids = self.memberships[unit_id]
        if not stratum_ids:
            return UNASSIGNED
        if len(stratum_ids) > 1:
            raise ValueError(f"Unit {unit_id!r} belongs to {len(stratum_ids)} strata")
        return next(iter(stratum_ids))

    def usage_counts(self) -> Dict[Any, int]:
        """Number of strata each unit belongs to."""
        return {uid: len(s) for uid, s in self.memberships.items()}

    def to_series(self, index: Optional[pd.Index] = None) -> pd.Series:
        """Flat stratum id per unit; missing for unassigned or reused units."""
        if index is None:
            index = pd.Index(list(self.memberships.keys()))
        values = []
        for uid in index:
            stratum_ids = self.memberships.get(uid, frozenset())
            values.append(next(iter(stratum_ids)) if len(stratum_ids) == 1 else pd.NA)
        return pd.Series(values, index=index, dtype="Int64", name="subclass")

    def drop_invalid_strata(self) -> "Assignment":
        """Return a copy without strata that lack a treated or a control unit."""
        treated = set(self.treated_ids)
        counts: Dict[int, Counter] = {}
        for uid, stratum_ids in self.memberships.items():
            group = "treated" if uid in treated else "control"
            for stratum_id in stratum_ids:
                counts.setdefault(stratum_id, Counter())[group] += 1
        invalid = {s for s, c in counts.items() if c["treated"] == 0 or c["control"] == 0}
        if not invalid:
            return self

        memberships = {uid: frozenset(s - invalid) for uid, s in self.memberships.items()}

        # Pair groups whose focal unit lost its stratum go too, with their distances
        match_groups: Dict[Any, List[Any]] = {}
        match_distances: List[float] = []
        offset = 0
        for focal_id, others in self.match_groups.items():
            group_distances = self.match_distances[offset:offset + len(others)]
            offset += len(others)
            if memberships.get(focal_id):
                match_groups[focal_id] = list(others)
                match_distances.extend(group_distances)

        return Assignment(
            method=self.method,
            treated_ids=list(self.treated_ids),
            control_ids=list(self.control_ids),
            memberships=memberships,
            match_groups=match_groups,
            match_distances=match_distances,
            unmatched=list(self.unmatched),
            pair_based=self.pair_based,
            focal_treated=self.focal_treated,
        )


@dataclass
class Diagnostic:
    """A non-fatal condition recorded while matching."""
    level: str  # "info", "warning"
    code: str
    message: str
    units: List[Any] = field(default_factory=list)


@dataclass
class MatchResults:
    """Container for all matching results.

    Attributes:
        original_data: The original DataFrame before matching
        matched_data: Original rows augmented with 'distance', 'weights' and
            'subclass' columns; rows with zero weight are dropped unless
            the configuration keeps them
        assignment: Stratum memberships from the solver
        weights: Analysis weight per unit, aligned with original_data
    """
    original_data: pd.DataFrame
    matched_data: pd.DataFrame
    assignment: Optional[Assignment]
    weights: pd.Series

    distance_matrix: Optional[DistanceMatrix] = None
    discarded: List[Any] = field(default_factory=list)
    estimand_restricted: bool = False

    # Propensity score results
    propensity_scores: Optional[pd.Series] = None
    propensity_model: Optional[Any] = None
    propensity_metrics: Optional[Dict[str, Any]] = None

    # Balance assessment results
    balance_statistics: Optional[pd.DataFrame] = None
    balance_summary: Optional[Dict[str, float]] = None
    rubin_statistics: Optional[Dict[str, float]] = None
    sample_sizes: Optional[pd.DataFrame] = None
    subclass_balance: Optional[Dict[int, pd.DataFrame]] = None
    balance_report: Optional[Any] = None

    diagnostics: List[Diagnostic] = field(default_factory=list)

    # Configuration used
    config: Optional[MatcherConfig] = None

    @property
    def pairs(self) -> List[Tuple[Any, Any]]:
        return self.assignment.pairs if self.assignment is not None else []

    @property
    def match_groups(self) -> Dict[Any, List[Any]]:
        return self.assignment.match_groups if self.assignment is not None else {}

    @property
    def match_distances(self) -> List[float]:
        return self.assignment.match_distances if self.assignment is not None else []

    def get_match_summary(self) -> Dict[str, Union[int, float]]:
        """Get summary statistics about the matching.

        Returns:
            Dictionary with match summary statistics
        """
        treatment_col = self.config.treatment_col
        treatment = self.original_data[treatment_col]
        positive = self.weights > 0
        result = {
            "n_treatment_orig": int((treatment == 1).sum()),
            "n_control_orig": int((treatment == 0).sum()),
            "n_treatment_matched": int(((treatment == 1) & positive).sum()),
            "n_control_matched": int(((treatment == 0) & positive).sum()),
            "n_discarded": len(self.discarded),
            "n_pairs": len(self.pairs),
            "n_strata": self.assignment.n_strata if self.assignment is not None else 0,
        }

        if result["n_treatment_matched"] > 0:
            result["match_ratio"] = result["n_control_matched"] / result["n_treatment_matched"]
        else:
            result["match_ratio"] = 0

        return result

    def get_balance_summary(self) -> pd.DataFrame:
        """Get summary of balance statistics.

        Raises:
            ValueError: If balance statistics are not available
        """
        if self.balance_statistics is None:
            raise ValueError("Balance statistics not available")
        return self.balance_statistics

    def get_match_pairs(self) -> pd.DataFrame:
        """Get matched pairs as a DataFrame with 'treatment_id' and 'control_id' columns."""
        if not self.pairs:
            return pd.DataFrame(columns=["treatment_id", "control_id", "distance"])

        distances = self.match_distances
        rows = []
        for i, (t_id, c_id) in enumerate(self.pairs):
            rows.append({
                "treatment_id": t_id,
                "control_id": c_id,
                "distance": distances[i] if i < len(distances) else np.nan,
            })
        return pd.DataFrame(rows)

    def get_match_groups(self) -> pd.DataFrame:
        """Get strata as a long DataFrame with one row per (stratum, unit)."""
        if self.assignment is None:
            return pd.DataFrame(columns=["subclass", "unit_id", "treated", "stratum_size"])

        treated = set(self.assignment.treated_ids)
        rows = []
        for stratum_id, members in self.assignment.strata().items():
            for uid in members:
                rows.append({
                    "subclass": stratum_id,
                    "unit_id": uid,
                    "treated": uid in treated,
                    "stratum_size": len(members),
                })

        if not rows:
            return pd.DataFrame(columns=["subclass", "unit_id", "treated", "stratum_size"])

        return pd.DataFrame(rows)
