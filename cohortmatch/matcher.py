"""
Matcher implementation for cohortmatch.

This module provides the main Matcher class, which runs the matching pipeline:
propensity score estimation, distance calculation, constraint filtering, assignment,
weighting, balance assessment and report assembly.
"""

import json
import os
import pickle
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

# Solver modules register themselves on import
import cohortmatch.matching.exact  # noqa: F401
import cohortmatch.matching.full  # noqa: F401
import cohortmatch.matching.greedy  # noqa: F401
import cohortmatch.matching.optimal  # noqa: F401
import cohortmatch.matching.subclass  # noqa: F401
from cohortmatch.datatypes import (
    Assignment,
    Diagnostic,
    DistanceMatrix,
    MatcherConfig,
    MatchResults,
)
from cohortmatch.formula import build_design_matrix
from cohortmatch.matching.base import MatchingProblem, get_solver
from cohortmatch.matching.constraints import FilterResult, apply_constraints
from cohortmatch.matching.distances import covariate_distance_matrix, propensity_distance_matrix
from cohortmatch.metrics.balance import (
    calculate_balance_stats,
    calculate_rubin_rules,
    calculate_sample_sizes,
    calculate_subclass_balance,
    summarize_balance,
)
from cohortmatch.metrics.propensity import assess_propensity_overlap, estimate_propensity_scores
from cohortmatch.metrics.utils import get_caliper_for_matching
from cohortmatch.reporting import assemble_balance_report
from cohortmatch.utils.logging import get_logger
from cohortmatch.validation import DISTANCE_METHODS, validate_data, validate_matcher_config
from cohortmatch.weights import calculate_weights

# Create a logger for this module
logger = get_logger(__name__)


class Matcher:
    """Unified matcher for covariate matching and balance assessment."""

    def __init__(self, data: pd.DataFrame, config: MatcherConfig):
        """Initialize matcher with data and configuration.

        Args:
            data: DataFrame containing the data; it is copied, never modified
            config: Configuration settings
        """
        self.data = data.copy()
        self.results = None

        # Validate configuration and keep the normalized copy
        self.config = validate_matcher_config(config)

        # Validate input data
        validate_data(
            data=self.data,
            treatment_col=self.config.treatment_col,
            propensity_col=self.config.propensity_col,
            exact_match_cols=self.config.exact_match_cols,
        )

        logger.info(f"Initialized Matcher with {len(data)} observations")
        logger.debug(f"Treatment counts: {data[self.config.treatment_col].value_counts().to_dict()}")

    def match(self) -> "Matcher":
        """Perform matching according to configuration.

        Every call rebuilds all derived structures from the data and the
        configuration.

        Returns:
            Self, for method chaining

        Raises:
            ModelFitError: If the propensity model fails to converge
            SingularCovarianceError: If the Mahalanobis covariance is singular
            NonconvergenceError: If optimal full matching exhausts its budget
        """
        config = self.config
        logger.info(f"Starting matching with method: {config.method}")

        treatment = self.data[config.treatment_col].astype(int)
        design = build_design_matrix(self.data, config.covariates)
        diagnostics: List[Diagnostic] = []

        # Step 1: Propensity scores
        propensity_scores = None
        propensity_model = None
        propensity_metrics = None
        if self._needs_propensity():
            propensity_result = self._estimate_propensity(treatment)
            propensity_scores = propensity_result["propensity_scores"]
            propensity_model = propensity_result["model"]
            propensity_metrics = propensity_result["metrics"]

        # Step 2: Distance matrix
        distance_matrix = None
        if config.method in DISTANCE_METHODS:
            logger.info(f"Calculating distance matrix with method: {config.distance}")
            distance_matrix = self._calculate_distance_matrix(design, treatment, propensity_scores)

        # Step 3: Constraints
        filtered = self._apply_constraints(treatment, distance_matrix, propensity_scores)
        if filtered.discarded:
            diagnostics.append(Diagnostic(
                level="warning",
                code="discarded",
                message=f"{len(filtered.discarded)} units discarded outside common support",
                units=list(filtered.discarded),
            ))
        if filtered.estimand_restricted:
            diagnostics.append(Diagnostic(
                level="warning",
                code="estimand_restricted",
                message=(f"Units of the {config.estimand.upper()} target population were "
                         "discarded; estimates refer to the retained population"),
                units=list(filtered.discarded),
            ))

        # Step 4: Assignment and weights
        assignment = None
        if config.method == "none":
            weights = filtered.keep.astype(float).rename("weights")
        else:
            assignment = self._perform_matching(design, treatment, filtered, propensity_scores)
            if assignment.unmatched:
                diagnostics.append(Diagnostic(
                    level="warning",
                    code="infeasible_assignment",
                    message=f"{len(assignment.unmatched)} units have no feasible match",
                    units=list(assignment.unmatched),
                ))

            weight_result = calculate_weights(
                assignment,
                treatment,
                estimand=config.estimand,
                replace=config.replace and config.method == "nearest",
            )
            weights = weight_result.weights
            diagnostics.extend(weight_result.diagnostics)

        matched_data = self._build_matched_data(weights, assignment, propensity_scores)
        n_treat = int(((treatment == 1) & (weights > 0)).sum())
        n_control = int(((treatment == 0) & (weights > 0)).sum())
        logger.info(f"Matching complete: {n_treat} treatment and {n_control} control units "
                    "with positive weight")

        # Step 5: Balance
        balance = {}
        if config.calculate_balance:
            logger.info("Calculating balance statistics")
            balance = self._calculate_balance(design, treatment, weights, assignment,
                                              propensity_scores, filtered.discarded, diagnostics)

        self.results = MatchResults(
            original_data=self.data,
            matched_data=matched_data,
            assignment=assignment,
            weights=weights,
            distance_matrix=filtered.distances,
            discarded=filtered.discarded,
            estimand_restricted=filtered.estimand_restricted,
            propensity_scores=propensity_scores,
            propensity_model=propensity_model,
            propensity_metrics=propensity_metrics,
            balance_statistics=balance.get("balance_statistics"),
            balance_summary=balance.get("balance_summary"),
            rubin_statistics=balance.get("rubin_statistics"),
            sample_sizes=balance.get("sample_sizes"),
            subclass_balance=balance.get("subclass_balance"),
            balance_report=balance.get("balance_report"),
            diagnostics=diagnostics,
            config=config,
        )

        return self

    def get_results(self) -> MatchResults:
        """Get the results of matching.

        Returns:
            MatchResults object containing all results

        Raises:
            ValueError: If no matching has been performed yet
        """
        if self.results is None:
            raise ValueError("No matching has been performed yet.")
        return self.results

    def save_results(self, directory: str) -> "Matcher":
        """Save matching results to files.

        Args:
            directory: Directory to save results

        Returns:
            Self, for method chaining
        """
        if self.results is None:
            raise ValueError("No matching has been performed yet.")

        # Create directory if it doesn't exist
        Path(directory).mkdir(parents=True, exist_ok=True)

        self.results.matched_data.to_csv(os.path.join(directory, "matched_data.csv"), index=True)

        if self.results.pairs:
            self.results.get_match_pairs().to_csv(os.path.join(directory, "match_pairs.csv"), index=False)

        if self.results.assignment is not None:
            self.results.get_match_groups().to_csv(os.path.join(directory, "match_groups.csv"), index=False)

        if self.results.balance_statistics is not None:
            self.results.balance_statistics.to_csv(
                os.path.join(directory, "balance_statistics.csv"), index=False
            )

        if self.results.sample_sizes is not None:
            self.results.sample_sizes.to_csv(os.path.join(directory, "sample_sizes.csv"), index=True)

        if self.results.balance_report is not None:
            with open(os.path.join(directory, "balance_report.json"), "w") as f:
                json.dump(self.results.balance_report.to_dict(), f, indent=2, default=str)

        # Save configuration
        with open(os.path.join(directory, "config.pkl"), "wb") as f:
            pickle.dump(self.config, f)

        logger.info(f"Saved results to directory: {directory}")
        return self

    # Private methods for implementation details
    def _needs_propensity(self) -> bool:
        """Whether the configuration uses propensity scores at all."""
        config = self.config
        if config.propensity_col is not None or config.discard != "none":
            return True
        if config.method == "subclass":
            return True
        return config.distance == "propensity" and config.method not in ("exact", "cem")

    def _estimate_propensity(self, treatment: pd.Series) -> Dict[str, Any]:
        """Estimate propensity scores based on configuration, or read them from the data.

        Returns:
            Dictionary with propensity model, scores, and metrics
        """
        config = self.config

        if config.propensity_col is not None:
            logger.info(f"Using propensity scores from column '{config.propensity_col}'")
            scores = self.data[config.propensity_col].astype(float).rename("distance")
            return {
                "propensity_scores": scores,
                "model": None,
                "metrics": assess_propensity_overlap(scores, treatment),
            }

        logger.info("Estimating propensity scores")
        propensity_result = estimate_propensity_scores(
            data=self.data,
            treatment_col=config.treatment_col,
            covariates=config.covariates,
            model_type=config.propensity_model,
            model_params=config.model_params,
            cv=config.cv_folds,
            random_state=config.random_state,
        )
        metrics = dict(propensity_result.get("metrics", {}))
        metrics.update(assess_propensity_overlap(propensity_result["propensity_scores"], treatment))

        return {
            "propensity_scores": propensity_result["propensity_scores"],
            "model": propensity_result["model"],
            "metrics": metrics,
        }

    def _calculate_distance_matrix(
        self,
        design: pd.DataFrame,
        treatment: pd.Series,
        propensity_scores: Optional[pd.Series],
    ) -> DistanceMatrix:
        """Calculate the treated x control distance matrix for matching."""
        if self.config.distance == "propensity":
            if propensity_scores is None:
                raise ValueError("Propensity scores are required for propensity distance")
            return propensity_distance_matrix(
                propensity_scores, treatment, logit_transform=self.config.logit_transform
            )

        return covariate_distance_matrix(
            design,
            treatment,
            method=self.config.distance,
            standardize=self.config.standardize,
            weights=self.config.weights,
            covariance=self.config.mahalanobis_covariance,
        )

    def _apply_constraints(
        self,
        treatment: pd.Series,
        distance_matrix: Optional[DistanceMatrix],
        propensity_scores: Optional[pd.Series],
    ) -> FilterResult:
        """Resolve calipers and apply common support, caliper and exact constraints."""
        config = self.config

        caliper, covariate_calipers = None, {}
        if config.caliper is not None:
            if distance_matrix is None:
                logger.warning(f"Caliper is ignored for method '{config.method}'")
            else:
                caliper, covariate_calipers = get_caliper_for_matching(
                    config_caliper=config.caliper,
                    propensity_scores=(propensity_scores.to_numpy()
                                       if propensity_scores is not None else None),
                    distance_matrix=distance_matrix,
                    method=config.distance,
                    caliper_scale=config.caliper_scale,
                    logit_transform=config.logit_transform,
                )
                if caliper is not None:
                    logger.info(f"Using caliper: {caliper:.4f} for {config.distance} distance")

        return apply_constraints(
            treatment,
            distances=distance_matrix,
            scores=propensity_scores,
            data=self._caliper_data(covariate_calipers),
            discard=config.discard,
            caliper=caliper,
            covariate_calipers=covariate_calipers,
            exact_match_cols=config.exact_match_cols if distance_matrix is not None else None,
            estimand=config.estimand,
        )

    def _caliper_data(self, covariate_calipers: Dict[str, float]) -> pd.DataFrame:
        """Data with a column for every caliper term.

        Keys that are not data columns are evaluated as formula terms, so a
        caliper can be placed on a derived term such as ``I(age ** 2)``.

        Raises:
            ValueError: If a term cannot be evaluated or expands to more than
                one column
        """
        derived = [term for term in covariate_calipers if term not in self.data.columns]
        if not derived:
            return self.data

        caliper_data = self.data.copy()
        for term in derived:
            expanded = build_design_matrix(self.data, [term])
            if expanded.shape[1] != 1:
                raise ValueError(
                    f"Caliper term '{term}' expands to {expanded.shape[1]} columns; "
                    "calipers need a single numeric term"
                )
            caliper_data[term] = expanded.iloc[:, 0]
        logger.debug(f"Evaluated caliper terms: {derived}")
        return caliper_data

    def _perform_matching(
        self,
        design: pd.DataFrame,
        treatment: pd.Series,
        filtered: FilterResult,
        propensity_scores: Optional[pd.Series],
    ) -> Assignment:
        """Run the configured assignment solver on the retained units."""
        config = self.config
        retained = filtered.keep.index[filtered.keep.to_numpy()]
        retained_treatment = treatment.loc[retained]

        exact_data = None
        if config.exact_match_cols:
            exact_data = self.data.loc[retained, config.exact_match_cols]

        problem = MatchingProblem(
            treated_ids=retained_treatment.index[retained_treatment == 1].tolist(),
            control_ids=retained_treatment.index[retained_treatment == 0].tolist(),
            estimand=config.estimand,
            distances=filtered.distances,
            covariates=design.loc[retained],
            exact_data=exact_data,
            scores=propensity_scores.loc[retained] if propensity_scores is not None else None,
            ratio=config.ratio,
            replace=config.replace,
            order=config.order,
            order_retries=config.order_retries,
            rng=np.random.default_rng(config.random_state),
            tolerance=config.tolerance,
            max_iter=config.max_iter,
            subclass_count=config.subclass_count,
            cutpoints=config.cutpoints,
        )

        logger.info("Performing matching")
        return get_solver(config.method).solve(problem)

    def _build_matched_data(
        self,
        weights: pd.Series,
        assignment: Optional[Assignment],
        propensity_scores: Optional[pd.Series],
    ) -> pd.DataFrame:
        """Original rows augmented with distance, weights and subclass columns."""
        matched_data = self.data.copy()

        added = ["distance", "weights", "subclass"]
        clashes = [col for col in added if col in matched_data.columns]
        if clashes:
            logger.warning(f"Overwriting existing columns in matched data: {clashes}")

        if propensity_scores is not None:
            matched_data["distance"] = propensity_scores
        matched_data["weights"] = weights
        if assignment is not None:
            matched_data["subclass"] = assignment.to_series(matched_data.index)

        if not self.config.keep_unmatched:
            matched_data = matched_data[matched_data["weights"] > 0]

        logger.debug(f"Created matched dataset with {len(matched_data)} rows")
        return matched_data

    def _calculate_balance(
        self,
        design: pd.DataFrame,
        treatment: pd.Series,
        weights: pd.Series,
        assignment: Optional[Assignment],
        propensity_scores: Optional[pd.Series],
        discarded: List[Any],
        diagnostics: List[Diagnostic],
    ) -> Dict[str, Any]:
        """Calculate balance statistics and assemble the balance report.

        Returns:
            Dictionary with balance statistics results
        """
        config = self.config

        terms = design
        if config.balance_terms:
            extra = build_design_matrix(self.data, config.balance_terms)
            terms = pd.concat([design, extra.loc[:, ~extra.columns.isin(design.columns)]], axis=1)
        if propensity_scores is not None:
            terms = pd.concat([propensity_scores.rename("distance"), terms], axis=1)

        balance_statistics = calculate_balance_stats(terms, treatment, weights, config.estimand)
        balance_summary = summarize_balance(balance_statistics, config.max_standardized_diff)
        rubin_statistics = calculate_rubin_rules(balance_statistics)
        sample_sizes = calculate_sample_sizes(treatment, weights, discarded)

        subclass_balance = None
        if config.method == "subclass" and assignment is not None:
            subclass_balance = calculate_subclass_balance(terms, treatment, assignment, config.estimand)

        balance_report = assemble_balance_report(
            balance_statistics,
            balance_summary,
            sample_sizes=sample_sizes,
            subclass_balance=subclass_balance,
            order=config.balance_order,
            diagnostics=diagnostics,
        )

        logger.info(f"Max |SMD| before: {balance_summary['max_smd_before']:.3f}, "
                    f"after: {balance_summary['max_smd_after']:.3f}")
        if balance_summary["n_above_threshold_after"] > 0:
            logger.warning(f"{balance_summary['n_above_threshold_after']} terms have |SMD| >= "
                           f"{config.max_standardized_diff} after matching")

        return {
            "balance_statistics": balance_statistics,
            "balance_summary": balance_summary,
            "rubin_statistics": rubin_statistics,
            "sample_sizes": sample_sizes,
            "subclass_balance": subclass_balance,
            "balance_report": balance_report,
        }
