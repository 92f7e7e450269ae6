"""
Reporting functionality for cohortmatch.

This module packages balance statistics, aggregates, sample sizes and
subclass breakdowns into a single ordered structure for external rendering,
and exports matching results as CSV tables. It performs no computation
beyond ordering and selecting.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from cohortmatch.datatypes import Diagnostic
from cohortmatch.utils.logging import get_logger

# Set up logger
logger = get_logger(__name__)

if TYPE_CHECKING:
    from cohortmatch.datatypes import MatchResults

REPORT_ORDERS = ["input", "smd_before", "smd_after", "alphabetical"]


@dataclass
class BalanceReport:
    """Balance tables ordered and selected for presentation.

    Attributes:
        terms: Per-term balance statistics in the requested order
        aggregates: Aggregate balance metrics (max |SMD|, max eCDF, ...)
        sample_sizes: Sample size table by group
        subclass_balance: Per-stratum balance tables, if computed
        diagnostics: Non-fatal conditions recorded while matching
        order: Ordering policy applied to ``terms``
    """
    terms: pd.DataFrame
    aggregates: Dict[str, float]
    sample_sizes: Optional[pd.DataFrame] = None
    subclass_balance: Optional[Dict[int, pd.DataFrame]] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    order: str = "input"

    def to_dict(self) -> Dict[str, Any]:
        """Plain-Python representation suitable for JSON serialisation."""

        def clean(value: Any) -> Any:
            if isinstance(value, (float, np.floating)):
                return None if np.isnan(value) else float(value)
            if isinstance(value, np.integer):
                return int(value)
            return value

        def records(df: pd.DataFrame) -> List[Dict[str, Any]]:
            return [{k: clean(v) for k, v in row.items()} for row in df.to_dict(orient="records")]

        result: Dict[str, Any] = {
            "order": self.order,
            "terms": records(self.terms),
            "aggregates": {k: clean(v) for k, v in self.aggregates.items()},
            "diagnostics": [
                {"level": d.level, "code": d.code, "message": d.message,
                 "units": [clean(u) for u in d.units]}
                for d in self.diagnostics
            ],
        }
        if self.sample_sizes is not None:
            result["sample_sizes"] = {
                group: {k: clean(v) for k, v in col.items()}
                for group, col in self.sample_sizes.to_dict().items()
            }
        if self.subclass_balance is not None:
            result["subclass_balance"] = {
                int(stratum): records(table) for stratum, table in self.subclass_balance.items()
            }
        return result


def order_terms(balance: pd.DataFrame, order: str = "input") -> pd.DataFrame:
    """Reorder balance rows.

    Args:
        balance: Balance table with a 'variable' column
        order: 'input' (as computed), 'smd_before' or 'smd_after' (descending
            |SMD|) or 'alphabetical'

    Returns:
        Reordered copy with a fresh index
    """
    if order == "input":
        ordered = balance
    elif order in ("smd_before", "smd_after"):
        ordered = balance.sort_values(
            order, key=lambda s: s.abs(), ascending=False, kind="stable", na_position="last"
        )
    elif order == "alphabetical":
        ordered = balance.sort_values("variable", kind="stable")
    else:
        raise ValueError(f"Order '{order}' not recognized. Must be one of: {', '.join(REPORT_ORDERS)}")
    return ordered.reset_index(drop=True)


def assemble_balance_report(
    balance: pd.DataFrame,
    aggregates: Dict[str, float],
    sample_sizes: Optional[pd.DataFrame] = None,
    subclass_balance: Optional[Dict[int, pd.DataFrame]] = None,
    order: str = "input",
    fields: Optional[Sequence[str]] = None,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> BalanceReport:
    """Assemble a balance report from precomputed tables.

    Args:
        balance: Per-term balance statistics
        aggregates: Aggregate metrics from summarize_balance
        sample_sizes: Sample size table
        subclass_balance: Per-stratum balance tables
        order: Term ordering policy
        fields: Balance columns to keep besides 'variable'; all columns if None
        diagnostics: Diagnostics to attach

    Returns:
        BalanceReport

    Raises:
        ValueError: If the order is unknown or a requested field is missing
    """
    terms = order_terms(balance, order)

    if fields is not None:
        missing = [f for f in fields if f not in terms.columns]
        if missing:
            raise ValueError(f"Balance fields not available: {missing}")
        terms = terms[["variable"] + [f for f in fields if f != "variable"]]

    logger.debug(f"Assembled balance report with {len(terms)} terms ordered by '{order}'")
    return BalanceReport(
        terms=terms,
        aggregates=dict(aggregates),
        sample_sizes=sample_sizes,
        subclass_balance=subclass_balance,
        diagnostics=list(diagnostics or []),
        order=order,
    )


def export_tables(
    results: "MatchResults", output_dir: str, prefix: str = ""
) -> Dict[str, str]:
    """Export tables from matching results to CSV files.

    Args:
        results: MatchResults object containing matching results
        output_dir: Directory where tables will be saved
        prefix: Prefix to add to filenames

    Returns:
        Dictionary mapping table names to file paths
    """
    # Create timestamp for filenames
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    if prefix:
        prefix = f"{prefix}_"

    # Create output directory if it doesn't exist
    os.makedirs(output_dir, exist_ok=True)

    table_paths = {}

    def path_for(name: str) -> str:
        return os.path.join(output_dir, f"{prefix}{name}_{timestamp}.csv")

    # 1. Matched data
    table_paths["matched_data"] = path_for("matched_data")
    results.matched_data.to_csv(table_paths["matched_data"], index=True)

    # 2. Balance statistics, in report order when a report exists
    if results.balance_report is not None:
        table_paths["balance_statistics"] = path_for("balance_statistics")
        results.balance_report.terms.to_csv(table_paths["balance_statistics"], index=False)
    elif results.balance_statistics is not None:
        table_paths["balance_statistics"] = path_for("balance_statistics")
        results.balance_statistics.to_csv(table_paths["balance_statistics"], index=False)

    # 3. Match pairs or strata
    if results.pairs:
        table_paths["match_pairs"] = path_for("match_pairs")
        results.get_match_pairs().to_csv(table_paths["match_pairs"], index=False)
    if results.assignment is not None:
        table_paths["match_groups"] = path_for("match_groups")
        results.get_match_groups().to_csv(table_paths["match_groups"], index=False)

    # 4. Summaries
    if results.balance_summary is not None:
        table_paths["balance_summary"] = path_for("balance_summary")
        pd.DataFrame([results.balance_summary]).to_csv(table_paths["balance_summary"], index=False)

    if results.rubin_statistics is not None:
        table_paths["rubin_statistics"] = path_for("rubin_statistics")
        pd.DataFrame([results.rubin_statistics]).to_csv(table_paths["rubin_statistics"], index=False)

    if results.sample_sizes is not None:
        table_paths["sample_sizes"] = path_for("sample_sizes")
        results.sample_sizes.to_csv(table_paths["sample_sizes"], index=True)

    # 5. Subclass balance as one long table
    if results.subclass_balance:
        table_paths["subclass_balance"] = path_for("subclass_balance")
        long_table = pd.concat(
            [table.assign(subclass=stratum) for stratum, table in results.subclass_balance.items()],
            ignore_index=True,
        )
        long_table.to_csv(table_paths["subclass_balance"], index=False)

    if results.diagnostics:
        table_paths["diagnostics"] = path_for("diagnostics")
        pd.DataFrame([
            {"level": d.level, "code": d.code, "message": d.message, "n_units": len(d.units)}
            for d in results.diagnostics
        ]).to_csv(table_paths["diagnostics"], index=False)

    logger.info(f"Exported {len(table_paths)} tables to {output_dir}")
    return table_paths
