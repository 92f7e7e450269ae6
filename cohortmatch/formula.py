"""Covariate formula handling.

Covariates are given as patsy term expressions (``"age"``, ``"C(race)"``,
``"I(age**2)"``, ``"age:educ"``). This module parses ``"treat ~ ..."``
formulas and expands term lists into the numeric design matrices used for
distances, propensity models and balance statistics.
"""

from typing import List, Sequence, Tuple

import pandas as pd
import patsy

from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)


def parse_formula(formula: str) -> Tuple[str, List[str]]:
    """Split a ``"treat ~ x1 + x2"`` formula into treatment column and terms.

    Args:
        formula: Formula with the treatment indicator on the left-hand side

    Returns:
        Tuple of (treatment column, list of right-hand-side term expressions)

    Raises:
        ValueError: If the formula has no '~' or an empty side
    """
    if "~" not in formula:
        raise ValueError("Formula must contain '~' separating treatment and covariates.")

    lhs, rhs = formula.split("~", 1)
    lhs = lhs.strip()
    if not lhs:
        raise ValueError("Formula has no treatment variable on the left-hand side.")

    desc = patsy.ModelDesc.from_formula(rhs)
    terms = [term.name() for term in desc.rhs_termlist if term.factors]
    if not terms:
        raise ValueError(f"Formula '{formula}' has no covariate terms.")

    return lhs, terms


def build_design_matrix(
    data: pd.DataFrame,
    terms: Sequence[str],
    intercept: bool = False,
) -> pd.DataFrame:
    """Expand covariate terms into a numeric design matrix.

    Without an intercept every level of the first categorical term gets its
    own indicator column, which is what balance tables report. The
    propensity model asks for the full-rank coding with an intercept.

    Args:
        data: DataFrame containing the raw columns referenced by the terms
        terms: Patsy term expressions
        intercept: Whether to include the intercept column

    Returns:
        DataFrame of design columns indexed like ``data``

    Raises:
        ValueError: If a term cannot be evaluated or produces missing values
    """
    if not terms:
        raise ValueError("At least one covariate term is required.")

    rhs = " + ".join(terms)
    rhs = rhs if intercept else f"{rhs} - 1"

    try:
        design = patsy.dmatrix(rhs, data, NA_action="raise", return_type="dataframe")
    except patsy.PatsyError as e:
        if "missing values" in str(e).lower():
            raise ValueError(
                "Covariates contain missing values (NaN). Please handle missing "
                "values before matching."
            ) from e
        raise ValueError(f"Error evaluating covariate terms '{rhs}': {e}") from e

    design.index = data.index
    logger.debug(f"Design matrix for {len(terms)} terms has {design.shape[1]} columns")
    return design


def is_binary(values: pd.Series) -> bool:
    """True if a column only takes the values 0 and 1."""
    unique = pd.unique(values.dropna())
    return len(unique) <= 2 and set(unique).issubset({0, 1})
