"""
Test suite for report assembly in cohortmatch.reporting module.
"""

import json

import numpy as np
import pandas as pd
import pytest

from cohortmatch.datatypes import Diagnostic
from cohortmatch.reporting import assemble_balance_report, order_terms


@pytest.fixture
def balance():
    return pd.DataFrame(
        {
            "variable": ["age", "bmi", "income"],
            "smd_before": [0.3, -0.9, 0.5],
            "smd_after": [0.05, np.nan, -0.2],
            "var_ratio_after": [1.1, 0.9, 1.4],
        }
    )


@pytest.fixture
def aggregates():
    return {"max_smd_before": 0.9, "max_smd_after": np.nan, "n_terms": 3}


class TestOrdering:
    """Tests for term ordering policies."""

    def test_input_order(self, balance):
        assert order_terms(balance, "input")["variable"].tolist() == ["age", "bmi", "income"]

    def test_descending_absolute_smd(self, balance):
        ordered = order_terms(balance, "smd_before")
        assert ordered["variable"].tolist() == ["bmi", "income", "age"]

    def test_missing_smd_last(self, balance):
        ordered = order_terms(balance, "smd_after")
        assert ordered["variable"].tolist() == ["income", "age", "bmi"]

    def test_alphabetical(self, balance):
        shuffled = balance.iloc[[2, 0, 1]]
        ordered = order_terms(shuffled, "alphabetical")
        assert ordered["variable"].tolist() == ["age", "bmi", "income"]
        assert ordered.index.tolist() == [0, 1, 2]

    def test_unknown_order(self, balance):
        with pytest.raises(ValueError):
            order_terms(balance, "random")


class TestAssembleBalanceReport:
    """Tests for the assembled balance report."""

    def test_field_selection(self, balance, aggregates):
        report = assemble_balance_report(balance, aggregates, fields=["smd_after"])
        assert list(report.terms.columns) == ["variable", "smd_after"]

    def test_missing_field(self, balance, aggregates):
        with pytest.raises(ValueError, match="ecdf_max_after"):
            assemble_balance_report(balance, aggregates, fields=["ecdf_max_after"])

    def test_report_does_not_modify_input(self, balance, aggregates):
        original = balance.copy()
        assemble_balance_report(balance, aggregates, order="smd_before", fields=["smd_before"])
        pd.testing.assert_frame_equal(balance, original)

    def test_to_dict_is_json_serialisable(self, balance, aggregates):
        sample_sizes = pd.DataFrame(
            {"Control": {"All": 10, "Matched (ESS)": 4.5}, "Treated": {"All": 5, "Matched (ESS)": 5.0}}
        )
        subclass = {0: pd.DataFrame({"variable": ["age"], "smd": [0.1]})}
        diagnostics = [Diagnostic("warning", "discarded", "2 units discarded", units=[np.int64(3), 7])]

        report = assemble_balance_report(
            balance, aggregates, sample_sizes=sample_sizes, subclass_balance=subclass,
            order="smd_after", diagnostics=diagnostics,
        )
        payload = report.to_dict()

        json.dumps(payload)
        assert payload["order"] == "smd_after"
        assert payload["terms"][2]["smd_after"] is None
        assert payload["aggregates"]["max_smd_after"] is None
        assert payload["sample_sizes"]["Control"]["All"] == 10
        assert payload["subclass_balance"][0][0]["variable"] == "age"
        assert payload["diagnostics"][0]["units"] == [3, 7]
