"""Tests for the pure budget helpers"""
from types import SimpleNamespace

import pytest

from budget_helpers import (
    BudgetLine,
    active_tranche,
    activity_serials,
    exceeds_headroom,
    grant_display_key,
    is_allocated,
    is_committed,
    is_pending,
    normalize_reporting_status,
    normalize_state,
    parse_expenses,
    sum_expenses,
    tally_usage,
    tranche_headroom,
)


def project(cost, funding_status, status="pending", state="Khartoum"):
    return SimpleNamespace(expenses=[{"total_cost": cost}], funding_status=funding_status, status=status, state=state)


class TestExpenses:

    def test_list_passes_through(self):
        expenses = [{"activity": "Food", "total_cost": 10}]
        assert parse_expenses(expenses) == expenses

    def test_json_string(self):
        assert parse_expenses('[{"total_cost": 5}]') == [{"total_cost": 5}]

    @pytest.mark.parametrize("value", [None, "", "not json", '{"total_cost": 5}', 42])
    def test_malformed_yields_empty(self, value):
        assert parse_expenses(value) == []

    def test_sum_ignores_missing_and_bad_costs(self):
        expenses = [{"total_cost": 10}, {"total_cost": "5.5"}, {"activity": "x"}, {"total_cost": "bad"}, "junk"]
        assert sum_expenses(expenses) == 15.5

    def test_sum_of_json_string(self):
        assert sum_expenses('[{"total_cost": 100}, {"total_cost": 50}]') == 150


class TestNormalizeState:

    def test_aliases(self):
        assert normalize_state(" Al Jazeera ") == "Al Jazirah"
        assert normalize_state("gadarif") == "Gadaref"
        assert normalize_state("Sinar") == "Sennar"

    def test_plain_name_trimmed(self):
        assert normalize_state("  Khartoum ") == "Khartoum"

    @pytest.mark.parametrize("value", [None, "", "   ", 12])
    def test_empty(self, value):
        assert normalize_state(value) == ""


class TestGrantKeys:

    def test_fcdo_subgrants_collapse(self):
        assert grant_display_key("FCDO-HELP-S") == "FCDO"
        assert grant_display_key("FCDO-SHPR") == "FCDO"

    def test_other_grants_unchanged(self):
        assert grant_display_key(" P2H-2025-01 ") == "P2H-2025-01"

    def test_comma_separated_serials(self):
        assert activity_serials("A, B,,C") == ["A", "B", "C"]

    def test_json_list_with_objects(self):
        assert activity_serials('["A", {"id": "B"}, {"serial": "C"}, ""]') == ["A", "B", "C"]

    def test_json_encoded_string(self):
        assert activity_serials('"A,B"') == ["A", "B"]

    def test_none(self):
        assert activity_serials(None) == []


class TestClassification:

    def test_committed_is_case_insensitive(self):
        assert is_committed("COMMITTED")
        assert not is_committed("allocated")

    def test_allocated_is_pending(self):
        assert is_pending("allocated", "approved")

    def test_unassigned_pending_upload_is_pending(self):
        assert is_pending("unassigned", "pending")
        assert not is_pending("unassigned", "approved")
        assert not is_pending("committed", "pending")

    def test_allocated_only_classifier(self):
        assert is_allocated("Allocated")
        assert not is_allocated("unassigned")

    def test_tally_groups(self):
        projects = [
            project(100, "committed", "approved"),
            project(50, "allocated"),
            project(25, "unassigned"),
            project(10, "unassigned", "completed"),
            project(7, "committed", state="Sennar"),
        ]
        lines = tally_usage(projects, key=lambda p: p.state)
        assert lines["Khartoum"].committed == 100
        assert lines["Khartoum"].pending == 75
        assert lines["Sennar"].committed == 7

    def test_tally_allocated_only_skips_unassigned_uploads(self):
        projects = [project(100, "committed"), project(50, "allocated"), project(25, "unassigned")]
        line = tally_usage(projects, allocated_only=True)[None]
        assert line.committed == 100
        assert line.pending == 50

    def test_tally_ungrouped(self):
        line = tally_usage([project(10, "committed")])[None]
        assert line.committed == 10
        assert line.pending == 0

    def test_budget_line_remaining(self):
        line = BudgetLine(total=1000, historical=100, committed=300, pending=50)
        assert line.remaining == 550


class TestTranches:

    def test_lowest_open_tranche(self):
        assert active_tranche([(1, "closed"), (3, "open"), (2, "open")]) == 2

    def test_latest_decision_when_none_open(self):
        assert active_tranche([(1, "closed"), (2, "closed")], 3) == 3

    def test_defaults_to_first(self):
        assert active_tranche([], None) == 1

    def test_headroom_is_cumulative(self):
        assert tranche_headroom([60000, 40000], 2, 50000) == 50000

    def test_headroom_floored_at_zero(self):
        assert tranche_headroom([100], 1, 500) == 0.0

    def test_no_cap_defined(self):
        assert tranche_headroom([60000], 2, 0) is None

    def test_exceeds_headroom_tolerates_float_noise(self):
        assert not exceeds_headroom(100, 1e-7, 100)
        assert exceeds_headroom(100, 1, 100)
        assert not exceeds_headroom(10 ** 9, 1, None)


class TestReportingStatus:

    @pytest.mark.parametrize("raw, expected", [
        ("Under Review", "in review"),
        ("COMPLETED", "completed"),
        (" partial ", "partial"),
        ("waiting", "waiting"),
        ("bogus", None),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_reporting_status(raw) == expected
