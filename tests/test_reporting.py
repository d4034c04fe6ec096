"""
Tracker snapshot tests: row shape, annualized value, fiscal month labels
and per-month achieved totals.
"""

import pytest

from opexhub.services import monitoring_service, reporting, transition_engine


class TestAnnualizedValue:
    def test_prefers_actual_savings(self, users):
        created = transition_engine.create_initiative(
            {"title": "Actuals reported", "expected_savings": 500000, "actual_savings": 650000},
            creator_id=users["initiator"].id,
        )
        assert reporting.annualized_value(created) == 650000

    def test_falls_back_to_expected(self, initiative):
        assert reporting.annualized_value(initiative) == 1200000

    def test_nothing_reported(self, users):
        created = transition_engine.create_initiative({"title": "Bare"}, creator_id=users["initiator"].id)
        assert reporting.annualized_value(created) is None


class TestTrackerRows:
    def test_row_fields(self, initiative):
        (row,) = reporting.tracker_rows("NDS")
        assert row["sr_no"] == 1
        assert row["title"] == "Reduce steam consumption in dryer section"
        assert row["discipline"] == "MECH"
        assert row["initiative_number"] == initiative.initiative_number
        assert row["start_date"] == "2025-04-01"
        assert row["end_date"] == "2026-03-31"
        assert row["capex_cost"] == 250000
        assert row["status"] == "pending"
        assert row["annualized_value"] == 1200000
        assert row["remarks"] == "Site Head Approval"

    def test_leader_is_initiator_until_lead_named(self, initiative, users, advance_to):
        assert reporting.tracker_rows()[0]["initiative_leader"] == users["initiator"].full_name
        advance_to(initiative.id, 6)
        assert reporting.tracker_rows()[0]["initiative_leader"] == users["lead"].full_name

    def test_site_filter_and_numbering(self, initiative, users):
        transition_engine.create_initiative(
            {"title": "Second", "site": "NDS"}, creator_id=users["initiator"].id,
        )
        transition_engine.create_initiative(
            {"title": "Elsewhere", "site": "BRC"}, creator_id=users["initiator"].id,
        )
        assert [r["sr_no"] for r in reporting.tracker_rows("NDS")] == [1, 2]
        assert [r["title"] for r in reporting.tracker_rows("BRC")] == ["Elsewhere"]
        assert len(reporting.tracker_rows("all")) == 3

    def test_empty_site(self, directory):
        assert reporting.tracker_rows("NDS") == []


class TestMonthlyTracker:
    def test_fiscal_labels(self):
        labels = [label for label, _ in reporting.fiscal_month_keys(2025)]
        assert labels == [
            "Apr.25", "May.25", "June.25", "Jul.25", "Aug.25", "Sept.25",
            "Oct.25", "Nov.25", "Dec.25", "Jan.26", "Feb.26", "Mar.26",
        ]

    def test_month_keys_cross_calendar_year(self):
        keys = dict(reporting.fiscal_month_keys(2025))
        assert keys["Apr.25"] == "2025-04"
        assert keys["Mar.26"] == "2026-03"

    def test_achieved_totals_per_month(self, initiative, advance_to):
        advance_to(initiative.id, 9)
        monitoring_service.record_entry(initiative.id, "2025-07", "Steam", 100, "STLD", achieved=80)
        monitoring_service.record_entry(initiative.id, "2025-07", "Power", 50, "STLD", achieved=45)
        monitoring_service.record_entry(initiative.id, "2026-02", "Steam", 100, "STLD", achieved=95)
        # outside the fiscal year
        monitoring_service.record_entry(initiative.id, "2026-04", "Steam", 100, "STLD", achieved=99)

        sheets = reporting.monthly_tracker(2025, "NDS")
        assert len(sheets) == 12
        assert sheets["Jul.25"][0]["achieved_total"] == pytest.approx(125)
        assert sheets["Feb.26"][0]["achieved_total"] == pytest.approx(95)
        assert sheets["Aug.25"][0]["achieved_total"] is None
        assert sheets["Jul.25"][0]["monitoring_month"] == "2025-07"

    def test_every_sheet_lists_every_initiative(self, initiative, users):
        transition_engine.create_initiative({"title": "Second"}, creator_id=users["initiator"].id)
        sheets = reporting.monthly_tracker(2025)
        assert all(len(rows) == 2 for rows in sheets.values())

    def test_no_initiatives(self, directory):
        sheets = reporting.monthly_tracker(2025, "NDS")
        assert list(sheets) == [label for label, _ in reporting.fiscal_month_keys(2025)]
        assert all(rows == [] for rows in sheets.values())
