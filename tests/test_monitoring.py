"""
Monthly KPI monitoring tests: recording, derived deviation, the
finalize → finance-approval ordering, and the stage 9/10 hand-off.
"""

import pytest

from opexhub.core.exceptions import (
    AlreadyFinalizedError,
    DuplicateEntryError,
    NotFinalizedError,
    NotFoundError,
    StageGateError,
    ValidationError,
)
from opexhub.models import db
from opexhub.models.audit import AuditLog
from opexhub.models.monitoring import MonitoringEntry
from opexhub.services import monitoring_service

KPI = "Steam consumption (t/t paper)"


@pytest.fixture()
def monitored(initiative, advance_to):
    """Initiative waiting at the savings-monitoring stage."""
    return advance_to(initiative.id, 9)


@pytest.fixture()
def entry(monitored):
    return monitoring_service.record_entry(monitored.id, "2025-07", KPI, 100, "STLD", achieved=85)


class TestRecordEntry:
    def test_not_reachable_before_monitoring_stage(self, initiative):
        with pytest.raises(StageGateError) as exc:
            monitoring_service.record_entry(initiative.id, "2025-07", KPI, 100, "STLD")
        assert exc.value.stage_number == 2
        assert MonitoringEntry.query.count() == 0

    def test_unknown_initiative(self, directory):
        with pytest.raises(NotFoundError):
            monitoring_service.record_entry(404, "2025-07", KPI, 100, "STLD")

    def test_negative_deviation_derived(self, entry):
        assert entry.deviation == -15
        assert entry.is_finalized is False
        assert entry.finance_approved is False

    def test_positive_deviation_derived(self, monitored):
        e = monitoring_service.record_entry(monitored.id, "2025-08", KPI, 100, "STLD", achieved=120)
        assert e.deviation == 20

    def test_deviation_absent_without_achieved(self, monitored):
        e = monitoring_service.record_entry(monitored.id, "2025-08", KPI, 100, "STLD")
        assert e.deviation is None

    def test_numeric_strings_coerced(self, monitored):
        e = monitoring_service.record_entry(monitored.id, "2025-08", KPI, "100.5", "STLD", achieved="90")
        assert e.target_value == 100.5
        assert e.deviation == pytest.approx(-10.5)

    @pytest.mark.parametrize("month", ["2025-13", "07-2025", "", "2025/07"])
    def test_bad_month(self, monitored, month):
        with pytest.raises(ValidationError):
            monitoring_service.record_entry(monitored.id, month, KPI, 100, "STLD")

    def test_bad_target(self, monitored):
        with pytest.raises(ValidationError):
            monitoring_service.record_entry(monitored.id, "2025-07", KPI, "a lot", "STLD")

    def test_target_required(self, monitored):
        with pytest.raises(ValidationError):
            monitoring_service.record_entry(monitored.id, "2025-07", KPI, None, "STLD")

    def test_unknown_role(self, monitored):
        with pytest.raises(ValidationError):
            monitoring_service.record_entry(monitored.id, "2025-07", KPI, 100, "CFO")

    def test_duplicate_month_and_kpi(self, entry):
        with pytest.raises(DuplicateEntryError):
            monitoring_service.record_entry(entry.initiative_id, "2025-07", KPI, 90, "STLD")

    def test_same_month_other_kpi_allowed(self, entry):
        other = monitoring_service.record_entry(entry.initiative_id, "2025-07", "Power (kWh/t)", 40, "STLD")
        assert other.id != entry.id


class TestEditing:
    def test_set_achieved_recomputes(self, entry):
        updated = monitoring_service.set_achieved(entry.id, 110)
        assert updated.deviation == 10

    def test_update_entry_target_recomputes(self, entry):
        updated = monitoring_service.update_entry(entry.id, {"target_value": 80, "remarks": "Revised"})
        assert updated.deviation == 5
        assert updated.remarks == "Revised"

    def test_update_to_duplicate_kpi_refused(self, entry):
        other = monitoring_service.record_entry(entry.initiative_id, "2025-07", "Power (kWh/t)", 40, "STLD")
        with pytest.raises(DuplicateEntryError):
            monitoring_service.update_entry(other.id, {"kpi_description": KPI})

    def test_finalized_entry_is_locked(self, entry):
        monitoring_service.finalize(entry.id)
        with pytest.raises(AlreadyFinalizedError):
            monitoring_service.set_achieved(entry.id, 99)
        with pytest.raises(AlreadyFinalizedError):
            monitoring_service.delete_entry(entry.id)

    def test_delete_open_entry(self, entry):
        initiative_id = entry.initiative_id
        monitoring_service.delete_entry(entry.id)
        assert monitoring_service.list_entries(initiative_id) == []


class TestFinalizeAndFinance:
    def test_finalize_once(self, entry):
        assert monitoring_service.finalize(entry.id).is_finalized is True
        with pytest.raises(AlreadyFinalizedError):
            monitoring_service.finalize(entry.id)

    def test_finance_before_finalize_refused(self, entry):
        with pytest.raises(NotFinalizedError):
            monitoring_service.finance_approve(entry.id, True)
        assert db.session.get(MonitoringEntry, entry.id).finance_approved is False

    def test_finance_approval_records_comments(self, entry):
        monitoring_service.finalize(entry.id)
        approved = monitoring_service.finance_approve(entry.id, True, "Matches utility invoices")
        assert approved.finance_approved is True
        assert approved.finance_comments == "Matches utility invoices"
        assert AuditLog.query.filter_by(action="monitoring.finance_approval").count() == 1

    def test_pending_approvals_reflects_current_state(self, entry):
        initiative_id = entry.initiative_id
        assert [e.id for e in monitoring_service.pending_approvals(initiative_id)] == [entry.id]

        monitoring_service.finalize(entry.id)
        assert [e.id for e in monitoring_service.pending_approvals(initiative_id)] == [entry.id]

        monitoring_service.finance_approve(entry.id, True)
        assert list(monitoring_service.pending_approvals(initiative_id)) == []

    def test_unfinalized_entry_is_pending(self, monitored):
        open_entry = monitoring_service.record_entry(monitored.id, "2025-09", KPI, 100, "STLD", achieved=85)
        pending = list(monitoring_service.pending_approvals(monitored.id))
        assert [e.id for e in pending] == [open_entry.id]
        assert pending[0].is_finalized is False

    def test_rejected_finance_decision_stays_pending(self, entry):
        monitoring_service.finalize(entry.id)
        monitoring_service.finance_approve(entry.id, False, "Meter readings missing")
        assert [e.id for e in monitoring_service.pending_approvals(entry.initiative_id)] == [entry.id]

    def test_pending_approvals_unknown_initiative(self, directory):
        with pytest.raises(NotFoundError):
            list(monitoring_service.pending_approvals(404))

    def test_list_entries_by_month(self, entry):
        monitoring_service.record_entry(entry.initiative_id, "2025-08", KPI, 100, "STLD")
        assert [e.monitoring_month for e in monitoring_service.list_entries(entry.initiative_id)] == [
            "2025-07", "2025-08",
        ]
        assert len(monitoring_service.list_entries(entry.initiative_id, month="2025-08")) == 1


class TestMonitoringWindowCloses:
    @pytest.fixture()
    def closed(self, entry, advance_to):
        monitoring_service.finalize(entry.id)
        monitoring_service.finance_approve(entry.id, True)
        initiative = advance_to(entry.initiative_id, 11)
        assert initiative.current_stage == 11
        return entry

    def test_record_refused_after_validation(self, closed):
        with pytest.raises(StageGateError) as exc:
            monitoring_service.record_entry(closed.initiative_id, "2025-09", KPI, 100, "STLD")
        assert exc.value.stage_number == 11
        assert MonitoringEntry.query.count() == 1

    def test_edits_refused_after_validation(self, closed):
        with pytest.raises(StageGateError):
            monitoring_service.set_achieved(closed.id, 99)
        with pytest.raises(StageGateError):
            monitoring_service.update_entry(closed.id, {"remarks": "Late change"})
        with pytest.raises(StageGateError):
            monitoring_service.delete_entry(closed.id)
        assert db.session.get(MonitoringEntry, closed.id).achieved_value == 85

    def test_finance_decision_refused_after_validation(self, closed):
        with pytest.raises(StageGateError):
            monitoring_service.finance_approve(closed.id, False, "Reopen")
        assert db.session.get(MonitoringEntry, closed.id).finance_approved is True

    def test_validation_stage_still_accepts_entries(self, entry, advance_to):
        monitoring_service.finalize(entry.id)
        advance_to(entry.initiative_id, 10)
        late = monitoring_service.record_entry(entry.initiative_id, "2025-08", KPI, 100, "STLD")
        assert late.is_finalized is False
