"""
Stage transition engine tests — comprehensive coverage for:
  - Registration (stage 1) and the stage-2 hand-off
  - Authorization: role-for-stage + identity-for-role
  - Stage 3: Initiative Lead binding, conditional bypass of 4/5
  - Sub-workflow gates at stages 6, 9 and 10
  - Reject / resubmit rework path
  - Progress arithmetic
  - Optimistic locking (stale expected_version, lost flush race)
  - Full lifecycle walk: register → closure
"""

import pytest
from sqlalchemy import update
from sqlalchemy.orm.exc import StaleDataError

from opexhub.core.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    StageGateError,
    UnauthorizedError,
    ValidationError,
)
from opexhub.models import db
from opexhub.models.audit import AuditLog
from opexhub.models.workflow import (
    STAGE_BY_NUMBER,
    TX_APPROVED,
    TX_BYPASSED,
    TX_PENDING,
    TX_REJECTED,
    Initiative,
    RoleAssignment,
)
from opexhub.services import monitoring_service, role_directory, timeline_service, transition_engine

SITE = "NDS"


def _approve(initiative_id, actor, **extra):
    return transition_engine.advance(initiative_id, actor.id, {"action": "approve", **extra})


def _statuses(initiative_id):
    return {
        (t.stage_number, t.status)
        for t in transition_engine.get_transactions(initiative_id)
    }


# ═══════════════════════════════════════════════════════════════════════════
# Registration
# ═══════════════════════════════════════════════════════════════════════════


class TestCreateInitiative:
    def test_registration_waits_at_stage_2(self, initiative, users):
        assert initiative.status == "pending"
        assert initiative.current_stage == 2
        assert initiative.current_stage_name == "Site Head Approval"
        assert initiative.progress_percentage == 9
        assert initiative.created_by_id == users["initiator"].id

    def test_stage_1_recorded_and_stage_2_opened(self, initiative, users):
        txs = transition_engine.get_transactions(initiative.id)
        assert [(t.stage_number, t.status) for t in txs] == [(1, TX_APPROVED), (2, TX_PENDING)]
        assert txs[0].acted_by_id == users["initiator"].id
        assert txs[1].assigned_user_id == users["site_head"].id

    def test_initiative_number_generated(self, initiative):
        assert initiative.initiative_number == f"NDS/2025/MECH/{initiative.id:04d}"

    def test_audit_row_written(self, initiative):
        row = AuditLog.query.filter_by(action="initiative.create").one()
        assert row.entity_id == str(initiative.id)

    def test_title_required(self, users):
        with pytest.raises(ValidationError):
            transition_engine.create_initiative({"title": "  "}, creator_id=users["initiator"].id)

    def test_site_defaults_to_creator_site(self, users):
        created = transition_engine.create_initiative({"title": "Defaults"}, creator_id=users["initiator"].id)
        assert created.site == SITE
        assert created.initiative_number.startswith("NDS/")
        assert "/GEN/" in created.initiative_number

    def test_unknown_creator(self, directory):
        with pytest.raises(NotFoundError):
            transition_engine.create_initiative({"title": "Orphan"}, creator_id=4242)

    def test_end_before_start_rejected(self, users):
        with pytest.raises(ValidationError):
            transition_engine.create_initiative(
                {"title": "Bad dates", "start_date": "2025-05-01", "end_date": "2025-04-01"},
                creator_id=users["initiator"].id,
            )

    def test_bad_amount_rejected(self, users):
        with pytest.raises(ValidationError):
            transition_engine.create_initiative(
                {"title": "Bad amount", "expected_savings": "lots"},
                creator_id=users["initiator"].id,
            )


# ═══════════════════════════════════════════════════════════════════════════
# Authorization
# ═══════════════════════════════════════════════════════════════════════════


class TestAuthorization:
    def test_assigned_identity_may_approve(self, initiative, users):
        result = _approve(initiative.id, users["site_head"])
        assert result["previous_stage"] == 2
        assert result["current_stage"] == 3
        assert result["status"] == "in_progress"

    def test_wrong_identity_refused_with_context(self, initiative, users):
        with pytest.raises(UnauthorizedError) as exc:
            _approve(initiative.id, users["eng_head"])
        assert exc.value.stage_number == 2
        assert exc.value.required_role == "SH"
        assert transition_engine.get_initiative(initiative.id).current_stage == 2

    def test_same_role_other_user_refused(self, initiative, users, advance_to):
        advance_to(initiative.id, 7)
        # Suresh is an STLD too, but stage 7 belongs to Vikram
        with pytest.raises(UnauthorizedError):
            _approve(initiative.id, users["monitoring_lead"])

    def test_unknown_actor_refused(self, initiative):
        with pytest.raises(UnauthorizedError):
            transition_engine.advance(initiative.id, 9999, {"action": "approve"})

    def test_unassigned_stage_refused(self, initiative, users):
        RoleAssignment.query.filter_by(site=SITE, stage_number=2).delete()
        db.session.commit()
        with pytest.raises(UnauthorizedError) as exc:
            _approve(initiative.id, users["site_head"])
        assert "no identity assigned" in str(exc.value)

    def test_unknown_initiative(self, users):
        with pytest.raises(NotFoundError):
            _approve(987, users["site_head"])

    def test_invalid_action(self, initiative, users):
        with pytest.raises(ValidationError):
            transition_engine.advance(initiative.id, users["site_head"].id, {"action": "escalate"})

    def test_available_actions(self, initiative, users):
        assert transition_engine.available_actions(initiative, users["site_head"].id) == ["approve", "reject"]
        assert transition_engine.available_actions(initiative, users["eng_head"].id) == []


# ═══════════════════════════════════════════════════════════════════════════
# Stage 3: responsibility and conditional path
# ═══════════════════════════════════════════════════════════════════════════


class TestResponsibilityStage:
    def test_lead_required(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        with pytest.raises(ValidationError):
            _approve(initiative.id, users["eng_head"])
        assert transition_engine.get_initiative(initiative.id).current_stage == 3

    def test_lead_must_exist(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        with pytest.raises(ValidationError):
            _approve(initiative.id, users["eng_head"], initiative_lead_id=5555)
        assert role_directory.list_assignments(initiative_id=initiative.id) == []

    def test_no_flags_bypasses_4_and_5(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        result = _approve(initiative.id, users["eng_head"], initiative_lead_id=users["lead"].id)
        assert result["current_stage"] == 6
        assert result["bypassed_stages"] == [4, 5]
        statuses = _statuses(initiative.id)
        assert (4, TX_BYPASSED) in statuses
        assert (5, TX_BYPASSED) in statuses
        refreshed = transition_engine.get_initiative(initiative.id)
        assert refreshed.initiative_lead_id == users["lead"].id
        # 3 approved of 9 applicable
        assert refreshed.progress_percentage == 33

    def test_lead_bound_to_dynamic_stages(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        _approve(initiative.id, users["eng_head"], initiative_lead_id=users["lead"].id)
        for stage in (4, 5, 6):
            assert role_directory.identity_for(SITE, stage, initiative.id) == users["lead"].id
        pending = [t for t in transition_engine.get_transactions(initiative.id) if t.status == TX_PENDING]
        assert [(t.stage_number, t.assigned_user_id) for t in pending] == [(6, users["lead"].id)]

    def test_engineering_change_routes_through_moc(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        result = _approve(
            initiative.id, users["eng_head"],
            initiative_lead_id=users["lead"].id, requires_engineering_change=True,
        )
        assert result["current_stage"] == 4
        assert result["bypassed_stages"] == []

        result = _approve(initiative.id, users["lead"], moc_number="MOC-2025-017")
        assert result["current_stage"] == 6
        assert result["bypassed_stages"] == [5]
        refreshed = transition_engine.get_initiative(initiative.id)
        assert refreshed.moc_number == "MOC-2025-017"
        assert refreshed.requires_engineering_change is True

    def test_capital_approval_routes_through_capex(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        result = _approve(
            initiative.id, users["eng_head"],
            initiative_lead_id=users["lead"].id, requires_capital_approval=True,
        )
        assert result["current_stage"] == 5
        assert result["bypassed_stages"] == [4]
        result = _approve(initiative.id, users["lead"], capex_number="CPX-88")
        assert result["current_stage"] == 6
        assert transition_engine.get_initiative(initiative.id).capex_number == "CPX-88"

    def test_retry_after_partial_binding_keeps_one_row_per_stage(self, initiative, users, advance_to):
        advance_to(initiative.id, 3)
        # an earlier attempt bound the lead before failing
        role_directory.ensure_initiative_lead_stages(
            transition_engine.get_initiative(initiative.id), users["lead"].id,
        )
        db.session.commit()

        _approve(initiative.id, users["eng_head"], initiative_lead_id=users["lead"].id)
        scoped = RoleAssignment.query.filter_by(scope=f"initiative:{initiative.id}").all()
        assert sorted(a.stage_number for a in scoped) == [4, 5, 6]


# ═══════════════════════════════════════════════════════════════════════════
# Gates owned by the sub-workflows
# ═══════════════════════════════════════════════════════════════════════════


class TestStageGates:
    def test_timeline_blocks_stage_6_until_dual_sign_off(self, initiative, users, advance_to):
        advance_to(initiative.id, 6)
        entry = timeline_service.record_milestone(initiative.id, {
            "description": "Install heat recovery unit",
            "planned_start_date": "2025-05-01",
            "planned_end_date": "2025-06-15",
        })
        timeline_service.set_approval(entry.id, "site_lead")

        with pytest.raises(StageGateError) as exc:
            _approve(initiative.id, users["lead"])
        assert exc.value.stage_number == 6
        assert exc.value.details["entry_ids"] == [entry.id]

        timeline_service.set_approval(entry.id, "IL")
        assert _approve(initiative.id, users["lead"])["current_stage"] == 7

    def test_stage_9_requires_finalized_entries(self, initiative, users, advance_to):
        advance_to(initiative.id, 9)
        entry = monitoring_service.record_entry(initiative.id, "2025-07", "Steam per tonne", 100, "STLD", achieved=92)

        with pytest.raises(StageGateError):
            _approve(initiative.id, users["monitoring_lead"])

        monitoring_service.finalize(entry.id)
        assert _approve(initiative.id, users["monitoring_lead"])["current_stage"] == 10

    def test_stage_10_requires_finance_approval(self, initiative, users, advance_to):
        advance_to(initiative.id, 9)
        entry = monitoring_service.record_entry(initiative.id, "2025-07", "Steam per tonne", 100, "STLD", achieved=92)
        monitoring_service.finalize(entry.id)
        _approve(initiative.id, users["monitoring_lead"])

        with pytest.raises(StageGateError):
            _approve(initiative.id, users["validation_lead"])

        monitoring_service.finance_approve(entry.id, True, "Verified against utility bills")
        assert _approve(initiative.id, users["validation_lead"])["current_stage"] == 11

    def test_gate_failure_changes_nothing(self, initiative, users, advance_to):
        advance_to(initiative.id, 9)
        monitoring_service.record_entry(initiative.id, "2025-07", "Steam per tonne", 100, "STLD")
        before = transition_engine.get_initiative(initiative.id)
        version, progress = before.version, before.progress_percentage

        with pytest.raises(StageGateError):
            _approve(initiative.id, users["monitoring_lead"])

        after = transition_engine.get_initiative(initiative.id)
        assert (after.current_stage, after.version, after.progress_percentage) == (9, version, progress)


# ═══════════════════════════════════════════════════════════════════════════
# Reject / resubmit
# ═══════════════════════════════════════════════════════════════════════════


class TestRejection:
    def test_reject_requires_comment(self, initiative, users):
        with pytest.raises(ValidationError):
            transition_engine.advance(initiative.id, users["site_head"].id, {"action": "reject"})

    def test_reject_keeps_stage(self, initiative, users):
        result = transition_engine.advance(
            initiative.id, users["site_head"].id, {"action": "reject", "comment": "Savings not substantiated"},
        )
        assert result["status"] == "rejected"
        assert result["current_stage"] == 2
        assert (2, TX_REJECTED) in _statuses(initiative.id)

    def test_rejected_initiative_is_terminal_for_advance(self, initiative, users):
        transition_engine.advance(initiative.id, users["site_head"].id, {"action": "reject", "comment": "No"})
        with pytest.raises(InvalidTransitionError):
            _approve(initiative.id, users["site_head"])

    def test_resubmit_reopens_stage_for_initiator(self, initiative, users):
        transition_engine.advance(initiative.id, users["site_head"].id, {"action": "reject", "comment": "Rework"})
        assert transition_engine.available_actions(
            transition_engine.get_initiative(initiative.id), users["initiator"].id,
        ) == ["resubmit"]

        result = transition_engine.resubmit(initiative.id, users["initiator"].id, "Added meter data")
        assert result["status"] == "pending"
        assert result["current_stage"] == 2
        assert _approve(initiative.id, users["site_head"])["current_stage"] == 3

    def test_resubmit_later_stage_returns_in_progress(self, initiative, users, advance_to):
        advance_to(initiative.id, 7)
        transition_engine.advance(initiative.id, users["trial_lead"].id, {"action": "reject", "comment": "Trial failed"})
        result = transition_engine.resubmit(initiative.id, users["initiator"].id)
        assert result["status"] == "in_progress"
        assert result["current_stage"] == 7

    def test_only_initiator_may_resubmit(self, initiative, users):
        transition_engine.advance(initiative.id, users["site_head"].id, {"action": "reject", "comment": "No"})
        with pytest.raises(UnauthorizedError):
            transition_engine.resubmit(initiative.id, users["site_head"].id)

    def test_resubmit_requires_rejection(self, initiative, users):
        with pytest.raises(InvalidTransitionError):
            transition_engine.resubmit(initiative.id, users["initiator"].id)


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_stale_expected_version(self, initiative, users):
        version = initiative.version
        _approve(initiative.id, users["site_head"], expected_version=version)
        with pytest.raises(ConcurrentModificationError) as exc:
            _approve(initiative.id, users["eng_head"], expected_version=version,
                     initiative_lead_id=users["lead"].id)
        assert exc.value.retryable is True
        assert transition_engine.get_initiative(initiative.id).current_stage == 3

    def test_two_advances_on_same_version_only_one_wins(self, initiative, users):
        version = initiative.version
        outcomes = []
        for _ in range(2):
            try:
                _approve(initiative.id, users["site_head"], expected_version=version)
                outcomes.append("ok")
            except (ConcurrentModificationError, UnauthorizedError):
                outcomes.append("lost")
        assert outcomes == ["ok", "lost"]
        txs = transition_engine.get_transactions(initiative.id)
        assert [t.stage_number for t in txs if t.status == TX_APPROVED] == [1, 2]

    def test_lost_flush_race_maps_to_concurrent_modification(self, initiative, users, monkeypatch):
        original = transition_engine._load_for_update
        table = Initiative.__table__

        def racing_load(initiative_id):
            loaded = original(initiative_id)
            # another writer commits between our read and our write
            db.session.execute(
                update(table).where(table.c.id == initiative_id).values(version=table.c.version + 1)
            )
            return loaded

        monkeypatch.setattr(transition_engine, "_load_for_update", racing_load)
        with pytest.raises(ConcurrentModificationError):
            _approve(initiative.id, users["site_head"])

        monkeypatch.undo()
        refreshed = transition_engine.get_initiative(initiative.id)
        assert refreshed.current_stage == 2
        assert refreshed.status == "pending"

    def test_stale_commit_maps_to_concurrent_modification(self, initiative, users, monkeypatch):
        def stale_commit():
            raise StaleDataError("UPDATE statement on table 'initiatives' expected to update 1 row(s); 0 were matched.")

        monkeypatch.setattr(db.session, "commit", stale_commit)
        with pytest.raises(ConcurrentModificationError):
            _approve(initiative.id, users["site_head"])


# ═══════════════════════════════════════════════════════════════════════════
# Inbox, progress and the full walk
# ═══════════════════════════════════════════════════════════════════════════


class TestInbox:
    def test_pending_for_user_follows_current_stage(self, initiative, users):
        assert [i.id for i in transition_engine.pending_for_user(users["site_head"].id)] == [initiative.id]
        assert transition_engine.pending_for_user(users["eng_head"].id) == []
        _approve(initiative.id, users["site_head"])
        assert transition_engine.pending_for_user(users["site_head"].id) == []
        assert [i.id for i in transition_engine.pending_for_user(users["eng_head"].id)] == [initiative.id]


class TestFullLifecycle:
    def test_register_to_closure(self, initiative, users, advance_to):
        final = advance_to(initiative.id, 11)
        assert final.status == "in_progress"
        result = _approve(initiative.id, users["closure_lead"])

        assert result["status"] == "completed"
        assert result["current_stage"] == 11
        assert result["progress_percentage"] == 100

        txs = transition_engine.get_transactions(initiative.id)
        approved = sorted(t.stage_number for t in txs if t.status == TX_APPROVED)
        bypassed = sorted(t.stage_number for t in txs if t.status == TX_BYPASSED)
        assert approved == [1, 2, 3, 6, 7, 8, 9, 10, 11]
        assert bypassed == [4, 5]
        assert not [t for t in txs if t.status == TX_PENDING]
        assert all(t.stage_name == STAGE_BY_NUMBER[t.stage_number].stage_name for t in txs)

    def test_full_path_with_both_conditional_stages(self, initiative, users, advance_to):
        advance_to(initiative.id, 11, requires_engineering_change=True, requires_capital_approval=True)
        result = _approve(initiative.id, users["closure_lead"])
        assert result["progress_percentage"] == 100
        assert not [t for t in transition_engine.get_transactions(initiative.id) if t.status == TX_BYPASSED]

    def test_completed_is_terminal(self, initiative, users, advance_to):
        advance_to(initiative.id, 11)
        _approve(initiative.id, users["closure_lead"])
        with pytest.raises(InvalidTransitionError):
            _approve(initiative.id, users["closure_lead"])

    def test_progress_never_decreases(self, initiative, users, advance_to):
        seen = [initiative.progress_percentage]
        for target in range(3, 12):
            seen.append(advance_to(initiative.id, target).progress_percentage)
        assert seen == sorted(seen)

    def test_delete_cascades(self, initiative, users, advance_to):
        initiative_id = initiative.id
        advance_to(initiative_id, 9)
        assert len(role_directory.list_assignments(initiative_id=initiative_id)) == 3
        monitoring_service.record_entry(initiative_id, "2025-07", "Steam per tonne", 100, "STLD")
        transition_engine.delete_initiative(initiative_id)
        with pytest.raises(NotFoundError):
            transition_engine.get_initiative(initiative_id)
        assert AuditLog.query.filter_by(action="initiative.delete").count() == 1
        assert role_directory.list_assignments(initiative_id=initiative_id) == []
        assert RoleAssignment.query.filter(RoleAssignment.scope.like("initiative:%")).count() == 0

    def test_delete_frees_lead_slots_for_new_initiatives(self, initiative, users, advance_to):
        initiative_id, site = initiative.id, initiative.site
        advance_to(initiative_id, 4)
        transition_engine.delete_initiative(initiative_id)

        successor = transition_engine.create_initiative(
            {"title": "Condensate recovery", "site": site}, creator_id=users["initiator"].id,
        )
        role_directory.ensure_initiative_lead_stages(successor, users["trial_lead"].id)
        for stage in (4, 5, 6):
            assert role_directory.identity_for(site, stage, successor.id) == users["trial_lead"].id
