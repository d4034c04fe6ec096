"""
Initiative timeline tracker: milestones with dual sign-off.

A milestone is complete only when both the site lead and the initiative
lead have approved it. Approvals are monotone: once granted they can only
be cleared by ``reset_approvals``. The status follows the sign-off: an
edit can neither mark an unapproved milestone completed nor move an
approved one off completed. Stage 6 cannot complete while any milestone
is incomplete.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select

from opexhub.core.exceptions import InvalidApproverError, StageGateError, ValidationError
from opexhub.models import db
from opexhub.models.audit import write_audit
from opexhub.models.timeline import APPROVER_ALIASES, APPROVER_FLAGS, TIMELINE_STATUSES, TimelineEntry
from opexhub.models.workflow import TIMELINE_STAGE, Initiative
from opexhub.utils.helpers import as_bool, get_or_raise, parse_date_input

logger = logging.getLogger(__name__)

_DATE_FIELDS = ("planned_start_date", "planned_end_date", "actual_start_date", "actual_end_date")
_TEXT_FIELDS = ("description", "responsible_person", "remarks")


def _approval_flag(approver_role) -> str:
    try:
        return APPROVER_FLAGS[APPROVER_ALIASES.get(approver_role, approver_role)]
    except (KeyError, TypeError):
        raise InvalidApproverError(approver_role) from None


def _apply(entry: TimelineEntry, data: dict) -> dict:
    changes = {}
    for field in _DATE_FIELDS:
        if field in data:
            try:
                value = parse_date_input(data.get(field))
            except ValueError as exc:
                raise ValidationError(str(exc), details={field: data.get(field)}) from exc
            changes[field] = {"old": getattr(entry, field), "new": value}
            setattr(entry, field, value)
    for field in _TEXT_FIELDS:
        if field in data:
            changes[field] = {"old": getattr(entry, field), "new": data.get(field)}
            setattr(entry, field, data.get(field))
    if "status" in data:
        status = data.get("status")
        if not isinstance(status, str) or status not in TIMELINE_STATUSES:
            raise ValidationError(
                f"status must be one of {sorted(TIMELINE_STATUSES)}", details={"status": status},
            )
        if (status == "completed") != entry.is_complete:
            raise ValidationError(
                "status is completed exactly when both approvals are granted",
                details={"status": status, "is_complete": entry.is_complete},
            )
        changes["status"] = {"old": entry.status, "new": status}
        entry.status = status

    if not (entry.description or "").strip():
        raise ValidationError("description is required", details={"description": "required"})
    if entry.planned_start_date is None or entry.planned_end_date is None:
        raise ValidationError(
            "planned_start_date and planned_end_date are required",
            details={"planned_dates": "required"},
        )
    if entry.planned_end_date < entry.planned_start_date:
        raise ValidationError(
            "planned_end_date must not be before planned_start_date",
            details={"planned_end_date": "before planned_start_date"},
        )
    if entry.actual_start_date and entry.actual_end_date and entry.actual_end_date < entry.actual_start_date:
        raise ValidationError(
            "actual_end_date must not be before actual_start_date",
            details={"actual_end_date": "before actual_start_date"},
        )
    return changes


def record_milestone(initiative_id: int, data: dict) -> TimelineEntry:
    """Add a milestone to an initiative that has reached the timeline stage.

    Raises:
        NotFoundError: initiative does not exist.
        StageGateError: initiative is still before stage 6.
        ValidationError: missing description/planned dates or bad ordering.
    """
    initiative = get_or_raise(Initiative, initiative_id)
    if initiative.current_stage < TIMELINE_STAGE:
        raise StageGateError(
            f"Timeline opens at stage {TIMELINE_STAGE}; initiative is at stage {initiative.current_stage}",
            stage_number=initiative.current_stage,
            initiative_id=initiative.id,
        )

    entry = TimelineEntry(initiative_id=initiative.id, status="pending", responsible_person="")
    _apply(entry, {k: v for k, v in data.items() if k in _DATE_FIELDS + _TEXT_FIELDS + ("status",)})
    db.session.add(entry)
    db.session.flush()
    write_audit(
        entity_type="timeline_entry",
        entity_id=entry.id,
        action="timeline.record",
        diff={"initiative_id": initiative.id, "description": entry.description},
    )
    db.session.commit()
    logger.info(
        "Timeline milestone recorded",
        extra={"initiative_id": initiative.id, "entry_id": entry.id},
    )
    return entry


def update_milestone(entry_id: int, data: dict) -> TimelineEntry:
    """Edit dates, text or status. Approval flags are left alone."""
    entry = get_or_raise(TimelineEntry, entry_id)
    try:
        changes = _apply(entry, {k: v for k, v in data.items() if k not in APPROVER_FLAGS.values()})
    except ValidationError:
        db.session.rollback()
        raise
    if changes:
        write_audit(
            entity_type="timeline_entry",
            entity_id=entry.id,
            action="timeline.update",
            diff=changes,
        )
    db.session.commit()
    return entry


def set_approval(entry_id: int, approver_role, value=True) -> TimelineEntry:
    """Grant one side of the dual sign-off.

    Args:
        approver_role: "site_lead" / "STLD" or "initiative_lead" / "IL".
        value: must be truthy once the flag is set; revoking is refused.

    Raises:
        InvalidApproverError: unknown approver role.
        ValidationError: attempt to revoke a granted approval.
    """
    flag = _approval_flag(approver_role)
    entry = get_or_raise(TimelineEntry, entry_id)
    value = as_bool(value, default=True)

    current = bool(getattr(entry, flag))
    if current and not value:
        raise ValidationError(
            f"{flag} is already granted; use reset-approvals to clear it",
            details={"entry_id": entry.id, "approver_role": approver_role},
        )
    if current == value:
        return entry

    setattr(entry, flag, value)
    if entry.is_complete:
        entry.status = "completed"
    write_audit(
        entity_type="timeline_entry",
        entity_id=entry.id,
        action="timeline.approval",
        actor=str(approver_role),
        diff={flag: {"old": current, "new": value}, "is_complete": entry.is_complete},
    )
    db.session.commit()
    logger.info(
        "Timeline approval granted",
        extra={"initiative_id": entry.initiative_id, "entry_id": entry.id, "flag": flag},
    )
    return entry


def reset_approvals(entry_id: int) -> TimelineEntry:
    entry = get_or_raise(TimelineEntry, entry_id)
    old = {flag: bool(getattr(entry, flag)) for flag in APPROVER_FLAGS.values()}
    for flag in APPROVER_FLAGS.values():
        setattr(entry, flag, False)
    if entry.status == "completed":
        entry.status = "in_progress"
    write_audit(
        entity_type="timeline_entry",
        entity_id=entry.id,
        action="timeline.reset_approvals",
        diff={flag: {"old": was, "new": False} for flag, was in old.items()},
    )
    db.session.commit()
    logger.info(
        "Timeline approvals reset",
        extra={"initiative_id": entry.initiative_id, "entry_id": entry.id},
    )
    return entry


def pending_approvals(initiative_id: int):
    """Yield milestones still missing at least one approval (fresh query per call)."""
    get_or_raise(Initiative, initiative_id)
    stmt = (
        select(TimelineEntry)
        .where(
            TimelineEntry.initiative_id == initiative_id,
            or_(
                TimelineEntry.site_lead_approval.is_(False),
                TimelineEntry.initiative_lead_approval.is_(False),
            ),
        )
        .order_by(TimelineEntry.planned_start_date, TimelineEntry.id)
    )
    yield from db.session.execute(stmt).scalars()


def list_milestones(initiative_id: int) -> list[TimelineEntry]:
    get_or_raise(Initiative, initiative_id)
    stmt = (
        select(TimelineEntry)
        .where(TimelineEntry.initiative_id == initiative_id)
        .order_by(TimelineEntry.planned_start_date, TimelineEntry.id)
    )
    return list(db.session.execute(stmt).scalars().all())


def delete_milestone(entry_id: int) -> None:
    entry = get_or_raise(TimelineEntry, entry_id)
    write_audit(
        entity_type="timeline_entry",
        entity_id=entry.id,
        action="timeline.delete",
        diff={"description": entry.description},
    )
    db.session.delete(entry)
    db.session.commit()
