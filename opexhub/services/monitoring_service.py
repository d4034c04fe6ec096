"""
Monthly KPI monitoring sub-workflow.

Entry lifecycle:
    recorded (open) → finalized (locked) → finance-approved

    - open entries accept achieved-value and KPI edits; deviation is always
      recomputed, never written directly
    - finalize is irreversible; it is the precondition for finance approval
    - finance approval belongs to F&A and is what stage 10 waits on

Entries can be written only while the initiative sits at the
savings-monitoring or savings-validation stage (9 or 10); once stage 10 is
approved or the initiative is completed they are closed. Every write
commits on its own; entries never touch the initiative row.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from opexhub.core.exceptions import (
    AlreadyFinalizedError,
    DuplicateEntryError,
    NotFinalizedError,
    StageGateError,
    ValidationError,
)
from opexhub.models import db
from opexhub.models.audit import write_audit
from opexhub.models.monitoring import MonitoringEntry
from opexhub.models.workflow import (
    ROLE_CODES,
    SAVINGS_MONITORING_STAGE,
    SAVINGS_VALIDATION_STAGE,
    STATUS_COMPLETED,
    Initiative,
)
from opexhub.utils.helpers import as_bool, as_float, get_or_raise, parse_month

logger = logging.getLogger(__name__)


def _require_monitoring_stage(initiative: Initiative) -> None:
    if initiative.current_stage < SAVINGS_MONITORING_STAGE:
        raise StageGateError(
            f"Monitoring opens at stage {SAVINGS_MONITORING_STAGE}; "
            f"initiative is at stage {initiative.current_stage}",
            stage_number=initiative.current_stage,
            initiative_id=initiative.id,
        )
    if initiative.status == STATUS_COMPLETED or initiative.current_stage > SAVINGS_VALIDATION_STAGE:
        raise StageGateError(
            f"Monitoring closed: stage {SAVINGS_VALIDATION_STAGE} already approved "
            f"(initiative at stage {initiative.current_stage}, status {initiative.status})",
            stage_number=initiative.current_stage,
            initiative_id=initiative.id,
        )


def _get_open_entry(entry_id: int) -> MonitoringEntry:
    entry = get_or_raise(MonitoringEntry, entry_id)
    _require_monitoring_stage(entry.initiative)
    if entry.is_finalized:
        raise AlreadyFinalizedError(entry.id)
    return entry


def _number(value, field, required=False):
    try:
        number = as_float(value, field)
    except ValueError as exc:
        raise ValidationError(str(exc), details={field: "not a number"}) from exc
    if required and number is None:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return number


def _find_duplicate(initiative_id, month, kpi, exclude_id=None):
    stmt = select(MonitoringEntry.id).where(
        MonitoringEntry.initiative_id == initiative_id,
        MonitoringEntry.monitoring_month == month,
        MonitoringEntry.kpi_description == kpi,
    )
    if exclude_id is not None:
        stmt = stmt.where(MonitoringEntry.id != exclude_id)
    return db.session.execute(stmt).scalar_one_or_none()


def record_entry(
    initiative_id: int,
    month,
    kpi: str,
    target,
    entered_by_role: str,
    achieved=None,
    remarks: str | None = None,
) -> MonitoringEntry:
    """Record one month's KPI reading for an initiative.

    Raises:
        NotFoundError: initiative does not exist.
        StageGateError: initiative has not reached the monitoring stage.
        ValidationError: bad month / numbers / role, or empty KPI.
        DuplicateEntryError: same (initiative, month, kpi) already recorded.
    """
    initiative = get_or_raise(Initiative, initiative_id)
    _require_monitoring_stage(initiative)

    try:
        month = parse_month(month)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"monitoring_month": month}) from exc
    kpi = (kpi or "").strip()
    if not kpi:
        raise ValidationError("kpi_description is required", details={"kpi_description": "required"})
    if entered_by_role not in ROLE_CODES:
        raise ValidationError(
            f"entered_by_role must be one of {sorted(ROLE_CODES)}",
            details={"entered_by_role": entered_by_role},
        )
    target = _number(target, "target_value", required=True)
    achieved = _number(achieved, "achieved_value")

    if _find_duplicate(initiative.id, month, kpi) is not None:
        raise DuplicateEntryError(initiative.id, month, kpi)

    entry = MonitoringEntry(
        initiative_id=initiative.id,
        monitoring_month=month,
        kpi_description=kpi,
        target_value=target,
        achieved_value=achieved,
        remarks=remarks,
        entered_by_role=entered_by_role,
    )
    db.session.add(entry)
    db.session.flush()
    write_audit(
        entity_type="monitoring_entry",
        entity_id=entry.id,
        action="monitoring.record",
        actor=entered_by_role,
        diff={"initiative_id": initiative.id, "month": month, "kpi": kpi},
    )
    db.session.commit()
    logger.info(
        "Monitoring entry recorded",
        extra={"initiative_id": initiative.id, "entry_id": entry.id, "month": month},
    )
    return entry


def set_achieved(entry_id: int, value) -> MonitoringEntry:
    entry = _get_open_entry(entry_id)
    old = entry.achieved_value
    entry.achieved_value = _number(value, "achieved_value")
    entry.recompute_deviation()
    write_audit(
        entity_type="monitoring_entry",
        entity_id=entry.id,
        action="monitoring.update",
        diff={"achieved_value": {"old": old, "new": entry.achieved_value}},
    )
    db.session.commit()
    return entry


def update_entry(entry_id: int, data: dict) -> MonitoringEntry:
    """Edit an open entry's KPI, target, achieved value or remarks."""
    entry = _get_open_entry(entry_id)
    try:
        changes = _apply_edits(entry, data)
    except (ValidationError, DuplicateEntryError):
        db.session.rollback()
        raise

    entry.recompute_deviation()
    if changes:
        write_audit(
            entity_type="monitoring_entry",
            entity_id=entry.id,
            action="monitoring.update",
            diff=changes,
        )
    db.session.commit()
    return entry


def _apply_edits(entry: MonitoringEntry, data: dict) -> dict:
    changes = {}

    if "kpi_description" in data:
        kpi = (data.get("kpi_description") or "").strip()
        if not kpi:
            raise ValidationError("kpi_description cannot be empty", details={"kpi_description": "required"})
        if kpi != entry.kpi_description:
            if _find_duplicate(entry.initiative_id, entry.monitoring_month, kpi, exclude_id=entry.id):
                raise DuplicateEntryError(entry.initiative_id, entry.monitoring_month, kpi)
            changes["kpi_description"] = {"old": entry.kpi_description, "new": kpi}
            entry.kpi_description = kpi
    if "target_value" in data:
        target = _number(data.get("target_value"), "target_value", required=True)
        changes["target_value"] = {"old": entry.target_value, "new": target}
        entry.target_value = target
    if "achieved_value" in data:
        achieved = _number(data.get("achieved_value"), "achieved_value")
        changes["achieved_value"] = {"old": entry.achieved_value, "new": achieved}
        entry.achieved_value = achieved
    if "remarks" in data:
        entry.remarks = data.get("remarks")
    return changes


def finalize(entry_id: int) -> MonitoringEntry:
    """Lock an entry. Irreversible; finalizing twice is refused."""
    entry = _get_open_entry(entry_id)
    entry.is_finalized = True
    write_audit(
        entity_type="monitoring_entry",
        entity_id=entry.id,
        action="monitoring.finalize",
        diff={"is_finalized": {"old": False, "new": True}},
    )
    db.session.commit()
    logger.info(
        "Monitoring entry finalized",
        extra={"initiative_id": entry.initiative_id, "entry_id": entry.id},
    )
    return entry


def finance_approve(entry_id: int, approved=True, comments: str | None = None) -> MonitoringEntry:
    """Record the F&A decision on a finalized entry.

    Raises:
        NotFinalizedError: the entry has not been finalized yet.
        StageGateError: savings validation is already closed.
    """
    entry = get_or_raise(MonitoringEntry, entry_id)
    _require_monitoring_stage(entry.initiative)
    if not entry.is_finalized:
        logger.warning(
            "Finance approval refused: entry not finalized",
            extra={"initiative_id": entry.initiative_id, "entry_id": entry.id},
        )
        raise NotFinalizedError(entry.id)

    old = entry.finance_approved
    entry.finance_approved = as_bool(approved, default=True)
    entry.finance_comments = comments
    write_audit(
        entity_type="monitoring_entry",
        entity_id=entry.id,
        action="monitoring.finance_approval",
        diff={"finance_approved": {"old": old, "new": entry.finance_approved}, "comments": comments},
    )
    db.session.commit()
    logger.info(
        "Monitoring entry finance decision recorded",
        extra={"initiative_id": entry.initiative_id, "entry_id": entry.id, "approved": entry.finance_approved},
    )
    return entry


def pending_approvals(initiative_id: int):
    """Yield entries still awaiting finance approval, finalized or not.

    Queries afresh on every call so the result reflects current state.
    """
    get_or_raise(Initiative, initiative_id)
    stmt = (
        select(MonitoringEntry)
        .where(
            MonitoringEntry.initiative_id == initiative_id,
            MonitoringEntry.finance_approved.is_(False),
        )
        .order_by(MonitoringEntry.monitoring_month, MonitoringEntry.id)
    )
    yield from db.session.execute(stmt).scalars()


def list_entries(initiative_id: int, month=None) -> list[MonitoringEntry]:
    get_or_raise(Initiative, initiative_id)
    stmt = select(MonitoringEntry).where(MonitoringEntry.initiative_id == initiative_id)
    if month:
        try:
            stmt = stmt.where(MonitoringEntry.monitoring_month == parse_month(month))
        except ValueError as exc:
            raise ValidationError(str(exc), details={"month": month}) from exc
    stmt = stmt.order_by(MonitoringEntry.monitoring_month, MonitoringEntry.id)
    return list(db.session.execute(stmt).scalars().all())


def delete_entry(entry_id: int) -> None:
    entry = _get_open_entry(entry_id)
    write_audit(
        entity_type="monitoring_entry",
        entity_id=entry.id,
        action="monitoring.delete",
        diff={"month": entry.monitoring_month, "kpi": entry.kpi_description},
    )
    db.session.delete(entry)
    db.session.commit()
