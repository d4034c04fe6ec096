"""
Stage Transition Engine — validates and applies stage decisions.

Lifecycle:
    create_initiative   stage 1 (Register) recorded as done by the initiator,
                        stage 2 opened, status=pending
    advance(approve)    authorize → stage gates → record → move to next
                        active stage (bypassing 4/5 when their flag is off)
    advance(reject)     status=rejected, current_stage unchanged
    resubmit            initiator reopens a rejected initiative at the same stage

Authorization is two explicit lookups:
    stage_catalog.required_role(stage)            role-for-stage
    role_directory.resolve(site, stage, initiative) identity-for-role
The actor must be that identity and the assignment must carry that role.

Stage-3 approval names the Initiative Lead and binds stages 4/5/6 to them
in the directory (idempotent under retry).

Concurrency: Initiative has an optimistic version column. Callers may pass
``expected_version``; a mismatch, or a lost race detected at flush, raises
ConcurrentModificationError. The row is also locked FOR UPDATE where the
database supports it.

Usage:
    from opexhub.services import transition_engine

    initiative = transition_engine.create_initiative({"title": ..., "site": "NDS"}, creator_id=1)
    result = transition_engine.advance(initiative.id, actor_id=2, decision={"action": "approve"})
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select
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
from opexhub.models.audit import write_audit
from opexhub.models.monitoring import MonitoringEntry
from opexhub.models.timeline import TimelineEntry
from opexhub.models.workflow import (
    FIRST_STAGE,
    RESPONSIBILITY_STAGE,
    SAVINGS_MONITORING_STAGE,
    SAVINGS_VALIDATION_STAGE,
    STAGE_DEFINITIONS,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    TERMINAL_STATUSES,
    TIMELINE_STAGE,
    TX_APPROVED,
    TX_BYPASSED,
    TX_PENDING,
    TX_REJECTED,
    Initiative,
    RoleAssignment,
    StageTransaction,
    User,
)
from opexhub.services import role_directory, stage_catalog
from opexhub.utils.helpers import as_bool, as_float, get_or_raise, parse_date_input

logger = logging.getLogger(__name__)

ACTIONS = ("approve", "reject")
PRIORITIES = ("low", "medium", "high", "critical")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Progress ─────────────────────────────────────────────────────────────────


def compute_progress(initiative: Initiative) -> int:
    """floor(100 * completed / applicable); bypassed stages are not applicable."""
    approved = {t.stage_number for t in initiative.transactions if t.status == TX_APPROVED}
    bypassed = {t.stage_number for t in initiative.transactions if t.status == TX_BYPASSED}
    applicable = len(STAGE_DEFINITIONS) - len(bypassed)
    return (100 * len(approved)) // applicable


# ── Transaction helpers ──────────────────────────────────────────────────────


def _pending_transaction(initiative: Initiative, stage_number: int) -> StageTransaction | None:
    for tx in reversed(initiative.transactions):
        if tx.stage_number == stage_number and tx.status == TX_PENDING:
            return tx
    return None


def _open_stage(initiative: Initiative, stage_number: int) -> StageTransaction:
    """Open (or reuse) the pending transaction for ``stage_number``."""
    tx = _pending_transaction(initiative, stage_number)
    if tx is not None:
        return tx
    stage = stage_catalog.stage_by_number(stage_number)
    tx = StageTransaction(
        stage_number=stage_number,
        stage_name=stage.stage_name,
        role_code=stage.required_role_code,
        status=TX_PENDING,
        assigned_user_id=role_directory.identity_for(initiative.site, stage_number, initiative.id),
    )
    initiative.transactions.append(tx)
    return tx


def _record_bypass(initiative: Initiative, stage_number: int) -> None:
    if any(t.stage_number == stage_number and t.status == TX_BYPASSED for t in initiative.transactions):
        return
    stage = stage_catalog.stage_by_number(stage_number)
    initiative.transactions.append(StageTransaction(
        stage_number=stage_number,
        stage_name=stage.stage_name,
        role_code=stage.required_role_code,
        status=TX_BYPASSED,
        comment=f"Bypassed: {stage_catalog.slot_for(stage_number).gating_flag} is false",
        acted_at=_utcnow(),
    ))


# ── Loading / guards ─────────────────────────────────────────────────────────


def _load_for_update(initiative_id: int) -> Initiative:
    initiative = db.session.execute(
        select(Initiative)
        .where(Initiative.id == initiative_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if initiative is None:
        raise NotFoundError(resource="Initiative", resource_id=initiative_id)
    return initiative


def _check_version(initiative: Initiative, expected_version) -> None:
    if expected_version is None or expected_version == "":
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError(
            "expected_version must be an integer",
            details={"expected_version": expected_version},
        ) from None
    if expected != initiative.version:
        raise ConcurrentModificationError(initiative.id, expected, initiative.version)


def authorize(initiative: Initiative, actor_id) -> RoleAssignment:
    """Return the assignment that entitles ``actor_id`` to act on the current stage.

    Raises:
        UnauthorizedError: with the stage number and required role.
    """
    stage_number = initiative.current_stage
    required = stage_catalog.required_role(stage_number)

    def _deny(reason):
        return UnauthorizedError(actor_id, stage_number, required, reason=reason, initiative_id=initiative.id)

    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or not actor.is_active:
        raise _deny("unknown or inactive user")

    assignment = role_directory.resolve(initiative.site, stage_number, initiative.id)
    if assignment is None:
        raise _deny(f"no identity assigned for site {initiative.site}")
    if assignment.role_code != required:
        raise _deny(f"assignment carries role {assignment.role_code}")
    if assignment.user_id != actor.id:
        raise _deny("not the assigned identity")
    return assignment


def _gate(initiative: Initiative) -> None:
    """Stage-completion gates owned by the sub-workflows."""
    stage_number = initiative.current_stage

    if stage_number == TIMELINE_STAGE:
        open_ids = db.session.execute(
            select(TimelineEntry.id).where(
                TimelineEntry.initiative_id == initiative.id,
                or_(
                    TimelineEntry.site_lead_approval.is_(False),
                    TimelineEntry.initiative_lead_approval.is_(False),
                ),
            )
        ).scalars().all()
        if open_ids:
            raise StageGateError(
                f"{len(open_ids)} timeline milestone(s) lack dual approval",
                stage_number=stage_number,
                initiative_id=initiative.id,
                entry_ids=list(open_ids),
            )

    elif stage_number == SAVINGS_MONITORING_STAGE:
        open_ids = db.session.execute(
            select(MonitoringEntry.id).where(
                MonitoringEntry.initiative_id == initiative.id,
                MonitoringEntry.is_finalized.is_(False),
            )
        ).scalars().all()
        if open_ids:
            raise StageGateError(
                f"{len(open_ids)} monitoring entr(ies) not finalized",
                stage_number=stage_number,
                initiative_id=initiative.id,
                entry_ids=list(open_ids),
            )

    elif stage_number == SAVINGS_VALIDATION_STAGE:
        open_ids = db.session.execute(
            select(MonitoringEntry.id).where(
                MonitoringEntry.initiative_id == initiative.id,
                MonitoringEntry.finance_approved.is_(False),
            )
        ).scalars().all()
        if open_ids:
            raise StageGateError(
                f"{len(open_ids)} monitoring entr(ies) not finance-approved",
                stage_number=stage_number,
                initiative_id=initiative.id,
                entry_ids=list(open_ids),
            )


# ── Creation (stage 1) ───────────────────────────────────────────────────────


def _initiative_number(initiative: Initiative) -> str:
    year = (initiative.start_date or _utcnow().date()).year
    discipline = (initiative.discipline or "GEN").upper()
    return f"{initiative.site}/{year}/{discipline}/{initiative.id:04d}"


def _apply_fields(initiative: Initiative, data: dict) -> None:
    try:
        for field in ("expected_savings", "actual_savings", "estimated_capex"):
            if field in data:
                setattr(initiative, field, as_float(data.get(field), field))
        if "start_date" in data:
            initiative.start_date = parse_date_input(data.get("start_date"))
        if "end_date" in data:
            initiative.end_date = parse_date_input(data.get("end_date"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if initiative.start_date and initiative.end_date and initiative.end_date < initiative.start_date:
        raise ValidationError("end_date must not be before start_date", details={"end_date": "before start_date"})


def create_initiative(data: dict, creator_id: int) -> Initiative:
    """Register a new initiative (the stage-1 entry point).

    Any existing, active user may create; there is no stage role check.

    Returns:
        The committed Initiative, waiting at stage 2.

    Raises:
        NotFoundError: creator does not exist.
        ValidationError: title missing, bad dates/amounts, unknown priority.
    """
    creator = db.session.get(User, creator_id) if creator_id is not None else None
    if creator is None or not creator.is_active:
        raise NotFoundError(resource="User", resource_id=creator_id)

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    site = (data.get("site") or creator.site or "").strip()
    if not site:
        raise ValidationError("site is required", details={"site": "required"})
    priority = (data.get("priority") or "medium").lower()
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of {list(PRIORITIES)}", details={"priority": priority})

    initiative = Initiative(
        title=title,
        description=data.get("description") or "",
        priority=priority,
        site=site,
        discipline=(data.get("discipline") or "").strip(),
        status=STATUS_PENDING,
        current_stage=FIRST_STAGE,
        progress_percentage=0,
        requires_engineering_change=as_bool(data.get("requires_engineering_change")),
        requires_capital_approval=as_bool(data.get("requires_capital_approval")),
        created_by_id=creator.id,
    )
    _apply_fields(initiative, data)
    db.session.add(initiative)
    db.session.flush()
    initiative.initiative_number = _initiative_number(initiative)

    registration = _open_stage(initiative, FIRST_STAGE)
    registration.status = TX_APPROVED
    registration.assigned_user_id = creator.id
    registration.acted_by_id = creator.id
    registration.acted_at = _utcnow()
    registration.comment = "Initiative registered"

    next_stage = stage_catalog.next_stage(FIRST_STAGE, **initiative.flags())
    initiative.current_stage = next_stage
    _open_stage(initiative, next_stage)
    initiative.progress_percentage = compute_progress(initiative)

    write_audit(
        entity_type="initiative",
        entity_id=initiative.id,
        action="initiative.create",
        actor=creator.email,
        actor_user_id=creator.id,
        diff={"current_stage": {"old": None, "new": initiative.current_stage}, "status": {"old": None, "new": initiative.status}},
    )
    db.session.commit()

    logger.info(
        "Initiative registered",
        extra={"initiative_id": initiative.id, "site": site, "actor_id": creator.id},
    )
    return initiative


# ── Advance (approve / reject) ───────────────────────────────────────────────


def _approve(initiative: Initiative, actor: User, tx: StageTransaction, decision: dict) -> list[int]:
    stage_number = initiative.current_stage
    _gate(initiative)

    if stage_number == RESPONSIBILITY_STAGE:
        lead_id = decision.get("initiative_lead_id")
        if lead_id in (None, ""):
            raise ValidationError(
                "initiative_lead_id is required to complete stage 3",
                details={"initiative_lead_id": "required"},
            )
        try:
            lead_id = int(lead_id)
        except (TypeError, ValueError):
            raise ValidationError("initiative_lead_id must be an integer") from None
        lead = db.session.get(User, lead_id)
        if lead is None or not lead.is_active:
            raise ValidationError(
                f"Initiative Lead user {lead_id} does not exist",
                details={"initiative_lead_id": lead_id},
            )
        initiative.requires_engineering_change = as_bool(
            decision.get("requires_engineering_change"), initiative.requires_engineering_change,
        )
        initiative.requires_capital_approval = as_bool(
            decision.get("requires_capital_approval"), initiative.requires_capital_approval,
        )
        initiative.initiative_lead_id = lead.id
        role_directory.ensure_initiative_lead_stages(initiative, lead.id, actor=actor.email)
    elif stage_number == 4 and decision.get("moc_number"):
        initiative.moc_number = str(decision["moc_number"]).strip()
    elif stage_number == 5 and decision.get("capex_number"):
        initiative.capex_number = str(decision["capex_number"]).strip()

    tx.status = TX_APPROVED
    tx.acted_by_id = actor.id
    tx.acted_at = _utcnow()
    tx.comment = decision.get("comment")

    if initiative.status == STATUS_PENDING and stage_number >= 2:
        initiative.status = STATUS_IN_PROGRESS

    flags = initiative.flags()
    next_stage = stage_catalog.next_stage(stage_number, **flags)
    bypassed = stage_catalog.skipped_between(stage_number, next_stage, **flags)
    for number in bypassed:
        _record_bypass(initiative, number)

    if next_stage is None:
        initiative.status = STATUS_COMPLETED
    else:
        initiative.current_stage = next_stage
        _open_stage(initiative, next_stage)
    return bypassed


def _reject(initiative: Initiative, actor: User, tx: StageTransaction, decision: dict) -> None:
    comment = (decision.get("comment") or "").strip()
    if not comment:
        raise ValidationError("comment is required to reject", details={"comment": "required"})
    tx.status = TX_REJECTED
    tx.acted_by_id = actor.id
    tx.acted_at = _utcnow()
    tx.comment = comment
    initiative.status = STATUS_REJECTED


def advance(initiative_id: int, actor_id: int, decision: dict) -> dict:
    """Apply one stage decision for ``initiative_id``.

    Args:
        initiative_id: Initiative to act on.
        actor_id:      Acting user; must be the identity assigned to the
                       current stage.
        decision:      {action: approve|reject, comment, expected_version,
                        requires_engineering_change, requires_capital_approval,
                        initiative_lead_id, moc_number, capex_number}

    Returns:
        {initiative_id, action, previous_stage, current_stage, status,
         progress_percentage, bypassed_stages, version}

    Raises:
        NotFoundError, UnauthorizedError, ValidationError,
        InvalidTransitionError, StageGateError, ConcurrentModificationError
    """
    decision = decision or {}
    action = (decision.get("action") or "approve").strip().lower()
    if action not in ACTIONS:
        raise ValidationError(f"action must be one of {list(ACTIONS)}", details={"action": action})

    try:
        initiative = _load_for_update(initiative_id)
        _check_version(initiative, decision.get("expected_version"))
        if initiative.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(initiative.id, action, initiative.status)

        assignment = authorize(initiative, actor_id)
        actor = assignment.user
        previous_stage = initiative.current_stage
        previous_status = initiative.status
        tx = _open_stage(initiative, previous_stage)

        bypassed: list[int] = []
        if action == "approve":
            bypassed = _approve(initiative, actor, tx, decision)
        else:
            _reject(initiative, actor, tx, decision)

        initiative.progress_percentage = compute_progress(initiative)
        write_audit(
            entity_type="initiative",
            entity_id=initiative.id,
            action=f"initiative.{action}",
            actor=actor.email,
            actor_user_id=actor.id,
            diff={
                "current_stage": {"old": previous_stage, "new": initiative.current_stage},
                "status": {"old": previous_status, "new": initiative.status},
                "bypassed_stages": bypassed,
            },
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(
            "Concurrent transition lost the race",
            extra={"initiative_id": initiative_id, "actor_id": actor_id},
        )
        raise ConcurrentModificationError(initiative_id) from None
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Initiative %s stage %s %s by user %s",
        initiative.id, previous_stage, action, actor.id,
        extra={"initiative_id": initiative.id, "stage_number": previous_stage, "actor_id": actor.id},
    )
    return {
        "initiative_id": initiative.id,
        "action": action,
        "previous_stage": previous_stage,
        "current_stage": initiative.current_stage,
        "status": initiative.status,
        "progress_percentage": initiative.progress_percentage,
        "bypassed_stages": bypassed,
        "version": initiative.version,
    }


def resubmit(initiative_id: int, actor_id: int, comment: str | None = None) -> dict:
    """Reopen a rejected initiative at the stage that rejected it.

    Only the initiator may resubmit.
    """
    try:
        initiative = _load_for_update(initiative_id)
        if initiative.status != STATUS_REJECTED:
            raise InvalidTransitionError(initiative.id, "resubmit", initiative.status, "only rejected initiatives can be resubmitted")
        if actor_id is None or initiative.created_by_id != actor_id:
            raise UnauthorizedError(
                actor_id, initiative.current_stage, stage_catalog.required_role(FIRST_STAGE),
                reason="only the initiator may resubmit", initiative_id=initiative.id,
            )
        stage_number = initiative.current_stage
        approved_before = any(
            t.stage_number == 2 and t.status == TX_APPROVED for t in initiative.transactions
        )
        initiative.status = STATUS_IN_PROGRESS if approved_before else STATUS_PENDING
        tx = _open_stage(initiative, stage_number)
        tx.comment = (comment or "").strip() or None
        initiative.progress_percentage = compute_progress(initiative)
        write_audit(
            entity_type="initiative",
            entity_id=initiative.id,
            action="initiative.resubmit",
            actor=str(actor_id),
            actor_user_id=actor_id,
            diff={"status": {"old": STATUS_REJECTED, "new": initiative.status}, "stage_number": stage_number},
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConcurrentModificationError(initiative_id) from None
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Initiative resubmitted",
        extra={"initiative_id": initiative.id, "stage_number": stage_number, "actor_id": actor_id},
    )
    return {
        "initiative_id": initiative.id,
        "action": "resubmit",
        "current_stage": initiative.current_stage,
        "status": initiative.status,
        "progress_percentage": initiative.progress_percentage,
        "version": initiative.version,
    }


# ── Queries ──────────────────────────────────────────────────────────────────


def get_initiative(initiative_id: int) -> Initiative:
    return get_or_raise(Initiative, initiative_id)


def list_initiatives(status: str | None = None, site: str | None = None, search: str | None = None) -> list[Initiative]:
    stmt = select(Initiative)
    if status:
        stmt = stmt.where(Initiative.status == status)
    if site and site != "all":
        stmt = stmt.where(Initiative.site == site)
    if search:
        like = f"%{search.strip()}%"
        stmt = stmt.where(or_(Initiative.title.ilike(like), Initiative.initiative_number.ilike(like)))
    return list(db.session.execute(stmt.order_by(Initiative.id.desc())).scalars().all())


def get_transactions(initiative_id: int) -> list[StageTransaction]:
    return list(get_initiative(initiative_id).transactions)


def available_actions(initiative: Initiative, actor_id) -> list[str]:
    if initiative.status == STATUS_REJECTED:
        return ["resubmit"] if actor_id is not None and actor_id == initiative.created_by_id else []
    if initiative.status in TERMINAL_STATUSES:
        return []
    try:
        authorize(initiative, actor_id)
    except UnauthorizedError:
        return []
    return list(ACTIONS)


def pending_for_user(user_id: int) -> list[Initiative]:
    """Open initiatives whose current stage resolves to ``user_id``."""
    user = get_or_raise(User, user_id)
    candidates = db.session.execute(
        select(Initiative)
        .where(Initiative.status.notin_(TERMINAL_STATUSES), Initiative.site == user.site)
        .order_by(Initiative.id)
    ).scalars().all()
    return [
        i for i in candidates
        if role_directory.identity_for(i.site, i.current_stage, i.id) == user.id
    ]


def delete_initiative(initiative_id: int, actor: str = "system") -> None:
    """Delete an initiative with its entries, audit the delete and release its stage 4-6 slots."""
    initiative = get_initiative(initiative_id)
    write_audit(
        entity_type="initiative",
        entity_id=initiative.id,
        action="initiative.delete",
        actor=actor,
        diff={"title": {"old": initiative.title, "new": None}},
    )
    try:
        role_directory.release_initiative(initiative.id)
        db.session.delete(initiative)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Initiative deleted", extra={"initiative_id": initiative_id})
