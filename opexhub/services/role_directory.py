"""
Role Assignment Directory — (site, stage) → responsible identity.

Two kinds of entries:
    - static, scope="site": created by the setup routine for the fixed
      stages (1, 2, 3, 7, 8, 9, 10, 11)
    - dynamic, scope="initiative:<id>": created by the transition engine at
      stage-3 completion for the Initiative-Lead stages 4, 5, 6

Writes only flush; the caller owns the commit so that directory updates
land in the same transaction as the stage transition that caused them.

Reassignment is explicit: ``assign(..., overwrite=True)``. Without it a
different identity for an occupied slot raises DuplicateAssignmentError.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from opexhub.core.exceptions import DuplicateAssignmentError, NotFoundError, ValidationError
from opexhub.models import db
from opexhub.models.audit import write_audit
from opexhub.models.workflow import (
    DYNAMIC_STAGE_NUMBERS,
    INITIATIVE_LEAD_ROLE,
    SITE_SCOPE,
    Initiative,
    RoleAssignment,
    User,
    initiative_scope,
)
from opexhub.services import stage_catalog

logger = logging.getLogger(__name__)


def _scope_for(initiative_id: int | None) -> str:
    return initiative_scope(initiative_id) if initiative_id is not None else SITE_SCOPE


def _get_slot(site: str, stage_number: int, scope: str) -> RoleAssignment | None:
    return db.session.execute(
        select(RoleAssignment).where(
            RoleAssignment.site == site,
            RoleAssignment.stage_number == stage_number,
            RoleAssignment.scope == scope,
        )
    ).scalar_one_or_none()


# ── Lookups ──────────────────────────────────────────────────────────────────


def resolve(site: str, stage_number: int, initiative_id: int | None = None) -> RoleAssignment | None:
    """Return the assignment responsible for a stage, or None when unassigned.

    An initiative-scoped entry wins over the site-wide one.
    """
    stage_catalog.stage_by_number(stage_number)
    if initiative_id is not None:
        scoped = _get_slot(site, stage_number, initiative_scope(initiative_id))
        if scoped is not None:
            return scoped
    return _get_slot(site, stage_number, SITE_SCOPE)


def identity_for(site: str, stage_number: int, initiative_id: int | None = None) -> int | None:
    """Identity-for-role lookup (the second of the two authorization lookups)."""
    assignment = resolve(site, stage_number, initiative_id)
    return assignment.user_id if assignment else None


def list_assignments(site: str | None = None, initiative_id: int | None = None) -> list[RoleAssignment]:
    stmt = select(RoleAssignment)
    if site:
        stmt = stmt.where(RoleAssignment.site == site)
    if initiative_id is not None:
        stmt = stmt.where(RoleAssignment.scope == initiative_scope(initiative_id))
    stmt = stmt.order_by(RoleAssignment.site, RoleAssignment.stage_number, RoleAssignment.id)
    return list(db.session.execute(stmt).scalars().all())


# ── Writes ───────────────────────────────────────────────────────────────────


def assign(
    site: str,
    stage_number: int,
    role_code: str,
    user_id: int,
    *,
    initiative_id: int | None = None,
    overwrite: bool = False,
    actor: str = "system",
) -> RoleAssignment:
    """Idempotent upsert of one directory slot.

    Returns:
        The (flushed) RoleAssignment.

    Raises:
        UnknownStageError: stage_number not in the catalog.
        ValidationError: role_code differs from the stage's required role.
        ValidationError: a stage-4/5/6 slot without initiative_id.
        NotFoundError: user_id does not exist.
        NotFoundError: initiative_id does not exist.
        DuplicateAssignmentError: slot held by someone else and overwrite=False.
    """
    stage = stage_catalog.stage_by_number(stage_number)
    if not (site or "").strip():
        raise ValidationError("site is required", details={"site": "required"})
    if role_code != stage.required_role_code:
        raise ValidationError(
            f"Stage {stage_number} requires role {stage.required_role_code}, got {role_code}",
            details={"stage_number": stage_number, "role_code": role_code},
        )
    if db.session.get(User, user_id) is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    initiative = None
    if initiative_id is None:
        if stage_number in DYNAMIC_STAGE_NUMBERS:
            raise ValidationError(
                f"Stage {stage_number} is assigned per initiative; initiative_id is required",
                details={"stage_number": stage_number, "initiative_id": "required"},
            )
    else:
        initiative = db.session.get(Initiative, initiative_id)
        if initiative is None:
            raise NotFoundError(resource="Initiative", resource_id=initiative_id)

    scope = _scope_for(initiative_id)
    existing = _get_slot(site, stage_number, scope)

    if existing is not None:
        if existing.user_id == user_id:
            return existing
        if not overwrite:
            raise DuplicateAssignmentError(site, stage_number, existing.user_id, user_id)
        previous = existing.user_id
        existing.user_id = user_id
        if initiative is not None and role_code == INITIATIVE_LEAD_ROLE:
            initiative.initiative_lead_id = user_id
        db.session.flush()
        write_audit(
            entity_type="role_assignment",
            entity_id=existing.id,
            action="role_assignment.reassign",
            actor=actor,
            diff={"user_id": {"old": previous, "new": user_id}, "scope": scope},
        )
        logger.info(
            "Role assignment reassigned",
            extra={"site": site, "stage_number": stage_number, "scope": scope, "user_id": user_id},
        )
        return existing

    assignment = RoleAssignment(
        site=site,
        stage_number=stage_number,
        role_code=role_code,
        scope=scope,
        user_id=user_id,
    )
    db.session.add(assignment)
    db.session.flush()
    write_audit(
        entity_type="role_assignment",
        entity_id=assignment.id,
        action="role_assignment.assign",
        actor=actor,
        diff={"user_id": {"old": None, "new": user_id}, "stage_number": stage_number, "scope": scope},
    )
    logger.debug(
        "Role assignment created",
        extra={"site": site, "stage_number": stage_number, "scope": scope, "user_id": user_id},
    )
    return assignment


def ensure_initiative_lead_stages(initiative, lead_user_id: int, *, actor: str = "system") -> list[RoleAssignment]:
    """Bind stages 4, 5 and 6 of ``initiative`` to the chosen Initiative Lead.

    Safe to call again with the same lead (retry of a stage-3 completion):
    the existing rows are returned unchanged.
    """
    return [
        assign(
            initiative.site,
            stage_number,
            INITIATIVE_LEAD_ROLE,
            lead_user_id,
            initiative_id=initiative.id,
            actor=actor,
        )
        for stage_number in DYNAMIC_STAGE_NUMBERS
    ]


def release_initiative(initiative_id: int) -> int:
    """Drop every initiative-scoped slot of ``initiative_id``; returns the count."""
    assignments = list_assignments(initiative_id=initiative_id)
    for assignment in assignments:
        db.session.delete(assignment)
    db.session.flush()
    if assignments:
        logger.debug(
            "Initiative assignments released",
            extra={"initiative_id": initiative_id, "count": len(assignments)},
        )
    return len(assignments)


def save_assignment(site, stage_number, role_code, user_id, **kwargs) -> RoleAssignment:
    """``assign`` as its own unit of work, for administrative edits."""
    try:
        assignment = assign(site, stage_number, role_code, user_id, **kwargs)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return assignment
