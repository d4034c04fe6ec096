"""
Workflow directory setup.

Creates one demo user per stage owner and the static (site-scoped)
directory entries for the fixed stages. The Initiative-Lead stages 4/5/6
are not seeded: the transition engine binds them per initiative at stage 3.

Idempotent: users are matched by email, assignments by their slot.

Usage:
    flask seed-workflow --site NDS
    python scripts/seed_demo_data.py
"""

import logging

from sqlalchemy import select

from opexhub.models import db
from opexhub.models.workflow import FIXED_STAGE_NUMBERS, ROLE_CODES, User
from opexhub.services import role_directory, stage_catalog

logger = logging.getLogger(__name__)

DEFAULT_SITE = "NDS"
EMAIL_DOMAIN = "godeepak.com"

# (full name, discipline, role code, stages owned in the static directory)
DEMO_USERS = (
    ("Manoj Tiwari", "TSD", "STLD", (1,)),
    ("Priya Sharma", "MGMT", "SH", (2,)),
    ("Amit Patel", "ENG", "EH", (3,)),
    ("Rajesh Kumar", "MECH", "IL", ()),
    ("Vikram Gupta", "MAINT", "STLD", (7,)),
    ("Kavya Nair", "CORP", "CTSD", (8,)),
    ("Suresh Reddy", "EG", "STLD", (9,)),
    ("Rohit Jain", "SF", "STLD", (10,)),
    ("Ananya Verma", "QA", "STLD", (11,)),
)


def _email(full_name: str, site: str) -> str:
    local = full_name.lower().replace(" ", ".")
    if site != DEFAULT_SITE:
        local = f"{local}.{site.lower()}"
    return f"{local}@{EMAIL_DOMAIN}"


def _get_or_create_user(full_name, discipline, role_code, site):
    email = _email(full_name, site)
    user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is not None:
        return user, False
    user = User(
        email=email,
        full_name=full_name,
        site=site,
        discipline=discipline,
        role_code=role_code,
        role_name=ROLE_CODES[role_code],
        is_active=True,
    )
    db.session.add(user)
    db.session.flush()
    return user, True


def seed_workflow_directory(site: str = DEFAULT_SITE) -> dict:
    """Seed demo users and the static directory for ``site``.

    Returns:
        {"site", "users_created", "assignments": [RoleAssignment, ...]}
    """
    site = (site or DEFAULT_SITE).strip().upper()
    users_created = 0
    assignments = []

    for full_name, discipline, role_code, stages in DEMO_USERS:
        user, created = _get_or_create_user(full_name, discipline, role_code, site)
        users_created += int(created)
        for stage_number in stages:
            assignments.append(role_directory.assign(
                site,
                stage_number,
                stage_catalog.required_role(stage_number),
                user.id,
                actor="seed",
            ))

    seeded = {a.stage_number for a in assignments}
    missing = [n for n in FIXED_STAGE_NUMBERS if n not in seeded]
    if missing:
        raise RuntimeError(f"Demo users leave fixed stages unassigned: {missing}")

    db.session.commit()
    logger.info(
        "Workflow directory seeded",
        extra={"site": site, "users_created": users_created, "assignments": len(assignments)},
    )
    return {"site": site, "users_created": users_created, "assignments": assignments}
