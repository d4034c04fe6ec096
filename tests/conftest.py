"""
Shared pytest fixtures for the OpEx Hub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test app context + table recreation (autouse)
    - client: Flask test client (function-scoped)
    - directory: demo users + static role directory for site NDS
    - users: role-keyed demo users (initiator, site_head, eng_head, lead, ...)
    - initiative: freshly registered initiative waiting at stage 2
    - advance_to: helper that drives an initiative to a given stage
"""

import pytest

from opexhub import create_app
from opexhub.models import db as _db
from opexhub.models.workflow import User
from opexhub.services import setup_service, transition_engine

SITE = "NDS"

# fixture key → demo user full name
_DEMO_KEYS = {
    "initiator": "Manoj Tiwari",
    "site_head": "Priya Sharma",
    "eng_head": "Amit Patel",
    "lead": "Rajesh Kumar",
    "trial_lead": "Vikram Gupta",
    "corporate": "Kavya Nair",
    "monitoring_lead": "Suresh Reddy",
    "validation_lead": "Rohit Jain",
    "closure_lead": "Ananya Verma",
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Workflow fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def directory():
    """Seed demo users and the static directory for the test site."""
    return setup_service.seed_workflow_directory(SITE)


@pytest.fixture()
def users(directory):
    by_name = {u.full_name: u for u in User.query.filter_by(site=SITE).all()}
    return {key: by_name[name] for key, name in _DEMO_KEYS.items()}


@pytest.fixture()
def initiative(users):
    """Registered initiative, waiting for the Site Head at stage 2."""
    return transition_engine.create_initiative(
        {
            "title": "Reduce steam consumption in dryer section",
            "site": SITE,
            "discipline": "MECH",
            "expected_savings": 1200000,
            "estimated_capex": 250000,
            "start_date": "2025-04-01",
            "end_date": "2026-03-31",
        },
        creator_id=users["initiator"].id,
    )


# stage → fixture key of the identity acting on it
STAGE_ACTORS = {
    2: "site_head",
    3: "eng_head",
    4: "lead",
    5: "lead",
    6: "lead",
    7: "trial_lead",
    8: "corporate",
    9: "monitoring_lead",
    10: "validation_lead",
    11: "closure_lead",
}


@pytest.fixture()
def advance_to(users):
    """Approve stages until the initiative's current stage is ``target``.

    Stage 3 names ``users["lead"]`` as Initiative Lead; flags default to
    False and can be overridden per call.
    """

    def _advance(initiative_id, target, **flags):
        current = transition_engine.get_initiative(initiative_id)
        while current.current_stage < target:
            stage = current.current_stage
            decision = {"action": "approve"}
            if stage == 3:
                decision.update({
                    "initiative_lead_id": users["lead"].id,
                    "requires_engineering_change": flags.get("requires_engineering_change", False),
                    "requires_capital_approval": flags.get("requires_capital_approval", False),
                })
            transition_engine.advance(initiative_id, users[STAGE_ACTORS[stage]].id, decision)
            current = transition_engine.get_initiative(initiative_id)
        return current

    return _advance
