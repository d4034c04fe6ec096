"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database and directory status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from opexhub.models import db
from opexhub.services import role_directory
from opexhub.models.workflow import FIXED_STAGE_NUMBERS

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness check — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check: database round-trip plus static directory coverage."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Directory (fixed stages of the default site) ─────────────────
    if overall:
        site = current_app.config.get("DEFAULT_SITE", "NDS")
        covered = {a.stage_number for a in role_directory.list_assignments(site=site) if not a.is_dynamic}
        missing = [n for n in FIXED_STAGE_NUMBERS if n not in covered]
        checks["directory"] = {
            "status": "ok" if not missing else "incomplete",
            "site": site,
            "missing_stages": missing,
        }

    checks["app"] = {
        "name": "OpEx Hub",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
