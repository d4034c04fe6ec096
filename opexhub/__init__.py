"""
OpEx Hub
Flask Application Factory.

Usage:
    from opexhub import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from opexhub.config import config
from opexhub.middleware.logging_config import configure_logging
from opexhub.middleware.rate_limiter import actor_or_remote_key, init_rate_limits
from opexhub.middleware.timing import init_request_timing
from opexhub.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections (cascade deletes)."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=actor_or_remote_key,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    # Model modules must be imported before migrate / create_all see metadata
    from opexhub.models import audit, monitoring, timeline, workflow  # noqa: F401

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from opexhub.blueprints.health_bp import health_bp
    from opexhub.blueprints.initiative_bp import initiative_bp
    from opexhub.blueprints.monitoring_bp import monitoring_bp
    from opexhub.blueprints.reports_bp import reports_bp
    from opexhub.blueprints.timeline_bp import timeline_bp
    from opexhub.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(initiative_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(monitoring_bp)
    app.register_blueprint(timeline_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow")
    @click.option("--site", default=None, help="Site code (defaults to DEFAULT_SITE).")
    def seed_workflow_cmd(site):
        """Seed demo users and the static role directory for a site."""
        from opexhub.services.setup_service import seed_workflow_directory
        result = seed_workflow_directory(site or app.config.get("DEFAULT_SITE", "NDS"))
        click.echo(
            f"Seeded site {result['site']}: {result['users_created']} new users, "
            f"{len(result['assignments'])} static assignments."
        )

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        original = getattr(e, "original_exception", None) or e
        logger.error("Unhandled error on %s %s", request.method, request.path, exc_info=original)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
