"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter. The Limiter instance is
created in ``opexhub/__init__.py`` with no default limits; this module
applies granular limits per route category.

Usage:
    from opexhub.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_BLUEPRINTS = ("initiative", "workflow", "monitoring", "timeline")
READ_BLUEPRINTS = ("reports",)


def actor_or_remote_key():
    """Rate-limit key: the acting user when identified, else the remote IP."""
    actor = flask_request.headers.get("X-User-Id")
    if actor:
        return f"user:{actor}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per acting user / remote IP):
        - Workflow blueprints:  WORKFLOW_WRITE_LIMIT (default 60/minute)
        - Reports:              200/minute
        - Health check:         exempt

    Skipped entirely when TESTING or RATELIMIT_ENABLED is false.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    write_limit = app.config.get("WORKFLOW_WRITE_LIMIT", "60 per minute")
    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, key_func=actor_or_remote_key)(bp)

    for bp_name in READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("200/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: workflow=%s, reports=200/min", write_limit)
