"""
OpEx Hub
Blueprint registry and shared request helpers.

Every blueprint registers the same exception → HTTP mapping through
``register_error_handlers`` so services can raise and never build responses.
"""

import logging

from flask import g, request

from opexhub.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    SequencingError,
    UnauthorizedError,
    ValidationError,
)
from opexhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def current_actor_id():
    """Acting user id: ``X-User-Id`` header, else ``actor_id`` in the JSON body.

    Returns None when neither is present or the value is not an integer.
    """
    raw = request.headers.get("X-User-Id")
    if raw in (None, ""):
        raw = (request.get_json(silent=True) or {}).get("actor_id")
    try:
        actor_id = int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        actor_id = None
    g.actor_id = actor_id
    return actor_id


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def paginate_items(items, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to an already-loaded list.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (page_items, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total


def register_error_handlers(bp):
    """Attach the workflow exception mapping to a blueprint."""

    @bp.errorhandler(UnauthorizedError)
    def _handle_unauthorized(error: UnauthorizedError):
        logger.warning(
            "Refused: %s", error,
            extra={"actor_id": error.actor_id, "stage_number": error.stage_number},
        )
        return api_error(E.FORBIDDEN, str(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error), details=error.details)

    @bp.errorhandler(ConcurrentModificationError)
    def _handle_concurrent(error: ConcurrentModificationError):
        return api_error(
            E.CONFLICT_CONCURRENT, str(error), details=error.details, retryable=error.retryable,
        )

    @bp.errorhandler(SequencingError)
    def _handle_sequencing(error: SequencingError):
        logger.warning("Refused: %s", error, extra=_log_context(error.details))
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    return bp


def _log_context(details: dict) -> dict:
    return {k: details[k] for k in ("initiative_id", "stage_number", "entry_id") if k in details}
