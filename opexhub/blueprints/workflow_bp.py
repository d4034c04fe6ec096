"""
Workflow Blueprint — stage catalog, role directory and the approver inbox.

Endpoints:
    GET /api/v1/workflow/stages                 catalog with slot kinds
    GET /api/v1/workflow/plan                   ?requires_engineering_change=&requires_capital_approval=
    GET /api/v1/workflow/pending                initiatives waiting on X-User-Id
    GET /api/v1/workflow/assignments            ?site=&initiative_id=
    PUT /api/v1/workflow/assignments
        Body: { "site": "NDS", "stage_number": 7, "role_code": "STLD",
                "user_id": <int>, "initiative_id": <int optional>,
                "overwrite": bool }
"""

import logging

from flask import Blueprint, jsonify, request

from opexhub.blueprints import current_actor_id, json_body, register_error_handlers
from opexhub.services import role_directory, stage_catalog, transition_engine
from opexhub.utils.errors import E, api_error
from opexhub.utils.helpers import as_bool

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")
register_error_handlers(workflow_bp)


@workflow_bp.route("/stages", methods=["GET"])
def list_stages():
    stages = []
    for stage in stage_catalog.all_stages():
        slot = stage_catalog.slot_for(stage.stage_number)
        stages.append({
            **stage.to_dict(),
            "slot": type(slot).__name__,
            "dynamically_bound": slot.dynamically_bound,
            "gating_flag": slot.gating_flag,
        })
    return jsonify({"items": stages, "total": len(stages)}), 200


@workflow_bp.route("/plan", methods=["GET"])
def plan():
    rec = as_bool(request.args.get("requires_engineering_change"))
    rca = as_bool(request.args.get("requires_capital_approval"))
    path = stage_catalog.plan_path(rec, rca)
    return jsonify({
        "requires_engineering_change": rec,
        "requires_capital_approval": rca,
        "path": [{"stage_number": n, "state": state} for n, state in path],
    }), 200


@workflow_bp.route("/pending", methods=["GET"])
def pending():
    actor_id = current_actor_id()
    if actor_id is None:
        return api_error(E.BAD_REQUEST, "X-User-Id header is required")
    items = transition_engine.pending_for_user(actor_id)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@workflow_bp.route("/assignments", methods=["GET"])
def list_assignments():
    initiative_id = request.args.get("initiative_id", type=int)
    items = role_directory.list_assignments(
        site=request.args.get("site") or None,
        initiative_id=initiative_id,
    )
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)}), 200


@workflow_bp.route("/assignments", methods=["PUT"])
def assign():
    """Create or (with overwrite=true) replace one directory slot.

    409 when the slot is held by another user and overwrite is false.
    """
    data = json_body()
    missing = [f for f in ("site", "stage_number", "role_code", "user_id") if data.get(f) in (None, "")]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED, f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    try:
        stage_number = int(data["stage_number"])
        user_id = int(data["user_id"])
        initiative_id = int(data["initiative_id"]) if data.get("initiative_id") not in (None, "") else None
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "stage_number, user_id and initiative_id must be integers")

    actor_id = current_actor_id()
    assignment = role_directory.save_assignment(
        str(data["site"]).strip(),
        stage_number,
        str(data["role_code"]).strip(),
        user_id,
        initiative_id=initiative_id,
        overwrite=as_bool(data.get("overwrite")),
        actor=str(actor_id) if actor_id is not None else "system",
    )
    return jsonify(assignment.to_dict()), 200
