"""
Initiative Blueprint — registration and stage transitions.

Endpoints:
    POST   /api/v1/initiatives                       register (stage 1)
    GET    /api/v1/initiatives                       ?status=&site=&search=&limit=&offset=
    GET    /api/v1/initiatives/<id>
    DELETE /api/v1/initiatives/<id>                  cascades to sub-workflows
    POST   /api/v1/initiatives/<id>/advance
           Body: { "action": "approve|reject", "comment": "...",
                   "expected_version": <int>,
                   "requires_engineering_change": bool,
                   "requires_capital_approval": bool,
                   "initiative_lead_id": <int>,          stage 3
                   "moc_number": "...", "capex_number": "..." }
    POST   /api/v1/initiatives/<id>/resubmit         initiator only
    GET    /api/v1/initiatives/<id>/transactions
    GET    /api/v1/initiatives/<id>/actions          for the acting user

The acting user comes from the X-User-Id header (or ``actor_id`` in the body).

Layer contract:
    - Blueprint: parse input, call transition_engine, return JSON.
    - NO db.session calls here; all writes owned by the service layer.
"""

import logging

from flask import Blueprint, jsonify, request

from opexhub.blueprints import current_actor_id, json_body, paginate_items, register_error_handlers
from opexhub.services import transition_engine
from opexhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

initiative_bp = Blueprint("initiative", __name__, url_prefix="/api/v1")
register_error_handlers(initiative_bp)


def _require_actor():
    actor_id = current_actor_id()
    if actor_id is None:
        return None, api_error(E.BAD_REQUEST, "X-User-Id header (or actor_id) is required")
    return actor_id, None


@initiative_bp.route("/initiatives", methods=["POST"])
def create_initiative():
    actor_id, err = _require_actor()
    if err:
        return err
    initiative = transition_engine.create_initiative(json_body(), creator_id=actor_id)
    return jsonify(initiative.to_dict()), 201


@initiative_bp.route("/initiatives", methods=["GET"])
def list_initiatives():
    items = transition_engine.list_initiatives(
        status=request.args.get("status") or None,
        site=request.args.get("site") or None,
        search=request.args.get("search") or None,
    )
    page, total = paginate_items(items)
    return jsonify({"items": [i.to_dict() for i in page], "total": total}), 200


@initiative_bp.route("/initiatives/<int:initiative_id>", methods=["GET"])
def get_initiative(initiative_id: int):
    return jsonify(transition_engine.get_initiative(initiative_id).to_dict()), 200


@initiative_bp.route("/initiatives/<int:initiative_id>", methods=["DELETE"])
def delete_initiative(initiative_id: int):
    actor_id = current_actor_id()
    transition_engine.delete_initiative(
        initiative_id, actor=str(actor_id) if actor_id is not None else "system",
    )
    return jsonify({"deleted": True, "id": initiative_id}), 200


@initiative_bp.route("/initiatives/<int:initiative_id>/advance", methods=["POST"])
def advance(initiative_id: int):
    """Approve or reject the initiative's current stage.

    Returns 200 with the transition result; 403 when the actor is not the
    assigned identity; 409 on gate, state or concurrency conflicts.
    """
    actor_id, err = _require_actor()
    if err:
        return err
    result = transition_engine.advance(initiative_id, actor_id, json_body())
    return jsonify(result), 200


@initiative_bp.route("/initiatives/<int:initiative_id>/resubmit", methods=["POST"])
def resubmit(initiative_id: int):
    actor_id, err = _require_actor()
    if err:
        return err
    result = transition_engine.resubmit(initiative_id, actor_id, json_body().get("comment"))
    return jsonify(result), 200


@initiative_bp.route("/initiatives/<int:initiative_id>/transactions", methods=["GET"])
def list_transactions(initiative_id: int):
    transactions = transition_engine.get_transactions(initiative_id)
    return jsonify({"items": [t.to_dict() for t in transactions], "total": len(transactions)}), 200


@initiative_bp.route("/initiatives/<int:initiative_id>/actions", methods=["GET"])
def available_actions(initiative_id: int):
    initiative = transition_engine.get_initiative(initiative_id)
    actor_id = current_actor_id()
    return jsonify({
        "initiative_id": initiative.id,
        "current_stage": initiative.current_stage,
        "actor_id": actor_id,
        "actions": transition_engine.available_actions(initiative, actor_id),
    }), 200

