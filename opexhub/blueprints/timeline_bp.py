"""
Timeline Blueprint — milestone tracker with dual sign-off.

Endpoints:
    GET    /api/v1/initiatives/<id>/timeline
    POST   /api/v1/initiatives/<id>/timeline
           Body: { "description": "...", "planned_start_date": "2025-04-01",
                   "planned_end_date": "2025-04-30", "responsible_person": "...",
                   "status": "pending|in_progress|completed|delayed" }
    GET    /api/v1/initiatives/<id>/timeline/pending-approvals
    PUT    /api/v1/timeline/<entry_id>
    POST   /api/v1/timeline/<entry_id>/approvals      { "approver_role": "site_lead|initiative_lead|STLD|IL",
                                                        "approved": true }
    POST   /api/v1/timeline/<entry_id>/reset-approvals
    DELETE /api/v1/timeline/<entry_id>
"""

import logging

from flask import Blueprint, jsonify

from opexhub.blueprints import json_body, register_error_handlers
from opexhub.services import timeline_service
from opexhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

timeline_bp = Blueprint("timeline", __name__, url_prefix="/api/v1")
register_error_handlers(timeline_bp)


@timeline_bp.route("/initiatives/<int:initiative_id>/timeline", methods=["GET"])
def list_milestones(initiative_id: int):
    entries = timeline_service.list_milestones(initiative_id)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


@timeline_bp.route("/initiatives/<int:initiative_id>/timeline", methods=["POST"])
def record_milestone(initiative_id: int):
    entry = timeline_service.record_milestone(initiative_id, json_body())
    return jsonify(entry.to_dict()), 201


@timeline_bp.route("/initiatives/<int:initiative_id>/timeline/pending-approvals", methods=["GET"])
def pending_approvals(initiative_id: int):
    entries = [e.to_dict() for e in timeline_service.pending_approvals(initiative_id)]
    return jsonify({"items": entries, "total": len(entries)}), 200


@timeline_bp.route("/timeline/<int:entry_id>", methods=["PUT"])
def update_milestone(entry_id: int):
    entry = timeline_service.update_milestone(entry_id, json_body())
    return jsonify(entry.to_dict()), 200


@timeline_bp.route("/timeline/<int:entry_id>/approvals", methods=["POST"])
def set_approval(entry_id: int):
    data = json_body()
    approver_role = data.get("approver_role")
    if not approver_role:
        return api_error(E.VALIDATION_REQUIRED, "approver_role is required")
    entry = timeline_service.set_approval(entry_id, approver_role, data.get("approved", True))
    return jsonify(entry.to_dict()), 200


@timeline_bp.route("/timeline/<int:entry_id>/reset-approvals", methods=["POST"])
def reset_approvals(entry_id: int):
    entry = timeline_service.reset_approvals(entry_id)
    return jsonify(entry.to_dict()), 200


@timeline_bp.route("/timeline/<int:entry_id>", methods=["DELETE"])
def delete_milestone(entry_id: int):
    timeline_service.delete_milestone(entry_id)
    return jsonify({"deleted": True, "id": entry_id}), 200
