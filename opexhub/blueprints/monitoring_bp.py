"""
Monitoring Blueprint — monthly KPI entries and F&A approval.

Endpoints:
    GET    /api/v1/initiatives/<id>/monitoring                    ?month=YYYY-MM
    POST   /api/v1/initiatives/<id>/monitoring
           Body: { "monitoring_month": "2025-04", "kpi_description": "...",
                   "target_value": 100, "achieved_value": 85,
                   "entered_by_role": "STLD", "remarks": "..." }
    GET    /api/v1/initiatives/<id>/monitoring/pending-approvals
    PUT    /api/v1/monitoring/<entry_id>
    PUT    /api/v1/monitoring/<entry_id>/achieved                 { "achieved_value": 85 }
    POST   /api/v1/monitoring/<entry_id>/finalize
    POST   /api/v1/monitoring/<entry_id>/finance-approval         { "approved": true, "comments": "..." }
    DELETE /api/v1/monitoring/<entry_id>
"""

import logging

from flask import Blueprint, jsonify, request

from opexhub.blueprints import json_body, register_error_handlers
from opexhub.services import monitoring_service
from opexhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

monitoring_bp = Blueprint("monitoring", __name__, url_prefix="/api/v1")
register_error_handlers(monitoring_bp)


@monitoring_bp.route("/initiatives/<int:initiative_id>/monitoring", methods=["GET"])
def list_entries(initiative_id: int):
    entries = monitoring_service.list_entries(initiative_id, month=request.args.get("month") or None)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


@monitoring_bp.route("/initiatives/<int:initiative_id>/monitoring", methods=["POST"])
def record_entry(initiative_id: int):
    data = json_body()
    entry = monitoring_service.record_entry(
        initiative_id,
        data.get("monitoring_month"),
        data.get("kpi_description"),
        data.get("target_value"),
        data.get("entered_by_role") or "STLD",
        achieved=data.get("achieved_value"),
        remarks=data.get("remarks"),
    )
    return jsonify(entry.to_dict()), 201


@monitoring_bp.route("/initiatives/<int:initiative_id>/monitoring/pending-approvals", methods=["GET"])
def pending_approvals(initiative_id: int):
    entries = [e.to_dict() for e in monitoring_service.pending_approvals(initiative_id)]
    return jsonify({"items": entries, "total": len(entries)}), 200


@monitoring_bp.route("/monitoring/<int:entry_id>", methods=["PUT"])
def update_entry(entry_id: int):
    entry = monitoring_service.update_entry(entry_id, json_body())
    return jsonify(entry.to_dict()), 200


@monitoring_bp.route("/monitoring/<int:entry_id>/achieved", methods=["PUT"])
def set_achieved(entry_id: int):
    data = json_body()
    if "achieved_value" not in data:
        return api_error(E.VALIDATION_REQUIRED, "achieved_value is required")
    entry = monitoring_service.set_achieved(entry_id, data.get("achieved_value"))
    return jsonify(entry.to_dict()), 200


@monitoring_bp.route("/monitoring/<int:entry_id>/finalize", methods=["POST"])
def finalize(entry_id: int):
    entry = monitoring_service.finalize(entry_id)
    return jsonify(entry.to_dict()), 200


@monitoring_bp.route("/monitoring/<int:entry_id>/finance-approval", methods=["POST"])
def finance_approval(entry_id: int):
    data = json_body()
    entry = monitoring_service.finance_approve(
        entry_id,
        approved=data.get("approved", True),
        comments=data.get("comments"),
    )
    return jsonify(entry.to_dict()), 200


@monitoring_bp.route("/monitoring/<int:entry_id>", methods=["DELETE"])
def delete_entry(entry_id: int):
    monitoring_service.delete_entry(entry_id)
    return jsonify({"deleted": True, "id": entry_id}), 200
