"""
Reports Blueprint — read-only tracker snapshot.

Endpoints:
    GET /api/v1/reports/tracker     ?site=NDS|all&fiscal_year=2025

Without ``fiscal_year`` the plain tracker rows are returned; with it, twelve
April → March sheets keyed by label (``Apr.25`` …).
"""

import logging

from flask import Blueprint, jsonify, request

from opexhub.blueprints import register_error_handlers
from opexhub.services import reporting
from opexhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

reports_bp = Blueprint("reports", __name__, url_prefix="/api/v1/reports")
register_error_handlers(reports_bp)


@reports_bp.route("/tracker", methods=["GET"])
def tracker():
    site = request.args.get("site") or None
    fiscal_year = request.args.get("fiscal_year")
    if not fiscal_year:
        rows = reporting.tracker_rows(site)
        return jsonify({"site": site or "all", "items": rows, "total": len(rows)}), 200

    try:
        fiscal_year = int(fiscal_year)
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "fiscal_year must be a year, e.g. 2025")

    sheets = reporting.monthly_tracker(fiscal_year, site)
    return jsonify({
        "site": site or "all",
        "fiscal_year": fiscal_year,
        "months": list(sheets.keys()),
        "sheets": [{"label": label, "rows": rows} for label, rows in sheets.items()],
    }), 200
