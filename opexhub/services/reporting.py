"""
Read-only tracker snapshot for the monthly savings report.

Produces plain rows; rendering them (spreadsheet, PDF, …) is left to the
consumer. The fiscal year runs April → March and month labels follow the
tracker's own spelling (``Apr.25`` … ``Sept.25`` … ``Mar.26``).
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from sqlalchemy import func, select

from opexhub.models import db
from opexhub.models.monitoring import MonitoringEntry
from opexhub.models.workflow import STAGE_BY_NUMBER, Initiative

logger = logging.getLogger(__name__)

# (calendar month, label) in fiscal order
FISCAL_MONTHS = (
    (4, "Apr"), (5, "May"), (6, "June"), (7, "Jul"), (8, "Aug"), (9, "Sept"),
    (10, "Oct"), (11, "Nov"), (12, "Dec"), (1, "Jan"), (2, "Feb"), (3, "Mar"),
)


def annualized_value(initiative: Initiative):
    """Actual savings when reported, otherwise the expected savings."""
    if initiative.actual_savings is not None:
        return initiative.actual_savings
    return initiative.expected_savings


def _initiative_leader(initiative: Initiative) -> str:
    if initiative.initiative_lead is not None:
        return initiative.initiative_lead.full_name
    if initiative.created_by is not None:
        return initiative.created_by.full_name
    return ""


def _initiatives(site):
    stmt = select(Initiative).order_by(Initiative.id)
    if site and site != "all":
        stmt = stmt.where(Initiative.site == site)
    return db.session.execute(stmt).scalars().all()


def tracker_rows(site: str | None = None) -> list[dict]:
    """One row per initiative, in creation order, numbered from 1."""
    rows = []
    for sr_no, initiative in enumerate(_initiatives(site), start=1):
        stage = STAGE_BY_NUMBER.get(initiative.current_stage)
        rows.append({
            "sr_no": sr_no,
            "initiative_id": initiative.id,
            "title": initiative.title or "",
            "discipline": initiative.discipline or "",
            "initiative_number": initiative.initiative_number or "",
            "start_date": initiative.start_date.isoformat() if initiative.start_date else None,
            "initiative_leader": _initiative_leader(initiative),
            "end_date": initiative.end_date.isoformat() if initiative.end_date else None,
            "capex_cost": initiative.estimated_capex,
            "status": initiative.status or "",
            "expected_savings": initiative.expected_savings,
            "actual_savings": initiative.actual_savings,
            "annualized_value": annualized_value(initiative),
            "remarks": stage.stage_name if stage else "",
        })
    return rows


def fiscal_month_keys(fiscal_year_start: int) -> list[tuple[str, str]]:
    """[(label, "YYYY-MM"), …] for the fiscal year starting in April of ``fiscal_year_start``."""
    keys = []
    for month, name in FISCAL_MONTHS:
        year = fiscal_year_start if month >= 4 else fiscal_year_start + 1
        keys.append((f"{name}.{year % 100:02d}", f"{year:04d}-{month:02d}"))
    return keys


def monthly_tracker(fiscal_year_start: int, site: str | None = None) -> "OrderedDict[str, list[dict]]":
    """Twelve labelled sheets of tracker rows, each with that month's achieved total.

    Returns:
        OrderedDict label → rows; every row carries ``monitoring_month`` and
        ``achieved_total`` (None when nothing was recorded that month).
    """
    base_rows = tracker_rows(site)
    keys = fiscal_month_keys(fiscal_year_start)
    months = [key for _, key in keys]

    totals = {}
    if base_rows:
        stmt = (
            select(
                MonitoringEntry.initiative_id,
                MonitoringEntry.monitoring_month,
                func.sum(MonitoringEntry.achieved_value),
            )
            .where(
                MonitoringEntry.initiative_id.in_([r["initiative_id"] for r in base_rows]),
                MonitoringEntry.monitoring_month.in_(months),
            )
            .group_by(MonitoringEntry.initiative_id, MonitoringEntry.monitoring_month)
        )
        for initiative_id, month, total in db.session.execute(stmt):
            totals[(initiative_id, month)] = total

    sheets = OrderedDict()
    for label, month in keys:
        sheets[label] = [
            {**row, "monitoring_month": month, "achieved_total": totals.get((row["initiative_id"], month))}
            for row in base_rows
        ]

    logger.debug(
        "Monthly tracker built",
        extra={"site": site or "all", "fiscal_year": fiscal_year_start, "initiatives": len(base_rows)},
    )
    return sheets
