"""
OpEx Hub
Monthly KPI monitoring model.

Models:
    - MonitoringEntry: one KPI reading per initiative per month, locked by
      finalize and then approved by Finance & Accounts.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from opexhub.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class MonitoringEntry(db.Model):
    """
    Business rules:
    - (initiative, month, kpi) is unique.
    - deviation = achieved_value − target_value whenever both are set; it is
      recomputed on every insert/update, never written directly.
    - finance_approved may only become true after is_finalized.
    """

    __tablename__ = "monitoring_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "initiative_id", "monitoring_month", "kpi_description",
            name="uq_monitoring_initiative_month_kpi",
        ),
        db.CheckConstraint(
            "NOT finance_approved OR is_finalized",
            name="ck_monitoring_approved_after_finalize",
        ),
        db.Index("ix_monitoring_initiative_month", "initiative_id", "monitoring_month"),
    )

    id = db.Column(db.Integer, primary_key=True)
    initiative_id = db.Column(
        db.Integer, db.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False,
    )
    monitoring_month = db.Column(db.String(7), nullable=False, comment="YYYY-MM")
    kpi_description = db.Column(db.String(300), nullable=False)
    target_value = db.Column(db.Float, nullable=False)
    achieved_value = db.Column(db.Float, nullable=True)
    deviation = db.Column(db.Float, nullable=True, comment="achieved - target (derived)")
    remarks = db.Column(db.Text, nullable=True)

    is_finalized = db.Column(db.Boolean, nullable=False, default=False)
    finance_approved = db.Column(db.Boolean, nullable=False, default=False)
    finance_comments = db.Column(db.Text, nullable=True)
    entered_by_role = db.Column(db.String(10), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    initiative = db.relationship("Initiative", back_populates="monitoring_entries")

    def recompute_deviation(self):
        if self.achieved_value is None or self.target_value is None:
            self.deviation = None
        else:
            self.deviation = self.achieved_value - self.target_value

    def to_dict(self):
        return {
            "id": self.id,
            "initiative_id": self.initiative_id,
            "monitoring_month": self.monitoring_month,
            "kpi_description": self.kpi_description,
            "target_value": self.target_value,
            "achieved_value": self.achieved_value,
            "deviation": self.deviation,
            "remarks": self.remarks,
            "is_finalized": self.is_finalized,
            "finance_approved": self.finance_approved,
            "finance_comments": self.finance_comments,
            "entered_by_role": self.entered_by_role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<MonitoringEntry {self.id}: {self.initiative_id}/{self.monitoring_month} {self.kpi_description[:30]}>"


@event.listens_for(MonitoringEntry, "before_insert")
@event.listens_for(MonitoringEntry, "before_update")
def _derive_deviation(mapper, connection, target):
    target.recompute_deviation()
