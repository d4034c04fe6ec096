"""
OpEx Hub
Initiative timeline tracker model.

Models:
    - TimelineEntry: a milestone that needs both the site lead's and the
      initiative lead's sign-off before it counts as complete.
"""

from datetime import datetime, timezone

from opexhub.models import db

TIMELINE_STATUSES = frozenset({"pending", "in_progress", "completed", "delayed"})

# approver role → approval flag column
APPROVER_FLAGS = {
    "site_lead": "site_lead_approval",
    "initiative_lead": "initiative_lead_approval",
}
APPROVER_ALIASES = {
    "STLD": "site_lead",
    "IL": "initiative_lead",
}


def _utcnow():
    return datetime.now(timezone.utc)


class TimelineEntry(db.Model):
    __tablename__ = "timeline_entries"
    __table_args__ = (
        db.Index("ix_timeline_initiative", "initiative_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    initiative_id = db.Column(
        db.Integer, db.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False,
    )
    description = db.Column(db.String(300), nullable=False, comment="Stage / activity name")
    planned_start_date = db.Column(db.Date, nullable=False)
    planned_end_date = db.Column(db.Date, nullable=False)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | delayed",
    )
    responsible_person = db.Column(db.String(200), default="")
    remarks = db.Column(db.Text, nullable=True)

    # Monotone: only reset_approvals clears these
    site_lead_approval = db.Column(db.Boolean, nullable=False, default=False)
    initiative_lead_approval = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    initiative = db.relationship("Initiative", back_populates="timeline_entries")

    @property
    def is_complete(self) -> bool:
        return bool(self.site_lead_approval) and bool(self.initiative_lead_approval)

    def to_dict(self):
        return {
            "id": self.id,
            "initiative_id": self.initiative_id,
            "description": self.description,
            "planned_start_date": self.planned_start_date.isoformat() if self.planned_start_date else None,
            "planned_end_date": self.planned_end_date.isoformat() if self.planned_end_date else None,
            "actual_start_date": self.actual_start_date.isoformat() if self.actual_start_date else None,
            "actual_end_date": self.actual_end_date.isoformat() if self.actual_end_date else None,
            "status": self.status,
            "responsible_person": self.responsible_person,
            "remarks": self.remarks,
            "site_lead_approval": self.site_lead_approval,
            "initiative_lead_approval": self.initiative_lead_approval,
            "is_complete": self.is_complete,
        }

    def __repr__(self):
        return f"<TimelineEntry {self.id}: {self.description[:30]} complete={self.is_complete}>"
