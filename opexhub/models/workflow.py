"""
OpEx Hub
Workflow domain model.

Master data (in code, immutable):
    - StageDefinition: the 11-step approval sequence
    - FixedSlot / ConditionalSlot / DynamicSlot: how each stage takes part
      in an initiative's path

Models:
    - User: the identity behind assignments and workflow actions
    - RoleAssignment: (site, stage, scope) → responsible user
    - Initiative: the per-initiative progression record
    - StageTransaction: one row per stage visit (audit of the progression)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType

from opexhub.models import db

# ── Role codes ───────────────────────────────────────────────────────────────

ROLE_CODES = MappingProxyType({
    "STLD": "Site TSD Lead",
    "SH": "Site Head",
    "EH": "Engineering Head",
    "IL": "Initiative Lead",
    "CTSD": "Corporate TSD",
})

INITIATIVE_LEAD_ROLE = "IL"

# ── Statuses ─────────────────────────────────────────────────────────────────

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"

INITIATIVE_STATUSES = frozenset({
    STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_REJECTED,
})
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_REJECTED})

TX_PENDING = "pending"
TX_APPROVED = "approved"
TX_REJECTED = "rejected"
TX_BYPASSED = "bypassed"

TRANSACTION_STATUSES = frozenset({TX_PENDING, TX_APPROVED, TX_REJECTED, TX_BYPASSED})

# Assignment scope for site-wide (static) directory entries
SITE_SCOPE = "site"


def initiative_scope(initiative_id: int) -> str:
    """Directory scope key for assignments bound to one initiative."""
    return f"initiative:{initiative_id}"


# ── Stage catalog master data ────────────────────────────────────────────────


@dataclass(frozen=True)
class StageDefinition:
    stage_number: int
    stage_name: str
    required_role_code: str

    def to_dict(self) -> dict:
        return {
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "required_role_code": self.required_role_code,
            "required_role_name": ROLE_CODES[self.required_role_code],
        }


@dataclass(frozen=True)
class FixedSlot:
    """Always executes; identity resolved from the site's static directory."""

    definition: StageDefinition
    dynamically_bound = False
    gating_flag = None


@dataclass(frozen=True)
class ConditionalSlot:
    """Executes only when ``gating_flag`` is set on the initiative.

    Conditional stages belong to the Initiative Lead, so they are bound at
    stage-3 completion like the dynamic ones.
    """

    definition: StageDefinition
    gating_flag: str
    dynamically_bound = True


@dataclass(frozen=True)
class DynamicSlot:
    """Always executes; identity unknown until an earlier stage names it."""

    definition: StageDefinition
    dynamically_bound = True
    gating_flag = None


STAGE_DEFINITIONS = (
    StageDefinition(1, "Register Initiative", "STLD"),
    StageDefinition(2, "Site Head Approval", "SH"),
    StageDefinition(3, "Engineering Head Approval", "EH"),
    StageDefinition(4, "MOC Stage", "IL"),
    StageDefinition(5, "CAPEX Stage", "IL"),
    StageDefinition(6, "Initiative Timeline Tracker", "IL"),
    StageDefinition(7, "Trial Implementation & Performance Check", "STLD"),
    StageDefinition(8, "Periodic Status Review with CMO", "CTSD"),
    StageDefinition(9, "Savings Monitoring (1 Month)", "STLD"),
    StageDefinition(10, "Saving Validation with F&A", "STLD"),
    StageDefinition(11, "Initiative Closure", "STLD"),
)

STAGE_BY_NUMBER = MappingProxyType({d.stage_number: d for d in STAGE_DEFINITIONS})

STAGE_SLOTS = (
    FixedSlot(STAGE_BY_NUMBER[1]),
    FixedSlot(STAGE_BY_NUMBER[2]),
    FixedSlot(STAGE_BY_NUMBER[3]),
    ConditionalSlot(STAGE_BY_NUMBER[4], "requires_engineering_change"),
    ConditionalSlot(STAGE_BY_NUMBER[5], "requires_capital_approval"),
    DynamicSlot(STAGE_BY_NUMBER[6]),
    FixedSlot(STAGE_BY_NUMBER[7]),
    FixedSlot(STAGE_BY_NUMBER[8]),
    FixedSlot(STAGE_BY_NUMBER[9]),
    FixedSlot(STAGE_BY_NUMBER[10]),
    FixedSlot(STAGE_BY_NUMBER[11]),
)

FIRST_STAGE = 1
RESPONSIBILITY_STAGE = 3   # Engineering Head names the Initiative Lead here
TIMELINE_STAGE = 6
SAVINGS_MONITORING_STAGE = 9
SAVINGS_VALIDATION_STAGE = 10
FINAL_STAGE = 11

DYNAMIC_STAGE_NUMBERS = tuple(
    s.definition.stage_number for s in STAGE_SLOTS if s.dynamically_bound
)
FIXED_STAGE_NUMBERS = tuple(
    s.definition.stage_number for s in STAGE_SLOTS if not s.dynamically_bound
)


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# USERS
# ═════════════════════════════════════════════════════════════════════════════


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False)
    site = db.Column(db.String(30), nullable=False, index=True)
    discipline = db.Column(db.String(30), default="")
    role_code = db.Column(db.String(10), nullable=False, comment="STLD | SH | EH | IL | CTSD")
    role_name = db.Column(db.String(60), default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "site": self.site,
            "discipline": self.discipline,
            "role_code": self.role_code,
            "role_name": self.role_name,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role_code})>"


# ═════════════════════════════════════════════════════════════════════════════
# ROLE ASSIGNMENT DIRECTORY
# ═════════════════════════════════════════════════════════════════════════════


class RoleAssignment(db.Model):
    """
    Who acts at a stage for a site.

    Static entries (scope="site") exist for the fixed stages from setup
    time. Initiative-Lead entries for stages 4/5/6 are created by the
    transition engine at stage-3 completion and scoped to the initiative.
    """

    __tablename__ = "role_assignments"
    __table_args__ = (
        db.UniqueConstraint("site", "stage_number", "scope", name="uq_role_assignment_slot"),
        db.Index("ix_role_assignment_user", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    site = db.Column(db.String(30), nullable=False)
    stage_number = db.Column(db.Integer, nullable=False)
    role_code = db.Column(db.String(10), nullable=False)
    scope = db.Column(
        db.String(40), nullable=False, default=SITE_SCOPE,
        comment="site | initiative:<id>",
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship("User")

    @property
    def is_dynamic(self) -> bool:
        return self.scope != SITE_SCOPE

    def to_dict(self):
        return {
            "id": self.id,
            "site": self.site,
            "stage_number": self.stage_number,
            "stage_name": STAGE_BY_NUMBER[self.stage_number].stage_name
            if self.stage_number in STAGE_BY_NUMBER else None,
            "role_code": self.role_code,
            "scope": self.scope,
            "is_dynamic": self.is_dynamic,
            "user_id": self.user_id,
            "user_name": self.user.full_name if self.user else None,
            "user_email": self.user.email if self.user else None,
        }

    def __repr__(self):
        return f"<RoleAssignment {self.site}/{self.stage_number}/{self.scope} → {self.user_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# INITIATIVES
# ═════════════════════════════════════════════════════════════════════════════


class Initiative(db.Model):
    """
    Per-initiative workflow state.

    ``current_stage`` is the stage awaiting a decision (or 11 once closed).
    ``version`` is the optimistic-lock counter: every UPDATE bumps it and a
    stale writer fails at flush.
    """

    __tablename__ = "initiatives"
    __table_args__ = (
        db.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_initiative_progress_range",
        ),
        db.CheckConstraint("current_stage >= 1 AND current_stage <= 11", name="ck_initiative_stage_range"),
        db.Index("ix_initiative_site_status", "site", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    initiative_number = db.Column(db.String(60), unique=True, nullable=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="medium", comment="low | medium | high | critical")
    site = db.Column(db.String(30), nullable=False)
    discipline = db.Column(db.String(30), default="")

    expected_savings = db.Column(db.Float, nullable=True)
    actual_savings = db.Column(db.Float, nullable=True)
    estimated_capex = db.Column(db.Float, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=STATUS_PENDING,
        comment="pending | in_progress | completed | rejected",
    )
    current_stage = db.Column(db.Integer, nullable=False, default=FIRST_STAGE)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)

    # Conditional path, decided by the Engineering Head at stage 3
    requires_engineering_change = db.Column(db.Boolean, nullable=False, default=False)
    requires_capital_approval = db.Column(db.Boolean, nullable=False, default=False)
    initiative_lead_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Resolved at stage 3; owns stages 4/5/6",
    )
    moc_number = db.Column(db.String(60), nullable=True)
    capex_number = db.Column(db.String(60), nullable=True)

    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    created_by = db.relationship("User", foreign_keys=[created_by_id])
    initiative_lead = db.relationship("User", foreign_keys=[initiative_lead_id])
    transactions = db.relationship(
        "StageTransaction", back_populates="initiative",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="StageTransaction.id",
    )
    monitoring_entries = db.relationship(
        "MonitoringEntry", back_populates="initiative",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    timeline_entries = db.relationship(
        "TimelineEntry", back_populates="initiative",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def current_stage_name(self) -> str:
        return STAGE_BY_NUMBER[self.current_stage].stage_name

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def flags(self) -> dict:
        return {
            "requires_engineering_change": bool(self.requires_engineering_change),
            "requires_capital_approval": bool(self.requires_capital_approval),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "initiative_number": self.initiative_number,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "site": self.site,
            "discipline": self.discipline,
            "expected_savings": self.expected_savings,
            "actual_savings": self.actual_savings,
            "estimated_capex": self.estimated_capex,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status,
            "current_stage": self.current_stage,
            "current_stage_name": self.current_stage_name,
            "progress_percentage": self.progress_percentage,
            "requires_engineering_change": bool(self.requires_engineering_change),
            "requires_capital_approval": bool(self.requires_capital_approval),
            "initiative_lead_id": self.initiative_lead_id,
            "moc_number": self.moc_number,
            "capex_number": self.capex_number,
            "created_by_id": self.created_by_id,
            "created_by_name": self.created_by.full_name if self.created_by else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Initiative {self.id}: stage={self.current_stage} status={self.status}>"


class StageTransaction(db.Model):
    """One visit of an initiative to a stage: pending → approved | rejected, or bypassed."""

    __tablename__ = "stage_transactions"
    __table_args__ = (
        db.Index("ix_stage_tx_initiative_stage", "initiative_id", "stage_number"),
        db.Index("ix_stage_tx_assignee_status", "assigned_user_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    initiative_id = db.Column(
        db.Integer, db.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False,
    )
    stage_number = db.Column(db.Integer, nullable=False)
    stage_name = db.Column(db.String(120), nullable=False)
    role_code = db.Column(db.String(10), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default=TX_PENDING,
        comment="pending | approved | rejected | bypassed",
    )
    assigned_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    acted_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    comment = db.Column(db.Text, nullable=True)
    acted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    initiative = db.relationship("Initiative", back_populates="transactions")

    def to_dict(self):
        return {
            "id": self.id,
            "initiative_id": self.initiative_id,
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "role_code": self.role_code,
            "status": self.status,
            "assigned_user_id": self.assigned_user_id,
            "acted_by_id": self.acted_by_id,
            "comment": self.comment,
            "acted_at": self.acted_at.isoformat() if self.acted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<StageTransaction {self.initiative_id}/{self.stage_number} {self.status}>"
