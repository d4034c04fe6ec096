"""Initial workflow schema: users, role directory, initiatives, stage
transactions, monitoring and timeline entries, audit log

Revision ID: a1f0c3e5d701
Revises:
Create Date: 2025-04-01
"""

from alembic import op
import sqlalchemy as sa

revision = "a1f0c3e5d701"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(200), nullable=False, unique=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("site", sa.String(30), nullable=False, index=True),
        sa.Column("discipline", sa.String(30), server_default=""),
        sa.Column("role_code", sa.String(10), nullable=False),
        sa.Column("role_name", sa.String(60), server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "role_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site", sa.String(30), nullable=False),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("role_code", sa.String(10), nullable=False),
        sa.Column("scope", sa.String(40), nullable=False, server_default="site"),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("site", "stage_number", "scope", name="uq_role_assignment_slot"),
    )
    op.create_index("ix_role_assignment_user", "role_assignments", ["user_id"])

    op.create_table(
        "initiatives",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("initiative_number", sa.String(60), unique=True, nullable=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("priority", sa.String(20), server_default="medium"),
        sa.Column("site", sa.String(30), nullable=False),
        sa.Column("discipline", sa.String(30), server_default=""),
        sa.Column("expected_savings", sa.Float(), nullable=True),
        sa.Column("actual_savings", sa.Float(), nullable=True),
        sa.Column("estimated_capex", sa.Float(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("current_stage", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requires_engineering_change", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_capital_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("initiative_lead_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("moc_number", sa.String(60), nullable=True),
        sa.Column("capex_number", sa.String(60), nullable=True),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_initiative_progress_range",
        ),
        sa.CheckConstraint("current_stage >= 1 AND current_stage <= 11", name="ck_initiative_stage_range"),
    )
    op.create_index("ix_initiative_site_status", "initiatives", ["site", "status"])

    op.create_table(
        "stage_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("initiative_id", sa.Integer(), sa.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("stage_name", sa.String(120), nullable=False),
        sa.Column("role_code", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("assigned_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("acted_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("acted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_stage_tx_initiative_stage", "stage_transactions", ["initiative_id", "stage_number"])
    op.create_index("ix_stage_tx_assignee_status", "stage_transactions", ["assigned_user_id", "status"])

    op.create_table(
        "monitoring_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("initiative_id", sa.Integer(), sa.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False),
        sa.Column("monitoring_month", sa.String(7), nullable=False),
        sa.Column("kpi_description", sa.String(300), nullable=False),
        sa.Column("target_value", sa.Float(), nullable=False),
        sa.Column("achieved_value", sa.Float(), nullable=True),
        sa.Column("deviation", sa.Float(), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("is_finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("finance_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("finance_comments", sa.Text(), nullable=True),
        sa.Column("entered_by_role", sa.String(10), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "initiative_id", "monitoring_month", "kpi_description",
            name="uq_monitoring_initiative_month_kpi",
        ),
        sa.CheckConstraint("NOT finance_approved OR is_finalized", name="ck_monitoring_approved_after_finalize"),
    )
    op.create_index("ix_monitoring_initiative_month", "monitoring_entries", ["initiative_id", "monitoring_month"])

    op.create_table(
        "timeline_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("initiative_id", sa.Integer(), sa.ForeignKey("initiatives.id", ondelete="CASCADE"), nullable=False),
        sa.Column("description", sa.String(300), nullable=False),
        sa.Column("planned_start_date", sa.Date(), nullable=False),
        sa.Column("planned_end_date", sa.Date(), nullable=False),
        sa.Column("actual_start_date", sa.Date(), nullable=True),
        sa.Column("actual_end_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("responsible_person", sa.String(200), server_default=""),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("site_lead_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("initiative_lead_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_timeline_initiative", "timeline_entries", ["initiative_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("diff_json", sa.Text(), server_default="{}"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_actor", "audit_logs", ["actor"])
    op.create_index("idx_audit_action", "audit_logs", ["action"])
    op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("timeline_entries")
    op.drop_table("monitoring_entries")
    op.drop_table("stage_transactions")
    op.drop_table("initiatives")
    op.drop_table("role_assignments")
    op.drop_table("users")
