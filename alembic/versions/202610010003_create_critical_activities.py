"""create critical activity tables

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "critical_activities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("urgency", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("target_positions", sa.JSON(), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rule_type", sa.String(length=32), nullable=True),
        sa.Column("rule_config", sa.JSON(), nullable=True),
        sa.Column("is_perpetual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_critical_activities_perpetual_active",
        "critical_activities",
        ["is_perpetual", "is_active"],
        unique=False,
    )

    op.create_table(
        "perpetual_activity_triggers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("activity_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("contact_scope", sa.String(length=64), nullable=False),
        sa.Column("task_id", sa.Uuid(), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["activity_id"], ["critical_activities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("activity_id", "user_id", "contact_scope", name="uq_activity_triggers_scope"),
    )
    op.create_index("ix_activity_triggers_task_id", "perpetual_activity_triggers", ["task_id"], unique=False)

    op.create_table(
        "critical_activity_assignments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("activity_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["activity_id"], ["critical_activities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("activity_id", "user_id", name="uq_activity_assignments_user"),
    )
    op.create_index(
        "ix_critical_activity_assignments_activity_id",
        "critical_activity_assignments",
        ["activity_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_critical_activity_assignments_activity_id", table_name="critical_activity_assignments")
    op.drop_table("critical_activity_assignments")
    op.drop_index("ix_activity_triggers_task_id", table_name="perpetual_activity_triggers")
    op.drop_table("perpetual_activity_triggers")
    op.drop_index("ix_critical_activities_perpetual_active", table_name="critical_activities")
    op.drop_table("critical_activities")
