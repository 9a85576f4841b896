"""create crm pipeline tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_STATUS_CHECK = "status IN ('active', 'lost', 'won')"
_LOST_REASON_CHECK = (
    "(status = 'lost' AND lost_reason_id IS NOT NULL) OR (status <> 'lost' AND lost_reason_id IS NULL)"
)


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("position", sa.String(length=64), nullable=True),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "funnels",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("generates_contract", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "funnel_stages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("funnel_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["funnel_id"], ["funnels.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("funnel_id", "position", name="uq_funnel_stages_funnel_position"),
    )
    op.create_index("ix_funnel_stages_funnel_id", "funnel_stages", ["funnel_id"], unique=False)

    op.create_table(
        "lost_reasons",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("marital_status", sa.String(length=32), nullable=True),
        sa.Column("gender", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("current_funnel_id", sa.Uuid(), nullable=True),
        sa.Column("current_stage_id", sa.Uuid(), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_reason_id", sa.Uuid(), nullable=True),
        sa.Column("lost_from_stage_id", sa.Uuid(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(_STATUS_CHECK, name="ck_contacts_status"),
        sa.CheckConstraint(_LOST_REASON_CHECK, name="ck_contacts_lost_reason"),
        sa.ForeignKeyConstraint(["current_funnel_id"], ["funnels.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["current_stage_id"], ["funnel_stages.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["lost_reason_id"], ["lost_reasons.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_owner_status", "contacts", ["owner_id", "status"], unique=False)

    op.create_table(
        "opportunities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("current_funnel_id", sa.Uuid(), nullable=False),
        sa.Column("current_stage_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposal_value", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_reason_id", sa.Uuid(), nullable=True),
        sa.Column("lost_from_stage_id", sa.Uuid(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(_STATUS_CHECK, name="ck_opportunities_status"),
        sa.CheckConstraint(_LOST_REASON_CHECK, name="ck_opportunities_lost_reason"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["current_funnel_id"], ["funnels.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["current_stage_id"], ["funnel_stages.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["lost_reason_id"], ["lost_reasons.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_opportunities_contact_id", "opportunities", ["contact_id"], unique=False)
    op.create_index(
        "ix_opportunities_funnel_status",
        "opportunities",
        ["current_funnel_id", "status"],
        unique=False,
    )

    for table, fk_column, parent in (
        ("contact_history", "contact_id", "contacts"),
        ("opportunity_history", "opportunity_id", "opportunities"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column(fk_column, sa.Uuid(), nullable=False),
            sa.Column("action", sa.String(length=32), nullable=False),
            sa.Column("from_stage_id", sa.Uuid(), nullable=True),
            sa.Column("to_stage_id", sa.Uuid(), nullable=True),
            sa.Column("changed_by", sa.Uuid(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint([fk_column], [f"{parent}.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table}_{fk_column}", table, [fk_column], unique=False)

    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("assigned_to", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("task_type", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_assignee_status", "tasks", ["assigned_to", "status"], unique=False)

    op.create_table(
        "health_score_snapshots",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_health_score_snapshots_contact_date",
        "health_score_snapshots",
        ["contact_id", "snapshot_date"],
        unique=False,
    )

    op.create_table(
        "contact_data_collections",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("data_collection", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_contact_data_collections_contact_id",
        "contact_data_collections",
        ["contact_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_contact_data_collections_contact_id", table_name="contact_data_collections")
    op.drop_table("contact_data_collections")
    op.drop_index("ix_health_score_snapshots_contact_date", table_name="health_score_snapshots")
    op.drop_table("health_score_snapshots")
    op.drop_index("ix_tasks_assignee_status", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_opportunity_history_opportunity_id", table_name="opportunity_history")
    op.drop_table("opportunity_history")
    op.drop_index("ix_contact_history_contact_id", table_name="contact_history")
    op.drop_table("contact_history")
    op.drop_index("ix_opportunities_funnel_status", table_name="opportunities")
    op.drop_index("ix_opportunities_contact_id", table_name="opportunities")
    op.drop_table("opportunities")
    op.drop_index("ix_contacts_owner_status", table_name="contacts")
    op.drop_table("contacts")
    op.drop_table("lost_reasons")
    op.drop_index("ix_funnel_stages_funnel_id", table_name="funnel_stages")
    op.drop_table("funnel_stages")
    op.drop_table("funnels")
    op.drop_table("profiles")
