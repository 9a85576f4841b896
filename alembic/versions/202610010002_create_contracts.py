"""create product and contract tables

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "product_categories",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category_id", sa.Uuid(), nullable=True),
        sa.Column("pb_calculation_type", sa.String(length=16), nullable=True),
        sa.Column("pb_value", sa.Numeric(precision=18, scale=6), nullable=True),
        sa.Column("pb_formula", sa.Text(), nullable=True),
        sa.Column("pb_constants", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["category_id"], ["product_categories.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_products_category_id", "products", ["category_id"], unique=False)

    op.create_table(
        "contracts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=True),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("contract_value", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("calculated_pbs", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("payment_type", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("billing_status", sa.String(length=32), nullable=True),
        sa.Column("gateway_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_bill_id", sa.String(length=64), nullable=True),
        sa.Column("custom_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contracts_contact_id", "contracts", ["contact_id"], unique=False)
    op.create_index("ix_contracts_opportunity_id", "contracts", ["opportunity_id"], unique=False)
    op.create_index("ix_contracts_status_end_date", "contracts", ["status", "end_date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_contracts_status_end_date", table_name="contracts")
    op.drop_index("ix_contracts_opportunity_id", table_name="contracts")
    op.drop_index("ix_contracts_contact_id", table_name="contracts")
    op.drop_table("contracts")
    op.drop_index("ix_products_category_id", table_name="products")
    op.drop_table("products")
    op.drop_table("product_categories")
