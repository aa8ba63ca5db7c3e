"""create checkout session tables

Revision ID: 202610170002
Revises: 202610170001
Create Date: 2026-10-17 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170002"
down_revision: str | None = "202610170001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "checkout_session",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("module", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
        sa.Column("billing_invoice_id", sa.String(length=64), nullable=True),
        sa.Column("payment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_checkout_session_user_id_created_at",
        "checkout_session",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_checkout_session_billing_invoice_id",
        "checkout_session",
        ["billing_invoice_id"],
        unique=False,
    )

    op.create_table(
        "checkout_company_info",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("checkout_session_id", sa.Uuid(), nullable=False),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("contact_name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=128), nullable=True),
        sa.Column("zip_code", sa.String(length=32), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=False, server_default="US"),
        sa.Column("industry", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["checkout_session_id"], ["checkout_session.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_session_id", name="uq_checkout_company_info_session"),
    )

    op.create_table(
        "checkout_agreement",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("checkout_session_id", sa.Uuid(), nullable=False),
        sa.Column("envelope_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["checkout_session_id"], ["checkout_session.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_session_id", name="uq_checkout_agreement_session"),
        sa.UniqueConstraint("envelope_id", name="uq_checkout_agreement_envelope_id"),
    )

    op.create_table(
        "checkout_sales_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("checkout_session_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("remote_sales_order_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["checkout_session_id"], ["checkout_session.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_session_id", name="uq_checkout_sales_order_session"),
    )


def downgrade() -> None:
    op.drop_table("checkout_sales_order")
    op.drop_table("checkout_agreement")
    op.drop_table("checkout_company_info")
    op.drop_index("ix_checkout_session_billing_invoice_id", table_name="checkout_session")
    op.drop_index("ix_checkout_session_user_id_created_at", table_name="checkout_session")
    op.drop_table("checkout_session")
