"""create crm identity link and signup link tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_identity_link",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("remote_contact_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_crm_identity_link_user_id"),
    )

    op.create_table(
        "crm_signup_link",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("remote_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("issued_by", sa.String(length=255), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_crm_signup_link_code"),
        sa.CheckConstraint("usage_count >= 0", name="ck_crm_signup_link_usage_count_nonnegative"),
        sa.CheckConstraint("usage_count <= usage_limit", name="ck_crm_signup_link_usage_within_limit"),
    )
    op.create_index("ix_crm_signup_link_remote_id", "crm_signup_link", ["remote_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_signup_link_remote_id", table_name="crm_signup_link")
    op.drop_table("crm_signup_link")
    op.drop_table("crm_identity_link")
