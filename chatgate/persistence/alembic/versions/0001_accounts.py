"""create accounts table

Revision ID: 0001_accounts
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_accounts"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per identity subject carrying tier and both usage counters.
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("free_messages_remaining", sa.Integer(), nullable=True),
        sa.Column("subscription_tier", sa.String(), server_default=sa.text("'free'"), nullable=False),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pro_messages_used_this_month", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("push_token", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )
    op.create_index("ix_accounts_subscription_tier", "accounts", ["subscription_tier"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_accounts_subscription_tier", table_name="accounts")
    op.drop_table("accounts")
