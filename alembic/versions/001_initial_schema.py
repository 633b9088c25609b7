"""Initial schema: settlements, outbox

Revision ID: 001
Revises:
Create Date: 2026-10-18

The products table and the check_user_ban_status function belong to the
marketplace datastore and already exist in the same database.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "settlements",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("seller_recipient", sa.String(255), nullable=False),
        sa.Column("reason", sa.String(30), nullable=True),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("payment_id", sa.String(64), nullable=True),
        sa.Column("payout_batch_id", sa.String(64), nullable=True),
        sa.Column("seller_payout", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("platform_payout", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('COMPLETED', 'FAILED')", name="ck_settlements_status"),
        sa.CheckConstraint(
            "status <> 'COMPLETED' OR payment_id IS NOT NULL",
            name="ck_settlements_completed_has_payment",
        ),
    )
    op.create_index("ix_settlements_buyer_product", "settlements", ["buyer_id", "product_id"])
    op.create_index("ix_settlements_created_at", "settlements", ["created_at"])
    op.create_index(
        "ix_settlements_order_id",
        "settlements",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("order_id IS NOT NULL"),
    )

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("aggregate_type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", sa.String(26), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_outbox_unpublished",
        "outbox",
        ["created_at"],
        postgresql_where=sa.text("published_at IS NULL"),
    )
    op.create_index("ix_outbox_aggregate", "outbox", ["aggregate_type", "aggregate_id"])


def downgrade() -> None:
    op.drop_table("outbox")
    op.drop_table("settlements")
