"""Initial sync state tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processed_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_code", sa.String(100), nullable=False),
        sa.Column("crm_deal_id", sa.BigInteger(), nullable=True),
        sa.Column("upstream_state", sa.String(50), nullable=False),
        sa.Column("fingerprint", sa.String(32), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("retry_count >= 0", name="ck_processed_orders_retry_count"),
    )
    op.create_index(
        "ix_processed_orders_order_code", "processed_orders", ["order_code"], unique=True
    )

    op.create_table(
        "locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("holder_identity", sa.String(200), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "meta",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "daily_stats",
        sa.Column("date", sa.Date(), primary_key=True),
        sa.Column("orders_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("contacts_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deals_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_processing_time_ms", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("timed_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_errors_upstream", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_errors_crm", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_limit_hits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reconcile_updates", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "error_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("error_type", sa.String(50), nullable=False),
        sa.Column("error_message", sa.String(500), nullable=False),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("order_code", sa.String(100), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_error_log_error_type", "error_log", ["error_type"])
    op.create_index("ix_error_log_order_code", "error_log", ["order_code"])
    op.create_index("ix_error_log_occurred_at", "error_log", ["occurred_at"])

    op.create_table(
        "oauth_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("oauth_tokens")
    op.drop_index("ix_error_log_occurred_at", table_name="error_log")
    op.drop_index("ix_error_log_order_code", table_name="error_log")
    op.drop_index("ix_error_log_error_type", table_name="error_log")
    op.drop_table("error_log")
    op.drop_table("daily_stats")
    op.drop_table("meta")
    op.drop_table("locks")
    op.drop_index("ix_processed_orders_order_code", table_name="processed_orders")
    op.drop_table("processed_orders")
