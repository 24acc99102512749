"""Tenant push subscriptions with delivery health

Revision ID: 0002_push_subscriptions
Create Date: 2026-03-09 10:30:00
"""

from alembic import op
import sqlalchemy as sa

from app.services.tenant_migrations import has_column, has_table


revision: str = "0002_push_subscriptions"


def upgrade() -> None:
    if not has_table("push_subscriptions"):
        op.create_table(
            "push_subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("endpoint", sa.Text(), nullable=False),
            sa.Column("p256dh", sa.Text(), nullable=False),
            sa.Column("auth", sa.Text(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
        )
        op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"], unique=False)

    # Older tenants were provisioned before delivery health tracking existed.
    if not has_column("push_subscriptions", "failure_count"):
        op.add_column(
            "push_subscriptions",
            sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        )
    if not has_column("push_subscriptions", "last_success_at"):
        op.add_column("push_subscriptions", sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True))
    if not has_column("push_subscriptions", "last_failure_at"):
        op.add_column("push_subscriptions", sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True))
    if not has_column("push_subscriptions", "last_failure_reason"):
        op.add_column("push_subscriptions", sa.Column("last_failure_reason", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_table("push_subscriptions")
