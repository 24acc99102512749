"""Tenant POS sessions and verifications

Revision ID: 0003_pos_sessions
Create Date: 2026-03-16 14:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from app.services.tenant_migrations import has_table


revision: str = "0003_pos_sessions"

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    if not has_table("pos_sessions"):
        op.create_table(
            "pos_sessions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("erp_session_id", sa.String(length=255), nullable=False),
            sa.Column("session_name", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'open'")),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closing_reports", JSON_TYPE, nullable=True),
            sa.Column("erp_payload", JSON_TYPE, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("erp_session_id", "branch_id", name="uq_pos_sessions_erp_session_branch"),
        )

    if not has_table("pos_verifications"):
        op.create_table(
            "pos_verifications",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("pos_session_id", sa.Integer(), sa.ForeignKey("pos_sessions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("verification_type", sa.String(length=40), nullable=False),
            sa.Column("external_ref", sa.String(length=255), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("amount", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("cashier_user_key", sa.String(length=64), nullable=True),
            sa.Column("erp_payload", JSON_TYPE, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint(
                "branch_id",
                "verification_type",
                "external_ref",
                name="uq_pos_verifications_branch_type_ref",
            ),
        )
        op.create_index("ix_pos_verifications_pos_session_id", "pos_verifications", ["pos_session_id"], unique=False)


def downgrade() -> None:
    op.drop_table("pos_verifications")
    op.drop_table("pos_sessions")
