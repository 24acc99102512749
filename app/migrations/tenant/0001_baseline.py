"""Tenant baseline: branches, shifts, logs, authorizations, notifications

Revision ID: 0001_baseline
Create Date: 2026-03-02 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from app.services.tenant_migrations import has_table


revision: str = "0001_baseline"

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    if not has_table("branches"):
        op.create_table(
            "branches",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("erp_branch_id", sa.String(length=64), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("is_main_branch", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_branches_erp_branch_id", "branches", ["erp_branch_id"], unique=True)

    if not has_table("user_branches"):
        op.create_table(
            "user_branches",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.UniqueConstraint("user_id", "branch_id", name="uq_user_branches_user_branch"),
        )
        op.create_index("ix_user_branches_user_id", "user_branches", ["user_id"], unique=False)

    if not has_table("employee_shifts"):
        op.create_table(
            "employee_shifts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("erp_shift_id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("employee_name", sa.String(length=255), nullable=True),
            sa.Column("employee_avatar_url", sa.Text(), nullable=True),
            sa.Column("duty_type", sa.String(length=255), nullable=True),
            sa.Column("duty_color", sa.Integer(), nullable=True),
            sa.Column("shift_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("shift_end", sa.DateTime(timezone=True), nullable=False),
            sa.Column("allocated_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_worked_hours", sa.Float(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'open'")),
            sa.Column("check_in_status", sa.String(length=20), nullable=True),
            sa.Column("pending_approvals", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("erp_payload", JSON_TYPE, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("erp_shift_id", "branch_id", name="uq_employee_shifts_erp_shift_branch"),
        )
        op.create_index("ix_employee_shifts_branch_id", "employee_shifts", ["branch_id"], unique=False)
        op.create_index("ix_employee_shifts_user_id", "employee_shifts", ["user_id"], unique=False)
        op.create_index("ix_employee_shifts_status", "employee_shifts", ["status"], unique=False)

    if not has_table("shift_logs"):
        op.create_table(
            "shift_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("shift_id", sa.Integer(), sa.ForeignKey("employee_shifts.id", ondelete="CASCADE"), nullable=True),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("log_type", sa.String(length=40), nullable=False),
            sa.Column("erp_attendance_id", sa.Integer(), nullable=True),
            sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("worked_hours", sa.Float(), nullable=True),
            sa.Column("cumulative_minutes", sa.Float(), nullable=True),
            sa.Column("changes", JSON_TYPE, nullable=True),
            sa.Column("erp_payload", JSON_TYPE, nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.UniqueConstraint("erp_attendance_id", "log_type", name="uq_shift_logs_attendance_log_type"),
        )
        op.create_index("ix_shift_logs_shift_id", "shift_logs", ["shift_id"], unique=False)

    if not has_table("shift_authorizations"):
        op.create_table(
            "shift_authorizations",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("shift_id", sa.Integer(), sa.ForeignKey("employee_shifts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("shift_log_id", sa.Integer(), sa.ForeignKey("shift_logs.id", ondelete="SET NULL"), nullable=True),
            sa.Column("branch_id", sa.Integer(), sa.ForeignKey("branches.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("auth_type", sa.String(length=30), nullable=False),
            sa.Column("diff_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("needs_employee_reason", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("employee_reason", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("resolved_by", sa.Integer(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_shift_authorizations_shift_id", "shift_authorizations", ["shift_id"], unique=False)
        op.create_index("ix_shift_authorizations_user_id", "shift_authorizations", ["user_id"], unique=False)
        op.create_index("ix_shift_authorizations_status", "shift_authorizations", ["status"], unique=False)

    if not has_table("employee_notifications"):
        op.create_table(
            "employee_notifications",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False, server_default=sa.text("'info'")),
            sa.Column("link_url", sa.String(length=500), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_employee_notifications_user_id", "employee_notifications", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_table("employee_notifications")
    op.drop_table("shift_authorizations")
    op.drop_table("shift_logs")
    op.drop_table("employee_shifts")
    op.drop_table("user_branches")
    op.drop_table("branches")
