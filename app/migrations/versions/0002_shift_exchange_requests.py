"""Cross-tenant shift exchange requests

Revision ID: 0002_shift_exchange_requests
Revises: 0001_master_initial
Create Date: 2026-04-08 16:20:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_shift_exchange_requests"
down_revision: Union[str, None] = "0001_master_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "shift_exchange_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("requester_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("accepting_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("requester_company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("requester_company_db_name", sa.String(length=63), nullable=False),
        sa.Column("requester_branch_id", sa.Integer(), nullable=False),
        sa.Column("requester_shift_id", sa.Integer(), nullable=False),
        sa.Column("requester_shift_erp_id", sa.Integer(), nullable=True),
        sa.Column("accepting_company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("accepting_company_db_name", sa.String(length=63), nullable=False),
        sa.Column("accepting_branch_id", sa.Integer(), nullable=False),
        sa.Column("accepting_shift_id", sa.Integer(), nullable=False),
        sa.Column("accepting_shift_erp_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("approval_stage", sa.String(length=30), nullable=False, server_default=sa.text("'awaiting_employee'")),
        sa.Column("employee_decision_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("employee_rejection_reason", sa.Text(), nullable=True),
        sa.Column("hr_decision_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("hr_decision_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hr_rejection_reason", sa.Text(), nullable=True),
        sa.Column("requester_swap_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepting_swap_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("swap_last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_shift_exchange_requests_status",
        ),
        sa.CheckConstraint(
            "approval_stage IN ('awaiting_employee', 'awaiting_hr', 'resolved')",
            name="ck_shift_exchange_requests_stage",
        ),
    )
    op.create_index("ix_shift_exchange_requests_status", "shift_exchange_requests", ["status"], unique=False)
    op.create_index(
        "ix_shift_exchange_requests_requester_user_id",
        "shift_exchange_requests",
        ["requester_user_id"],
        unique=False,
    )
    op.create_index(
        "ix_shift_exchange_requests_accepting_user_id",
        "shift_exchange_requests",
        ["accepting_user_id"],
        unique=False,
    )
    op.create_index(
        "shift_exchange_requests_pending_requester_shift_unique",
        "shift_exchange_requests",
        ["requester_company_id", "requester_shift_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "shift_exchange_requests_pending_accepting_shift_unique",
        "shift_exchange_requests",
        ["accepting_company_id", "accepting_shift_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("shift_exchange_requests_pending_accepting_shift_unique", table_name="shift_exchange_requests")
    op.drop_index("shift_exchange_requests_pending_requester_shift_unique", table_name="shift_exchange_requests")
    op.drop_index("ix_shift_exchange_requests_accepting_user_id", table_name="shift_exchange_requests")
    op.drop_index("ix_shift_exchange_requests_requester_user_id", table_name="shift_exchange_requests")
    op.drop_index("ix_shift_exchange_requests_status", table_name="shift_exchange_requests")
    op.drop_table("shift_exchange_requests")
