"""Overtime type on authorizations and one authorization per log and type

Revision ID: 0004_authorization_overtime
Create Date: 2026-04-01 08:15:00
"""

from alembic import op
import sqlalchemy as sa

from app.services.tenant_migrations import has_column, has_index


revision: str = "0004_authorization_overtime"


def upgrade() -> None:
    if not has_column("shift_authorizations", "overtime_type"):
        op.add_column("shift_authorizations", sa.Column("overtime_type", sa.String(length=30), nullable=True))

    if not has_index("shift_authorizations", "uq_shift_authorizations_log_type"):
        op.create_index(
            "uq_shift_authorizations_log_type",
            "shift_authorizations",
            ["shift_log_id", "auth_type"],
            unique=True,
        )

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(
            """
            DO $$
            BEGIN
                IF NOT EXISTS (
                    SELECT 1 FROM pg_constraint WHERE conname = 'ck_employee_shifts_pending_approvals_non_negative'
                ) THEN
                    ALTER TABLE employee_shifts
                    ADD CONSTRAINT ck_employee_shifts_pending_approvals_non_negative
                    CHECK (pending_approvals >= 0);
                END IF;
            END $$;
            """
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(
            "ALTER TABLE employee_shifts DROP CONSTRAINT IF EXISTS ck_employee_shifts_pending_approvals_non_negative"
        )
    op.drop_index("uq_shift_authorizations_log_type", table_name="shift_authorizations")
    with op.batch_alter_table("shift_authorizations") as batch_op:
        batch_op.drop_column("overtime_type")
