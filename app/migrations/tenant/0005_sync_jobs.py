"""Tenant outbox for ERP back-sync and delayed jobs

Revision ID: 0005_sync_jobs
Create Date: 2026-04-20 11:45:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from app.services.tenant_migrations import has_table


revision: str = "0005_sync_jobs"

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    if has_table("sync_jobs"):
        return
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_type", sa.String(length=100), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_sync_jobs_idempotency_key", "sync_jobs", ["idempotency_key"], unique=True)
    op.create_index("ix_sync_jobs_scheduled_at_utc", "sync_jobs", ["scheduled_at_utc"], unique=False)
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sync_jobs_status", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_scheduled_at_utc", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_idempotency_key", table_name="sync_jobs")
    op.drop_table("sync_jobs")
