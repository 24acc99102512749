from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, select, text
from sqlalchemy.engine import Engine, Inspector
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Company
from app.services.tenant_migrations import TenantMigrator


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


MASTER_TABLE_COLUMNS: dict[str, set[str]] = {
    "companies": {"id", "db_name", "is_active", "migration_version", "last_migrated_at"},
    "erp_branch_directory": {"erp_company_id", "company_id", "branch_id"},
    "users": {"id", "user_key", "employment_status", "push_notifications_enabled"},
    "user_company_access": {"user_id", "company_id", "is_active"},
    "shift_exchange_requests": {
        "id",
        "status",
        "approval_stage",
        "requester_swap_applied_at",
        "accepting_swap_applied_at",
        "swap_last_error",
    },
    "alembic_version": {"version_num"},
}

MASTER_ENUM_VALUES: dict[str, set[str]] = {
    "audit_actor_type": {"USER", "SYSTEM"},
}


def _missing_columns(inspector: Inspector) -> list[str]:
    issues: list[str] = []
    for table_name, required in MASTER_TABLE_COLUMNS.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _enum_findings(inspector: Inspector) -> tuple[list[str], list[str]]:
    # Only PostgreSQL reports native enums; elsewhere a missing enum is informational.
    try:
        enums = inspector.get_enums() or []
    except (SQLAlchemyError, NotImplementedError) as exc:
        return [], [f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}"]

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    issues: list[str] = []
    warnings: list[str] = []
    for enum_name, required in MASTER_ENUM_VALUES.items():
        labels = labels_by_name.get(enum_name)
        if labels is None:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - labels)
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")
    return issues, warnings


def _alembic_version_issue(engine: Engine) -> str | None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        return f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}"
    if not str(row or "").strip():
        return "ALEMBIC_VERSION_EMPTY"
    return None


def tenant_version_warnings(engine: Engine, migrator: TenantMigrator) -> list[str]:
    """Compare the version each active company last recorded with the newest tenant migration.

    Tenants are not connected to here; a stale record only means ``migrate_tenants`` should run.
    """
    scripts = migrator.discover()
    if not scripts:
        return []
    latest = scripts[-1].revision
    try:
        with Session(engine) as session:
            rows = session.execute(
                select(Company.db_name, Company.migration_version)
                .where(Company.is_active.is_(True))
                .order_by(Company.id.asc())
            ).all()
    except SQLAlchemyError as exc:
        return [f"TENANT_VERSION_CHECK_FAILED:{exc.__class__.__name__}"]

    warnings: list[str] = []
    for db_name, version in rows:
        if version is None:
            warnings.append(f"TENANT_NEVER_MIGRATED:{db_name}")
        elif version != latest:
            warnings.append(f"TENANT_BEHIND:{db_name}:{version}->{latest}")
    return warnings


def verify_runtime_schema(engine: Engine, *, tenant_migrator: TenantMigrator | None = None) -> SchemaGuardResult:
    """Check the master database against what this build expects.

    Tenant drift is reported as warnings only, since tenants migrate independently.
    """
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    issues = _missing_columns(inspector)
    enum_issues, warnings = _enum_findings(inspector)
    issues.extend(enum_issues)
    version_issue = _alembic_version_issue(engine)
    if version_issue is not None:
        issues.append(version_issue)
    if tenant_migrator is not None:
        warnings.extend(tenant_version_warnings(engine, tenant_migrator))

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
