from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import ModuleType
from typing import Any

import sqlalchemy as sa
from alembic import op
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, delete, func, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from app.db import ConnectionManager
from app.models import Company

logger = logging.getLogger("app.tenant_migrations")

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations" / "tenant"
LEDGER_TABLE = "tenant_migrations"

_ledger_metadata = MetaData()
tenant_migrations_table = Table(
    LEDGER_TABLE,
    _ledger_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("batch", Integer, nullable=False),
    Column("migrated_at", DateTime(timezone=True), nullable=False),
)


class TenantMigrationError(Exception):
    def __init__(self, migration: str, cause: BaseException, *, applied: list[str] | None = None):
        super().__init__(f"Tenant migration {migration} failed: {cause}")
        self.migration = migration
        self.cause = cause
        self.applied = list(applied or [])


@dataclass(frozen=True, slots=True)
class TenantMigrationScript:
    revision: str
    path: Path
    module: ModuleType


@dataclass(frozen=True, slots=True)
class TenantMigrationResult:
    batch: int | None
    applied: list[str] = field(default_factory=list)
    current_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch": self.batch,
            "applied": list(self.applied),
            "current_version": self.current_version,
        }


@dataclass(frozen=True, slots=True)
class TenantMigrationStatus:
    current_version: str | None
    completed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_version": self.current_version,
            "completed": list(self.completed),
            "pending": list(self.pending),
            "is_up_to_date": not self.pending,
        }


# Guards used by migration scripts so drifted tenants converge on the same schema.
def has_table(table_name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table_name)


def has_column(table_name: str, column_name: str) -> bool:
    inspector = sa.inspect(op.get_bind())
    if not inspector.has_table(table_name):
        return False
    return any(item["name"] == column_name for item in inspector.get_columns(table_name))


def has_index(table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(op.get_bind())
    if not inspector.has_table(table_name):
        return False
    names = {item["name"] for item in inspector.get_indexes(table_name)}
    names.update(item["name"] for item in inspector.get_unique_constraints(table_name) if item.get("name"))
    return index_name in names


def _load_module(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"tenant_migration_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Cannot load tenant migration {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TenantMigrator:
    def __init__(self, migrations_dir: Path = MIGRATIONS_DIR):
        self._migrations_dir = migrations_dir
        self._scripts: list[TenantMigrationScript] | None = None

    def discover(self) -> list[TenantMigrationScript]:
        if self._scripts is not None:
            return self._scripts

        scripts: list[TenantMigrationScript] = []
        for path in sorted(self._migrations_dir.glob("[0-9]*.py")):
            module = _load_module(path)
            revision = str(getattr(module, "revision", path.stem))
            if not callable(getattr(module, "upgrade", None)):
                raise RuntimeError(f"Tenant migration {revision} has no upgrade()")
            scripts.append(TenantMigrationScript(revision=revision, path=path, module=module))

        revisions = [item.revision for item in scripts]
        if len(set(revisions)) != len(revisions):
            raise RuntimeError("Duplicate tenant migration revisions")
        scripts.sort(key=lambda item: item.revision)
        self._scripts = scripts
        return scripts

    def _ensure_ledger(self, engine: Engine) -> None:
        _ledger_metadata.create_all(engine, checkfirst=True)

    def _completed(self, conn: Connection) -> list[str]:
        rows = conn.execute(
            select(tenant_migrations_table.c.name).order_by(tenant_migrations_table.c.name.asc())
        )
        return [str(row[0]) for row in rows]

    def status(self, engine: Engine) -> TenantMigrationStatus:
        self._ensure_ledger(engine)
        with engine.connect() as conn:
            completed = self._completed(conn)
        done = set(completed)
        pending = [item.revision for item in self.discover() if item.revision not in done]
        return TenantMigrationStatus(
            current_version=completed[-1] if completed else None,
            completed=completed,
            pending=pending,
        )

    def migrate_latest(self, engine: Engine) -> TenantMigrationResult:
        self._ensure_ledger(engine)
        with engine.connect() as conn:
            done = set(self._completed(conn))
            last_batch = conn.execute(select(func.max(tenant_migrations_table.c.batch))).scalar()

        pending = [item for item in self.discover() if item.revision not in done]
        if not pending:
            status = self.status(engine)
            return TenantMigrationResult(batch=None, applied=[], current_version=status.current_version)

        batch = int(last_batch or 0) + 1
        applied: list[str] = []
        for script in pending:
            try:
                # One transaction per file: earlier files stay committed if a later one fails.
                with engine.begin() as conn:
                    context = MigrationContext.configure(conn)
                    with Operations.context(context):
                        script.module.upgrade()
                    conn.execute(
                        insert(tenant_migrations_table).values(
                            name=script.revision,
                            batch=batch,
                            migrated_at=datetime.now(timezone.utc),
                        )
                    )
            except Exception as exc:
                logger.error(
                    "tenant_migration_failed",
                    extra={
                        "migration": script.revision,
                        "batch": batch,
                        "applied": applied,
                        "error": str(exc),
                    },
                )
                raise TenantMigrationError(script.revision, exc, applied=applied) from exc
            applied.append(script.revision)
            logger.info("tenant_migration_applied", extra={"migration": script.revision, "batch": batch})

        status = self.status(engine)
        return TenantMigrationResult(batch=batch, applied=applied, current_version=status.current_version)

    def rollback_last_batch(self, engine: Engine) -> list[str]:
        self._ensure_ledger(engine)
        with engine.connect() as conn:
            last_batch = conn.execute(select(func.max(tenant_migrations_table.c.batch))).scalar()
            if last_batch is None:
                return []
            names = [
                str(row[0])
                for row in conn.execute(
                    select(tenant_migrations_table.c.name)
                    .where(tenant_migrations_table.c.batch == last_batch)
                    .order_by(tenant_migrations_table.c.name.desc())
                )
            ]

        scripts = {item.revision: item for item in self.discover()}
        reverted: list[str] = []
        for name in names:
            script = scripts.get(name)
            if script is None or not callable(getattr(script.module, "downgrade", None)):
                raise TenantMigrationError(name, RuntimeError("migration script is missing downgrade()"))
            try:
                with engine.begin() as conn:
                    context = MigrationContext.configure(conn)
                    with Operations.context(context):
                        script.module.downgrade()
                    conn.execute(delete(tenant_migrations_table).where(tenant_migrations_table.c.name == name))
            except Exception as exc:
                raise TenantMigrationError(name, exc, applied=reverted) from exc
            reverted.append(name)
            logger.info("tenant_migration_reverted", extra={"migration": name, "batch": last_batch})
        return reverted


def record_company_migration_state(
    master_db: Session,
    company: Company,
    *,
    current_version: str | None,
) -> Company:
    company.migration_version = current_version
    company.last_migrated_at = datetime.now(timezone.utc)
    master_db.commit()
    return company


def migrate_company(
    manager: ConnectionManager,
    master_db: Session,
    company: Company,
    *,
    migrator: TenantMigrator | None = None,
) -> TenantMigrationResult:
    migrator = migrator or TenantMigrator()
    engine = manager.get_tenant(company.db_name)
    try:
        result = migrator.migrate_latest(engine)
    except TenantMigrationError as exc:
        # Scripts before the failing one stay applied, so the company row follows the ledger.
        current_version = migrator.status(engine).current_version
        record_company_migration_state(master_db, company, current_version=current_version)
        logger.warning(
            "tenant_migrate_failed",
            extra={
                "company_id": company.id,
                "db_name": company.db_name,
                "failed_migration": exc.migration,
                "current_version": current_version,
            },
        )
        raise
    record_company_migration_state(master_db, company, current_version=result.current_version)
    logger.info(
        "tenant_migrate_complete",
        extra={"company_id": company.id, "db_name": company.db_name, **result.to_dict()},
    )
    return result


def migrate_all_companies(
    manager: ConnectionManager,
    master_db: Session,
    *,
    migrator: TenantMigrator | None = None,
    include_inactive: bool = False,
) -> list[dict[str, Any]]:
    migrator = migrator or TenantMigrator()
    stmt = select(Company).order_by(Company.id.asc())
    if not include_inactive:
        stmt = stmt.where(Company.is_active.is_(True))

    report: list[dict[str, Any]] = []
    for company in master_db.scalars(stmt).all():
        entry: dict[str, Any] = {"company_id": company.id, "db_name": company.db_name}
        try:
            result = migrate_company(manager, master_db, company, migrator=migrator)
        except TenantMigrationError as exc:
            master_db.rollback()
            entry.update({"ok": False, "failed_migration": exc.migration, "applied": exc.applied, "error": str(exc)})
        except Exception as exc:
            master_db.rollback()
            logger.exception("tenant_migrate_unexpected_error", extra=entry)
            entry.update({"ok": False, "failed_migration": None, "applied": [], "error": str(exc)})
        else:
            entry.update({"ok": True, **result.to_dict()})
        report.append(entry)
    return report
