#!/usr/bin/env python
"""Apply pending tenant migrations to every active company, or to one with --company."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.db import ConnectionManager
from app.logging_utils import setup_json_logging
from app.models import Company
from app.services.tenant_migrations import TenantMigrationError, TenantMigrator, migrate_all_companies, migrate_company


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--company", help="Company slug or id to migrate")
    parser.add_argument("--include-inactive", action="store_true")
    parser.add_argument("--status", action="store_true", help="Report pending migrations without applying them")
    return parser.parse_args(argv)


def _find_company(master_db, value: str) -> Company | None:
    if value.isdigit():
        return master_db.get(Company, int(value))
    return master_db.scalar(select(Company).where(Company.slug == value.strip().lower()))


def run(argv: list[str] | None = None, manager: ConnectionManager | None = None) -> list[dict[str, Any]]:
    args = _parse_args(argv)
    manager = manager or ConnectionManager.from_settings()
    migrator = TenantMigrator()
    try:
        with manager.master_session() as master_db:
            if args.company is None and not args.status:
                return migrate_all_companies(
                    manager,
                    master_db,
                    migrator=migrator,
                    include_inactive=args.include_inactive,
                )

            if args.company is not None:
                company = _find_company(master_db, args.company)
                if company is None:
                    return [{"company": args.company, "ok": False, "error": "Company not found"}]
                companies = [company]
            else:
                stmt = select(Company).order_by(Company.id.asc())
                if not args.include_inactive:
                    stmt = stmt.where(Company.is_active.is_(True))
                companies = list(master_db.scalars(stmt).all())

            report: list[dict[str, Any]] = []
            for company in companies:
                entry: dict[str, Any] = {"company_id": company.id, "db_name": company.db_name}
                if args.status:
                    entry.update(migrator.status(manager.get_tenant(company.db_name)).to_dict())
                    report.append(entry)
                    continue
                try:
                    result = migrate_company(manager, master_db, company, migrator=migrator)
                except TenantMigrationError as exc:
                    master_db.rollback()
                    entry.update({"ok": False, "failed_migration": exc.migration, "applied": exc.applied, "error": str(exc)})
                else:
                    entry.update({"ok": True, **result.to_dict()})
                report.append(entry)
            return report
    finally:
        manager.destroy_all()


if __name__ == "__main__":
    setup_json_logging()
    output = run()
    print(json.dumps(output, ensure_ascii=False, indent=2, default=str))
    sys.exit(1 if any(item.get("ok") is False for item in output) else 0)
