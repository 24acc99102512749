#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.db import ConnectionManager
from app.errors import ApiError
from app.models import Company
from app.services.tenant_migrations import TenantMigrator


EXPECTED_MASTER_HEAD = "0002_shift_exchange_requests"


def run(manager: ConnectionManager | None = None) -> dict[str, Any]:
    manager = manager or ConnectionManager.from_settings()
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    try:
        with manager.get_master().connect() as conn:
            current_versions = [row[0] for row in conn.execute(text("select version_num from alembic_version"))]
    except (ApiError, SQLAlchemyError) as exc:
        add("master_connectivity", "fail", {"error": str(exc)})
        manager.destroy_all()
        return report

    add("master_connectivity", "ok", {})
    add(
        "master_migration_up_to_date",
        "ok" if EXPECTED_MASTER_HEAD in current_versions else "warn",
        {"expected_head": EXPECTED_MASTER_HEAD, "current": current_versions},
    )

    migrator = TenantMigrator()
    with manager.master_session() as master_db:
        companies = list(master_db.scalars(select(Company).where(Company.is_active.is_(True)).order_by(Company.id)))

    for company in companies:
        name = f"tenant:{company.db_name}"
        try:
            status = migrator.status(manager.get_tenant(company.db_name))
        except (ApiError, SQLAlchemyError) as exc:
            add(name, "fail", {"company_id": company.id, "error": str(exc)})
            continue
        details = {"company_id": company.id, "recorded_version": company.migration_version, **status.to_dict()}
        drifted = status.current_version != company.migration_version
        add(name, "warn" if status.pending or drifted else "ok", details)

    manager.destroy_all()
    return report


if __name__ == "__main__":
    result = run()
    print(json.dumps(result, ensure_ascii=False, indent=2))
    sys.exit(1 if any(item["status"] == "fail" for item in result["checks"]) else 0)
