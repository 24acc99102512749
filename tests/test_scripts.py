from __future__ import annotations

import unittest

from sqlalchemy import text

from scripts import db_health_check, migrate_tenants
from tests.sqlite_support import SqliteConnectionManager, add_company


class DbHealthCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = SqliteConnectionManager()
        self.addCleanup(self.manager.destroy_all)
        with self.manager.master_session() as master_db:
            add_company(master_db, slug="acme")
            dormant = add_company(master_db, slug="dormant")
            dormant.is_active = False
            master_db.commit()

    def _stamp_master(self, version: str) -> None:
        with self.manager.get_master().begin() as conn:
            conn.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            conn.execute(text("INSERT INTO alembic_version (version_num) VALUES (:v)"), {"v": version})

    def test_reports_master_head_and_unmigrated_tenants(self) -> None:
        self._stamp_master(db_health_check.EXPECTED_MASTER_HEAD)

        report = db_health_check.run(self.manager)

        checks = {item["name"]: item for item in report["checks"]}
        self.assertEqual(list(checks), ["master_connectivity", "master_migration_up_to_date", "tenant:tenant_acme"])
        self.assertEqual(checks["master_migration_up_to_date"]["status"], "ok")
        tenant = checks["tenant:tenant_acme"]
        self.assertEqual(tenant["status"], "warn")
        self.assertIsNone(tenant["details"]["recorded_version"])
        self.assertFalse(tenant["details"]["is_up_to_date"])

    def test_unreadable_master_stops_the_check(self) -> None:
        report = db_health_check.run(self.manager)

        self.assertEqual([item["name"] for item in report["checks"]], ["master_connectivity"])
        self.assertEqual(report["checks"][0]["status"], "fail")


class MigrateTenantsScriptTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = SqliteConnectionManager()
        self.addCleanup(self.manager.destroy_all)
        with self.manager.master_session() as master_db:
            self.acme_id = add_company(master_db, slug="acme").id

    def test_status_lists_pending_migrations_without_applying(self) -> None:
        report = migrate_tenants.run(["--status"], manager=self.manager)

        self.assertEqual(len(report), 1)
        entry = report[0]
        self.assertEqual((entry["company_id"], entry["db_name"]), (self.acme_id, "tenant_acme"))
        self.assertIsNone(entry["current_version"])
        self.assertTrue(entry["pending"])
        self.assertNotIn("ok", entry)

    def test_unknown_company_is_reported(self) -> None:
        report = migrate_tenants.run(["--company", "globex"], manager=self.manager)

        self.assertEqual(report, [{"company": "globex", "ok": False, "error": "Company not found"}])


if __name__ == "__main__":
    unittest.main()
