from __future__ import annotations

import tempfile
import textwrap
import unittest
from pathlib import Path

from sqlalchemy import inspect, text

from app.services.tenant_migrations import (
    MIGRATIONS_DIR,
    TenantMigrationError,
    TenantMigrator,
    migrate_all_companies,
    migrate_company,
)
from tests.sqlite_support import SqliteConnectionManager, add_company, sqlite_engine

CREATE_WIDGETS = '''
from alembic import op
import sqlalchemy as sa

revision = "0001_create_widgets"


def upgrade():
    op.create_table(
        "widgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
    )


def downgrade():
    op.drop_table("widgets")
'''

ADD_COLOR = '''
from alembic import op
import sqlalchemy as sa

from app.services.tenant_migrations import has_column

revision = "0002_widget_color"


def upgrade():
    if not has_column("widgets", "color"):
        op.add_column("widgets", sa.Column("color", sa.String(20), nullable=True))


def downgrade():
    with op.batch_alter_table("widgets") as batch_op:
        batch_op.drop_column("color")
'''

ADD_GADGETS = '''
from alembic import op
import sqlalchemy as sa

revision = "0003_create_gadgets"


def upgrade():
    op.create_table("gadgets", sa.Column("id", sa.Integer(), primary_key=True))


def downgrade():
    op.drop_table("gadgets")
'''

BROKEN = '''
revision = "0003_broken"


def upgrade():
    raise RuntimeError("boom")
'''


class TenantMigratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.migrations_dir = Path(self._tmp.name)
        self._write("0001_create_widgets.py", CREATE_WIDGETS)
        self._write("0002_widget_color.py", ADD_COLOR)
        self.engine = sqlite_engine()

    def tearDown(self) -> None:
        self.engine.dispose()
        self._tmp.cleanup()

    def _write(self, name: str, body: str) -> None:
        (self.migrations_dir / name).write_text(textwrap.dedent(body), encoding="utf-8")

    def test_status_of_a_fresh_database_lists_everything_pending(self) -> None:
        status = TenantMigrator(self.migrations_dir).status(self.engine)

        self.assertIsNone(status.current_version)
        self.assertEqual(status.completed, [])
        self.assertEqual(status.pending, ["0001_create_widgets", "0002_widget_color"])
        self.assertFalse(status.to_dict()["is_up_to_date"])

    def test_migrate_latest_applies_pending_scripts_as_one_batch(self) -> None:
        migrator = TenantMigrator(self.migrations_dir)

        result = migrator.migrate_latest(self.engine)

        self.assertEqual(result.batch, 1)
        self.assertEqual(result.applied, ["0001_create_widgets", "0002_widget_color"])
        self.assertEqual(result.current_version, "0002_widget_color")
        columns = {item["name"] for item in inspect(self.engine).get_columns("widgets")}
        self.assertEqual(columns, {"id", "name", "color"})

        again = migrator.migrate_latest(self.engine)
        self.assertIsNone(again.batch)
        self.assertEqual(again.applied, [])
        self.assertEqual(again.current_version, "0002_widget_color")

    def test_later_scripts_form_a_new_batch_that_can_be_rolled_back(self) -> None:
        TenantMigrator(self.migrations_dir).migrate_latest(self.engine)
        self._write("0003_create_gadgets.py", ADD_GADGETS)
        migrator = TenantMigrator(self.migrations_dir)

        result = migrator.migrate_latest(self.engine)
        self.assertEqual(result.batch, 2)
        self.assertEqual(result.applied, ["0003_create_gadgets"])

        reverted = migrator.rollback_last_batch(self.engine)
        self.assertEqual(reverted, ["0003_create_gadgets"])
        self.assertFalse(inspect(self.engine).has_table("gadgets"))
        self.assertTrue(inspect(self.engine).has_table("widgets"))
        self.assertEqual(migrator.status(self.engine).pending, ["0003_create_gadgets"])

    def test_failure_stops_the_batch_and_keeps_earlier_scripts(self) -> None:
        self._write("0003_broken.py", BROKEN)
        migrator = TenantMigrator(self.migrations_dir)

        with self.assertRaises(TenantMigrationError) as ctx:
            migrator.migrate_latest(self.engine)

        self.assertEqual(ctx.exception.migration, "0003_broken")
        self.assertEqual(ctx.exception.applied, ["0001_create_widgets", "0002_widget_color"])
        status = migrator.status(self.engine)
        self.assertEqual(status.current_version, "0002_widget_color")
        self.assertEqual(status.pending, ["0003_broken"])

    def test_shipped_tenant_migrations_are_discovered_in_order(self) -> None:
        revisions = [item.revision for item in TenantMigrator(MIGRATIONS_DIR).discover()]

        self.assertEqual(revisions, sorted(revisions))
        self.assertEqual(revisions[0], "0001_baseline")
        self.assertIn("0005_sync_jobs", revisions)


class CompanyMigrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        migrations_dir = Path(self._tmp.name)
        (migrations_dir / "0001_create_widgets.py").write_text(textwrap.dedent(CREATE_WIDGETS), encoding="utf-8")
        self.migrator = TenantMigrator(migrations_dir)
        self.manager = SqliteConnectionManager(create_tenant_schema=False)
        self.master_db = self.manager.master_session()

    def tearDown(self) -> None:
        self.master_db.close()
        self.manager.destroy_all()
        self._tmp.cleanup()

    def test_migrate_company_records_version_on_the_company(self) -> None:
        company = add_company(self.master_db, slug="acme")

        result = migrate_company(self.manager, self.master_db, company, migrator=self.migrator)

        self.assertEqual(result.applied, ["0001_create_widgets"])
        self.master_db.refresh(company)
        self.assertEqual(company.migration_version, "0001_create_widgets")
        self.assertIsNotNone(company.last_migrated_at)

    def test_partial_batch_failure_still_records_the_applied_version(self) -> None:
        (Path(self._tmp.name) / "0002_broken.py").write_text(
            textwrap.dedent(BROKEN).replace("0003_broken", "0002_broken"), encoding="utf-8"
        )
        company = add_company(self.master_db, slug="acme")

        with self.assertRaises(TenantMigrationError) as ctx:
            migrate_company(self.manager, self.master_db, company, migrator=self.migrator)

        self.assertEqual(ctx.exception.migration, "0002_broken")
        self.master_db.refresh(company)
        self.assertEqual(company.migration_version, "0001_create_widgets")
        self.assertIsNotNone(company.last_migrated_at)

    def test_migrate_all_reports_each_company_and_continues_after_failure(self) -> None:
        healthy = add_company(self.master_db, slug="healthy")
        drifted = add_company(self.master_db, slug="drifted")
        with self.manager.get_tenant(drifted.db_name).begin() as conn:
            conn.execute(text("CREATE TABLE widgets (id INTEGER PRIMARY KEY)"))

        report = migrate_all_companies(self.manager, self.master_db, migrator=self.migrator)

        by_company = {item["company_id"]: item for item in report}
        self.assertTrue(by_company[healthy.id]["ok"])
        self.assertEqual(by_company[healthy.id]["current_version"], "0001_create_widgets")
        self.assertFalse(by_company[drifted.id]["ok"])
        self.assertEqual(by_company[drifted.id]["failed_migration"], "0001_create_widgets")

    def test_inactive_companies_are_skipped_unless_requested(self) -> None:
        company = add_company(self.master_db, slug="dormant")
        company.is_active = False
        self.master_db.commit()

        self.assertEqual(migrate_all_companies(self.manager, self.master_db, migrator=self.migrator), [])
        report = migrate_all_companies(self.manager, self.master_db, migrator=self.migrator, include_inactive=True)
        self.assertEqual([item["company_id"] for item in report], [company.id])


if __name__ == "__main__":
    unittest.main()
