from __future__ import annotations

import threading
import time
import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from app.db import ConnectionManager, validate_db_name
from app.errors import ConnectivityError, ValidationFailed
from tests.sqlite_support import sqlite_engine


class _CountingFactory:
    def __init__(self, *, delay: float = 0.0):
        self.calls: list[str] = []
        self._delay = delay
        self._lock = threading.Lock()

    def __call__(self, url: str):  # type: ignore[no-untyped-def]
        with self._lock:
            self.calls.append(url)
        if self._delay:
            time.sleep(self._delay)
        return sqlite_engine()


def _manager(factory, **kwargs) -> ConnectionManager:  # type: ignore[no-untyped-def]
    return ConnectionManager("sqlite-master://", "sqlite-tenant://{db_name}", engine_factory=factory, **kwargs)


class ConnectionManagerTests(unittest.TestCase):
    def test_tenant_engine_is_created_once_and_reused(self) -> None:
        factory = _CountingFactory()
        manager = _manager(factory)

        first = manager.get_tenant("tenant_acme")
        second = manager.get_tenant("tenant_acme")

        self.assertIs(first, second)
        self.assertEqual(factory.calls, ["sqlite-tenant://tenant_acme"])
        self.assertEqual(manager.tenant_keys(), ["tenant_acme"])

    def test_concurrent_first_access_builds_a_single_pool(self) -> None:
        factory = _CountingFactory(delay=0.05)
        manager = _manager(factory)
        engines = []
        errors = []

        def _worker() -> None:
            try:
                engines.append(manager.get_tenant("tenant_race"))
            except Exception as exc:  # pragma: no cover - surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(factory.calls), 1)
        self.assertEqual(len({id(engine) for engine in engines}), 1)

    def test_different_tenants_get_different_pools(self) -> None:
        factory = _CountingFactory()
        manager = _manager(factory)

        self.assertIsNot(manager.get_tenant("tenant_a"), manager.get_tenant("tenant_b"))
        self.assertEqual(manager.tenant_keys(), ["tenant_a", "tenant_b"])

    def test_invalid_database_name_is_rejected(self) -> None:
        manager = _manager(_CountingFactory())
        for bad_name in ("", "Tenant", "1tenant", "tenant-a", "tenant;drop"):
            with self.assertRaises(ValidationFailed):
                manager.get_tenant(bad_name)
        self.assertEqual(validate_db_name(" tenant_ok "), "tenant_ok")

    def test_template_without_placeholder_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ConnectionManager("sqlite-master://", "sqlite-tenant://fixed", engine_factory=_CountingFactory())

    def test_close_tenant_evicts_pool_and_next_access_rebuilds(self) -> None:
        factory = _CountingFactory()
        manager = _manager(factory)
        first = manager.get_tenant("tenant_acme")

        self.assertTrue(manager.close_tenant("tenant_acme"))
        self.assertFalse(manager.close_tenant("tenant_acme"))
        self.assertEqual(manager.tenant_keys(), [])

        second = manager.get_tenant("tenant_acme")
        self.assertIsNot(first, second)
        self.assertEqual(len(factory.calls), 2)

    def test_destroy_all_closes_everything_and_blocks_new_pools(self) -> None:
        manager = _manager(_CountingFactory())
        manager.get_master()
        manager.get_tenant("tenant_a")

        manager.destroy_all()
        manager.destroy_all()

        self.assertTrue(manager.is_closed)
        self.assertEqual(manager.tenant_keys(), [])
        with self.assertRaises(ConnectivityError) as ctx:
            manager.get_tenant("tenant_a")
        self.assertEqual(ctx.exception.code, "POOL_CLOSED")
        with self.assertRaises(ConnectivityError):
            manager.master_session()

    def test_destroy_all_can_run_while_the_registry_is_held(self) -> None:
        manager = _manager(_CountingFactory())
        manager.get_tenant("tenant_a")
        finished = threading.Event()

        def shutdown_mid_update() -> None:
            with manager._registry_lock:
                manager.destroy_all()
            finished.set()

        worker = threading.Thread(target=shutdown_mid_update, daemon=True)
        worker.start()
        worker.join(timeout=5)

        self.assertTrue(finished.is_set())
        self.assertTrue(manager.is_closed)
        self.assertEqual(manager.tenant_keys(), [])

    def test_factory_failure_surfaces_as_connectivity_error(self) -> None:
        def _broken(url: str):  # type: ignore[no-untyped-def]
            raise OperationalError("connect", {}, Exception("refused"))

        manager = _manager(_broken)
        with self.assertRaises(ConnectivityError) as ctx:
            manager.get_tenant("tenant_down")

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(manager.tenant_keys(), [])

    def test_unreachable_database_is_not_registered(self) -> None:
        manager = _manager(lambda url: create_engine("sqlite:////nonexistent-dir/missing/tenant.db"))

        with self.assertRaises(ConnectivityError):
            manager.get_tenant("tenant_missing")
        self.assertEqual(manager.tenant_keys(), [])

    def test_sessions_are_bound_to_their_own_database(self) -> None:
        manager = _manager(_CountingFactory())
        with manager.tenant_session("tenant_a") as db:
            db.execute(text("CREATE TABLE marker (value TEXT)"))
            db.execute(text("INSERT INTO marker VALUES ('a')"))
            db.commit()

        with manager.tenant_session("tenant_a") as db:
            self.assertEqual(db.execute(text("SELECT value FROM marker")).scalar(), "a")
        with manager.tenant_session("tenant_b") as db:
            with self.assertRaises(OperationalError):
                db.execute(text("SELECT value FROM marker"))


if __name__ == "__main__":
    unittest.main()
