from __future__ import annotations

import unittest

from fastapi.testclient import TestClient
from sqlalchemy import select

from app.main import app
from app.models import AuditLog, EmployeeShift
from app.security import PERMISSION_MANAGE_COMPANIES, create_access_token
from app.services.notifications import NotificationMessage, dispatch_notification
from tests.sqlite_support import RecordingHub, SqliteConnectionManager, add_branch, add_company, add_user, settings_env
from tests.test_webhook_projection import ERP_BRANCH_ID, shift_payload


class RouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = settings_env(jwt_secret="test-secret")
        self._env.__enter__()
        self.addCleanup(self._env.__exit__, None, None, None)

        self.manager = SqliteConnectionManager()
        self.hub = RecordingHub()
        previous_manager = app.state.connection_manager
        previous_hub = app.state.realtime_hub
        app.state.connection_manager = self.manager
        app.state.realtime_hub = self.hub

        def _restore() -> None:
            app.state.connection_manager = previous_manager
            app.state.realtime_hub = previous_hub
            self.manager.destroy_all()

        self.addCleanup(_restore)

        self.master_db = self.manager.master_session()
        self.addCleanup(self.master_db.close)
        self.company = add_company(self.master_db, slug="acme", erp_company_id=ERP_BRANCH_ID)
        self.user = add_user(self.master_db, first_name="Ana", company_ids=[self.company.id], user_key="EMP-1")
        with self.manager.tenant_session(self.company.db_name) as db:
            add_branch(db, erp_branch_id=ERP_BRANCH_ID)
        self.client = TestClient(app)

    def _headers(self, *permissions: str, company_id: int | None = None) -> dict[str, str]:
        token, _, _ = create_access_token(
            user_id=self.user.id,
            company_id=company_id if company_id is not None else self.company.id,
            permissions=permissions,
        )
        return {"Authorization": f"Bearer {token}"}

    def test_health_reports_pool_count(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["tenant_pools"], 1)

    def test_webhook_creates_shift(self) -> None:
        response = self.client.post("/api/webhooks/odoo/employee-shift", json=shift_payload())

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["success"])

    def test_webhook_errors_use_the_webhook_shape(self) -> None:
        invalid = self.client.post("/api/webhooks/odoo/employee-shift", json={"company_id": ERP_BRANCH_ID})
        unknown_kind = self.client.post("/api/webhooks/odoo/payroll", json={})
        unknown_company = self.client.post("/api/webhooks/odoo/employee-shift", json=shift_payload(company_id=999))

        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(unknown_kind.status_code, 400)
        self.assertEqual(unknown_company.status_code, 404)
        for response in (invalid, unknown_kind, unknown_company):
            body = response.json()
            self.assertIs(body["success"], False)
            self.assertIsInstance(body["error"], str)

    def test_malformed_shift_times_are_a_bad_request(self) -> None:
        garbled = self.client.post(
            "/api/webhooks/odoo/employee-shift", json=shift_payload(start_datetime="not-a-date")
        )
        reversed_range = self.client.post(
            "/api/webhooks/odoo/employee-shift",
            json=shift_payload(start_datetime="2026-05-04 16:00:00", end_datetime="2026-05-04 08:00:00"),
        )
        garbled_check_in = self.client.post(
            "/api/webhooks/odoo/attendance",
            json={"id": 1, "check_in": "yesterday", "x_company_id": ERP_BRANCH_ID},
        )

        self.assertEqual(garbled.status_code, 400)
        self.assertIn("start_datetime", garbled.json()["error"])
        self.assertEqual(reversed_range.status_code, 400)
        self.assertIn("end_datetime must be after start_datetime", reversed_range.json()["error"])
        self.assertEqual(garbled_check_in.status_code, 400)
        self.assertIn("check_in", garbled_check_in.json()["error"])
        with self.manager.tenant_session(self.company.db_name) as db:
            self.assertIsNone(db.scalar(select(EmployeeShift.id)))

    def test_api_errors_use_the_error_envelope(self) -> None:
        missing_token = self.client.get("/api/notifications")
        forbidden = self.client.get("/api/admin/companies", headers=self._headers())

        self.assertEqual(missing_token.status_code, 401)
        self.assertEqual(missing_token.json()["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json()["error"]["code"], "FORBIDDEN")
        self.assertIn("request_id", forbidden.json()["error"])

    def test_admin_lists_companies(self) -> None:
        response = self.client.get("/api/admin/companies", headers=self._headers(PERMISSION_MANAGE_COMPANIES))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["slug"] for item in response.json()], ["acme"])

    def test_deactivation_is_audited_against_the_company(self) -> None:
        response = self.client.post(
            f"/api/admin/companies/{self.company.id}/deactivate",
            headers=self._headers(PERMISSION_MANAGE_COMPANIES),
        )

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_active"])
        with self.manager.master_session() as db:
            audit = db.scalar(select(AuditLog))
        self.assertEqual(audit.action, "COMPANY_DEACTIVATED")
        self.assertEqual((audit.company_id, audit.actor_id), (self.company.id, str(self.user.id)))
        self.assertNotIn(self.company.db_name, self.manager.tenant_keys())

    def test_company_access_is_checked_for_tenant_routes(self) -> None:
        other = add_company(self.master_db, slug="globex")

        response = self.client.get("/api/notifications", headers=self._headers(company_id=other.id))

        self.assertEqual(response.status_code, 403)

    def test_notifications_can_be_listed_and_marked_read(self) -> None:
        with self.manager.tenant_session(self.company.db_name) as db:
            for title in ("First", "Second"):
                dispatch_notification(
                    db, self.user.id, NotificationMessage(title=title, message="Body"), channel=None, push_allowed=False
                )
        headers = self._headers()

        listed = self.client.get("/api/notifications", headers=headers)
        self.assertEqual(listed.status_code, 200)
        self.assertEqual({item["title"] for item in listed.json()}, {"First", "Second"})

        marked = self.client.post("/api/notifications/read-all", headers=headers)
        self.assertEqual(marked.json(), {"ok": True, "updated": 2})
        unread = self.client.get("/api/notifications", params={"unread_only": True}, headers=headers)
        self.assertEqual(unread.json(), [])

    def test_push_subscribe_is_unavailable_without_vapid_keys(self) -> None:
        with settings_env(jwt_secret="test-secret", push_vapid_public_key="", push_vapid_private_key=""):
            response = self.client.post(
                "/api/push/subscribe",
                json={"endpoint": "https://push.example.com/sub/1", "keys": {"p256dh": "a", "auth": "b"}},
                headers=self._headers(),
            )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "PUSH_NOT_CONFIGURED")


if __name__ == "__main__":
    unittest.main()
