from __future__ import annotations

import unittest
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select

from app.errors import NotFoundError
from app.models import (
    AuthorizationStatus,
    AuthorizationType,
    EmployeeNotification,
    EmployeeShift,
    ErpBranchDirectory,
    ShiftAuthorization,
    ShiftLog,
    ShiftLogType,
    ShiftStatus,
    SyncJob,
    UserBranch,
)
from app.realtime import EVENT_SHIFT_DELETED, EVENT_SHIFT_NEW, EVENT_SHIFT_UPDATED
from app.schemas import WEBHOOK_PAYLOAD_MODELS, WebhookEventKind
from app.services.sync_jobs import JOB_TYPE_EARLY_CHECK_IN_CHECK, SyncJobContext, process_due_jobs
from app.services.webhooks import ingest_webhook
from app.timeutils import as_utc, format_erp_datetime
from tests.sqlite_support import (
    SHIFT_START,
    RecordingHub,
    SqliteConnectionManager,
    add_branch,
    add_company,
    add_user,
)

ERP_BRANCH_ID = 7
SLOT_ID = 9001


def shift_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "id": SLOT_ID,
        "company_id": ERP_BRANCH_ID,
        "start_datetime": format_erp_datetime(SHIFT_START),
        "end_datetime": format_erp_datetime(SHIFT_START + timedelta(hours=8)),
        "x_website_id": "EMP-1",
        "x_employee_contact_name": "Ana Test",
        "x_role_name": "Cashier",
        "x_role_color": 3,
        "_action": "write",
    }
    payload.update(overrides)
    return payload


def attendance_payload(attendance_id: int, *, check_in, check_out=None, cumulative_minutes: float = 0) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": attendance_id,
        "check_in": format_erp_datetime(check_in),
        "x_company_id": ERP_BRANCH_ID,
        "x_planning_slot_id": SLOT_ID,
        "x_cumulative_minutes": cumulative_minutes,
    }
    if check_out is not None:
        payload["check_out"] = format_erp_datetime(check_out)
        payload["worked_hours"] = (check_out - check_in).total_seconds() / 3600
    return payload


class WebhookProjectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = SqliteConnectionManager()
        self.master_db = self.manager.master_session()
        self.company = add_company(self.master_db, slug="acme", erp_company_id=ERP_BRANCH_ID)
        self.user = add_user(self.master_db, first_name="Ana", company_ids=[self.company.id], user_key="EMP-1")
        with self.manager.tenant_session(self.company.db_name) as db:
            self.branch = add_branch(db, erp_branch_id=ERP_BRANCH_ID)
        self.hub = RecordingHub()

    def tearDown(self) -> None:
        self.master_db.close()
        self.manager.destroy_all()

    def ingest(self, kind: WebhookEventKind, body: dict[str, Any]):  # type: ignore[no-untyped-def]
        payload = WEBHOOK_PAYLOAD_MODELS[kind].model_validate(body)
        return ingest_webhook(self.manager, self.master_db, kind, payload, hub=self.hub)

    def tenant(self):  # type: ignore[no-untyped-def]
        return self.manager.tenant_session(self.company.db_name)

    def events(self) -> list[str]:
        return self.hub.for_company(self.company.id).names()

    def _shift(self, db) -> EmployeeShift:  # type: ignore[no-untyped-def]
        return db.scalar(select(EmployeeShift).where(EmployeeShift.erp_shift_id == SLOT_ID))

    # -- shifts --------------------------------------------------------------

    def test_new_shift_is_created_with_mapped_employee(self) -> None:
        result = self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())

        self.assertEqual(result.status_code, 201)
        self.assertEqual(result.data["user_id"], self.user.id)
        self.assertEqual(result.data["allocated_hours"], 8)
        self.assertEqual(result.data["status"], ShiftStatus.OPEN.value)
        self.assertEqual(result.data["duty_type"], "Cashier")
        self.assertIn(EVENT_SHIFT_NEW, self.events())

    def test_shift_update_logs_tracked_changes_once(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload(x_role_name="Supervisor"))
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload(x_role_name="Supervisor"))

        with self.tenant() as db:
            shift = self._shift(db)
            logs = db.scalars(select(ShiftLog).where(ShiftLog.log_type == ShiftLogType.SHIFT_UPDATED.value)).all()
            self.assertEqual(shift.duty_type, "Supervisor")
            self.assertEqual(db.scalar(select(func.count(EmployeeShift.id))), 1)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].changes["x_role_name"], {"from": "Cashier", "to": "Supervisor"})
        self.assertIn(EVENT_SHIFT_UPDATED, self.events())

    def test_shift_delete_is_idempotent(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())

        first = self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, {"_id": SLOT_ID, "_action": "unlink/delete", "company_id": ERP_BRANCH_ID})
        replay = self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, {"_id": SLOT_ID, "_action": "unlink/delete", "company_id": ERP_BRANCH_ID})

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.data["deleted"])
        self.assertEqual(replay.status_code, 200)
        self.assertFalse(replay.data["deleted"])
        self.assertEqual(self.events().count(EVENT_SHIFT_DELETED), 1)
        with self.tenant() as db:
            self.assertIsNone(self._shift(db))

    # -- attendance ----------------------------------------------------------

    def test_late_check_in_opens_a_tardiness_authorization(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())

        result = self.ingest(
            WebhookEventKind.ATTENDANCE,
            attendance_payload(501, check_in=SHIFT_START + timedelta(minutes=15)),
        )

        self.assertEqual(result.status_code, 201)
        with self.tenant() as db:
            shift = self._shift(db)
            authorizations = db.scalars(select(ShiftAuthorization)).all()
            notifications = db.scalars(select(EmployeeNotification)).all()
            branch_ids = db.scalars(select(UserBranch.branch_id).where(UserBranch.user_id == self.user.id)).all()
            self.assertEqual(shift.status, ShiftStatus.STARTED.value)
            self.assertEqual(shift.check_in_status, "checked_in")
            self.assertEqual(shift.pending_approvals, 1)
        self.assertEqual(len(authorizations), 1)
        self.assertEqual(authorizations[0].auth_type, AuthorizationType.TARDINESS.value)
        self.assertEqual(authorizations[0].diff_minutes, 15)
        self.assertTrue(authorizations[0].needs_employee_reason)
        self.assertEqual([item.title for item in notifications], ["Tardiness Authorization Required"])
        self.assertEqual(list(branch_ids), [self.branch.id])

    def test_replayed_attendance_changes_nothing(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())
        body = attendance_payload(502, check_in=SHIFT_START + timedelta(minutes=30))

        first = self.ingest(WebhookEventKind.ATTENDANCE, body)
        second = self.ingest(WebhookEventKind.ATTENDANCE, body)

        self.assertEqual(first.data["id"], second.data["id"])
        with self.tenant() as db:
            self.assertEqual(db.scalar(select(func.count(ShiftLog.id))), 1)
            self.assertEqual(db.scalar(select(func.count(ShiftAuthorization.id))), 1)
            self.assertEqual(db.scalar(select(func.count(EmployeeNotification.id))), 1)
            self.assertEqual(self._shift(db).pending_approvals, 1)

    def test_early_check_in_is_decided_by_the_delayed_job(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())
        self.ingest(WebhookEventKind.ATTENDANCE, attendance_payload(503, check_in=SHIFT_START - timedelta(minutes=20)))

        with self.tenant() as db:
            job = db.scalar(select(SyncJob))
            self.assertEqual(job.job_type, JOB_TYPE_EARLY_CHECK_IN_CHECK)
            self.assertEqual(as_utc(job.scheduled_at_utc), SHIFT_START + timedelta(seconds=60))
            self.assertEqual(db.scalar(select(func.count(ShiftAuthorization.id))), 0)

        context = SyncJobContext(company_id=self.company.id, db_name=self.company.db_name, hub=self.hub)
        with self.tenant() as db:
            processed = process_due_jobs(db, context=context, now_utc=SHIFT_START + timedelta(minutes=2))
        self.assertEqual([item.status for item in processed], ["DONE"])

        with self.tenant() as db:
            authorization = db.scalar(select(ShiftAuthorization))
            self.assertEqual(authorization.auth_type, AuthorizationType.EARLY_CHECK_IN.value)
            self.assertEqual(authorization.diff_minutes, 20)
            self.assertEqual(authorization.status, AuthorizationStatus.PENDING.value)
            self.assertEqual(self._shift(db).pending_approvals, 1)

    def test_early_check_out_needs_no_approval(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())
        check_in = SHIFT_START
        check_out = SHIFT_START + timedelta(hours=7)
        self.ingest(WebhookEventKind.ATTENDANCE, attendance_payload(504, check_in=check_in))
        self.ingest(
            WebhookEventKind.ATTENDANCE,
            attendance_payload(504, check_in=check_in, check_out=check_out, cumulative_minutes=420),
        )

        with self.tenant() as db:
            authorization = db.scalar(select(ShiftAuthorization))
            shift = self._shift(db)
            self.assertEqual(authorization.auth_type, AuthorizationType.EARLY_CHECK_OUT.value)
            self.assertEqual(authorization.status, AuthorizationStatus.NO_APPROVAL_NEEDED.value)
            self.assertEqual(authorization.diff_minutes, 60)
            self.assertEqual(shift.pending_approvals, 0)
            self.assertEqual(shift.total_worked_hours, 7)
            self.assertEqual(shift.check_in_status, "checked_out")

    def test_late_check_out_asks_for_a_reason(self) -> None:
        self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload())
        check_in = SHIFT_START
        check_out = SHIFT_START + timedelta(hours=8, minutes=45)
        self.ingest(WebhookEventKind.ATTENDANCE, attendance_payload(505, check_in=check_in))
        self.ingest(
            WebhookEventKind.ATTENDANCE,
            attendance_payload(505, check_in=check_in, check_out=check_out, cumulative_minutes=525),
        )

        with self.tenant() as db:
            authorization = db.scalar(select(ShiftAuthorization))
            notification = db.scalar(select(EmployeeNotification))
            self.assertEqual(authorization.auth_type, AuthorizationType.LATE_CHECK_OUT.value)
            self.assertEqual(authorization.diff_minutes, 45)
            self.assertEqual(self._shift(db).pending_approvals, 1)
        self.assertEqual(notification.title, "Late Check Out: Reason Required")
        self.assertIn("45m", notification.message)

    def test_attendance_without_planning_slot_is_only_logged(self) -> None:
        body = attendance_payload(506, check_in=SHIFT_START)
        body["x_planning_slot_id"] = False

        result = self.ingest(WebhookEventKind.ATTENDANCE, body)

        self.assertEqual(result.status_code, 201)
        self.assertIsNone(result.data["shift_id"])
        with self.tenant() as db:
            self.assertEqual(db.scalar(select(func.count(ShiftAuthorization.id))), 0)

    # -- tenant resolution ---------------------------------------------------

    def test_unknown_erp_company_is_rejected(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload(company_id=99))

        self.assertEqual(ctx.exception.message, "No company found for ERP company_id: 99")

    def test_directory_is_backfilled_from_tenant_branches(self) -> None:
        other = add_company(self.master_db, slug="globex")
        with self.manager.tenant_session(other.db_name) as db:
            add_branch(db, erp_branch_id=42, name="Harbor")

        result = self.ingest(WebhookEventKind.EMPLOYEE_SHIFT, shift_payload(company_id=42))

        self.assertEqual(result.status_code, 201)
        entry = self.master_db.scalar(select(ErpBranchDirectory).where(ErpBranchDirectory.erp_company_id == 42))
        self.assertIsNotNone(entry)
        self.assertEqual(entry.company_id, other.id)
        with self.manager.tenant_session(other.db_name) as db:
            self.assertEqual(db.scalar(select(func.count(EmployeeShift.id))), 1)
        with self.tenant() as db:
            self.assertEqual(db.scalar(select(func.count(EmployeeShift.id))), 0)


if __name__ == "__main__":
    unittest.main()
