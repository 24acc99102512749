from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select

from app.errors import ConflictError, ForbiddenError, ValidationFailed
from app.models import (
    AuthorizationStatus,
    AuthorizationType,
    EmployeeNotification,
    EmployeeShift,
    ShiftLog,
    ShiftLogType,
    ShiftStatus,
    SyncJob,
)
from app.realtime import EVENT_AUTHORIZATION_UPDATED, EVENT_NOTIFICATION_NEW, EVENT_SHIFT_LOG_NEW
from app.services.employee_shifts import end_shift, overtime_minutes
from app.services.shift_authorizations import (
    AuthorizationAlreadyResolved,
    AuthorizationResolution,
    approve_authorization,
    count_pending,
    create_authorization,
    publish_resolution,
    reject_authorization,
    submit_reason,
)
from app.services.sync_jobs import JOB_TYPE_ERP_ATTENDANCE_SYNC
from tests.sqlite_support import (
    SHIFT_START,
    RecordingChannel,
    SqliteConnectionManager,
    add_branch,
    add_company,
    add_shift,
)

EMPLOYEE_ID = 11
MANAGER_ID = 90


class ShiftAuthorizationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = SqliteConnectionManager()
        with self.manager.master_session() as master_db:
            self.company = add_company(master_db, slug="acme")
        self.db = self.manager.tenant_session(self.company.db_name)
        self.branch = add_branch(self.db, erp_branch_id=7)

    def tearDown(self) -> None:
        self.db.close()
        self.manager.destroy_all()

    def _started_shift(self, *, worked_hours: float | None = None) -> EmployeeShift:
        return add_shift(
            self.db,
            branch=self.branch,
            erp_shift_id=9001,
            user_id=EMPLOYEE_ID,
            status=ShiftStatus.STARTED,
            total_worked_hours=worked_hours,
        )

    def _attendance_log(self, shift: EmployeeShift, *, log_type: ShiftLogType, attendance_id: int = 777) -> ShiftLog:
        log = ShiftLog(
            shift_id=shift.id,
            branch_id=shift.branch_id,
            log_type=log_type.value,
            erp_attendance_id=attendance_id,
            event_time=shift.shift_start,
            erp_payload={},
        )
        self.db.add(log)
        self.db.commit()
        return log

    def _pending(self, shift: EmployeeShift, auth_type: AuthorizationType, *, needs_reason: bool, log: ShiftLog | None = None):  # type: ignore[no-untyped-def]
        row, created = create_authorization(
            self.db,
            shift=shift,
            shift_log_id=log.id if log is not None else None,
            auth_type=auth_type,
            diff_minutes=15,
            needs_employee_reason=needs_reason,
        )
        self.db.commit()
        self.assertTrue(created)
        return row

    def _pending_approvals(self, shift_id: int) -> int:
        return self.db.scalar(select(EmployeeShift.pending_approvals).where(EmployeeShift.id == shift_id))

    def _resolution_logs(self, shift_id: int) -> int:
        return self.db.scalar(
            select(func.count(ShiftLog.id)).where(
                ShiftLog.shift_id == shift_id,
                ShiftLog.log_type == ShiftLogType.AUTHORIZATION_RESOLVED.value,
            )
        )

    # -- overtime ------------------------------------------------------------

    def test_overtime_minutes(self) -> None:
        self.assertEqual(overtime_minutes(9.5, 8), 90)
        self.assertEqual(overtime_minutes(7.5, 8), -30)
        self.assertEqual(overtime_minutes(None, 8), 0)

    def test_ending_a_shift_with_extra_hours_opens_overtime(self) -> None:
        shift = self._started_shift(worked_hours=9.5)

        result = end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID)

        self.assertEqual(result.shift.status, ShiftStatus.ENDED.value)
        self.assertEqual(result.log.log_type, ShiftLogType.SHIFT_ENDED.value)
        self.assertIsNotNone(result.overtime)
        self.assertEqual(result.overtime.auth_type, AuthorizationType.OVERTIME.value)
        self.assertEqual(result.overtime.diff_minutes, 90)
        self.assertEqual(result.overtime.status, AuthorizationStatus.PENDING.value)
        self.assertEqual(self._pending_approvals(shift.id), 1)

    def test_ending_a_shift_within_allocation_opens_nothing(self) -> None:
        shift = self._started_shift(worked_hours=8)

        result = end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID)

        self.assertIsNone(result.overtime)
        self.assertEqual(self._pending_approvals(shift.id), 0)

    def test_ending_twice_is_a_conflict(self) -> None:
        shift = self._started_shift(worked_hours=9.5)
        end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID)

        with self.assertRaises(ConflictError) as ctx:
            end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID)

        self.assertEqual(ctx.exception.code, "SHIFT_ALREADY_ENDED")
        self.assertEqual(count_pending(self.db, shift.id), 1)

    def test_only_started_shifts_can_end(self) -> None:
        shift = add_shift(self.db, branch=self.branch, erp_shift_id=9002, user_id=EMPLOYEE_ID)

        with self.assertRaises(ValidationFailed) as ctx:
            end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID)

        self.assertEqual(ctx.exception.code, "SHIFT_NOT_STARTED")

    def test_approving_overtime_with_premium_resolves_once(self) -> None:
        shift = self._started_shift(worked_hours=9.5)
        overtime = end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID).overtime

        resolution = approve_authorization(
            self.db,
            authorization_id=overtime.id,
            manager_id=MANAGER_ID,
            overtime_type="overtime_premium",
            manager_name="Maria Manager",
        )

        self.assertIsInstance(resolution, AuthorizationResolution)
        self.assertEqual(resolution.authorization.status, AuthorizationStatus.APPROVED.value)
        self.assertEqual(resolution.authorization.overtime_type, "overtime_premium")
        self.assertEqual(resolution.authorization.resolved_by, MANAGER_ID)
        self.assertEqual(resolution.shift.pending_approvals, 0)
        self.assertEqual(resolution.log.changes["resolved_by_name"], "Maria Manager")
        self.assertEqual(resolution.notification.title, "Overtime Approved")
        self.assertEqual(resolution.sync_job_ids, [])
        self.assertEqual(self._resolution_logs(shift.id), 1)

        again = approve_authorization(
            self.db,
            authorization_id=overtime.id,
            manager_id=MANAGER_ID,
            overtime_type="normal_overtime",
        )
        rejected = reject_authorization(self.db, authorization_id=overtime.id, manager_id=MANAGER_ID, reason="late")

        self.assertEqual(again, AuthorizationAlreadyResolved(authorization_id=overtime.id, status="approved"))
        self.assertIsInstance(rejected, AuthorizationAlreadyResolved)
        self.assertEqual(self._resolution_logs(shift.id), 1)
        self.assertEqual(self._pending_approvals(shift.id), 0)
        self.assertEqual(self.db.scalar(select(func.count(EmployeeNotification.id))), 1)

    def test_losing_a_concurrent_resolve_reports_the_winner(self) -> None:
        shift = self._started_shift()
        row = self._pending(shift, AuthorizationType.EARLY_CHECK_IN, needs_reason=False)

        with self.manager.tenant_session(self.company.db_name) as other_db:
            reject_authorization(other_db, authorization_id=row.id, manager_id=MANAGER_ID + 1, reason="Too early")

        # self.db still holds the row as pending, so only the guarded update can notice.
        self.assertEqual(row.status, AuthorizationStatus.PENDING.value)
        outcome = approve_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID)

        self.assertEqual(outcome, AuthorizationAlreadyResolved(authorization_id=row.id, status="rejected"))
        self.assertEqual(self._resolution_logs(shift.id), 1)
        self.assertEqual(self._pending_approvals(shift.id), 0)

    def test_overtime_needs_a_valid_type(self) -> None:
        shift = self._started_shift(worked_hours=10)
        overtime = end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID).overtime

        for value in (None, "", "double_time"):
            with self.assertRaises(ValidationFailed):
                approve_authorization(self.db, authorization_id=overtime.id, manager_id=MANAGER_ID, overtime_type=value)
        self.assertEqual(count_pending(self.db, shift.id), 1)

    # -- reasons and rejections ----------------------------------------------

    def test_tardiness_needs_the_employee_reason_before_approval(self) -> None:
        shift = self._started_shift()
        log = self._attendance_log(shift, log_type=ShiftLogType.CHECK_IN)
        row = self._pending(shift, AuthorizationType.TARDINESS, needs_reason=True, log=log)

        with self.assertRaises(ValidationFailed):
            approve_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID)
        with self.assertRaises(ForbiddenError):
            submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID + 1, reason="Traffic")

        submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="  Traffic jam ")
        resolution = approve_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID)

        self.assertEqual(resolution.authorization.employee_reason, "Traffic jam")
        self.assertEqual(resolution.notification.title, "Tardiness Approved")
        job = self.db.get(SyncJob, resolution.sync_job_ids[0])
        self.assertEqual(job.job_type, JOB_TYPE_ERP_ATTENDANCE_SYNC)
        self.assertEqual(job.payload["attendance_id"], 777)
        self.assertEqual(job.payload["field"], "check_in")
        self.assertEqual(job.idempotency_key, f"erp_attendance:{row.id}:check_in")

    def test_reason_can_only_be_submitted_once(self) -> None:
        shift = self._started_shift()
        row = self._pending(shift, AuthorizationType.LATE_CHECK_OUT, needs_reason=True)

        submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="Closing duties")
        with self.assertRaises(ConflictError):
            submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="Again")
        with self.assertRaises(ValidationFailed):
            submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="   ")

    def test_reason_after_resolution_is_a_conflict(self) -> None:
        shift = self._started_shift()
        row = self._pending(shift, AuthorizationType.LATE_CHECK_OUT, needs_reason=True)
        reject_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID, reason="Not needed")

        with self.assertRaises(ConflictError) as raised:
            submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="Closing duties")

        self.assertEqual(raised.exception.status_code, 409)
        self.assertEqual(raised.exception.code, "AUTHORIZATION_ALREADY_RESOLVED")
        self.db.refresh(row)
        self.assertIsNone(row.employee_reason)

    def test_rejection_requires_a_reason(self) -> None:
        shift = self._started_shift()
        row = self._pending(shift, AuthorizationType.EARLY_CHECK_IN, needs_reason=False)

        with self.assertRaises(ValidationFailed):
            reject_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID, reason="  ")
        self.assertEqual(count_pending(self.db, shift.id), 1)

    def test_rejecting_early_check_in_rewrites_the_erp_check_in(self) -> None:
        shift = self._started_shift()
        log = self._attendance_log(shift, log_type=ShiftLogType.CHECK_IN, attendance_id=801)
        row = self._pending(shift, AuthorizationType.EARLY_CHECK_IN, needs_reason=False, log=log)

        resolution = reject_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID, reason="Too early")

        self.assertEqual(resolution.authorization.status, AuthorizationStatus.REJECTED.value)
        self.assertEqual(resolution.authorization.rejection_reason, "Too early")
        self.assertEqual(resolution.notification.title, "Early Check In Rejected")
        self.assertIn("Too early", resolution.notification.message)
        job = self.db.get(SyncJob, resolution.sync_job_ids[0])
        self.assertEqual(job.payload["field"], "check_in")
        self.assertEqual(job.status, "PENDING")
        self.assertEqual(job.idempotency_key, f"erp_attendance:{row.id}:check_in")

    def test_rejecting_late_check_out_rewrites_the_erp_check_out(self) -> None:
        shift = self._started_shift()
        log = self._attendance_log(shift, log_type=ShiftLogType.CHECK_OUT, attendance_id=802)
        row = self._pending(shift, AuthorizationType.LATE_CHECK_OUT, needs_reason=True, log=log)

        resolution = reject_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID, reason="Not approved")

        job = self.db.get(SyncJob, resolution.sync_job_ids[0])
        self.assertEqual(job.payload["field"], "check_out")
        self.assertEqual(job.payload["value"][:16], (SHIFT_START + timedelta(hours=8)).isoformat()[:16])

    def test_approving_late_check_out_does_not_touch_the_erp(self) -> None:
        shift = self._started_shift()
        log = self._attendance_log(shift, log_type=ShiftLogType.CHECK_OUT, attendance_id=803)
        row = self._pending(shift, AuthorizationType.LATE_CHECK_OUT, needs_reason=True, log=log)
        submit_reason(self.db, authorization_id=row.id, user_id=EMPLOYEE_ID, reason="Inventory")

        resolution = approve_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID)

        self.assertEqual(resolution.sync_job_ids, [])
        self.assertEqual(self.db.scalar(select(func.count(SyncJob.id))), 0)

    def test_counter_never_drops_below_zero(self) -> None:
        shift = self._started_shift()
        row = self._pending(shift, AuthorizationType.EARLY_CHECK_IN, needs_reason=False)
        shift.pending_approvals = 0
        self.db.commit()

        resolution = approve_authorization(self.db, authorization_id=row.id, manager_id=MANAGER_ID)

        self.assertEqual(resolution.shift.pending_approvals, 0)

    def test_replayed_creation_returns_the_existing_row(self) -> None:
        shift = self._started_shift()
        log = self._attendance_log(shift, log_type=ShiftLogType.CHECK_IN)
        first = self._pending(shift, AuthorizationType.TARDINESS, needs_reason=True, log=log)

        again, created = create_authorization(
            self.db,
            shift=shift,
            shift_log_id=log.id,
            auth_type=AuthorizationType.TARDINESS,
            diff_minutes=15,
            needs_employee_reason=True,
        )

        self.assertFalse(created)
        self.assertEqual(again.id, first.id)
        self.assertEqual(self._pending_approvals(shift.id), 1)

    # -- fan-out -------------------------------------------------------------

    def test_publish_resolution_emits_branch_events_then_notification(self) -> None:
        shift = self._started_shift(worked_hours=9)
        overtime = end_shift(self.db, shift_id=shift.id, manager_id=MANAGER_ID).overtime
        resolution = approve_authorization(
            self.db,
            authorization_id=overtime.id,
            manager_id=MANAGER_ID,
            overtime_type="normal_overtime",
        )
        channel = RecordingChannel()

        with patch("app.services.notifications.send_push_to_subscriptions") as send_push:
            publish_resolution(self.db, resolution, channel=channel, push_allowed=True)

        self.assertEqual(channel.names(), [EVENT_AUTHORIZATION_UPDATED, EVENT_SHIFT_LOG_NEW, EVENT_NOTIFICATION_NEW])
        self.assertEqual(channel.events[2][1], EMPLOYEE_ID)
        send_push.assert_not_called()


if __name__ == "__main__":
    unittest.main()
