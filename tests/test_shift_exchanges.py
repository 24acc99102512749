from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import delete, select, update

from app.errors import ConflictError, ConnectivityError, ForbiddenError, ValidationFailed
from app.models import (
    EmployeeNotification,
    EmployeeShift,
    ExchangeStage,
    ShiftExchangeRequest,
    SyncJob,
    UserBranch,
    UserCompanyAccess,
)
from app.security import CurrentUser
from app.services import shift_exchanges
from app.services.shift_exchanges import (
    APPROVER_MODE_HR,
    APPROVER_MODE_MANAGEMENT,
    approve_exchange,
    create_exchange_request,
    get_approver_mode,
    get_exchange_detail,
    list_exchange_options,
    list_exchanges_for_authorization,
    reconcile_exchange_swaps,
    reject_exchange,
    respond_to_exchange,
)
from app.services.sync_jobs import JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN
from tests.sqlite_support import (
    RecordingHub,
    SqliteConnectionManager,
    add_branch,
    add_company,
    add_shift,
    add_user,
    assign_branch,
)


class ShiftExchangeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.manager = SqliteConnectionManager()
        self.master_db = self.manager.master_session()
        self.hub = RecordingHub()

        self.north = add_company(self.master_db, slug="north")
        self.south = add_company(self.master_db, slug="south")
        both = [self.north.id, self.south.id]
        self.requester = add_user(self.master_db, first_name="Rita", company_ids=both, user_key="EMP-R")
        self.accepting = add_user(self.master_db, first_name="Tom", company_ids=both, user_key="EMP-T")
        self.hr = add_user(self.master_db, first_name="Hana", company_ids=[self.north.id], roles=["Human Resources"])

        with self.manager.tenant_session(self.north.db_name) as db:
            self.north_branch = add_branch(db, erp_branch_id=7, name="North Mall")
            self.north_shift = add_shift(db, branch=self.north_branch, erp_shift_id=9001, user_id=self.requester.id)
            assign_branch(db, user_id=self.accepting.id, branch_id=self.north_branch.id)
        with self.manager.tenant_session(self.south.db_name) as db:
            self.south_branch = add_branch(db, erp_branch_id=8, name="South Plaza")
            self.south_shift = add_shift(db, branch=self.south_branch, erp_shift_id=9002, user_id=self.accepting.id)
            assign_branch(db, user_id=self.requester.id, branch_id=self.south_branch.id)

        self.requester_actor = CurrentUser(user_id=self.requester.id, company_id=self.north.id)
        self.accepting_actor = CurrentUser(user_id=self.accepting.id, company_id=self.south.id)
        self.hr_actor = CurrentUser(user_id=self.hr.id, company_id=self.north.id, roles=("Human Resources",))

    def tearDown(self) -> None:
        self.master_db.close()
        self.manager.destroy_all()

    def _create(self) -> dict:
        return create_exchange_request(
            self.manager,
            self.master_db,
            actor=self.requester_actor,
            from_shift_id=self.north_shift.id,
            to_shift_id=self.south_shift.id,
            to_company_id=self.south.id,
            hub=self.hub,
        )

    def _accept(self, exchange_id: int) -> dict:
        return respond_to_exchange(
            self.manager,
            self.master_db,
            exchange_id=exchange_id,
            actor=self.accepting_actor,
            action="accept",
            hub=self.hub,
        )

    def _notification_titles(self, db_name: str, user_id: int) -> list[str]:
        with self.manager.tenant_session(db_name) as db:
            return list(
                db.scalars(
                    select(EmployeeNotification.title)
                    .where(EmployeeNotification.user_id == user_id)
                    .order_by(EmployeeNotification.id)
                ).all()
            )

    def _shift_owner(self, db_name: str, shift_id: int) -> int | None:
        with self.manager.tenant_session(db_name) as db:
            return db.scalar(select(EmployeeShift.user_id).where(EmployeeShift.id == shift_id))

    # -- options and creation ------------------------------------------------

    def test_options_include_cross_company_shifts_of_designated_colleagues(self) -> None:
        listing = list_exchange_options(
            self.manager, self.master_db, actor=self.requester_actor, from_shift_id=self.north_shift.id
        )

        self.assertEqual(listing["from_shift"]["shift_id"], self.north_shift.id)
        self.assertEqual(
            [(item["company_id"], item["shift_id"]) for item in listing["options"]],
            [(self.south.id, self.south_shift.id)],
        )

    def test_options_skip_colleagues_without_branch_designation(self) -> None:
        with self.manager.tenant_session(self.south.db_name) as db:
            db.execute(delete(UserBranch))
            db.commit()

        listing = list_exchange_options(
            self.manager, self.master_db, actor=self.requester_actor, from_shift_id=self.north_shift.id
        )

        self.assertEqual(listing["options"], [])

    def test_only_the_shift_owner_can_ask_for_an_exchange(self) -> None:
        intruder = CurrentUser(user_id=self.accepting.id, company_id=self.north.id)

        with self.assertRaises(ForbiddenError):
            list_exchange_options(self.manager, self.master_db, actor=intruder, from_shift_id=self.north_shift.id)

    def test_create_notifies_the_accepting_employee(self) -> None:
        detail = self._create()

        self.assertEqual(detail["status"], "pending")
        self.assertEqual(detail["approval_stage"], ExchangeStage.AWAITING_EMPLOYEE.value)
        self.assertEqual(detail["stage_label"], "Awaiting Employee Acceptance")
        self.assertEqual(detail["requester"]["branch_name"], "North Mall")
        self.assertEqual(detail["accepting"]["branch_name"], "South Plaza")
        self.assertEqual(
            self._notification_titles(self.south.db_name, self.accepting.id),
            ["Shift Exchange Request"],
        )

    def test_a_shift_can_have_only_one_pending_request(self) -> None:
        self._create()

        with self.assertRaises(ConflictError) as ctx:
            self._create()

        self.assertEqual(ctx.exception.message, "This shift already has a pending exchange request")

    def test_pending_index_turns_a_lost_race_into_a_conflict(self) -> None:
        self._create()

        with patch("app.services.shift_exchanges._has_pending_request", return_value=False):
            with self.assertRaises(ConflictError) as ctx:
                self._create()

        self.assertEqual(ctx.exception.message, "This shift already has a pending exchange request")
        self.assertEqual(len(self.master_db.scalars(select(ShiftExchangeRequest)).all()), 1)

    # -- stage ordering ------------------------------------------------------

    def test_hr_cannot_decide_before_the_employee_accepts(self) -> None:
        exchange_id = self._create()["id"]

        with self.assertRaises(ConflictError):
            approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor)
        with self.assertRaises(ConflictError):
            reject_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor, reason="No")

    def test_only_the_accepting_employee_can_respond(self) -> None:
        exchange_id = self._create()["id"]

        with self.assertRaises(ForbiddenError):
            respond_to_exchange(
                self.manager, self.master_db, exchange_id=exchange_id, actor=self.requester_actor, action="accept"
            )
        with self.assertRaises(ValidationFailed):
            respond_to_exchange(
                self.manager, self.master_db, exchange_id=exchange_id, actor=self.accepting_actor, action="maybe"
            )

    def test_employee_rejection_ends_the_request(self) -> None:
        exchange_id = self._create()["id"]

        detail = respond_to_exchange(
            self.manager,
            self.master_db,
            exchange_id=exchange_id,
            actor=self.accepting_actor,
            action="reject",
            reason="Busy that day",
        )

        self.assertEqual(detail["status"], "rejected")
        self.assertEqual(detail["approval_stage"], ExchangeStage.RESOLVED.value)
        self.assertEqual(detail["employee_rejection_reason"], "Busy that day")
        self.assertEqual(self._notification_titles(self.north.db_name, self.requester.id), ["Shift Exchange Rejected"])
        with self.assertRaises(ConflictError):
            self._accept(exchange_id)

    def test_acceptance_moves_the_request_to_hr(self) -> None:
        exchange_id = self._create()["id"]

        detail = self._accept(exchange_id)

        self.assertEqual(detail["approval_stage"], ExchangeStage.AWAITING_HR.value)
        self.assertEqual(detail["stage_label"], "Pending HR Approval")
        self.assertEqual(self._notification_titles(self.north.db_name, self.hr.id), ["Shift Exchange Pending Approval"])
        hr_view = get_exchange_detail(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor)
        self.assertTrue(hr_view["can_approve"])
        self.assertEqual(hr_view["approval_mode"], APPROVER_MODE_HR)

    # -- final decision ------------------------------------------------------

    def test_only_hr_can_approve_when_hr_exists(self) -> None:
        exchange_id = self._create()["id"]
        self._accept(exchange_id)
        manager_actor = CurrentUser(user_id=self.hr.id, company_id=self.north.id, roles=("Management",))

        with self.assertRaises(ForbiddenError):
            approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=manager_actor)

    def test_management_approves_when_no_hr_user_has_access(self) -> None:
        self.master_db.execute(
            update(UserCompanyAccess)
            .where(UserCompanyAccess.user_id == self.hr.id)
            .values(is_active=False)
        )
        self.master_db.commit()

        self.assertEqual(get_approver_mode(self.master_db, [self.north.id, self.south.id]), APPROVER_MODE_MANAGEMENT)

    def test_approval_swaps_both_shifts_and_queues_erp_updates(self) -> None:
        exchange_id = self._create()["id"]
        self._accept(exchange_id)

        detail = approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor, hub=self.hub)

        self.assertEqual(detail["status"], "approved")
        self.assertEqual(detail["hr_decision_by"]["user_id"], self.hr.id)
        self.assertIsNotNone(detail["swap"]["requester_applied_at"])
        self.assertIsNotNone(detail["swap"]["accepting_applied_at"])
        self.assertEqual(self._shift_owner(self.north.db_name, self.north_shift.id), self.accepting.id)
        self.assertEqual(self._shift_owner(self.south.db_name, self.south_shift.id), self.requester.id)

        with self.manager.tenant_session(self.north.db_name) as db:
            job = db.scalar(select(SyncJob))
        self.assertEqual(job.job_type, JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN)
        self.assertEqual(job.idempotency_key, f"erp_planning_slot:{exchange_id}:requester")
        self.assertEqual(job.payload, {"slot_id": 9001, "website_key": "EMP-T", "erp_company_id": 7, "exchange_id": exchange_id})
        self.assertEqual(self._notification_titles(self.north.db_name, self.requester.id), ["Shift Exchange Approved"])
        self.assertIn("Shift Exchange Approved", self._notification_titles(self.south.db_name, self.accepting.id))

        with self.assertRaises(ConflictError):
            approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor)

    def test_approval_needs_website_keys_on_both_employees(self) -> None:
        exchange_id = self._create()["id"]
        self._accept(exchange_id)
        self.accepting.user_key = None
        self.master_db.commit()

        with self.assertRaises(ConflictError):
            approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor)

        row = self.master_db.get(ShiftExchangeRequest, exchange_id)
        self.assertEqual(row.status, "pending")

    def test_hr_rejection_requires_a_reason(self) -> None:
        exchange_id = self._create()["id"]
        self._accept(exchange_id)

        with self.assertRaises(ValidationFailed):
            reject_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor, reason=" ")

        detail = reject_exchange(
            self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor, reason="Coverage gap"
        )
        self.assertEqual(detail["status"], "rejected")
        self.assertEqual(detail["hr_rejection_reason"], "Coverage gap")
        self.assertEqual(self._shift_owner(self.north.db_name, self.north_shift.id), self.requester.id)

    def test_interrupted_swap_is_completed_by_reconciliation(self) -> None:
        exchange_id = self._create()["id"]
        self._accept(exchange_id)
        original = shift_exchanges._apply_swap_step

        def _flaky(manager, master_db, row, step, *, hub):  # type: ignore[no-untyped-def]
            if step.name == shift_exchanges.SWAP_STEP_ACCEPTING:
                raise ConnectivityError("Database unavailable: tenant_south")
            return original(manager, master_db, row, step, hub=hub)

        with patch("app.services.shift_exchanges._apply_swap_step", side_effect=_flaky):
            detail = approve_exchange(self.manager, self.master_db, exchange_id=exchange_id, actor=self.hr_actor)

        self.assertEqual(detail["status"], "approved")
        self.assertIsNotNone(detail["swap"]["requester_applied_at"])
        self.assertIsNone(detail["swap"]["accepting_applied_at"])
        self.assertIn("accepting", detail["swap"]["last_error"])
        self.assertEqual(self._shift_owner(self.south.db_name, self.south_shift.id), self.accepting.id)

        summary = reconcile_exchange_swaps(self.manager, self.master_db)

        self.assertEqual(summary, {"checked": 1, "completed": 1, "incomplete": []})
        self.assertEqual(self._shift_owner(self.south.db_name, self.south_shift.id), self.requester.id)
        row = self.master_db.get(ShiftExchangeRequest, exchange_id)
        self.assertIsNone(row.swap_last_error)
        self.assertEqual(reconcile_exchange_swaps(self.manager, self.master_db)["checked"], 0)

    def test_authorization_listing_is_scoped_to_the_company(self) -> None:
        exchange_id = self._create()["id"]
        other = add_company(self.master_db, slug="east")

        north_items = list_exchanges_for_authorization(self.manager, self.master_db, company_id=self.north.id)
        east_items = list_exchanges_for_authorization(self.manager, self.master_db, company_id=other.id)

        self.assertEqual([item["id"] for item in north_items], [exchange_id])
        self.assertEqual(north_items[0]["requester_name"], "Rita Test")
        self.assertEqual(east_items, [])


if __name__ == "__main__":
    unittest.main()
