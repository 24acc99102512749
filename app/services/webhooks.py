from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import ConnectionManager
from app.errors import ApiError, NotFoundError, ValidationFailed
from app.models import (
    AuthorizationStatus,
    AuthorizationType,
    Branch,
    CheckInStatus,
    Company,
    EmployeeShift,
    ErpBranchDirectory,
    PosSession,
    PosSessionStatus,
    PosVerification,
    ShiftAuthorization,
    ShiftLog,
    ShiftLogType,
    ShiftStatus,
    User,
    UserBranch,
)
from app.realtime import (
    EVENT_BRANCH_ASSIGNMENTS_UPDATED,
    EVENT_POS_SESSION_NEW,
    EVENT_POS_SESSION_UPDATED,
    EVENT_POS_VERIFICATION_NEW,
    EVENT_SHIFT_DELETED,
    EVENT_SHIFT_LOG_NEW,
    EVENT_SHIFT_NEW,
    EVENT_SHIFT_UPDATED,
    CompanyChannel,
    RealtimeHub,
)
from app.schemas import (
    AttendancePayload,
    EmployeeShiftPayload,
    EmployeeShiftRead,
    ErpWebhookPayload,
    IspePurchaseOrderPayload,
    PosOrderPayload,
    PosSessionClosePayload,
    PosSessionPayload,
    PosSessionRead,
    PosVerificationPayload,
    PosVerificationRead,
    RegisterCashPayload,
    WebhookEventKind,
)
from app.services.notifications import NotificationMessage, create_notification, deliver_notification, push_preferences
from app.services.shift_authorizations import announce_new_authorization, create_authorization, serialize_shift_log
from app.services.sync_jobs import JOB_TYPE_EARLY_CHECK_IN_CHECK, AfterCommit, SyncJobContext, enqueue_job
from app.settings import get_settings
from app.timeutils import as_utc, format_diff_minutes, parse_erp_datetime, utcnow

logger = logging.getLogger("app.webhooks")

# Fields whose change on an existing shift is recorded as a shift_updated log.
TRACKED_SHIFT_FIELDS = (
    "start_datetime",
    "end_datetime",
    "x_role_name",
    "x_role_color",
    "x_employee_contact_name",
    "x_employee_avatar",
    "x_website_id",
)

ORDER_VERIFICATION_TYPES = {
    WebhookEventKind.DISCOUNT_ORDER: ("discount_order", "Discount Order"),
    WebhookEventKind.REFUND_ORDER: ("refund_order", "Refund Order"),
    WebhookEventKind.TOKEN_PAY_ORDER: ("token_pay_order", "Token Pay Order"),
    WebhookEventKind.NON_CASH_ORDER: ("non_cash_order", "Non-Cash Order"),
}

_CASH_DIRECTION = re.compile(r"-in-|-out-")


@dataclass(slots=True)
class WebhookResult:
    status_code: int
    data: dict[str, Any]


@dataclass(slots=True)
class ProjectionContext:
    company: Company
    db: Session
    master_db: Session
    channel: CompanyChannel | None
    after_commit: list[AfterCommit] = field(default_factory=list)

    def emit_to_branch(self, branch_id: int, event: str, build: Callable[[], Any]) -> None:
        channel = self.channel
        if channel is None:
            return
        self.after_commit.append(lambda: channel.emit_to_branch(branch_id, event, build()))


def _erp_value(value: Any) -> Any:
    # The ERP sends False for empty fields.
    return None if value is False else value


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------


def resolve_company_by_erp_branch_id(
    manager: ConnectionManager,
    master_db: Session,
    erp_company_id: int,
) -> Company:
    entry = master_db.scalar(select(ErpBranchDirectory).where(ErpBranchDirectory.erp_company_id == erp_company_id))
    if entry is not None:
        company = master_db.get(Company, entry.company_id)
        if company is not None and company.is_active:
            return company
        raise NotFoundError(f"No company found for ERP company_id: {erp_company_id}", code="COMPANY_NOT_FOUND")

    companies = master_db.scalars(select(Company).where(Company.is_active.is_(True)).order_by(Company.id.asc())).all()
    for company in companies:
        try:
            with manager.tenant_session(company.db_name) as tenant_db:
                branch_id = tenant_db.scalar(select(Branch.id).where(Branch.erp_branch_id == str(erp_company_id)))
        except (ApiError, SQLAlchemyError) as exc:
            logger.warning(
                "tenant_resolution_skipped",
                extra={"db_name": company.db_name, "erp_company_id": erp_company_id, "error": str(exc)},
            )
            continue
        if branch_id is None:
            continue

        master_db.add(ErpBranchDirectory(erp_company_id=erp_company_id, company_id=company.id, branch_id=branch_id))
        try:
            master_db.commit()
        except IntegrityError:
            master_db.rollback()
        logger.info(
            "erp_branch_directory_backfilled",
            extra={"erp_company_id": erp_company_id, "company_id": company.id, "branch_id": branch_id},
        )
        return company

    raise NotFoundError(f"No company found for ERP company_id: {erp_company_id}", code="COMPANY_NOT_FOUND")


def tenant_key_for(kind: WebhookEventKind, payload: ErpWebhookPayload) -> int:
    if isinstance(payload, PosVerificationPayload):
        return payload.branch_id
    if isinstance(payload, AttendancePayload):
        return payload.x_company_id
    return int(getattr(payload, "company_id"))


def _branch_for(db: Session, erp_company_id: int, label: str = "company_id") -> Branch:
    branch = db.scalar(select(Branch).where(Branch.erp_branch_id == str(erp_company_id)))
    if branch is None:
        raise NotFoundError(f"Branch not found for {label}: {erp_company_id}", code="BRANCH_NOT_FOUND")
    return branch


def _session_id_by_name(db: Session, branch_id: int, session_name: str | None) -> int | None:
    if not session_name:
        return None
    return db.scalar(
        select(PosSession.id).where(PosSession.branch_id == branch_id, PosSession.session_name == session_name)
    )


# ---------------------------------------------------------------------------
# POS
# ---------------------------------------------------------------------------


def _upsert_verification(
    ctx: ProjectionContext,
    *,
    branch: Branch,
    verification_type: str,
    external_ref: str,
    title: str,
    amount: float | None,
    payload: dict[str, Any],
    pos_session_id: int | None = None,
    description: str | None = None,
    cashier_user_key: str | None = None,
) -> tuple[PosVerification, bool]:
    db = ctx.db
    row = db.scalar(
        select(PosVerification).where(
            PosVerification.branch_id == branch.id,
            PosVerification.verification_type == verification_type,
            PosVerification.external_ref == external_ref,
        )
    )
    created = row is None
    if row is None:
        row = PosVerification(
            branch_id=branch.id,
            verification_type=verification_type,
            external_ref=external_ref,
            status="pending",
        )
        db.add(row)
    row.title = title
    row.amount = amount
    row.description = description
    row.erp_payload = payload
    row.cashier_user_key = cashier_user_key
    if pos_session_id is not None:
        row.pos_session_id = pos_session_id
    db.flush()

    if created:
        ctx.emit_to_branch(
            branch.id,
            EVENT_POS_VERIFICATION_NEW,
            lambda: PosVerificationRead.model_validate(row).model_dump(mode="json"),
        )
    return row, created


def _verification_result(row: PosVerification, created: bool) -> WebhookResult:
    return WebhookResult(201, PosVerificationRead.model_validate(row).model_dump(mode="json"))


def project_pos_verification(ctx: ProjectionContext, payload: PosVerificationPayload) -> WebhookResult:
    branch = _branch_for(ctx.db, payload.branch_id, "branchId")
    row, created = _upsert_verification(
        ctx,
        branch=branch,
        verification_type="pos_verification",
        external_ref=payload.transaction_id,
        title=payload.title,
        amount=payload.amount,
        description=payload.description,
        payload=payload.raw(),
    )
    return _verification_result(row, created)


def _ensure_opening_verifications(ctx: ProjectionContext, branch: Branch, session: PosSession, payload: PosSessionPayload) -> None:
    raw = payload.raw()
    _upsert_verification(
        ctx,
        branch=branch,
        verification_type="cf_breakdown",
        external_ref=payload.name,
        title="Opening Change Fund Breakdown",
        amount=payload.cash_register_balance_end,
        pos_session_id=session.id,
        payload=raw,
    )
    _upsert_verification(
        ctx,
        branch=branch,
        verification_type="pcf_breakdown",
        external_ref=payload.name,
        title="Opening PCF Breakdown",
        amount=payload.x_closing_pcf,
        pos_session_id=session.id,
        payload=raw,
    )


def project_pos_session(ctx: ProjectionContext, payload: PosSessionPayload) -> WebhookResult:
    db = ctx.db
    branch = _branch_for(db, payload.company_id)
    session = db.scalar(
        select(PosSession).where(PosSession.erp_session_id == payload.name, PosSession.branch_id == branch.id)
    )
    created = session is None
    if session is None:
        session = PosSession(
            branch_id=branch.id,
            erp_session_id=payload.name,
            status=PosSessionStatus.OPEN.value,
        )
        db.add(session)
    session.session_name = payload.display_name or payload.name
    session.erp_payload = payload.raw()
    db.flush()

    _ensure_opening_verifications(ctx, branch, session, payload)
    ctx.emit_to_branch(
        branch.id,
        EVENT_POS_SESSION_NEW if created else EVENT_POS_SESSION_UPDATED,
        lambda: PosSessionRead.model_validate(session).model_dump(mode="json"),
    )
    return WebhookResult(201, PosSessionRead.model_validate(session).model_dump(mode="json"))


def _parse_cash_reason(payment_ref: str) -> str:
    return "".join(_CASH_DIRECTION.split(payment_ref)[1:]) or payment_ref


def _is_pcf_line(payment_ref: str) -> bool:
    lowered = payment_ref.lower()
    return "pcf" in lowered or "petty" in lowered


def compute_closing_reports(payload: PosSessionClosePayload) -> tuple[dict[str, Any], float]:
    """Build the closing reports and the expected closing PCF amount of a session."""
    payment_methods = payload.x_payment_methods
    statement_lines = payload.x_statement_lines

    net_sales = sum(item.amount for item in payment_methods)
    discount_totals: dict[str, float] = {}
    for line in payload.x_discount_orders:
        discount_totals[line.product_name] = discount_totals.get(line.product_name, 0) + abs(line.price_unit * line.qty)
    discount_groups = [{"name": name, "totalAmount": total} for name, total in discount_totals.items()]
    total_discounts = sum(discount_totals.values())
    token_pay_total = discount_totals.get("Token Pay", 0)
    refund_claims = sum(abs(line.price_unit * line.qty) for line in payload.x_refund_orders)

    non_cash_methods = [
        {"name": item.payment_method_name, "amount": item.amount}
        for item in payment_methods
        if item.payment_method_name != "Cash"
    ]
    cash_payments = next((item.amount for item in payment_methods if item.payment_method_name == "Cash"), 0)

    reports = {
        "salesReport": {
            "grossSales": net_sales + refund_claims + total_discounts,
            "discountGroups": discount_groups,
            "tokenPayTotal": token_pay_total,
            "refundClaims": refund_claims,
            "netSales": net_sales,
        },
        "nonCashReport": {
            "methods": non_cash_methods,
            "totalNonCash": sum(item["amount"] for item in non_cash_methods),
        },
        "cashReport": {
            "cashPayments": cash_payments,
            "cashIns": [
                {"reason": _parse_cash_reason(line.payment_ref), "amount": line.amount}
                for line in statement_lines
                if line.amount > 0
            ],
            "cashOuts": [
                {"reason": _parse_cash_reason(line.payment_ref), "amount": abs(line.amount)}
                for line in statement_lines
                if line.amount < 0
            ],
        },
        "closingRegister": {
            "closingNotes": _erp_value(payload.closing_notes),
            "closingCashCounted": payload.cash_register_balance_end_real,
            "closingCashExpected": payload.cash_register_balance_end,
            "closingCashDifference": payload.cash_register_difference,
        },
    }

    pcf_cash_out = sum(abs(line.amount) for line in statement_lines if line.amount < 0 and _is_pcf_line(line.payment_ref))
    pcf_cash_in = sum(line.amount for line in statement_lines if line.amount > 0 and _is_pcf_line(line.payment_ref))
    closing_pcf_expected = (payload.x_opening_pcf or 0) + (pcf_cash_out - pcf_cash_in) + (payload.x_ispe_total or 0)
    return reports, closing_pcf_expected


def project_pos_session_close(ctx: ProjectionContext, payload: PosSessionClosePayload) -> WebhookResult:
    db = ctx.db
    branch = _branch_for(db, payload.company_id)
    session = db.scalar(
        select(PosSession).where(PosSession.erp_session_id == payload.name, PosSession.branch_id == branch.id)
    )
    if session is None:
        raise NotFoundError(f"Session not found: {payload.name}", code="POS_SESSION_NOT_FOUND")

    reports, closing_pcf_expected = compute_closing_reports(payload)
    session.session_name = payload.display_name or payload.name
    session.status = PosSessionStatus.CLOSED.value
    if session.closed_at is None:
        session.closed_at = utcnow()
    session.closing_reports = reports
    session.erp_payload = payload.raw()
    db.flush()

    _upsert_verification(
        ctx,
        branch=branch,
        verification_type="closing_pcf_breakdown",
        external_ref=payload.name,
        title="Closing PCF Report",
        amount=closing_pcf_expected,
        pos_session_id=session.id,
        payload=payload.raw(),
    )
    ctx.emit_to_branch(
        branch.id,
        EVENT_POS_SESSION_UPDATED,
        lambda: PosSessionRead.model_validate(session).model_dump(mode="json"),
    )
    return WebhookResult(201, PosSessionRead.model_validate(session).model_dump(mode="json"))


def project_pos_order(ctx: ProjectionContext, kind: WebhookEventKind, payload: PosOrderPayload) -> WebhookResult:
    branch = _branch_for(ctx.db, payload.company_id)
    verification_type, title = ORDER_VERIFICATION_TYPES[kind]
    if kind == WebhookEventKind.DISCOUNT_ORDER:
        discount_line = next((line for line in payload.x_order_lines if line.price_unit < 0), None)
        if discount_line is not None:
            title = f"{discount_line.product_name} Order"

    row, created = _upsert_verification(
        ctx,
        branch=branch,
        verification_type=verification_type,
        external_ref=payload.pos_reference,
        title=title,
        amount=payload.amount_total,
        pos_session_id=_session_id_by_name(ctx.db, branch.id, payload.x_session_name),
        cashier_user_key=_erp_value(payload.x_website_id),
        payload=payload.raw(),
    )
    return _verification_result(row, created)


def project_ispe_purchase_order(ctx: ProjectionContext, payload: IspePurchaseOrderPayload) -> WebhookResult:
    branch = _branch_for(ctx.db, payload.company_id)
    row, created = _upsert_verification(
        ctx,
        branch=branch,
        verification_type="ispe_purchase_order",
        external_ref=payload.name,
        title=f"ISPE Purchase Order {payload.name}",
        amount=payload.amount_total,
        pos_session_id=_session_id_by_name(ctx.db, branch.id, payload.x_pos_session),
        payload=payload.raw(),
    )
    return _verification_result(row, created)


def project_register_cash(ctx: ProjectionContext, payload: RegisterCashPayload) -> WebhookResult:
    branch = _branch_for(ctx.db, payload.company_id)
    # payment_ref looks like "{session}-in-{reason}" or "{session}-out-{reason}"
    is_out = "-out-" in payload.payment_ref
    session_name = _CASH_DIRECTION.split(payload.payment_ref)[0]
    row, created = _upsert_verification(
        ctx,
        branch=branch,
        verification_type="register_cash_out" if is_out else "register_cash_in",
        external_ref=payload.payment_ref,
        title="Register Cash Out" if is_out else "Register Cash In",
        amount=payload.amount_total,
        pos_session_id=_session_id_by_name(ctx.db, branch.id, session_name),
        payload=payload.raw(),
    )
    return _verification_result(row, created)


# ---------------------------------------------------------------------------
# Shifts
# ---------------------------------------------------------------------------


def serialize_shift(row: EmployeeShift) -> dict[str, Any]:
    return EmployeeShiftRead.model_validate(row).model_dump(mode="json")


def _user_id_for_website_key(master_db: Session, website_key: Any) -> int | None:
    website_key = _erp_value(website_key)
    if not website_key:
        return None
    return master_db.scalar(select(User.id).where(User.user_key == str(website_key)))


def _tracked_changes(previous: dict[str, Any] | None, current: dict[str, Any]) -> dict[str, Any]:
    previous = previous or {}
    changes: dict[str, Any] = {}
    for name in TRACKED_SHIFT_FIELDS:
        old_value = previous.get(name)
        new_value = current.get(name)
        if str(old_value) != str(new_value):
            changes[name] = {"from": old_value, "to": new_value}
    return changes


def project_employee_shift(ctx: ProjectionContext, payload: EmployeeShiftPayload) -> WebhookResult:
    db = ctx.db
    erp_shift_id = payload.erp_shift_id
    if erp_shift_id is None:
        raise ValidationFailed("Missing planning slot id (id or _id)")
    if not payload.start_datetime or not payload.end_datetime:
        raise ValidationFailed("start_datetime and end_datetime are required")

    branch = _branch_for(db, payload.company_id)
    shift_start = parse_erp_datetime(payload.start_datetime)
    shift_end = parse_erp_datetime(payload.end_datetime)
    raw = payload.raw()
    # Compare tracked fields on their wire form, including explicit False values.
    tracked = payload.model_dump(mode="json", by_alias=True)
    values = {
        "user_id": _user_id_for_website_key(ctx.master_db, payload.x_website_id),
        "employee_name": _erp_value(payload.x_employee_contact_name),
        "employee_avatar_url": _erp_value(payload.x_employee_avatar) or None,
        "duty_type": _erp_value(payload.x_role_name),
        "duty_color": _erp_value(payload.x_role_color),
        "shift_start": shift_start,
        "shift_end": shift_end,
        "allocated_hours": (shift_end - shift_start).total_seconds() / 3600,
        "erp_payload": raw,
    }

    shift = db.scalar(
        select(EmployeeShift).where(EmployeeShift.erp_shift_id == erp_shift_id, EmployeeShift.branch_id == branch.id)
    )
    if shift is None:
        shift = EmployeeShift(erp_shift_id=erp_shift_id, branch_id=branch.id, status=ShiftStatus.OPEN.value, **values)
        db.add(shift)
        db.flush()
        ctx.emit_to_branch(branch.id, EVENT_SHIFT_NEW, lambda: serialize_shift(shift))
        return WebhookResult(201, serialize_shift(shift))

    changes = _tracked_changes(shift.erp_payload, tracked)
    for key, value in values.items():
        setattr(shift, key, value)
    if changes:
        log = ShiftLog(
            shift_id=shift.id,
            branch_id=branch.id,
            log_type=ShiftLogType.SHIFT_UPDATED.value,
            event_time=utcnow(),
            changes=changes,
            erp_payload=raw,
        )
        db.add(log)
        db.flush()
        ctx.emit_to_branch(branch.id, EVENT_SHIFT_LOG_NEW, lambda: serialize_shift_log(log))
    db.flush()
    ctx.emit_to_branch(branch.id, EVENT_SHIFT_UPDATED, lambda: serialize_shift(shift))
    return WebhookResult(201, serialize_shift(shift))


def project_employee_shift_delete(ctx: ProjectionContext, payload: EmployeeShiftPayload) -> WebhookResult:
    db = ctx.db
    erp_shift_id = payload.erp_shift_id
    if erp_shift_id is None:
        raise ValidationFailed("Missing planning slot id (id or _id) for delete action")
    branch = _branch_for(db, payload.company_id)

    shift = db.scalar(
        select(EmployeeShift).where(EmployeeShift.erp_shift_id == erp_shift_id, EmployeeShift.branch_id == branch.id)
    )
    if shift is None:
        # Replayed delete: the shift is already gone.
        return WebhookResult(200, {"id": None, "erp_shift_id": erp_shift_id, "branch_id": branch.id, "deleted": False})

    deleted = {"id": shift.id, "erp_shift_id": shift.erp_shift_id, "branch_id": shift.branch_id, "user_id": shift.user_id}
    db.execute(delete(ShiftAuthorization).where(ShiftAuthorization.shift_id == shift.id))
    db.execute(delete(ShiftLog).where(ShiftLog.shift_id == shift.id))
    db.delete(shift)
    db.flush()
    ctx.emit_to_branch(branch.id, EVENT_SHIFT_DELETED, lambda: deleted)
    return WebhookResult(200, {**deleted, "deleted": True})


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------


def _diff_minutes(reference, event_time) -> int:
    return round((as_utc(reference) - as_utc(event_time)).total_seconds() / 60)


def _reassign_checked_in_branch(ctx: ProjectionContext, *, user_id: int, branch: Branch) -> None:
    """Move the user's non-main branch membership to the branch they checked in at."""
    db = ctx.db
    main_branch_ids = list(db.scalars(select(Branch.id).where(Branch.is_main_branch.is_(True))).all())
    stmt = delete(UserBranch).where(UserBranch.user_id == user_id, UserBranch.branch_id != branch.id)
    if main_branch_ids:
        stmt = stmt.where(UserBranch.branch_id.not_in(main_branch_ids))
    db.execute(stmt)

    assigned = db.scalar(select(UserBranch.id).where(UserBranch.user_id == user_id, UserBranch.branch_id == branch.id))
    if assigned is None:
        db.add(UserBranch(user_id=user_id, branch_id=branch.id, is_primary=False))
    db.flush()

    branch_ids = list(db.scalars(select(UserBranch.branch_id).where(UserBranch.user_id == user_id)).all())
    channel = ctx.channel
    if channel is not None:
        ctx.after_commit.append(
            lambda: channel.emit_to_user(user_id, EVENT_BRANCH_ASSIGNMENTS_UPDATED, {"branch_ids": branch_ids})
        )


def _notify_after_commit(ctx: ProjectionContext, user_id: int, message: NotificationMessage) -> None:
    notification = create_notification(ctx.db, user_id=user_id, message=message)
    push_allowed = push_preferences(ctx.master_db, [user_id]).get(user_id, False)
    db = ctx.db
    channel = ctx.channel
    ctx.after_commit.append(
        lambda: deliver_notification(db, notification, channel=channel, push_allowed=push_allowed)
    )


def _queue_authorization_announcement(ctx: ProjectionContext, row: ShiftAuthorization) -> None:
    channel = ctx.channel
    ctx.after_commit.append(lambda: announce_new_authorization(channel, row))


def _derive_check_in_effects(ctx: ProjectionContext, *, shift: EmployeeShift, log: ShiftLog, branch: Branch) -> None:
    db = ctx.db
    if shift.status == ShiftStatus.OPEN.value:
        shift.status = ShiftStatus.STARTED.value
    shift.check_in_status = CheckInStatus.CHECKED_IN.value
    if shift.user_id is not None:
        _reassign_checked_in_branch(ctx, user_id=shift.user_id, branch=branch)

    diff = _diff_minutes(shift.shift_start, log.event_time)
    if diff > 0:
        # Early: decided after the shift has started, once the punch is still early.
        scheduled = as_utc(shift.shift_start) + timedelta(seconds=get_settings().early_check_in_delay_seconds)
        enqueue_job(
            db,
            job_type=JOB_TYPE_EARLY_CHECK_IN_CHECK,
            payload={
                "shift_id": shift.id,
                "shift_log_id": log.id,
                "branch_id": branch.id,
                "user_id": shift.user_id,
                "check_in_event_time": as_utc(log.event_time).isoformat(),
            },
            idempotency_key=f"early_check_in:{log.id}",
            scheduled_at_utc=scheduled,
        )
    elif diff < 0:
        late_by = abs(diff)
        row, created = create_authorization(
            db,
            shift=shift,
            shift_log_id=log.id,
            auth_type=AuthorizationType.TARDINESS,
            diff_minutes=late_by,
            needs_employee_reason=True,
        )
        if created:
            _queue_authorization_announcement(ctx, row)
            if shift.user_id is not None:
                _notify_after_commit(
                    ctx,
                    shift.user_id,
                    NotificationMessage(
                        title="Tardiness Authorization Required",
                        message=(
                            f"You checked in {format_diff_minutes(late_by)} late for your shift. "
                            "Please submit a reason in the Authorization Requests tab."
                        ),
                        type="warning",
                        link_url="/account/schedule",
                    ),
                )


def _derive_check_out_effects(ctx: ProjectionContext, *, shift: EmployeeShift, log: ShiftLog, cumulative_minutes: float) -> None:
    db = ctx.db
    shift.total_worked_hours = cumulative_minutes / 60
    shift.check_in_status = CheckInStatus.CHECKED_OUT.value

    diff = _diff_minutes(shift.shift_end, log.event_time)
    if diff > 0:
        row, created = create_authorization(
            db,
            shift=shift,
            shift_log_id=log.id,
            auth_type=AuthorizationType.EARLY_CHECK_OUT,
            diff_minutes=diff,
            needs_employee_reason=False,
            status=AuthorizationStatus.NO_APPROVAL_NEEDED,
        )
        if created:
            _queue_authorization_announcement(ctx, row)
    elif diff < 0:
        over_by = abs(diff)
        row, created = create_authorization(
            db,
            shift=shift,
            shift_log_id=log.id,
            auth_type=AuthorizationType.LATE_CHECK_OUT,
            diff_minutes=over_by,
            needs_employee_reason=True,
        )
        if created:
            _queue_authorization_announcement(ctx, row)
            if shift.user_id is not None:
                _notify_after_commit(
                    ctx,
                    shift.user_id,
                    NotificationMessage(
                        title="Late Check Out: Reason Required",
                        message=(
                            f"You checked out {format_diff_minutes(over_by)} after your scheduled shift end. "
                            "Please submit a reason in the Authorization Requests tab."
                        ),
                        type="warning",
                        link_url="/account/schedule",
                    ),
                )


def project_attendance(ctx: ProjectionContext, payload: AttendancePayload) -> WebhookResult:
    db = ctx.db
    branch = _branch_for(db, payload.x_company_id, "x_company_id")
    is_check_out = payload.is_check_out
    log_type = ShiftLogType.CHECK_OUT if is_check_out else ShiftLogType.CHECK_IN

    existing = db.scalar(
        select(ShiftLog).where(ShiftLog.erp_attendance_id == payload.id, ShiftLog.log_type == log_type.value)
    )
    if existing is not None:
        return WebhookResult(201, serialize_shift_log(existing))

    shift = None
    if payload.planning_slot_id is not None:
        shift = db.scalar(
            select(EmployeeShift).where(
                EmployeeShift.erp_shift_id == payload.planning_slot_id,
                EmployeeShift.branch_id == branch.id,
            )
        )

    event_time = parse_erp_datetime(str(payload.check_out) if is_check_out else payload.check_in)
    log = ShiftLog(
        shift_id=shift.id if shift is not None else None,
        branch_id=branch.id,
        log_type=log_type.value,
        erp_attendance_id=payload.id,
        event_time=event_time,
        worked_hours=payload.worked_hours,
        cumulative_minutes=payload.x_cumulative_minutes,
        erp_payload=payload.raw(),
    )
    db.add(log)
    try:
        db.flush()
    except IntegrityError:
        # Lost a race with an identical delivery.
        db.rollback()
        ctx.after_commit.clear()
        existing = db.scalar(
            select(ShiftLog).where(ShiftLog.erp_attendance_id == payload.id, ShiftLog.log_type == log_type.value)
        )
        if existing is None:
            raise
        return WebhookResult(201, serialize_shift_log(existing))

    if shift is not None:
        if is_check_out:
            _derive_check_out_effects(ctx, shift=shift, log=log, cumulative_minutes=payload.x_cumulative_minutes)
        else:
            _derive_check_in_effects(ctx, shift=shift, log=log, branch=branch)
        db.flush()

    total_worked_hours = shift.total_worked_hours if (shift is not None and is_check_out) else None
    ctx.emit_to_branch(
        branch.id,
        EVENT_SHIFT_LOG_NEW,
        lambda: serialize_shift_log(log, total_worked_hours=total_worked_hours),
    )
    if shift is not None:
        ctx.emit_to_branch(branch.id, EVENT_SHIFT_UPDATED, lambda: serialize_shift(shift))
    return WebhookResult(201, serialize_shift_log(log))


def apply_early_check_in_check(db: Session, *, payload: dict[str, Any], context: SyncJobContext) -> list[AfterCommit]:
    """Delayed half of early check-in detection, run from the outbox after the shift starts."""
    shift = db.get(EmployeeShift, int(payload["shift_id"]))
    if shift is None or shift.branch_id != int(payload["branch_id"]):
        logger.info("early_check_in_skipped", extra={"reason": "shift_not_found", **payload})
        return []
    log = db.get(ShiftLog, int(payload["shift_log_id"]))
    if log is None or log.log_type != ShiftLogType.CHECK_IN.value:
        logger.info("early_check_in_skipped", extra={"reason": "check_in_log_not_found", **payload})
        return []

    raw_event_time = payload.get("check_in_event_time")
    event_time = parse_erp_datetime(raw_event_time) if raw_event_time else log.event_time
    diff = _diff_minutes(shift.shift_start, event_time)
    if diff <= 0:
        logger.info("early_check_in_skipped", extra={"reason": "no_longer_early", "diff_minutes": diff, **payload})
        return []

    row, created = create_authorization(
        db,
        shift=shift,
        shift_log_id=log.id,
        auth_type=AuthorizationType.EARLY_CHECK_IN,
        diff_minutes=diff,
        needs_employee_reason=False,
    )
    if not created:
        return []
    logger.info(
        "early_check_in_authorization_created",
        extra={"shift_id": shift.id, "shift_log_id": log.id, "db_name": context.db_name},
    )
    if context.hub is None:
        return []
    channel = context.hub.for_company(context.company_id)
    return [lambda: announce_new_authorization(channel, row)]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _project(ctx: ProjectionContext, kind: WebhookEventKind, payload: ErpWebhookPayload) -> WebhookResult:
    if kind == WebhookEventKind.POS_VERIFICATION:
        return project_pos_verification(ctx, payload)
    if kind == WebhookEventKind.POS_SESSION:
        return project_pos_session(ctx, payload)
    if kind == WebhookEventKind.POS_SESSION_CLOSE:
        return project_pos_session_close(ctx, payload)
    if kind == WebhookEventKind.EMPLOYEE_SHIFT:
        if payload.is_delete:
            return project_employee_shift_delete(ctx, payload)
        return project_employee_shift(ctx, payload)
    if kind == WebhookEventKind.ATTENDANCE:
        return project_attendance(ctx, payload)
    if kind in ORDER_VERIFICATION_TYPES:
        return project_pos_order(ctx, kind, payload)
    if kind == WebhookEventKind.ISPE_PURCHASE_ORDER:
        return project_ispe_purchase_order(ctx, payload)
    if kind == WebhookEventKind.REGISTER_CASH:
        return project_register_cash(ctx, payload)
    raise ValidationFailed(f"Unsupported webhook kind: {kind.value}")


def ingest_webhook(
    manager: ConnectionManager,
    master_db: Session,
    kind: WebhookEventKind,
    payload: ErpWebhookPayload,
    *,
    hub: RealtimeHub | None = None,
) -> WebhookResult:
    erp_company_id = tenant_key_for(kind, payload)
    company = resolve_company_by_erp_branch_id(manager, master_db, erp_company_id)
    channel = hub.for_company(company.id) if hub is not None else None

    with manager.tenant_session(company.db_name) as db:
        ctx = ProjectionContext(company=company, db=db, master_db=master_db, channel=channel)
        try:
            result = _project(ctx, kind, payload)
            db.commit()
        except Exception:
            db.rollback()
            raise

        for callback in ctx.after_commit:
            callback()

    logger.info(
        "webhook_projected",
        extra={
            "kind": kind.value,
            "company_id": company.id,
            "erp_company_id": erp_company_id,
            "action": payload.action,
            "status_code": result.status_code,
        },
    )
    return result
