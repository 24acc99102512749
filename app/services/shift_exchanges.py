from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import ConnectionManager
from app.errors import ApiError, ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from app.logging_utils import truncate_error
from app.models import (
    Branch,
    Company,
    EmployeeShift,
    ExchangeStage,
    ExchangeStatus,
    Role,
    ShiftExchangeRequest,
    ShiftStatus,
    User,
    UserBranch,
    UserCompanyAccess,
    UserRole,
)
from app.realtime import EVENT_SHIFT_UPDATED, RealtimeHub
from app.security import HR_ROLE_NAME, MANAGEMENT_ROLE_NAME, CurrentUser
from app.services.notifications import NotificationMessage, dispatch_notification, user_accepts_push
from app.services.sync_jobs import JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN, enqueue_job, run_jobs_now
from app.services.webhooks import serialize_shift
from app.timeutils import utcnow

logger = logging.getLogger("app.shift_exchanges")

APPROVER_MODE_HR = "hr"
APPROVER_MODE_MANAGEMENT = "management_fallback"

SWAP_STEP_REQUESTER = "requester"
SWAP_STEP_ACCEPTING = "accepting"


@dataclass(frozen=True, slots=True)
class ShiftSnapshot:
    id: int
    erp_shift_id: int
    branch_id: int
    branch_name: str | None
    branch_erp_id: str | None
    user_id: int | None
    employee_name: str | None
    employee_avatar_url: str | None
    duty_type: str | None
    shift_start: datetime
    shift_end: datetime
    allocated_hours: float
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "shift_id": self.id,
            "erp_shift_id": self.erp_shift_id,
            "branch_id": self.branch_id,
            "branch_name": self.branch_name,
            "branch_erp_id": self.branch_erp_id,
            "user_id": self.user_id,
            "employee_name": self.employee_name,
            "employee_avatar_url": self.employee_avatar_url,
            "duty_type": self.duty_type,
            "shift_start": self.shift_start,
            "shift_end": self.shift_end,
            "allocated_hours": self.allocated_hours,
        }


@dataclass(slots=True)
class _SwapStep:
    name: str
    company_id: int
    db_name: str
    shift_id: int
    erp_shift_id: int | None
    new_owner: User


def _snapshot(shift: EmployeeShift, branch: Branch | None) -> ShiftSnapshot:
    return ShiftSnapshot(
        id=shift.id,
        erp_shift_id=shift.erp_shift_id,
        branch_id=shift.branch_id,
        branch_name=branch.name if branch is not None else None,
        branch_erp_id=branch.erp_branch_id if branch is not None else None,
        user_id=shift.user_id,
        employee_name=shift.employee_name,
        employee_avatar_url=shift.employee_avatar_url,
        duty_type=shift.duty_type,
        shift_start=shift.shift_start,
        shift_end=shift.shift_end,
        allocated_hours=shift.allocated_hours,
        status=shift.status,
    )


def _shift_query():
    return select(EmployeeShift, Branch).outerjoin(Branch, EmployeeShift.branch_id == Branch.id)


def _load_shift(db: Session, shift_id: int) -> ShiftSnapshot | None:
    row = db.execute(_shift_query().where(EmployeeShift.id == shift_id)).first()
    if row is None:
        return None
    return _snapshot(row[0], row[1])


def _load_tenant_shift(manager: ConnectionManager, db_name: str, shift_id: int) -> ShiftSnapshot | None:
    with manager.tenant_session(db_name) as db:
        return _load_shift(db, shift_id)


def _list_open_assigned_shifts(db: Session) -> list[ShiftSnapshot]:
    rows = db.execute(
        _shift_query()
        .where(EmployeeShift.status == ShiftStatus.OPEN.value, EmployeeShift.user_id.is_not(None))
        .order_by(EmployeeShift.shift_start.asc())
    ).all()
    return [_snapshot(shift, branch) for shift, branch in rows]


def _get_active_company(master_db: Session, company_id: int) -> Company:
    company = master_db.get(Company, company_id)
    if company is None or not company.is_active:
        raise NotFoundError(f"Company not found or inactive: {company_id}", code="COMPANY_NOT_FOUND")
    return company


def _load_users(master_db: Session, user_ids: Iterable[int | None]) -> dict[int, User]:
    ids = sorted({int(item) for item in user_ids if item is not None})
    if not ids:
        return {}
    return {user.id: user for user in master_db.scalars(select(User).where(User.id.in_(ids))).all()}


def _display_name(user: User | None) -> str:
    if user is None:
        return "Unknown User"
    return user.full_name or "Unknown User"


def _has_pending_request(master_db: Session, company_id: int, shift_id: int) -> bool:
    row = master_db.scalar(
        select(ShiftExchangeRequest.id).where(
            ShiftExchangeRequest.status == ExchangeStatus.PENDING.value,
            or_(
                and_(
                    ShiftExchangeRequest.requester_company_id == company_id,
                    ShiftExchangeRequest.requester_shift_id == shift_id,
                ),
                and_(
                    ShiftExchangeRequest.accepting_company_id == company_id,
                    ShiftExchangeRequest.accepting_shift_id == shift_id,
                ),
            ),
        )
    )
    return row is not None


def _has_company_access(master_db: Session, user_id: int, company_id: int) -> bool:
    row = master_db.scalar(
        select(UserCompanyAccess.id).where(
            UserCompanyAccess.user_id == user_id,
            UserCompanyAccess.company_id == company_id,
            UserCompanyAccess.is_active.is_(True),
        )
    )
    return row is not None


def _has_branch_assignment(db: Session, user_id: int, branch_id: int) -> bool:
    row = db.scalar(select(UserBranch.id).where(UserBranch.user_id == user_id, UserBranch.branch_id == branch_id))
    return row is not None


def _get_request(master_db: Session, exchange_id: int) -> ShiftExchangeRequest:
    row = master_db.get(ShiftExchangeRequest, exchange_id)
    if row is None:
        raise NotFoundError("Shift exchange request not found")
    return row


def _ensure_active_pair(requester: User | None, accepting: User | None) -> None:
    if requester is None or accepting is None:
        raise NotFoundError("Employee account not found")
    if not requester.is_active or not accepting.is_active:
        raise ConflictError("Inactive employees cannot continue shift exchanges")
    if requester.is_suspended or accepting.is_suspended:
        raise ConflictError("Suspended employees cannot continue shift exchanges")


# ---------------------------------------------------------------------------
# Approvers
# ---------------------------------------------------------------------------


def _role_holders(company_ids: list[int], role_name: str):
    return (
        select(User.id, UserCompanyAccess.company_id, Company.db_name)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .join(UserCompanyAccess, UserCompanyAccess.user_id == User.id)
        .join(Company, Company.id == UserCompanyAccess.company_id)
        .where(
            UserCompanyAccess.company_id.in_(company_ids),
            UserCompanyAccess.is_active.is_(True),
            User.is_active.is_(True),
            func.lower(Role.name) == role_name,
        )
    )


def get_approver_mode(master_db: Session, company_ids: Iterable[int]) -> str:
    """HR approves when any HR user has access to an involved company, otherwise Management does."""
    ids = sorted(set(company_ids))
    if not ids:
        raise ValidationFailed("No company scope found for shift exchange approval")
    hr_user = master_db.execute(_role_holders(ids, HR_ROLE_NAME).limit(1)).first()
    return APPROVER_MODE_HR if hr_user is not None else APPROVER_MODE_MANAGEMENT


def ensure_approver_access(master_db: Session, *, actor: CurrentUser, company_ids: Iterable[int]) -> str:
    ids = sorted(set(company_ids))
    mode = get_approver_mode(master_db, ids)
    has_access = master_db.scalar(
        select(UserCompanyAccess.id).where(
            UserCompanyAccess.user_id == actor.user_id,
            UserCompanyAccess.is_active.is_(True),
            UserCompanyAccess.company_id.in_(ids),
        )
    )
    if has_access is None:
        raise ForbiddenError("Approver is not assigned to the involved companies")
    if mode == APPROVER_MODE_HR:
        if not actor.has_role(HR_ROLE_NAME):
            raise ForbiddenError("Only Human Resources can approve this shift exchange")
        return mode
    if not actor.has_role(MANAGEMENT_ROLE_NAME):
        raise ForbiddenError("Only Management can approve this shift exchange")
    return mode


def list_approvers(
    master_db: Session,
    *,
    company_ids: Iterable[int],
    exclude_user_ids: Iterable[int] = (),
) -> tuple[str, list[dict[str, Any]]]:
    ids = sorted(set(company_ids))
    mode = get_approver_mode(master_db, ids)
    role_name = HR_ROLE_NAME if mode == APPROVER_MODE_HR else MANAGEMENT_ROLE_NAME
    excluded = set(exclude_user_ids)
    approvers: dict[int, dict[str, Any]] = {}
    rows = master_db.execute(_role_holders(ids, role_name).order_by(User.id.asc())).all()
    for user_id, company_id, db_name in rows:
        if user_id in excluded or user_id in approvers:
            continue
        approvers[user_id] = {"user_id": user_id, "company_id": company_id, "company_db_name": db_name}
    return mode, list(approvers.values())


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def _notify(
    manager: ConnectionManager,
    master_db: Session,
    *,
    company_id: int,
    db_name: str,
    user_id: int,
    message: NotificationMessage,
    hub: RealtimeHub | None,
) -> None:
    channel = hub.for_company(company_id) if hub is not None else None
    push_allowed = user_accepts_push(master_db, user_id)
    try:
        with manager.tenant_session(db_name) as db:
            dispatch_notification(db, user_id, message, channel=channel, push_allowed=push_allowed)
    except (ApiError, SQLAlchemyError) as exc:
        logger.warning(
            "shift_exchange_notification_failed",
            extra={"user_id": user_id, "db_name": db_name, "title": message.title, "error": str(exc)},
        )


def _exchange_link(exchange_id: int, *, approver: bool = False) -> str:
    if approver:
        return f"/authorization-requests?shiftExchangeId={exchange_id}"
    return f"/account/notifications?shiftExchangeId={exchange_id}"


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def stage_label(row: ShiftExchangeRequest) -> str:
    if row.status != ExchangeStatus.PENDING.value:
        return "Approved" if row.status == ExchangeStatus.APPROVED.value else "Rejected"
    if row.approval_stage == ExchangeStage.AWAITING_EMPLOYEE.value:
        return "Awaiting Employee Acceptance"
    if row.approval_stage == ExchangeStage.AWAITING_HR.value:
        return "Pending HR Approval"
    return "Pending"


def _side(
    *,
    user: User | None,
    user_id: int,
    company: Company | None,
    company_id: int,
    branch_id: int,
    shift_id: int,
    erp_shift_id: int | None,
    shift: ShiftSnapshot | None,
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "name": _display_name(user),
        "email": user.email if user is not None else "",
        "company_id": company_id,
        "company_name": company.name if company is not None else None,
        "company_slug": company.slug if company is not None else None,
        "branch_id": branch_id,
        "branch_name": shift.branch_name if shift is not None else None,
        "shift_id": shift_id,
        "shift_start": shift.shift_start if shift is not None else None,
        "shift_end": shift.shift_end if shift is not None else None,
        "duty_type": shift.duty_type if shift is not None else None,
        "erp_shift_id": erp_shift_id,
    }


def build_exchange_detail(
    manager: ConnectionManager,
    master_db: Session,
    row: ShiftExchangeRequest,
    *,
    actor: CurrentUser | None = None,
) -> dict[str, Any]:
    """Merge the master record with display data held in both tenant databases."""
    requester_shift = _load_tenant_shift(manager, row.requester_company_db_name, row.requester_shift_id)
    accepting_shift = _load_tenant_shift(manager, row.accepting_company_db_name, row.accepting_shift_id)
    users = _load_users(master_db, [row.requester_user_id, row.accepting_user_id, row.hr_decision_by])

    can_respond = bool(
        actor is not None
        and actor.user_id == row.accepting_user_id
        and row.status == ExchangeStatus.PENDING.value
        and row.approval_stage == ExchangeStage.AWAITING_EMPLOYEE.value
    )
    approval_mode = None
    if (
        actor is not None
        and row.status == ExchangeStatus.PENDING.value
        and row.approval_stage == ExchangeStage.AWAITING_HR.value
    ):
        try:
            approval_mode = ensure_approver_access(
                master_db,
                actor=actor,
                company_ids=[row.requester_company_id, row.accepting_company_id],
            )
        except ForbiddenError:
            approval_mode = None

    hr_user = users.get(row.hr_decision_by) if row.hr_decision_by is not None else None
    return {
        "id": row.id,
        "status": row.status,
        "approval_stage": row.approval_stage,
        "stage_label": stage_label(row),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "employee_decision_at": row.employee_decision_at,
        "employee_rejection_reason": row.employee_rejection_reason,
        "hr_decision_at": row.hr_decision_at,
        "hr_rejection_reason": row.hr_rejection_reason,
        "requester": _side(
            user=users.get(row.requester_user_id),
            user_id=row.requester_user_id,
            company=master_db.get(Company, row.requester_company_id),
            company_id=row.requester_company_id,
            branch_id=row.requester_branch_id,
            shift_id=row.requester_shift_id,
            erp_shift_id=row.requester_shift_erp_id,
            shift=requester_shift,
        ),
        "accepting": _side(
            user=users.get(row.accepting_user_id),
            user_id=row.accepting_user_id,
            company=master_db.get(Company, row.accepting_company_id),
            company_id=row.accepting_company_id,
            branch_id=row.accepting_branch_id,
            shift_id=row.accepting_shift_id,
            erp_shift_id=row.accepting_shift_erp_id,
            shift=accepting_shift,
        ),
        "hr_decision_by": (
            {"user_id": row.hr_decision_by, "name": _display_name(hr_user)} if row.hr_decision_by is not None else None
        ),
        "swap": {
            "requester_applied_at": row.requester_swap_applied_at,
            "accepting_applied_at": row.accepting_swap_applied_at,
            "last_error": row.swap_last_error,
        },
        "can_respond": can_respond,
        "can_approve": approval_mode is not None,
        "can_reject": approval_mode is not None,
        "approval_mode": approval_mode,
    }


def get_exchange_detail(
    manager: ConnectionManager,
    master_db: Session,
    *,
    exchange_id: int,
    actor: CurrentUser,
) -> dict[str, Any]:
    row = _get_request(master_db, exchange_id)
    if actor.user_id not in (row.requester_user_id, row.accepting_user_id):
        ensure_approver_access(master_db, actor=actor, company_ids=[row.requester_company_id, row.accepting_company_id])
    return build_exchange_detail(manager, master_db, row, actor=actor)


def list_exchange_options(
    manager: ConnectionManager,
    master_db: Session,
    *,
    actor: CurrentUser,
    from_shift_id: int,
) -> dict[str, Any]:
    if actor.company_id is None:
        raise ValidationFailed("No company selected", code="COMPANY_REQUIRED")
    requester_company = _get_active_company(master_db, actor.company_id)

    with manager.tenant_session(requester_company.db_name) as db:
        from_shift = _load_shift(db, from_shift_id)
    if from_shift is None:
        raise NotFoundError("Source shift not found")
    if from_shift.status != ShiftStatus.OPEN.value:
        raise ValidationFailed("Source shift must be open")
    if from_shift.user_id != actor.user_id:
        raise ForbiddenError("Only the owner of this shift can request an exchange")

    requester = _load_users(master_db, [actor.user_id]).get(actor.user_id)
    if requester is None or not requester.is_active:
        raise ForbiddenError("Requester is inactive")
    if requester.is_suspended:
        raise ForbiddenError("Suspended users cannot exchange shifts")
    if _has_pending_request(master_db, requester_company.id, from_shift.id):
        raise ConflictError("This shift already has a pending exchange request")

    companies = master_db.scalars(
        select(Company)
        .join(UserCompanyAccess, UserCompanyAccess.company_id == Company.id)
        .where(
            UserCompanyAccess.user_id == actor.user_id,
            UserCompanyAccess.is_active.is_(True),
            Company.is_active.is_(True),
        )
        .order_by(Company.name.asc())
    ).all()

    candidates: list[tuple[Company, ShiftSnapshot]] = []
    for company in companies:
        with manager.tenant_session(company.db_name) as db:
            for shift in _list_open_assigned_shifts(db):
                if company.id == requester_company.id and shift.id == from_shift.id:
                    continue
                candidates.append((company, shift))

    users = _load_users(master_db, [shift.user_id for _, shift in candidates])
    options: list[dict[str, Any]] = []
    for company, shift in candidates:
        target = users.get(shift.user_id)
        if target is None or not target.is_active or target.is_suspended or target.id == actor.user_id:
            continue
        # Same-company exchanges skip branch designation; cross-company ones need both employees designated.
        if company.id != requester_company.id and not _is_cross_designated(
            manager,
            master_db,
            requester_id=actor.user_id,
            requester_company=requester_company,
            requester_branch_id=from_shift.branch_id,
            target_id=target.id,
            target_company=company,
            target_branch_id=shift.branch_id,
        ):
            continue
        if _has_pending_request(master_db, company.id, shift.id):
            continue
        options.append(
            {
                "company_id": company.id,
                "company_name": company.name,
                "company_slug": company.slug,
                "company_db_name": company.db_name,
                **shift.to_dict(),
            }
        )

    return {
        "from_shift": {
            "company_id": requester_company.id,
            "company_name": requester_company.name,
            "company_slug": requester_company.slug,
            **from_shift.to_dict(),
        },
        "options": options,
    }


def _is_cross_designated(
    manager: ConnectionManager,
    master_db: Session,
    *,
    requester_id: int,
    requester_company: Company,
    requester_branch_id: int,
    target_id: int,
    target_company: Company,
    target_branch_id: int,
) -> bool:
    if not _has_company_access(master_db, requester_id, target_company.id):
        return False
    if not _has_company_access(master_db, target_id, requester_company.id):
        return False
    with manager.tenant_session(target_company.db_name) as db:
        if not _has_branch_assignment(db, requester_id, target_branch_id):
            return False
    with manager.tenant_session(requester_company.db_name) as db:
        return _has_branch_assignment(db, target_id, requester_branch_id)


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------


def create_exchange_request(
    manager: ConnectionManager,
    master_db: Session,
    *,
    actor: CurrentUser,
    from_shift_id: int,
    to_shift_id: int,
    to_company_id: int,
    hub: RealtimeHub | None = None,
) -> dict[str, Any]:
    listing = list_exchange_options(manager, master_db, actor=actor, from_shift_id=from_shift_id)
    chosen = next(
        (
            item
            for item in listing["options"]
            if item["shift_id"] == to_shift_id and item["company_id"] == to_company_id
        ),
        None,
    )
    if chosen is None:
        raise ValidationFailed("Selected target shift is not eligible for exchange")

    from_shift = listing["from_shift"]
    requester_company = _get_active_company(master_db, from_shift["company_id"])
    row = ShiftExchangeRequest(
        requester_user_id=actor.user_id,
        accepting_user_id=chosen["user_id"],
        requester_company_id=requester_company.id,
        requester_company_db_name=requester_company.db_name,
        requester_branch_id=from_shift["branch_id"],
        requester_shift_id=from_shift["shift_id"],
        requester_shift_erp_id=from_shift["erp_shift_id"],
        accepting_company_id=chosen["company_id"],
        accepting_company_db_name=chosen["company_db_name"],
        accepting_branch_id=chosen["branch_id"],
        accepting_shift_id=chosen["shift_id"],
        accepting_shift_erp_id=chosen["erp_shift_id"],
        status=ExchangeStatus.PENDING.value,
        approval_stage=ExchangeStage.AWAITING_EMPLOYEE.value,
    )
    master_db.add(row)
    try:
        master_db.commit()
    except IntegrityError as exc:
        # Partial unique indexes: another request claimed one of the shifts first.
        master_db.rollback()
        raise ConflictError("This shift already has a pending exchange request") from exc
    master_db.refresh(row)
    logger.info(
        "shift_exchange_created",
        extra={
            "exchange_id": row.id,
            "requester_user_id": row.requester_user_id,
            "accepting_user_id": row.accepting_user_id,
            "requester_company_id": row.requester_company_id,
            "accepting_company_id": row.accepting_company_id,
        },
    )

    users = _load_users(master_db, [row.requester_user_id])
    _notify(
        manager,
        master_db,
        company_id=row.accepting_company_id,
        db_name=row.accepting_company_db_name,
        user_id=row.accepting_user_id,
        message=NotificationMessage(
            title="Shift Exchange Request",
            message=f"{_display_name(users.get(row.requester_user_id))} requested to exchange shifts with you.",
            type="warning",
            link_url=_exchange_link(row.id),
        ),
        hub=hub,
    )
    return build_exchange_detail(manager, master_db, row, actor=actor)


def _guarded_transition(
    master_db: Session,
    row: ShiftExchangeRequest,
    *,
    expected_stage: ExchangeStage,
    values: dict[str, Any],
    conflict_message: str,
) -> None:
    result = master_db.execute(
        update(ShiftExchangeRequest)
        .where(
            ShiftExchangeRequest.id == row.id,
            ShiftExchangeRequest.status == ExchangeStatus.PENDING.value,
            ShiftExchangeRequest.approval_stage == expected_stage.value,
        )
        .values(**values)
    )
    if result.rowcount == 0:
        master_db.rollback()
        raise ConflictError(conflict_message, code="SHIFT_EXCHANGE_STAGE_CONFLICT")
    master_db.commit()
    master_db.refresh(row)


def respond_to_exchange(
    manager: ConnectionManager,
    master_db: Session,
    *,
    exchange_id: int,
    actor: CurrentUser,
    action: str,
    reason: str | None = None,
    hub: RealtimeHub | None = None,
) -> dict[str, Any]:
    row = _get_request(master_db, exchange_id)
    if row.accepting_user_id != actor.user_id:
        raise ForbiddenError("Only the accepting employee can respond")
    not_respondable = "This shift exchange request can no longer be responded to"
    if row.status != ExchangeStatus.PENDING.value or row.approval_stage != ExchangeStage.AWAITING_EMPLOYEE.value:
        raise ConflictError(not_respondable, code="SHIFT_EXCHANGE_STAGE_CONFLICT")
    if action not in ("accept", "reject"):
        raise ValidationFailed("Action must be accept or reject")

    users = _load_users(master_db, [row.requester_user_id, row.accepting_user_id])
    requester = users.get(row.requester_user_id)
    accepting = users.get(row.accepting_user_id)
    _ensure_active_pair(requester, accepting)

    now = utcnow()
    reason = (reason or "").strip() or None
    if action == "reject":
        _guarded_transition(
            master_db,
            row,
            expected_stage=ExchangeStage.AWAITING_EMPLOYEE,
            values={
                "status": ExchangeStatus.REJECTED.value,
                "approval_stage": ExchangeStage.RESOLVED.value,
                "employee_decision_at": now,
                "employee_rejection_reason": reason,
            },
            conflict_message=not_respondable,
        )
        suffix = f" Reason: {reason}" if reason else ""
        _notify(
            manager,
            master_db,
            company_id=row.requester_company_id,
            db_name=row.requester_company_db_name,
            user_id=row.requester_user_id,
            message=NotificationMessage(
                title="Shift Exchange Rejected",
                message=f"{_display_name(accepting)} rejected your shift exchange request.{suffix}",
                type="danger",
                link_url=_exchange_link(row.id),
            ),
            hub=hub,
        )
    else:
        _guarded_transition(
            master_db,
            row,
            expected_stage=ExchangeStage.AWAITING_EMPLOYEE,
            values={
                "approval_stage": ExchangeStage.AWAITING_HR.value,
                "employee_decision_at": now,
                "employee_rejection_reason": None,
            },
            conflict_message=not_respondable,
        )
        mode, approvers = list_approvers(
            master_db,
            company_ids=[row.requester_company_id, row.accepting_company_id],
            exclude_user_ids=[row.requester_user_id, row.accepting_user_id],
        )
        audience = "HR" if mode == APPROVER_MODE_HR else "Management"
        for approver in approvers:
            _notify(
                manager,
                master_db,
                company_id=approver["company_id"],
                db_name=approver["company_db_name"],
                user_id=approver["user_id"],
                message=NotificationMessage(
                    title="Shift Exchange Pending Approval",
                    message=(
                        f"{_display_name(requester)} and {_display_name(accepting)} shift exchange "
                        f"is pending {audience} approval."
                    ),
                    type="warning",
                    link_url=_exchange_link(row.id, approver=True),
                ),
                hub=hub,
            )

    logger.info(
        "shift_exchange_responded",
        extra={"exchange_id": row.id, "action": action, "approval_stage": row.approval_stage},
    )
    return build_exchange_detail(manager, master_db, row, actor=actor)


def _swap_steps(row: ShiftExchangeRequest, users: dict[int, User]) -> list[_SwapStep]:
    # Each shift moves to the other employee, inside its own tenant database.
    return [
        _SwapStep(
            name=SWAP_STEP_REQUESTER,
            company_id=row.requester_company_id,
            db_name=row.requester_company_db_name,
            shift_id=row.requester_shift_id,
            erp_shift_id=row.requester_shift_erp_id,
            new_owner=users[row.accepting_user_id],
        ),
        _SwapStep(
            name=SWAP_STEP_ACCEPTING,
            company_id=row.accepting_company_id,
            db_name=row.accepting_company_db_name,
            shift_id=row.accepting_shift_id,
            erp_shift_id=row.accepting_shift_erp_id,
            new_owner=users[row.requester_user_id],
        ),
    ]


def _marker_column(step: _SwapStep):
    if step.name == SWAP_STEP_REQUESTER:
        return ShiftExchangeRequest.requester_swap_applied_at
    return ShiftExchangeRequest.accepting_swap_applied_at


def _apply_swap_step(
    manager: ConnectionManager,
    master_db: Session,
    row: ShiftExchangeRequest,
    step: _SwapStep,
    *,
    hub: RealtimeHub | None,
) -> list[int]:
    """Reassign one shift and stage its ERP planning-slot job in the same tenant transaction.

    Safe to repeat: the owner update is absolute and the job is keyed by exchange and side.
    """
    with manager.tenant_session(step.db_name) as db:
        shift = db.get(EmployeeShift, step.shift_id)
        if shift is None:
            raise NotFoundError(f"Shift {step.shift_id} no longer exists in {step.db_name}")
        branch = db.get(Branch, shift.branch_id)
        if branch is None or not (branch.erp_branch_id or "").isdigit():
            raise ValidationFailed(f"Branch ERP company ID is missing or invalid for shift {shift.id}")

        shift.user_id = step.new_owner.id
        shift.employee_name = step.new_owner.full_name
        job_ids: list[int] = []
        if step.erp_shift_id is not None:
            job = enqueue_job(
                db,
                job_type=JOB_TYPE_ERP_PLANNING_SLOT_REASSIGN,
                payload={
                    "slot_id": step.erp_shift_id,
                    "website_key": step.new_owner.user_key,
                    "erp_company_id": int(branch.erp_branch_id),
                    "exchange_id": row.id,
                },
                idempotency_key=f"erp_planning_slot:{row.id}:{step.name}",
            )
            job_ids.append(job.id)
        db.commit()
        db.refresh(shift)
        if hub is not None:
            hub.for_company(step.company_id).emit_to_branch(shift.branch_id, EVENT_SHIFT_UPDATED, serialize_shift(shift))

    master_db.execute(
        update(ShiftExchangeRequest)
        .where(ShiftExchangeRequest.id == row.id, _marker_column(step).is_(None))
        .values({_marker_column(step).key: utcnow()})
    )
    master_db.commit()
    return job_ids


def _run_swap(
    manager: ConnectionManager,
    master_db: Session,
    row: ShiftExchangeRequest,
    *,
    hub: RealtimeHub | None,
) -> bool:
    users = _load_users(master_db, [row.requester_user_id, row.accepting_user_id])
    if row.requester_user_id not in users or row.accepting_user_id not in users:
        row.swap_last_error = "Employee account not found"
        master_db.commit()
        logger.warning("shift_exchange_swap_incomplete", extra={"exchange_id": row.id, "error": row.swap_last_error})
        return False
    complete = True
    errors: list[str] = []
    for step in _swap_steps(row, users):
        if getattr(row, _marker_column(step).key) is not None:
            continue
        try:
            job_ids = _apply_swap_step(manager, master_db, row, step, hub=hub)
        except (ApiError, SQLAlchemyError) as exc:
            master_db.rollback()
            complete = False
            errors.append(f"{step.name}: {truncate_error(exc, 500)}")
            logger.warning(
                "shift_exchange_swap_incomplete",
                extra={"exchange_id": row.id, "step": step.name, "db_name": step.db_name, "error": str(exc)},
            )
            continue
        run_jobs_now(manager, company_id=step.company_id, db_name=step.db_name, job_ids=job_ids, hub=hub)

    master_db.execute(
        update(ShiftExchangeRequest)
        .where(ShiftExchangeRequest.id == row.id)
        .values(swap_last_error="; ".join(errors) if errors else None)
    )
    master_db.commit()
    master_db.refresh(row)
    return complete


def approve_exchange(
    manager: ConnectionManager,
    master_db: Session,
    *,
    exchange_id: int,
    actor: CurrentUser,
    hub: RealtimeHub | None = None,
) -> dict[str, Any]:
    row = _get_request(master_db, exchange_id)
    not_awaiting = "This shift exchange request is not awaiting HR approval"
    if row.status != ExchangeStatus.PENDING.value or row.approval_stage != ExchangeStage.AWAITING_HR.value:
        raise ConflictError(not_awaiting, code="SHIFT_EXCHANGE_STAGE_CONFLICT")
    ensure_approver_access(master_db, actor=actor, company_ids=[row.requester_company_id, row.accepting_company_id])

    users = _load_users(master_db, [row.requester_user_id, row.accepting_user_id])
    requester = users.get(row.requester_user_id)
    accepting = users.get(row.accepting_user_id)
    _ensure_active_pair(requester, accepting)
    if not requester.user_key or not accepting.user_key:
        raise ConflictError("One of the employees has no website key for ERP resource mapping")

    requester_shift = _load_tenant_shift(manager, row.requester_company_db_name, row.requester_shift_id)
    accepting_shift = _load_tenant_shift(manager, row.accepting_company_db_name, row.accepting_shift_id)
    if requester_shift is None or accepting_shift is None:
        raise ConflictError("One of the shifts no longer exists")
    if requester_shift.status != ShiftStatus.OPEN.value or accepting_shift.status != ShiftStatus.OPEN.value:
        raise ConflictError("Both shifts must still be open for final approval")
    for label, shift in (("Requester", requester_shift), ("Accepting", accepting_shift)):
        if not (shift.branch_erp_id or "").isdigit():
            raise ValidationFailed(f"{label} branch ERP company ID is missing or invalid")

    _guarded_transition(
        master_db,
        row,
        expected_stage=ExchangeStage.AWAITING_HR,
        values={
            "status": ExchangeStatus.APPROVED.value,
            "approval_stage": ExchangeStage.RESOLVED.value,
            "hr_decision_by": actor.user_id,
            "hr_decision_at": utcnow(),
            "hr_rejection_reason": None,
        },
        conflict_message=not_awaiting,
    )
    complete = _run_swap(manager, master_db, row, hub=hub)
    logger.info(
        "shift_exchange_approved",
        extra={"exchange_id": row.id, "approved_by": actor.user_id, "swap_complete": complete},
    )

    for company_id, db_name, user_id in (
        (row.requester_company_id, row.requester_company_db_name, row.requester_user_id),
        (row.accepting_company_id, row.accepting_company_db_name, row.accepting_user_id),
    ):
        _notify(
            manager,
            master_db,
            company_id=company_id,
            db_name=db_name,
            user_id=user_id,
            message=NotificationMessage(
                title="Shift Exchange Approved",
                message="Your shift exchange request has been approved.",
                type="success",
                link_url=_exchange_link(row.id),
            ),
            hub=hub,
        )
    return build_exchange_detail(manager, master_db, row, actor=actor)


def reject_exchange(
    manager: ConnectionManager,
    master_db: Session,
    *,
    exchange_id: int,
    actor: CurrentUser,
    reason: str | None,
    hub: RealtimeHub | None = None,
) -> dict[str, Any]:
    row = _get_request(master_db, exchange_id)
    not_awaiting = "This shift exchange request is not awaiting HR approval"
    if row.status != ExchangeStatus.PENDING.value or row.approval_stage != ExchangeStage.AWAITING_HR.value:
        raise ConflictError(not_awaiting, code="SHIFT_EXCHANGE_STAGE_CONFLICT")
    normalized = (reason or "").strip()
    if not normalized:
        raise ValidationFailed("Rejection reason is required")
    ensure_approver_access(master_db, actor=actor, company_ids=[row.requester_company_id, row.accepting_company_id])

    _guarded_transition(
        master_db,
        row,
        expected_stage=ExchangeStage.AWAITING_HR,
        values={
            "status": ExchangeStatus.REJECTED.value,
            "approval_stage": ExchangeStage.RESOLVED.value,
            "hr_decision_by": actor.user_id,
            "hr_decision_at": utcnow(),
            "hr_rejection_reason": normalized,
        },
        conflict_message=not_awaiting,
    )
    logger.info("shift_exchange_rejected", extra={"exchange_id": row.id, "rejected_by": actor.user_id})

    for company_id, db_name, user_id in (
        (row.requester_company_id, row.requester_company_db_name, row.requester_user_id),
        (row.accepting_company_id, row.accepting_company_db_name, row.accepting_user_id),
    ):
        _notify(
            manager,
            master_db,
            company_id=company_id,
            db_name=db_name,
            user_id=user_id,
            message=NotificationMessage(
                title="Shift Exchange Rejected",
                message=f"Your shift exchange request was rejected by HR. Reason: {normalized}",
                type="danger",
                link_url=_exchange_link(row.id),
            ),
            hub=hub,
        )
    return build_exchange_detail(manager, master_db, row, actor=actor)


def reconcile_exchange_swaps(
    manager: ConnectionManager,
    master_db: Session,
    *,
    hub: RealtimeHub | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    """Re-run missing swap steps of approved exchanges."""
    rows = master_db.scalars(
        select(ShiftExchangeRequest)
        .where(
            ShiftExchangeRequest.status == ExchangeStatus.APPROVED.value,
            or_(
                ShiftExchangeRequest.requester_swap_applied_at.is_(None),
                ShiftExchangeRequest.accepting_swap_applied_at.is_(None),
            ),
        )
        .order_by(ShiftExchangeRequest.id.asc())
        .limit(max(1, limit))
    ).all()

    summary: dict[str, Any] = {"checked": len(rows), "completed": 0, "incomplete": []}
    for row in rows:
        if _run_swap(manager, master_db, row, hub=hub):
            summary["completed"] += 1
            logger.info("shift_exchange_swap_reconciled", extra={"exchange_id": row.id})
        else:
            summary["incomplete"].append(row.id)
    return summary


def list_exchanges_for_authorization(
    manager: ConnectionManager,
    master_db: Session,
    *,
    company_id: int,
    branch_ids: Iterable[int] | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    stmt = select(ShiftExchangeRequest).where(
        or_(
            ShiftExchangeRequest.requester_company_id == company_id,
            ShiftExchangeRequest.accepting_company_id == company_id,
        )
    )
    if status:
        stmt = stmt.where(ShiftExchangeRequest.status == status)
    branch_list = list(branch_ids) if branch_ids is not None else []
    if branch_list:
        stmt = stmt.where(
            or_(
                and_(
                    ShiftExchangeRequest.requester_company_id == company_id,
                    ShiftExchangeRequest.requester_branch_id.in_(branch_list),
                ),
                and_(
                    ShiftExchangeRequest.accepting_company_id == company_id,
                    ShiftExchangeRequest.accepting_branch_id.in_(branch_list),
                ),
            )
        )
    rows = master_db.scalars(stmt.order_by(ShiftExchangeRequest.created_at.desc(), ShiftExchangeRequest.id.desc())).all()
    if not rows:
        return []

    users = _load_users(master_db, [item for row in rows for item in (row.requester_user_id, row.accepting_user_id)])
    companies: dict[int, Company | None] = {}
    items: list[dict[str, Any]] = []
    for row in rows:
        for key in (row.requester_company_id, row.accepting_company_id):
            if key not in companies:
                companies[key] = master_db.get(Company, key)
        requester_shift = _load_tenant_shift(manager, row.requester_company_db_name, row.requester_shift_id)
        accepting_shift = _load_tenant_shift(manager, row.accepting_company_db_name, row.accepting_shift_id)
        requester_company = companies[row.requester_company_id]
        accepting_company = companies[row.accepting_company_id]
        items.append(
            {
                "id": row.id,
                "auth_type": "shift_exchange",
                "status": row.status,
                "approval_stage": row.approval_stage,
                "stage_label": stage_label(row),
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "requester_user_id": row.requester_user_id,
                "requester_name": _display_name(users.get(row.requester_user_id)),
                "accepting_user_id": row.accepting_user_id,
                "accepting_name": _display_name(users.get(row.accepting_user_id)),
                "requester_company_id": row.requester_company_id,
                "requester_company_name": requester_company.name if requester_company is not None else None,
                "requester_branch_id": row.requester_branch_id,
                "requester_branch_name": requester_shift.branch_name if requester_shift is not None else None,
                "requester_shift_id": row.requester_shift_id,
                "requester_shift_start": requester_shift.shift_start if requester_shift is not None else None,
                "requester_shift_end": requester_shift.shift_end if requester_shift is not None else None,
                "accepting_company_id": row.accepting_company_id,
                "accepting_company_name": accepting_company.name if accepting_company is not None else None,
                "accepting_branch_id": row.accepting_branch_id,
                "accepting_branch_name": accepting_shift.branch_name if accepting_shift is not None else None,
                "accepting_shift_id": row.accepting_shift_id,
                "accepting_shift_start": accepting_shift.shift_start if accepting_shift is not None else None,
                "accepting_shift_end": accepting_shift.shift_end if accepting_shift is not None else None,
                "employee_rejection_reason": row.employee_rejection_reason,
                "hr_rejection_reason": row.hr_rejection_reason,
            }
        )
    return items
