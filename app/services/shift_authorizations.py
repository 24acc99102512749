from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from app.models import (
    AuthorizationStatus,
    AuthorizationType,
    EmployeeNotification,
    EmployeeShift,
    OvertimeType,
    ShiftAuthorization,
    ShiftLog,
    ShiftLogType,
)
from app.realtime import EVENT_AUTHORIZATION_NEW, EVENT_AUTHORIZATION_UPDATED, EVENT_SHIFT_LOG_NEW, CompanyChannel
from app.schemas import ShiftAuthorizationRead, ShiftLogRead
from app.services.notifications import NotificationMessage, create_notification, deliver_notification
from app.services.sync_jobs import JOB_TYPE_ERP_ATTENDANCE_SYNC, enqueue_job

logger = logging.getLogger("app.shift_authorizations")

AUTH_TYPE_LABELS = {
    AuthorizationType.EARLY_CHECK_IN.value: "Early Check In",
    AuthorizationType.TARDINESS.value: "Tardiness",
    AuthorizationType.EARLY_CHECK_OUT.value: "Early Check Out",
    AuthorizationType.LATE_CHECK_OUT.value: "Late Check Out",
    AuthorizationType.OVERTIME.value: "Overtime",
}

OVERTIME_TYPES = {item.value for item in OvertimeType}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def auth_type_label(auth_type: str) -> str:
    return AUTH_TYPE_LABELS.get(auth_type, auth_type)


@dataclass(frozen=True, slots=True)
class AuthorizationAlreadyResolved:
    """Returned instead of raising when a guarded resolve touched no row."""

    authorization_id: int
    status: str


@dataclass(slots=True)
class AuthorizationResolution:
    authorization: ShiftAuthorization
    shift: EmployeeShift | None
    log: ShiftLog
    notification: EmployeeNotification | None
    sync_job_ids: list[int] = field(default_factory=list)


def serialize_authorization(row: ShiftAuthorization) -> dict[str, Any]:
    return ShiftAuthorizationRead.model_validate(row).model_dump(mode="json")


def serialize_shift_log(row: ShiftLog, **extra: Any) -> dict[str, Any]:
    payload = ShiftLogRead.model_validate(row).model_dump(mode="json")
    payload.update(extra)
    return payload


def create_authorization(
    db: Session,
    *,
    shift: EmployeeShift,
    shift_log_id: int | None,
    auth_type: AuthorizationType,
    diff_minutes: int,
    needs_employee_reason: bool,
    status: AuthorizationStatus = AuthorizationStatus.PENDING,
) -> tuple[ShiftAuthorization, bool]:
    """Stage an authorization for a shift; returns ``(row, created)``.

    A log produces at most one authorization per type, so a replay returns the
    existing row. Pending rows bump the shift's counter in the same transaction.
    """
    if shift_log_id is not None:
        existing = db.scalar(
            select(ShiftAuthorization).where(
                ShiftAuthorization.shift_log_id == shift_log_id,
                ShiftAuthorization.auth_type == auth_type.value,
            )
        )
        if existing is not None:
            return existing, False

    row = ShiftAuthorization(
        shift_id=shift.id,
        shift_log_id=shift_log_id,
        branch_id=shift.branch_id,
        user_id=shift.user_id,
        auth_type=auth_type.value,
        diff_minutes=int(diff_minutes),
        needs_employee_reason=needs_employee_reason,
        status=status.value,
    )
    db.add(row)
    if status == AuthorizationStatus.PENDING:
        db.execute(
            update(EmployeeShift)
            .where(EmployeeShift.id == shift.id)
            .values(pending_approvals=EmployeeShift.pending_approvals + 1)
        )
    db.flush()
    return row, True


def announce_new_authorization(channel: CompanyChannel | None, row: ShiftAuthorization) -> None:
    if channel is not None:
        channel.emit_to_branch(row.branch_id, EVENT_AUTHORIZATION_NEW, serialize_authorization(row))


def get_authorization(db: Session, authorization_id: int) -> ShiftAuthorization:
    row = db.get(ShiftAuthorization, authorization_id)
    if row is None:
        raise NotFoundError("Authorization not found")
    return row


def list_authorizations(
    db: Session,
    *,
    branch_ids: Iterable[int] | None = None,
    user_id: int | None = None,
    shift_id: int | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[ShiftAuthorization]:
    stmt = select(ShiftAuthorization).order_by(ShiftAuthorization.created_at.desc(), ShiftAuthorization.id.desc())
    if branch_ids is not None:
        stmt = stmt.where(ShiftAuthorization.branch_id.in_(list(branch_ids)))
    if user_id is not None:
        stmt = stmt.where(ShiftAuthorization.user_id == user_id)
    if shift_id is not None:
        stmt = stmt.where(ShiftAuthorization.shift_id == shift_id)
    if status:
        stmt = stmt.where(ShiftAuthorization.status == status)
    return list(db.scalars(stmt.limit(max(1, min(limit, 500)))).all())


def submit_reason(
    db: Session,
    *,
    authorization_id: int,
    user_id: int,
    reason: str | None,
    channel: CompanyChannel | None = None,
) -> ShiftAuthorization:
    normalized = (reason or "").strip()
    if not normalized:
        raise ValidationFailed("Reason is required")

    row = get_authorization(db, authorization_id)
    if row.user_id != user_id:
        raise ForbiddenError("Not your authorization")
    if not row.needs_employee_reason:
        raise ValidationFailed("This authorization does not require an employee reason")
    if row.status != AuthorizationStatus.PENDING.value:
        raise ConflictError("Authorization is already resolved", code="AUTHORIZATION_ALREADY_RESOLVED")
    if row.employee_reason:
        raise ConflictError("Reason has already been submitted", code="REASON_ALREADY_SUBMITTED")

    result = db.execute(
        update(ShiftAuthorization)
        .where(
            ShiftAuthorization.id == authorization_id,
            ShiftAuthorization.status == AuthorizationStatus.PENDING.value,
            ShiftAuthorization.employee_reason.is_(None),
        )
        .values(employee_reason=normalized)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConflictError("Reason has already been submitted", code="REASON_ALREADY_SUBMITTED")
    db.commit()
    db.refresh(row)

    if channel is not None:
        channel.emit_to_branch(row.branch_id, EVENT_AUTHORIZATION_UPDATED, serialize_authorization(row))
    return row


def _attendance_sync_target(auth_type: str, decision: AuthorizationStatus) -> tuple[str, str] | None:
    """ERP attendance field to rewrite and the shift bound it is rewritten to."""
    if decision == AuthorizationStatus.APPROVED and auth_type == AuthorizationType.TARDINESS.value:
        return "check_in", "shift_start"
    if decision == AuthorizationStatus.REJECTED and auth_type == AuthorizationType.EARLY_CHECK_IN.value:
        return "check_in", "shift_start"
    if decision == AuthorizationStatus.REJECTED and auth_type == AuthorizationType.LATE_CHECK_OUT.value:
        return "check_out", "shift_end"
    return None


def _enqueue_attendance_sync(
    db: Session,
    *,
    row: ShiftAuthorization,
    shift: EmployeeShift | None,
    decision: AuthorizationStatus,
) -> list[int]:
    target = _attendance_sync_target(row.auth_type, decision)
    if target is None or shift is None:
        return []
    field_name, shift_attr = target

    shift_log = db.get(ShiftLog, row.shift_log_id) if row.shift_log_id is not None else None
    if shift_log is None or shift_log.erp_attendance_id is None:
        logger.warning(
            "erp_sync_skipped_no_attendance",
            extra={"authorization_id": row.id, "shift_log_id": row.shift_log_id},
        )
        return []

    job = enqueue_job(
        db,
        job_type=JOB_TYPE_ERP_ATTENDANCE_SYNC,
        payload={
            "attendance_id": shift_log.erp_attendance_id,
            "field": field_name,
            "value": getattr(shift, shift_attr).isoformat(),
            "authorization_id": row.id,
        },
        idempotency_key=f"erp_attendance:{row.id}:{field_name}",
    )
    return [job.id]


def _resolve(
    db: Session,
    *,
    row: ShiftAuthorization,
    decision: AuthorizationStatus,
    manager_id: int,
    manager_name: str | None,
    values: dict[str, Any],
) -> AuthorizationResolution | AuthorizationAlreadyResolved:
    resolved_at = _utcnow()
    result = db.execute(
        update(ShiftAuthorization)
        .where(
            ShiftAuthorization.id == row.id,
            ShiftAuthorization.status == AuthorizationStatus.PENDING.value,
        )
        .values(status=decision.value, resolved_by=manager_id, resolved_at=resolved_at, **values)
    )
    if result.rowcount == 0:
        db.rollback()
        current = db.scalar(select(ShiftAuthorization.status).where(ShiftAuthorization.id == row.id))
        logger.info(
            "authorization_resolve_conflict",
            extra={"authorization_id": row.id, "status": current, "manager_id": manager_id},
        )
        return AuthorizationAlreadyResolved(authorization_id=row.id, status=current or row.status)

    db.execute(
        update(EmployeeShift)
        .where(EmployeeShift.id == row.shift_id)
        .values(
            pending_approvals=case(
                (EmployeeShift.pending_approvals > 0, EmployeeShift.pending_approvals - 1),
                else_=0,
            )
        )
    )

    changes: dict[str, Any] = {
        "authorization_id": row.id,
        "auth_type": row.auth_type,
        "resolution": decision.value,
        "resolved_by": manager_id,
        "resolved_by_name": manager_name or str(manager_id),
        "diff_minutes": row.diff_minutes,
    }
    if values.get("overtime_type"):
        changes["overtime_type"] = values["overtime_type"]
    if values.get("rejection_reason"):
        changes["rejection_reason"] = values["rejection_reason"]
    log = ShiftLog(
        shift_id=row.shift_id,
        branch_id=row.branch_id,
        log_type=ShiftLogType.AUTHORIZATION_RESOLVED.value,
        event_time=resolved_at,
        changes=changes,
        erp_payload={},
    )
    db.add(log)
    db.flush()
    db.refresh(row)
    shift = db.get(EmployeeShift, row.shift_id)

    notification = None
    if row.user_id is not None:
        label = auth_type_label(row.auth_type)
        if decision == AuthorizationStatus.APPROVED:
            message = NotificationMessage(
                title=f"{label} Approved",
                message=f"Your {label.lower()} authorization has been approved.",
                type="success",
                link_url="/account/schedule",
            )
        else:
            message = NotificationMessage(
                title=f"{label} Rejected",
                message=f"Your {label.lower()} authorization has been rejected: {values.get('rejection_reason')}",
                type="danger",
                link_url="/account/schedule",
            )
        notification = create_notification(db, user_id=row.user_id, message=message)

    sync_job_ids = _enqueue_attendance_sync(db, row=row, shift=shift, decision=decision)
    db.commit()
    if shift is not None:
        db.refresh(shift)

    logger.info(
        "authorization_resolved",
        extra={
            "authorization_id": row.id,
            "shift_id": row.shift_id,
            "auth_type": row.auth_type,
            "status": decision.value,
            "manager_id": manager_id,
            "sync_jobs": sync_job_ids,
        },
    )
    return AuthorizationResolution(
        authorization=row,
        shift=shift,
        log=log,
        notification=notification,
        sync_job_ids=sync_job_ids,
    )


def approve_authorization(
    db: Session,
    *,
    authorization_id: int,
    manager_id: int,
    overtime_type: str | None = None,
    manager_name: str | None = None,
) -> AuthorizationResolution | AuthorizationAlreadyResolved:
    row = get_authorization(db, authorization_id)
    if row.status != AuthorizationStatus.PENDING.value:
        return AuthorizationAlreadyResolved(authorization_id=row.id, status=row.status)
    if row.needs_employee_reason and not (row.employee_reason or "").strip():
        raise ValidationFailed("Employee has not submitted a reason yet")

    values: dict[str, Any] = {}
    if row.auth_type == AuthorizationType.OVERTIME.value:
        normalized = (overtime_type or "").strip()
        if normalized not in OVERTIME_TYPES:
            raise ValidationFailed("Overtime type is required: normal_overtime or overtime_premium")
        values["overtime_type"] = normalized

    return _resolve(
        db,
        row=row,
        decision=AuthorizationStatus.APPROVED,
        manager_id=manager_id,
        manager_name=manager_name,
        values=values,
    )


def reject_authorization(
    db: Session,
    *,
    authorization_id: int,
    manager_id: int,
    reason: str | None,
    manager_name: str | None = None,
) -> AuthorizationResolution | AuthorizationAlreadyResolved:
    normalized = (reason or "").strip()
    if not normalized:
        raise ValidationFailed("Rejection reason is required")

    row = get_authorization(db, authorization_id)
    if row.status != AuthorizationStatus.PENDING.value:
        return AuthorizationAlreadyResolved(authorization_id=row.id, status=row.status)

    return _resolve(
        db,
        row=row,
        decision=AuthorizationStatus.REJECTED,
        manager_id=manager_id,
        manager_name=manager_name,
        values={"rejection_reason": normalized},
    )


def publish_resolution(
    db: Session,
    resolution: AuthorizationResolution,
    *,
    channel: CompanyChannel | None,
    push_allowed: bool,
) -> None:
    """Post-commit fan-out: branch events first, then the employee notification."""
    row = resolution.authorization
    if channel is not None:
        channel.emit_to_branch(row.branch_id, EVENT_AUTHORIZATION_UPDATED, serialize_authorization(row))
        channel.emit_to_branch(row.branch_id, EVENT_SHIFT_LOG_NEW, serialize_shift_log(resolution.log))
    if resolution.notification is not None:
        deliver_notification(db, resolution.notification, channel=channel, push_allowed=push_allowed)


def count_pending(db: Session, shift_id: int) -> int:
    return int(
        db.scalar(
            select(func.count(ShiftAuthorization.id)).where(
                ShiftAuthorization.shift_id == shift_id,
                ShiftAuthorization.status == AuthorizationStatus.PENDING.value,
            )
        )
        or 0
    )
