from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ConflictError, NotFoundError, ValidationFailed
from app.models import AuthorizationType, EmployeeShift, ShiftAuthorization, ShiftLog, ShiftLogType, ShiftStatus
from app.realtime import EVENT_SHIFT_LOG_NEW, EVENT_SHIFT_UPDATED, CompanyChannel
from app.services.shift_authorizations import announce_new_authorization, create_authorization, serialize_shift_log
from app.services.webhooks import serialize_shift
from app.timeutils import utcnow

logger = logging.getLogger("app.employee_shifts")


@dataclass(slots=True)
class ShiftEndResult:
    shift: EmployeeShift
    log: ShiftLog
    overtime: ShiftAuthorization | None


def get_shift(db: Session, shift_id: int) -> EmployeeShift:
    shift = db.get(EmployeeShift, shift_id)
    if shift is None:
        raise NotFoundError("Shift not found")
    return shift


def list_shifts(
    db: Session,
    *,
    branch_ids: Iterable[int] | None = None,
    user_id: int | None = None,
    status: str | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    limit: int = 200,
) -> list[EmployeeShift]:
    stmt = select(EmployeeShift).order_by(EmployeeShift.shift_start.asc(), EmployeeShift.id.asc())
    if branch_ids is not None:
        stmt = stmt.where(EmployeeShift.branch_id.in_(list(branch_ids)))
    if user_id is not None:
        stmt = stmt.where(EmployeeShift.user_id == user_id)
    if status:
        stmt = stmt.where(EmployeeShift.status == status)
    if start_from is not None:
        stmt = stmt.where(EmployeeShift.shift_start >= start_from)
    if start_to is not None:
        stmt = stmt.where(EmployeeShift.shift_start < start_to)
    return list(db.scalars(stmt.limit(max(1, min(limit, 1000)))).all())


def overtime_minutes(total_worked_hours: float | None, allocated_hours: float | None) -> int:
    if total_worked_hours is None:
        return 0
    return round((float(total_worked_hours) - float(allocated_hours or 0)) * 60)


def end_shift(db: Session, *, shift_id: int, manager_id: int) -> ShiftEndResult:
    """Move a started shift to ended and open an overtime request when worked hours exceed the allocation."""
    shift = get_shift(db, shift_id)
    ended_at = utcnow()
    result = db.execute(
        update(EmployeeShift)
        .where(EmployeeShift.id == shift.id, EmployeeShift.status == ShiftStatus.STARTED.value)
        .values(status=ShiftStatus.ENDED.value)
    )
    if result.rowcount == 0:
        db.rollback()
        current = db.scalar(select(EmployeeShift.status).where(EmployeeShift.id == shift_id))
        if current == ShiftStatus.ENDED.value:
            raise ConflictError("Shift has already ended", code="SHIFT_ALREADY_ENDED")
        raise ValidationFailed("Only a started shift can be ended", code="SHIFT_NOT_STARTED")

    db.refresh(shift)
    log = ShiftLog(
        shift_id=shift.id,
        branch_id=shift.branch_id,
        log_type=ShiftLogType.SHIFT_ENDED.value,
        event_time=ended_at,
        changes={
            "ended_by": manager_id,
            "total_worked_hours": shift.total_worked_hours,
            "allocated_hours": shift.allocated_hours,
        },
        erp_payload={},
    )
    db.add(log)
    db.flush()

    overtime = None
    diff = overtime_minutes(shift.total_worked_hours, shift.allocated_hours)
    if diff > 0:
        already = db.scalar(
            select(ShiftAuthorization.id).where(
                ShiftAuthorization.shift_id == shift.id,
                ShiftAuthorization.auth_type == AuthorizationType.OVERTIME.value,
            )
        )
        if already is None:
            overtime, _ = create_authorization(
                db,
                shift=shift,
                shift_log_id=log.id,
                auth_type=AuthorizationType.OVERTIME,
                diff_minutes=diff,
                needs_employee_reason=False,
            )

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Shift has already ended", code="SHIFT_ALREADY_ENDED") from exc
    db.refresh(shift)

    logger.info(
        "shift_ended",
        extra={
            "shift_id": shift.id,
            "manager_id": manager_id,
            "total_worked_hours": shift.total_worked_hours,
            "overtime_authorization_id": overtime.id if overtime is not None else None,
        },
    )
    return ShiftEndResult(shift=shift, log=log, overtime=overtime)


def publish_shift_end(channel: CompanyChannel | None, result: ShiftEndResult) -> None:
    if channel is None:
        return
    shift = result.shift
    channel.emit_to_branch(shift.branch_id, EVENT_SHIFT_UPDATED, serialize_shift(shift))
    channel.emit_to_branch(shift.branch_id, EVENT_SHIFT_LOG_NEW, serialize_shift_log(result.log))
    if result.overtime is not None:
        announce_new_authorization(channel, result.overtime)
