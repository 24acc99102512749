from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit import audit_user_action
from app.db import get_master_db
from app.models import ShiftLog
from app.schemas import EmployeeShiftRead, ShiftLogRead
from app.security import (
    PERMISSION_END_SHIFT,
    PERMISSION_SHIFT_VIEW_ALL,
    CurrentUser,
    require_permission,
    require_user,
)
from app.services.employee_shifts import end_shift, get_shift, list_shifts, publish_shift_end
from app.tenancy import TenantContext, ensure_branch_visible, get_tenant_context, visible_branch_ids

router = APIRouter(prefix="/api/employee-shifts", tags=["employee-shifts"])


@router.get("", response_model=list[EmployeeShiftRead])
def list_employee_shifts(
    status: str | None = Query(default=None),
    branch_id: int | None = Query(default=None, ge=1),
    start_from: datetime | None = Query(default=None),
    start_to: datetime | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[EmployeeShiftRead]:
    if not user.has_permission(PERMISSION_SHIFT_VIEW_ALL):
        rows = list_shifts(ctx.db, user_id=user.user_id, status=status, start_from=start_from, start_to=start_to, limit=limit)
        return [EmployeeShiftRead.model_validate(row) for row in rows]

    branch_ids = visible_branch_ids(ctx.db, user)
    if branch_id is not None:
        ensure_branch_visible(ctx.db, user, branch_id)
        branch_ids = [branch_id]
    rows = list_shifts(
        ctx.db,
        branch_ids=branch_ids,
        status=status,
        start_from=start_from,
        start_to=start_to,
        limit=limit,
    )
    return [EmployeeShiftRead.model_validate(row) for row in rows]


@router.get("/{shift_id}", response_model=EmployeeShiftRead)
def get_employee_shift(
    shift_id: int,
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EmployeeShiftRead:
    shift = get_shift(ctx.db, shift_id)
    if shift.user_id != user.user_id:
        ensure_branch_visible(ctx.db, user, shift.branch_id)
    return EmployeeShiftRead.model_validate(shift)


@router.get("/{shift_id}/logs", response_model=list[ShiftLogRead])
def list_employee_shift_logs(
    shift_id: int,
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ShiftLogRead]:
    shift = get_shift(ctx.db, shift_id)
    if shift.user_id != user.user_id:
        ensure_branch_visible(ctx.db, user, shift.branch_id)
    rows = ctx.db.scalars(
        select(ShiftLog).where(ShiftLog.shift_id == shift.id).order_by(ShiftLog.event_time.asc(), ShiftLog.id.asc())
    ).all()
    return [ShiftLogRead.model_validate(row) for row in rows]


@router.post("/{shift_id}/end", response_model=EmployeeShiftRead)
def end_employee_shift(
    shift_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission(PERMISSION_END_SHIFT)),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EmployeeShiftRead:
    ensure_branch_visible(ctx.db, user, get_shift(ctx.db, shift_id).branch_id)
    result = end_shift(ctx.db, shift_id=shift_id, manager_id=user.user_id)
    publish_shift_end(ctx.channel, result)
    audit_user_action(
        request,
        master_db,
        user,
        "SHIFT_ENDED",
        entity_type="employee_shift",
        entity_id=shift_id,
        company_id=ctx.company.id,
        details={"overtime_authorization_id": result.overtime.id if result.overtime is not None else None},
    )
    return EmployeeShiftRead.model_validate(result.shift)
