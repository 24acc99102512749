from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import audit_user_action
from app.db import get_connection_manager, get_master_db
from app.errors import ConflictError
from app.models import User
from app.schemas import (
    ApproveAuthorizationRequest,
    RejectAuthorizationRequest,
    ShiftAuthorizationRead,
    SubmitReasonRequest,
)
from app.security import PERMISSION_APPROVE_AUTHORIZATIONS, CurrentUser, require_permission, require_user
from app.services.notifications import user_accepts_push
from app.services.shift_authorizations import (
    AuthorizationAlreadyResolved,
    AuthorizationResolution,
    approve_authorization,
    get_authorization,
    list_authorizations,
    publish_resolution,
    reject_authorization,
    submit_reason,
)
from app.services.sync_jobs import run_jobs_now
from app.tenancy import TenantContext, ensure_branch_visible, get_realtime_hub, get_tenant_context, visible_branch_ids

router = APIRouter(prefix="/api/shift-authorizations", tags=["shift-authorizations"])


def _actor_name(master_db: Session, user: CurrentUser) -> str:
    row = master_db.get(User, user.user_id)
    return row.full_name if row is not None and row.full_name else str(user.user_id)


def _finish_resolution(
    request: Request,
    master_db: Session,
    ctx: TenantContext,
    user: CurrentUser,
    result: AuthorizationResolution | AuthorizationAlreadyResolved,
    *,
    action: str,
) -> ShiftAuthorizationRead:
    if isinstance(result, AuthorizationAlreadyResolved):
        raise ConflictError("Authorization is already resolved", code="AUTHORIZATION_ALREADY_RESOLVED")

    row = result.authorization
    push_allowed = user_accepts_push(master_db, row.user_id) if row.user_id is not None else False
    publish_resolution(ctx.db, result, channel=ctx.channel, push_allowed=push_allowed)
    hub = get_realtime_hub(request)
    run_jobs_now(
        get_connection_manager(request),
        company_id=ctx.company.id,
        db_name=ctx.company.db_name,
        job_ids=result.sync_job_ids,
        hub=hub,
    )
    audit_user_action(
        request,
        master_db,
        user,
        action,
        entity_type="shift_authorization",
        entity_id=row.id,
        company_id=ctx.company.id,
        details={"status": row.status, "sync_jobs": result.sync_job_ids},
    )
    ctx.db.refresh(row)
    return ShiftAuthorizationRead.model_validate(row)


@router.get("", response_model=list[ShiftAuthorizationRead])
def list_shift_authorizations(
    status: str | None = Query(default=None),
    shift_id: int | None = Query(default=None, ge=1),
    mine: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ShiftAuthorizationRead]:
    if mine or not user.has_permission(PERMISSION_APPROVE_AUTHORIZATIONS):
        rows = list_authorizations(ctx.db, user_id=user.user_id, shift_id=shift_id, status=status, limit=limit)
    else:
        rows = list_authorizations(
            ctx.db,
            branch_ids=visible_branch_ids(ctx.db, user),
            shift_id=shift_id,
            status=status,
            limit=limit,
        )
    return [ShiftAuthorizationRead.model_validate(row) for row in rows]


@router.post("/{authorization_id}/reason", response_model=ShiftAuthorizationRead)
def submit_authorization_reason(
    authorization_id: int,
    payload: SubmitReasonRequest,
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ShiftAuthorizationRead:
    row = submit_reason(
        ctx.db,
        authorization_id=authorization_id,
        user_id=user.user_id,
        reason=payload.reason,
        channel=ctx.channel,
    )
    return ShiftAuthorizationRead.model_validate(row)


@router.post("/{authorization_id}/approve", response_model=ShiftAuthorizationRead)
def approve_shift_authorization(
    authorization_id: int,
    payload: ApproveAuthorizationRequest,
    request: Request,
    user: CurrentUser = Depends(require_permission(PERMISSION_APPROVE_AUTHORIZATIONS)),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ShiftAuthorizationRead:
    ensure_branch_visible(ctx.db, user, get_authorization(ctx.db, authorization_id).branch_id)
    result = approve_authorization(
        ctx.db,
        authorization_id=authorization_id,
        manager_id=user.user_id,
        overtime_type=payload.overtime_type,
        manager_name=_actor_name(master_db, user),
    )
    return _finish_resolution(request, master_db, ctx, user, result, action="SHIFT_AUTHORIZATION_APPROVED")


@router.post("/{authorization_id}/reject", response_model=ShiftAuthorizationRead)
def reject_shift_authorization(
    authorization_id: int,
    payload: RejectAuthorizationRequest,
    request: Request,
    user: CurrentUser = Depends(require_permission(PERMISSION_APPROVE_AUTHORIZATIONS)),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ShiftAuthorizationRead:
    ensure_branch_visible(ctx.db, user, get_authorization(ctx.db, authorization_id).branch_id)
    result = reject_authorization(
        ctx.db,
        authorization_id=authorization_id,
        manager_id=user.user_id,
        reason=payload.reason,
        manager_name=_actor_name(master_db, user),
    )
    return _finish_resolution(request, master_db, ctx, user, result, action="SHIFT_AUTHORIZATION_REJECTED")
