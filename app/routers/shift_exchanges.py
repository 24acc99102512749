from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import audit_user_action
from app.db import get_connection_manager, get_master_db
from app.errors import ValidationFailed
from app.schemas import ShiftExchangeCreateRequest, ShiftExchangeRejectRequest, ShiftExchangeRespondRequest
from app.security import PERMISSION_APPROVE_AUTHORIZATIONS, CurrentUser, require_permission, require_user
from app.services.shift_exchanges import (
    approve_exchange,
    create_exchange_request,
    get_exchange_detail,
    list_exchange_options,
    list_exchanges_for_authorization,
    reject_exchange,
    respond_to_exchange,
)
from app.tenancy import TenantContext, get_realtime_hub, get_tenant_context, visible_branch_ids

router = APIRouter(prefix="/api/shift-exchanges", tags=["shift-exchanges"])


def _audit(request: Request, master_db: Session, user: CurrentUser, action: str, exchange_id: int) -> None:
    audit_user_action(request, master_db, user, action, entity_type="shift_exchange_request", entity_id=exchange_id)


@router.get("/options")
def get_shift_exchange_options(
    request: Request,
    from_shift_id: int = Query(ge=1),
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    return list_exchange_options(
        get_connection_manager(request),
        master_db,
        actor=user,
        from_shift_id=from_shift_id,
    )


@router.post("", status_code=201)
def create_shift_exchange(
    payload: ShiftExchangeCreateRequest,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    detail = create_exchange_request(
        get_connection_manager(request),
        master_db,
        actor=user,
        from_shift_id=payload.from_shift_id,
        to_shift_id=payload.to_shift_id,
        to_company_id=payload.to_company_id,
        hub=get_realtime_hub(request),
    )
    _audit(request, master_db, user, "SHIFT_EXCHANGE_REQUESTED", detail["id"])
    return detail


@router.get("")
def list_shift_exchanges(
    request: Request,
    status: str | None = Query(default=None),
    user: CurrentUser = Depends(require_permission(PERMISSION_APPROVE_AUTHORIZATIONS)),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[dict[str, Any]]:
    return list_exchanges_for_authorization(
        get_connection_manager(request),
        master_db,
        company_id=ctx.company.id,
        branch_ids=visible_branch_ids(ctx.db, user),
        status=status,
    )


@router.get("/{exchange_id}")
def get_shift_exchange(
    exchange_id: int,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    return get_exchange_detail(get_connection_manager(request), master_db, exchange_id=exchange_id, actor=user)


@router.post("/{exchange_id}/respond")
def respond_shift_exchange(
    exchange_id: int,
    payload: ShiftExchangeRespondRequest,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    detail = respond_to_exchange(
        get_connection_manager(request),
        master_db,
        exchange_id=exchange_id,
        actor=user,
        action=payload.action,
        reason=payload.reason,
        hub=get_realtime_hub(request),
    )
    _audit(request, master_db, user, f"SHIFT_EXCHANGE_EMPLOYEE_{payload.action.upper()}", exchange_id)
    return detail


@router.post("/{exchange_id}/approve")
def approve_shift_exchange(
    exchange_id: int,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    detail = approve_exchange(
        get_connection_manager(request),
        master_db,
        exchange_id=exchange_id,
        actor=user,
        hub=get_realtime_hub(request),
    )
    _audit(request, master_db, user, "SHIFT_EXCHANGE_APPROVED", exchange_id)
    return detail


@router.post("/{exchange_id}/reject")
def reject_shift_exchange(
    exchange_id: int,
    payload: ShiftExchangeRejectRequest,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
) -> dict[str, Any]:
    if not (payload.reason or "").strip():
        raise ValidationFailed("Rejection reason is required")
    detail = reject_exchange(
        get_connection_manager(request),
        master_db,
        exchange_id=exchange_id,
        actor=user,
        reason=payload.reason,
        hub=get_realtime_hub(request),
    )
    _audit(request, master_db, user, "SHIFT_EXCHANGE_REJECTED", exchange_id)
    return detail
