from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import audit_user_action
from app.db import get_master_db
from app.schemas import NotificationRead, PushSubscribeRequest, PushSubscriptionRead, PushUnsubscribeRequest
from app.security import CurrentUser, require_user
from app.services.notifications import list_notifications, mark_all_notifications_read, mark_notification_read
from app.services.push_notifications import (
    get_push_public_config,
    register_push_subscription,
    unregister_push_subscription,
)
from app.tenancy import TenantContext, get_tenant_context

router = APIRouter(tags=["notifications"])


def _user_agent(request: Request) -> str | None:
    value = request.headers.get("user-agent")
    return value[:512] if value else None


@router.get("/api/notifications", response_model=list[NotificationRead])
def list_my_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[NotificationRead]:
    rows = list_notifications(ctx.db, user_id=user.user_id, unread_only=unread_only, limit=limit)
    return [NotificationRead.model_validate(row) for row in rows]


@router.post("/api/notifications/{notification_id}/read", response_model=NotificationRead)
def read_notification(
    notification_id: int,
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> NotificationRead:
    row = mark_notification_read(ctx.db, notification_id=notification_id, user_id=user.user_id)
    return NotificationRead.model_validate(row)


@router.post("/api/notifications/read-all")
def read_all_notifications(
    user: CurrentUser = Depends(require_user),
    ctx: TenantContext = Depends(get_tenant_context),
) -> dict[str, Any]:
    return {"ok": True, "updated": mark_all_notifications_read(ctx.db, user_id=user.user_id)}


@router.get("/api/push/config")
def push_config() -> dict[str, Any]:
    return get_push_public_config()


@router.post("/api/push/subscribe", response_model=PushSubscriptionRead)
def push_subscribe(
    payload: PushSubscribeRequest,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PushSubscriptionRead:
    row = register_push_subscription(
        ctx.db,
        user_id=user.user_id,
        subscription=payload.model_dump(),
        user_agent=_user_agent(request),
    )
    audit_user_action(
        request,
        master_db,
        user,
        "PUSH_SUBSCRIPTION_UPSERT",
        entity_type="push_subscription",
        entity_id=row.id,
        company_id=ctx.company.id,
        details={"endpoint": row.endpoint},
    )
    return PushSubscriptionRead.model_validate(row)


@router.post("/api/push/unsubscribe")
def push_unsubscribe(
    payload: PushUnsubscribeRequest,
    request: Request,
    user: CurrentUser = Depends(require_user),
    master_db: Session = Depends(get_master_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> dict[str, Any]:
    removed = unregister_push_subscription(ctx.db, user_id=user.user_id, endpoint=payload.endpoint)
    audit_user_action(
        request,
        master_db,
        user,
        "PUSH_SUBSCRIPTION_REMOVE",
        entity_type="push_subscription",
        entity_id=None,
        company_id=ctx.company.id,
        details={"endpoint": payload.endpoint, "removed": removed},
    )
    return {"ok": True, "removed": removed}
