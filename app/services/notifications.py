from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import NotFoundError
from app.models import EmployeeNotification, User
from app.realtime import EVENT_NOTIFICATION_NEW, CompanyChannel
from app.services.push_notifications import list_active_push_subscriptions, send_push_to_subscriptions
from app.settings import is_push_enabled

logger = logging.getLogger("app.notifications")

NOTIFICATION_TYPES = {"info", "success", "danger", "warning"}


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    title: str
    message: str
    type: str = "info"
    link_url: str | None = None


def serialize_notification(row: EmployeeNotification) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "title": row.title,
        "message": row.message,
        "type": row.type,
        "link_url": row.link_url,
        "is_read": row.is_read,
        "created_at": row.created_at,
    }


def create_notification(db: Session, *, user_id: int, message: NotificationMessage) -> EmployeeNotification:
    """Stage a notification row in the caller's transaction."""
    row = EmployeeNotification(
        user_id=user_id,
        title=message.title,
        message=message.message,
        type=message.type if message.type in NOTIFICATION_TYPES else "info",
        link_url=message.link_url,
        is_read=False,
    )
    db.add(row)
    db.flush()
    return row


def user_accepts_push(master_db: Session, user_id: int) -> bool:
    return bool(push_preferences(master_db, [user_id]).get(user_id))


def push_preferences(master_db: Session, user_ids: Iterable[int]) -> dict[int, bool]:
    ids = sorted({int(item) for item in user_ids})
    if not ids:
        return {}
    rows = master_db.execute(select(User.id, User.push_notifications_enabled).where(User.id.in_(ids))).all()
    found = {int(row.id): bool(row.push_notifications_enabled) for row in rows}
    return {user_id: found.get(user_id, False) for user_id in ids}


def deliver_notification(
    db: Session,
    notification: EmployeeNotification,
    *,
    channel: CompanyChannel | None,
    push_allowed: bool,
) -> dict[str, Any]:
    """Fan a committed notification out to the live channel and, when the user is offline, to web push.

    Delivery problems are logged and reported in the summary, never raised.
    """
    summary: dict[str, Any] = {"notification_id": notification.id, "realtime": 0, "push": None}
    user_id = notification.user_id

    if channel is not None:
        summary["realtime"] = channel.emit_to_user(user_id, EVENT_NOTIFICATION_NEW, serialize_notification(notification))

    if not is_push_enabled() or not push_allowed:
        return summary
    if channel is not None and channel.has_active_user_session(user_id):
        return summary

    try:
        subscriptions = list_active_push_subscriptions(db, user_id=user_id)
        if not subscriptions:
            return summary
        summary["push"] = send_push_to_subscriptions(
            db,
            subscriptions=subscriptions,
            title=notification.title,
            body=notification.message,
            data={
                "notification_id": notification.id,
                "type": notification.type,
                "link_url": notification.link_url,
            },
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "push_delivery_failed",
            extra={"user_id": user_id, "notification_id": notification.id, "error": str(exc)},
        )
        return summary

    push_summary = summary["push"]
    if push_summary["failed"]:
        logger.warning(
            "push_delivery_partial",
            extra={
                "user_id": user_id,
                "notification_id": notification.id,
                "sent": push_summary["sent"],
                "failed": push_summary["failed"],
                "deactivated": push_summary["deactivated"],
            },
        )
    return summary


def dispatch_notification(
    db: Session,
    user_id: int,
    message: NotificationMessage,
    *,
    channel: CompanyChannel | None,
    push_allowed: bool,
) -> EmployeeNotification:
    notification = create_notification(db, user_id=user_id, message=message)
    db.commit()
    deliver_notification(db, notification, channel=channel, push_allowed=push_allowed)
    return notification


def list_notifications(
    db: Session,
    *,
    user_id: int,
    unread_only: bool = False,
    limit: int = 50,
) -> list[EmployeeNotification]:
    stmt = (
        select(EmployeeNotification)
        .where(EmployeeNotification.user_id == user_id)
        .order_by(EmployeeNotification.created_at.desc(), EmployeeNotification.id.desc())
        .limit(max(1, min(limit, 200)))
    )
    if unread_only:
        stmt = stmt.where(EmployeeNotification.is_read.is_(False))
    return list(db.scalars(stmt).all())


def mark_notification_read(db: Session, *, notification_id: int, user_id: int) -> EmployeeNotification:
    row = db.get(EmployeeNotification, notification_id)
    if row is None or row.user_id != user_id:
        raise NotFoundError("Notification not found")
    if not row.is_read:
        row.is_read = True
        db.commit()
        db.refresh(row)
    return row


def mark_all_notifications_read(db: Session, *, user_id: int) -> int:
    result = db.execute(
        update(EmployeeNotification)
        .where(
            EmployeeNotification.user_id == user_id,
            EmployeeNotification.is_read.is_(False),
        )
        .values(is_read=True)
    )
    db.commit()
    return int(result.rowcount or 0)
