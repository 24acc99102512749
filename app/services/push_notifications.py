from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ApiError
from app.logging_utils import truncate_error
from app.models import PushSubscription
from app.settings import get_settings, is_push_enabled

logger = logging.getLogger("app.notifications")

# Push services answer 404/410 for subscriptions that will never work again.
GONE_STATUS_CODES = frozenset({404, 410})
PUSH_TTL_SECONDS = 60


@dataclass(slots=True)
class PushOutcome:
    subscription_id: int
    endpoint: str
    delivered: bool
    status_code: int | None = None
    error: str | None = None

    @property
    def gone(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


def _invalid_subscription(message: str) -> ApiError:
    return ApiError(status_code=422, code="INVALID_PUSH_SUBSCRIPTION", message=message)


def get_push_public_config() -> dict[str, Any]:
    if not is_push_enabled():
        return {"enabled": False, "vapid_public_key": None}
    return {"enabled": True, "vapid_public_key": get_settings().push_vapid_public_key}


def _subscription_keys(subscription: dict[str, Any]) -> tuple[str, str, str]:
    keys = subscription.get("keys")
    if not isinstance(keys, dict):
        raise _invalid_subscription("Subscription keys are missing.")
    values = (
        str(subscription.get("endpoint") or "").strip(),
        str(keys.get("p256dh") or "").strip(),
        str(keys.get("auth") or "").strip(),
    )
    if not all(values):
        raise _invalid_subscription("Subscription payload is incomplete.")
    return values


def register_push_subscription(
    db: Session,
    *,
    user_id: int,
    subscription: dict[str, Any],
    user_agent: str | None,
) -> PushSubscription:
    """Store a browser subscription for ``user_id``.

    An endpoint is unique per browser, so registering a known endpoint reassigns it and
    clears its failure history.
    """
    if not is_push_enabled():
        raise ApiError(
            status_code=503,
            code="PUSH_NOT_CONFIGURED",
            message="Push notification service is not configured.",
        )

    endpoint, p256dh, auth_secret = _subscription_keys(subscription)
    row = db.scalar(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    if row is None:
        row = PushSubscription(endpoint=endpoint)
        db.add(row)
    row.user_id = user_id
    row.p256dh = p256dh
    row.auth = auth_secret
    row.user_agent = user_agent
    row.is_active = True
    row.failure_count = 0
    row.last_failure_reason = None

    db.commit()
    db.refresh(row)
    return row


def unregister_push_subscription(db: Session, *, user_id: int, endpoint: str) -> bool:
    endpoint = endpoint.strip()
    if not endpoint:
        raise _invalid_subscription("Endpoint is required.")

    row = db.scalar(
        select(PushSubscription)
        .where(PushSubscription.user_id == user_id)
        .where(PushSubscription.endpoint == endpoint)
    )
    if row is None:
        return False
    if row.is_active:
        row.is_active = False
        db.commit()
    return True


def list_active_push_subscriptions(db: Session, *, user_id: int | None = None) -> list[PushSubscription]:
    stmt = select(PushSubscription).where(PushSubscription.is_active.is_(True))
    if user_id is not None:
        stmt = stmt.where(PushSubscription.user_id == user_id)
    return list(db.scalars(stmt.order_by(PushSubscription.id.desc())).all())


def _push_once(row: PushSubscription, message: str) -> PushOutcome:
    settings = get_settings()
    outcome = PushOutcome(subscription_id=row.id, endpoint=row.endpoint, delivered=False)
    try:
        webpush(
            subscription_info={"endpoint": row.endpoint, "keys": {"p256dh": row.p256dh, "auth": row.auth}},
            data=message,
            vapid_private_key=settings.push_vapid_private_key,
            vapid_claims={"sub": settings.push_vapid_subject},
            ttl=PUSH_TTL_SECONDS,
        )
    except WebPushException as exc:
        response = getattr(exc, "response", None)
        outcome.status_code = getattr(response, "status_code", None)
        outcome.error = str(exc)
    except (OSError, ValueError) as exc:
        # Connection failures and malformed keys surface from the HTTP and crypto layers.
        outcome.error = str(exc)
    else:
        outcome.delivered = True
    return outcome


def _record_outcome(row: PushSubscription, outcome: PushOutcome, now_utc: datetime) -> bool:
    """Apply ``outcome`` to the row and return True when the row was deactivated."""
    if outcome.delivered:
        row.failure_count = 0
        row.last_success_at = now_utc
        row.last_failure_reason = None
        return False

    row.failure_count = (row.failure_count or 0) + 1
    row.last_failure_at = now_utc
    row.last_failure_reason = truncate_error(outcome.error or "unknown", limit=500)
    if not (outcome.gone and row.is_active):
        return False
    row.is_active = False
    logger.info(
        "push_subscription_deactivated",
        extra={"subscription_id": row.id, "user_id": row.user_id, "status_code": outcome.status_code},
    )
    return True


def send_push_to_subscriptions(
    db: Session,
    *,
    subscriptions: Iterable[PushSubscription],
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    rows = list(subscriptions)
    summary: dict[str, Any] = {"total_targets": len(rows), "sent": 0, "failed": 0, "deactivated": 0, "failures": []}
    if not rows:
        return summary
    if not is_push_enabled():
        summary["failed"] = len(rows)
        summary["failures"] = [{"subscription_id": row.id, "error": "push_disabled"} for row in rows]
        return summary

    now_utc = datetime.now(timezone.utc)
    message = json.dumps({"title": title, "body": body, "data": data or {}, "ts_utc": now_utc.isoformat()})
    for row in rows:
        outcome = _push_once(row, message)
        if _record_outcome(row, outcome, now_utc):
            summary["deactivated"] += 1
        if outcome.delivered:
            summary["sent"] += 1
            continue
        summary["failed"] += 1
        summary["failures"].append(
            {
                "subscription_id": outcome.subscription_id,
                "endpoint": outcome.endpoint,
                "status_code": outcome.status_code,
                "error": outcome.error,
            }
        )

    db.commit()
    return summary


def send_push_to_user(
    db: Session,
    *,
    user_id: int,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    summary = send_push_to_subscriptions(
        db,
        subscriptions=list_active_push_subscriptions(db, user_id=user_id),
        title=title,
        body=body,
        data=data,
    )
    summary["user_id"] = user_id
    return summary
