from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import AuditActorType, AuditLog
from app.security import CurrentUser

logger = logging.getLogger("app.audit")


def log_audit(
    master_db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool = True,
    company_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditLog | None:
    """Append an audit row to the master database and mirror it to the log stream.

    Audit rows live in the master database so that cross-tenant actions have one trail.
    A failed write is logged and never fails the action being audited.
    """
    row = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        company_id=company_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=details or {},
    )
    context = {
        "request_id": request_id,
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "company_id": company_id,
    }
    master_db.add(row)
    try:
        master_db.commit()
    except SQLAlchemyError:
        master_db.rollback()
        logger.exception("audit_log_write_failed", extra=context)
        return None

    logger.info(
        "audit_event",
        extra={**context, "entity_type": entity_type, "entity_id": entity_id, "success": success},
    )
    return row


def audit_user_action(
    request: Request,
    master_db: Session,
    user: CurrentUser,
    action: str,
    *,
    entity_type: str,
    entity_id: Any = None,
    company_id: int | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> AuditLog | None:
    return log_audit(
        master_db,
        actor_type=AuditActorType.USER,
        actor_id=str(user.user_id),
        action=action,
        success=success,
        company_id=company_id if company_id is not None else user.company_id,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
