from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import get_connection_manager, get_master_db
from app.errors import ApiError, webhook_error_response
from app.schemas import WEBHOOK_PAYLOAD_MODELS, WebhookEventKind
from app.services.webhooks import ingest_webhook
from app.tenancy import get_realtime_hub

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger("app.webhooks")


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid payload"


@router.post("/api/webhooks/odoo/{kind}")
def receive_erp_webhook(
    kind: WebhookEventKind,
    request: Request,
    body: dict[str, Any] = Body(...),
    master_db: Session = Depends(get_master_db),
) -> JSONResponse:
    request.state.actor = "erp"
    request.state.actor_id = kind.value
    try:
        payload = WEBHOOK_PAYLOAD_MODELS[kind].model_validate(body)
    except ValidationError as exc:
        return webhook_error_response(status_code=400, message=_validation_message(exc))

    try:
        result = ingest_webhook(
            get_connection_manager(request),
            master_db,
            kind,
            payload,
            hub=get_realtime_hub(request),
        )
    except ApiError as exc:
        logger.warning(
            "webhook_rejected",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "kind": kind.value,
                "status_code": exc.status_code,
                "error": exc.message,
            },
        )
        return webhook_error_response(status_code=exc.status_code, message=exc.message)
    except SQLAlchemyError:
        logger.exception(
            "webhook_failed",
            extra={"request_id": getattr(request.state, "request_id", None), "kind": kind.value},
        )
        return webhook_error_response(status_code=500, message="Internal server error")

    return JSONResponse(status_code=result.status_code, content={"success": True, "data": result.data})
