from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.db import ConnectionManager
from app.errors import ApiError
from app.models import Company, UserBranch
from app.realtime import RealtimeHub, branch_room
from app.security import PERMISSION_VIEW_ALL_BRANCHES, CurrentUser, decode_token, user_from_claims

router = APIRouter(tags=["realtime"])
logger = logging.getLogger("app.realtime")

CLOSE_UNAUTHORIZED = 4401


def can_join_branch(manager: ConnectionManager, user: CurrentUser, branch_id: int) -> bool:
    if user.company_id is None:
        return False
    with manager.master_session() as master_db:
        company = master_db.get(Company, user.company_id)
        if company is None or not company.is_active:
            return False
        db_name = company.db_name
    if user.has_permission(PERMISSION_VIEW_ALL_BRANCHES):
        return True
    with manager.tenant_session(db_name) as db:
        assigned = db.scalar(
            select(UserBranch.id).where(UserBranch.user_id == user.user_id, UserBranch.branch_id == branch_id)
        )
    return assigned is not None


async def _pump(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _handle_branch_message(
    manager: ConnectionManager,
    hub: RealtimeHub,
    connection_id: str,
    user: CurrentUser,
    message: dict[str, Any],
    queue: asyncio.Queue[dict[str, Any]],
) -> None:
    action = message.get("action")
    raw_branch_id = message.get("branch_id")
    if action not in {"join_branch", "leave_branch"}:
        await queue.put({"event": "error", "data": {"message": f"Unknown action: {action}"}})
        return
    if not isinstance(raw_branch_id, int) or user.company_id is None:
        await queue.put({"event": "error", "data": {"message": "branch_id is required"}})
        return

    room = branch_room(user.company_id, raw_branch_id)
    if action == "leave_branch":
        hub.leave(connection_id, room)
        await queue.put({"event": "branch:left", "data": {"branch_id": raw_branch_id}})
        return

    try:
        allowed = await asyncio.to_thread(can_join_branch, manager, user, raw_branch_id)
    except (ApiError, SQLAlchemyError):
        logger.exception("realtime_join_check_failed", extra={"user_id": user.user_id, "branch_id": raw_branch_id})
        allowed = False
    if not allowed:
        await queue.put({"event": "error", "data": {"message": "No access to this branch", "branch_id": raw_branch_id}})
        return
    hub.join(connection_id, room)
    await queue.put({"event": "branch:joined", "data": {"branch_id": raw_branch_id}})


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    token = websocket.query_params.get("token") or ""
    try:
        user = user_from_claims(decode_token(token))
    except ApiError:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    hub: RealtimeHub = websocket.app.state.realtime_hub
    manager: ConnectionManager = websocket.app.state.connection_manager
    await websocket.accept()

    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    connection_id = hub.register(user.user_id, queue, asyncio.get_running_loop())
    pump = asyncio.create_task(_pump(websocket, queue))
    logger.info("realtime_connected", extra={"user_id": user.user_id, "connection_id": connection_id})
    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict):
                await _handle_branch_message(manager, hub, connection_id, user, message, queue)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(connection_id)
        pump.cancel()
        logger.info("realtime_disconnected", extra={"user_id": user.user_id, "connection_id": connection_id})
