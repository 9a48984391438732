# src/forum_stage/api/v1/endpoints/realtime.py
"""WebSocket gateway for realtime events.

Clients authenticate with a bearer token, either in the ``Authorization``
header or the ``token`` query parameter, and are joined to their user room.
They then send ``{"event": "joinThread" | "leaveThread", "data": {"threadId": ...}}``
messages to follow or stop following a thread.
"""

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from forum_stage.core.security import InvalidTokenError, decode_access_token
from forum_stage.services.container import ServiceContainer
from forum_stage.services.realtime import RealtimeConnection, RealtimeHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _extract_token(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization")
    if header:
        scheme, _, credentials = header.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
    token = websocket.query_params.get("token")
    return token or None


def _thread_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    thread_id = data.get("threadId")
    if not isinstance(thread_id, str) or not thread_id:
        return None
    return thread_id


async def _handle_message(
    websocket: WebSocket,
    hub: RealtimeHub,
    connection: RealtimeConnection,
    message: Any,
) -> None:
    event = message.get("event") if isinstance(message, dict) else None
    if event not in ("joinThread", "leaveThread"):
        await websocket.send_json({"event": "error", "data": {"message": "Unknown event."}})
        return

    thread_id = _thread_id(message.get("data"))
    if thread_id is None:
        await websocket.send_json({"event": "error", "data": {"message": "Invalid threadId."}})
        return

    if event == "joinThread":
        hub.join_thread(connection, thread_id)
        await websocket.send_json({"event": "thread.joined", "data": {"threadId": thread_id}})
    else:
        hub.leave_thread(connection, thread_id)
        await websocket.send_json({"event": "thread.left", "data": {"threadId": thread_id}})


@router.websocket("/ws")
async def realtime_gateway(websocket: WebSocket) -> None:
    services: ServiceContainer = websocket.app.state.services
    hub = services.realtime

    await websocket.accept()
    token = _extract_token(websocket)
    try:
        if token is None:
            raise InvalidTokenError("Missing auth token.")
        actor = decode_access_token(token, services.settings)
    except InvalidTokenError as exc:
        logger.warning("WebSocket client failed to authenticate: %s", exc)
        await websocket.send_json(
            {"event": "connection.error", "data": {"message": "Unauthorized"}}
        )
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection = hub.register(websocket, actor.user_id)
    await websocket.send_json({"event": "connection.success", "data": {"userId": actor.user_id}})
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json(
                    {"event": "error", "data": {"message": "Messages must be JSON."}}
                )
                continue
            await _handle_message(websocket, hub, connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(connection)
