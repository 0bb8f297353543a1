from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ephemera.logging import get_logger
from ephemera.service.connections import POLICY_UNAUTHORIZED, Connection
from ephemera.service.identity import ResolvedIdentity
from ephemera.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

AUTH_REQUIRED = "Authentication required."
ROOM_REQUIRED = "Conversation ID is required."


async def _respond(ws: WebSocket, event: str, data: Optional[dict] = None) -> None:
    await ws.send_json({"event": "response", "data": {"event": event, **(data or {})}})


async def _error(ws: WebSocket, event: Optional[str], message: str) -> None:
    await ws.send_json({"event": "error", "data": {"event": event, "message": message}})


async def _authenticate_event(
    runtime, conn: Connection, token: Optional[str]
) -> Optional[ResolvedIdentity]:
    """Identity for one event, resolved from its own token or the bound one.

    The bound token goes through the resolver on every event, so expiry and
    token_version bumps made by any worker take effect immediately.
    """
    raw = token or conn.token
    if not raw:
        return None
    identity = await runtime.identity.resolve(raw)
    if identity is None:
        if raw == conn.token:
            runtime.connections.clear_identity(conn.id)
        return None
    runtime.connections.bind_identity(conn.id, identity, raw)
    return identity


async def _reject_stale(ws: WebSocket, conn: Connection, event: str) -> None:
    logger.info("socket_identity_stale", connection_id=conn.id)
    await _error(ws, event, AUTH_REQUIRED)
    await ws.close(code=POLICY_UNAUTHORIZED)


async def _handle_event(runtime, ws: WebSocket, conn: Connection, message: Any) -> bool:
    """Dispatch one client event. Returns False when the socket was closed."""
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        await _error(ws, None, "Events must be objects with an 'event' name.")
        return True
    event = message["event"]
    data = message.get("data") or {}
    if not isinstance(data, dict):
        data = {}
    token = message.get("token") or data.get("token")

    if event == "ping":
        await _respond(ws, event, {"pong": True})
        return True

    if event == "authenticate":
        identity = await runtime.identity.resolve(token) if token else None
        if identity is None:
            logger.info("socket_auth_failed", connection_id=conn.id)
            await _error(ws, event, AUTH_REQUIRED)
            await ws.close(code=POLICY_UNAUTHORIZED)
            return False
        runtime.connections.bind_identity(conn.id, identity, token)
        await _respond(ws, event, {"user_id": identity.user_id, "verified": identity.verified})
        return True

    if event == "join-conversation":
        room = data.get("convoId")
        if not room:
            await _error(ws, event, ROOM_REQUIRED)
            return True
        was_bound = conn.token is not None
        identity = await _authenticate_event(runtime, conn, token)
        if identity is None:
            if was_bound and conn.token is None:
                await _reject_stale(ws, conn, event)
                return False
            await _error(ws, event, AUTH_REQUIRED)
            return True
        runtime.connections.join(conn.id, str(room))
        await _respond(ws, event, {"convoId": room, "joined": True})
        return True

    if event == "leave-conversation":
        room = data.get("convoId")
        if not room:
            await _error(ws, event, ROOM_REQUIRED)
            return True
        runtime.connections.leave(conn.id, str(room))
        await _respond(ws, event, {"convoId": room, "left": True})
        return True

    await _error(ws, event, "Unknown event.")
    return True


@router.websocket("/ws")
async def websocket_events(ws: WebSocket):
    """Real-time event socket; each event may carry its own access token."""
    runtime = get_runtime()
    await ws.accept()
    conn = runtime.connections.connect(ws)
    try:
        while True:
            message = await ws.receive_json()
            if not await _handle_event(runtime, ws, conn, message):
                return
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", connection_id=conn.id)
        await _error(ws, None, "Invalid JSON in request")
        await ws.close(code=1003)
    finally:
        runtime.connections.disconnect(conn.id)
