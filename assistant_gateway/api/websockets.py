"""
API Router: Socket Endpoints.

``/ws/chat`` and ``/ws/voice`` accept the upgrade, hand authentication to
the gateway (which closes the socket itself on failure) and then pump
text frames into the gateway state machine until the peer goes away.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from assistant_gateway.api.dependencies import get_services
from assistant_gateway.gateway.connection import GatewayConnection
from assistant_gateway.logging_config import generate_trace_id, get_logger, trace_id_var

logger = get_logger(__name__)
router = APIRouter(tags=["Sockets"])


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    sessionId: Optional[str] = None,
    token: Optional[str] = None,
) -> None:
    gateway = get_services(websocket).chat
    await _serve(websocket, sessionId, token, gateway.connect, gateway.handle_frame, gateway.disconnect)


@router.websocket("/ws/voice")
async def voice_socket(
    websocket: WebSocket,
    sessionId: Optional[str] = None,
    token: Optional[str] = None,
) -> None:
    relay = get_services(websocket).voice
    await _serve(websocket, sessionId, token, relay.connect, relay.handle_frame, relay.disconnect)


async def _serve(
    websocket: WebSocket,
    session_id: Optional[str],
    token: Optional[str],
    connect: Callable[..., Awaitable[Any]],
    handle_frame: Callable[[Any, Any], Awaitable[None]],
    disconnect: Callable[[Any], Awaitable[None]],
) -> None:
    await websocket.accept()
    trace_id_var.set(generate_trace_id())

    connection = GatewayConnection(
        send_json=websocket.send_json,
        close=lambda code: websocket.close(code=code),
    )
    ctx = await connect(connection, session_id, token)
    if not ctx.authenticated:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(ctx, raw)
    except WebSocketDisconnect as e:
        logger.info("socket_closed_by_peer", path=websocket.url.path, code=e.code)
    finally:
        await disconnect(ctx)
