"""
Transport wrapper and authentication gate shared by both socket gateways.

``GatewayConnection`` hides the concrete socket behind two callables so the
state machines can be driven by FastAPI WebSockets in production and by
plain fakes in tests. Sends are serialized per connection, because token
streaming, extraction updates and bus deliveries write concurrently, and
sends after close are dropped.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional

from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.protocol import ErrorCode, error_frame
from assistant_gateway.schemas.session import Session
from assistant_gateway.services.session_store import SessionStore
from assistant_gateway.services.token_service import TokenService

logger = get_logger(__name__)

SendJson = Callable[[dict[str, Any]], Awaitable[None]]
Close = Callable[[int], Awaitable[None]]

POLICY_VIOLATION = 1008  # WebSocket close code for rejected auth


class GatewayConnection:
    def __init__(self, send_json: SendJson, close: Close, connection_id: Optional[str] = None) -> None:
        self._send_json = send_json
        self._close = close
        self._lock = asyncio.Lock()
        self._closed = False
        self.connection_id = connection_id or uuid.uuid4().hex[:12]

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: dict[str, Any]) -> bool:
        """Send one frame. Returns False if the connection is (or just went) away."""
        if self._closed:
            return False
        async with self._lock:
            if self._closed:
                return False
            try:
                await self._send_json(frame)
                return True
            except Exception as e:
                logger.info("send_failed_marking_closed", connection_id=self.connection_id, error=str(e))
                self._closed = True
                return False

    async def send_error(self, code: ErrorCode, message: str) -> bool:
        return await self.send(error_frame(code, message))

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._close(code)
        except Exception as e:
            logger.debug("close_failed", connection_id=self.connection_id, error=str(e))

    def mark_closed(self) -> None:
        """Record that the peer already went away."""
        self._closed = True


async def authenticate(
    connection: GatewayConnection,
    session_id: Optional[str],
    token: Optional[str],
    tokens: TokenService,
    sessions: SessionStore,
) -> Session | None:
    """
    The single authorization gate for both protocols.

    On failure an ``error`` frame is sent, the connection is closed and
    None is returned; the caller must not enter its state machine.
    """
    if not session_id or not token:
        await _reject(connection, ErrorCode.MISSING_AUTH, "sessionId and token required")
        return None

    if not tokens.validate_for_session(token, session_id):
        await _reject(connection, ErrorCode.INVALID_TOKEN, "Invalid session token")
        return None

    session = await sessions.find_session(session_id)
    if session is None:
        await _reject(connection, ErrorCode.SESSION_NOT_FOUND, "Session not found")
        return None

    return session


async def _reject(connection: GatewayConnection, code: ErrorCode, message: str) -> None:
    logger.info("connection_rejected", connection_id=connection.connection_id, error_code=code.value)
    await connection.send_error(code, message)
    await connection.close(POLICY_VIOLATION)
