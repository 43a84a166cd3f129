"""
Python gateway client.

Connects to a chat or voice socket URL returned by session init, hands
every inbound frame to a callback and reconnects on unexpected drops
according to ``ReconnectPolicy``.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from assistant_gateway.client.reconnect import ReconnectExhausted, ReconnectPolicy
from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)

FrameHandler = Callable[[dict[str, Any]], Awaitable[None]]


class GatewayClient:
    def __init__(
        self,
        url: str,
        on_frame: FrameHandler,
        policy: Optional[ReconnectPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        connector: Callable[..., Any] = connect,
    ) -> None:
        self.url = url
        self.on_frame = on_frame
        self.policy = policy or ReconnectPolicy()
        self._sleep = sleep
        self._connector = connector
        self._ws: Optional[ClientConnection] = None
        self._explicit_close = False
        self.connected = asyncio.Event()

    async def run(self) -> None:
        """
        Connect and read until closed.

        Returns after an explicit ``close``. Raises ``ReconnectExhausted``
        once the policy gives up.
        """
        while not self._explicit_close:
            try:
                async with self._connector(self.url) as ws:
                    self._ws = ws
                    self.policy.on_connected()
                    self.connected.set()
                    logger.info("client_connected", url=self._redacted_url)
                    async for raw in ws:
                        await self._dispatch(raw)
            except (ConnectionClosed, InvalidHandshake, OSError) as e:
                logger.info("client_connection_lost", error=str(e))
            finally:
                self._ws = None
                self.connected.clear()

            delay = self.policy.next_delay(explicit=self._explicit_close)
            if delay is None:
                if self._explicit_close:
                    logger.info("client_closed")
                    return
                logger.warning("client_reconnect_exhausted", attempts=self.policy.attempts)
                raise ReconnectExhausted(self.policy.attempts)

            logger.info("client_reconnecting", attempt=self.policy.attempts, delay_seconds=delay)
            await self._sleep(delay)

        logger.info("client_closed")

    async def send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(frame))

    async def send_user_message(self, content: str) -> None:
        await self.send({"type": "user_message", "content": content})

    async def close(self) -> None:
        """Explicit disconnect; never followed by a reconnect."""
        self._explicit_close = True
        if self._ws is not None:
            await self._ws.close()

    async def _dispatch(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("client_malformed_frame")
            return
        await self.on_frame(frame)

    @property
    def _redacted_url(self) -> str:
        return self.url.split("?", 1)[0]
