"""
Session Bus.

Topic abstraction keyed by ``session_id``: every gateway connection joins
its session's group on open and leaves on close, and broadcast-only
frames (the typing indicator) are published to the group. The sender
never receives its own publication.

``InMemorySessionBus`` fans out inside one process. ``RedisSessionBus``
relays through Redis pub/sub so connections of one session can sit on
different gateway instances.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis

from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)

Deliver = Callable[[dict[str, Any]], Awaitable[None]]

CHANNEL_KEY = "session:{}"  # Redis channel per widget session


class InMemorySessionBus:
    def __init__(self) -> None:
        self._groups: dict[str, dict[str, Deliver]] = {}

    def members(self, session_id: str) -> list[str]:
        return list(self._groups.get(session_id, {}))

    async def join(self, session_id: str, member_id: str, deliver: Deliver) -> None:
        self._groups.setdefault(session_id, {})[member_id] = deliver
        logger.debug("bus_joined", session_id=session_id, member_id=member_id)

    async def leave(self, session_id: str, member_id: str) -> None:
        group = self._groups.get(session_id)
        if not group:
            return
        group.pop(member_id, None)
        if not group:
            del self._groups[session_id]
        logger.debug("bus_left", session_id=session_id, member_id=member_id)

    async def publish(self, session_id: str, message: dict[str, Any], sender_id: Optional[str] = None) -> None:
        await self._deliver_local(session_id, message, sender_id)

    async def close(self) -> None:
        self._groups.clear()

    async def _deliver_local(self, session_id: str, message: dict[str, Any], sender_id: Optional[str]) -> None:
        for member_id, deliver in list(self._groups.get(session_id, {}).items()):
            if member_id == sender_id:
                continue
            try:
                await deliver(message)
            except Exception as e:
                logger.warning("bus_delivery_failed", session_id=session_id, member_id=member_id, error=str(e))


class RedisSessionBus(InMemorySessionBus):
    """Local fan-out fed by Redis pub/sub."""

    def __init__(self, redis: aioredis.Redis) -> None:
        super().__init__()
        self._redis = redis
        self._pubsub = redis.pubsub(ignore_subscribe_messages=True)
        self._reader: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_url(cls, url: str) -> RedisSessionBus:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def join(self, session_id: str, member_id: str, deliver: Deliver) -> None:
        first_local = session_id not in self._groups
        await super().join(session_id, member_id, deliver)
        if first_local:
            await self._pubsub.subscribe(CHANNEL_KEY.format(session_id))
            self._ensure_reader()

    async def leave(self, session_id: str, member_id: str) -> None:
        await super().leave(session_id, member_id)
        if session_id not in self._groups:
            await self._pubsub.unsubscribe(CHANNEL_KEY.format(session_id))

    async def publish(self, session_id: str, message: dict[str, Any], sender_id: Optional[str] = None) -> None:
        envelope = json.dumps({"sender": sender_id, "message": message})
        await self._redis.publish(CHANNEL_KEY.format(session_id), envelope)

    async def close(self) -> None:
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._pubsub.aclose()
        await self._redis.aclose()
        await super().close()

    def _ensure_reader(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        while True:
            try:
                raw = await self._pubsub.get_message(timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("bus_read_error", error=str(e))
                await asyncio.sleep(1.0)
                continue
            if raw is None:
                # get_message returns immediately once nothing is subscribed
                await asyncio.sleep(0.05)
                continue
            if raw.get("type") != "message":
                continue
            channel = raw["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode()
            session_id = channel.split(":", 1)[1]
            try:
                envelope = json.loads(raw["data"])
            except (TypeError, json.JSONDecodeError):
                logger.warning("bus_malformed_envelope", session_id=session_id)
                continue
            await self._deliver_local(session_id, envelope.get("message", {}), envelope.get("sender"))
