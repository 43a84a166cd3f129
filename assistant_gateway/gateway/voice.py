"""
Voice Signaling Relay.

Carries WebRTC negotiation between the widget and a media server. No
audio passes through here; SDP and ICE candidates are handed to a
``MediaServerAdapter`` and the answer is relayed back.

    UNAUTHENTICATED -> AUTHENTICATED -> SESSION_STARTED -> OFFER_ANSWERED
                    \\-> REJECTED        -> NEGOTIATED -> (end) AUTHENTICATED

At most one voice session is active per connection; a second ``init``
supersedes the first.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from assistant_gateway.gateway.connection import GatewayConnection, authenticate
from assistant_gateway.logging_config import bind_connection, get_logger
from assistant_gateway.schemas.protocol import ErrorCode, ServerMessage, VoiceClientMessage
from assistant_gateway.services.media_adapter import MediaServerAdapter, PassthroughMediaAdapter
from assistant_gateway.services.session_store import SessionStore
from assistant_gateway.services.token_service import TokenService

logger = get_logger(__name__)

USER_ENDED = "USER_ENDED"


class VoiceState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    REJECTED = "REJECTED"
    AUTHENTICATED = "AUTHENTICATED"
    SESSION_STARTED = "SESSION_STARTED"
    OFFER_ANSWERED = "OFFER_ANSWERED"
    NEGOTIATED = "NEGOTIATED"


@dataclass
class VoiceConnectionContext:
    connection: GatewayConnection
    session_id: str = ""
    state: VoiceState = VoiceState.UNAUTHENTICATED
    voice_session_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.state not in (VoiceState.UNAUTHENTICATED, VoiceState.REJECTED)


class VoiceRelay:
    def __init__(
        self,
        sessions: SessionStore,
        tokens: TokenService,
        adapter: MediaServerAdapter | None = None,
    ) -> None:
        self.sessions = sessions
        self.tokens = tokens
        self.adapter = adapter or PassthroughMediaAdapter()

    async def connect(
        self,
        connection: GatewayConnection,
        session_id: Optional[str],
        token: Optional[str],
    ) -> VoiceConnectionContext:
        ctx = VoiceConnectionContext(connection=connection)
        bind_connection(connection.connection_id)

        session = await authenticate(connection, session_id, token, self.tokens, self.sessions)
        if session is None:
            ctx.state = VoiceState.REJECTED
            return ctx

        bind_connection(connection.connection_id, session.id)
        ctx.session_id = session.id
        ctx.state = VoiceState.AUTHENTICATED
        logger.info("voice_connected")
        return ctx

    async def disconnect(self, ctx: VoiceConnectionContext) -> None:
        """Close without a farewell frame; any active voice session is ended."""
        ctx.connection.mark_closed()
        if ctx.voice_session_id:
            try:
                await self._end_voice(ctx)
            except Exception as e:
                logger.error("voice_release_failed", error=str(e))
        logger.info("voice_disconnected")

    async def handle_frame(self, ctx: VoiceConnectionContext, raw: Any) -> None:
        if not ctx.authenticated:
            return

        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            if not isinstance(data, dict):
                raise ValueError("frame must be a JSON object")
            frame = VoiceClientMessage.model_validate(data)
        except (ValueError, PydanticValidationError):
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "Invalid message format")
            return

        handler = {
            "init": self._handle_init,
            "offer": self._handle_offer,
            "answer": self._handle_answer,
            "ice_candidate": self._handle_ice_candidate,
            "end_voice_session": self._handle_end,
        }.get(frame.type)

        if handler is None:
            await ctx.connection.send_error(
                ErrorCode.UNKNOWN_MESSAGE_TYPE, f"Unknown message type: {frame.type}"
            )
            return

        await handler(ctx, frame)

    async def _handle_init(self, ctx: VoiceConnectionContext, frame: VoiceClientMessage) -> None:
        try:
            if ctx.voice_session_id:
                logger.info("voice_session_superseded", voice_session_id=ctx.voice_session_id)
                await self._end_voice(ctx)

            voice = await self.sessions.create_voice_session(ctx.session_id)
        except Exception as e:
            logger.error("voice_init_failed", error=str(e))
            await ctx.connection.send_error(ErrorCode.INIT_FAILED, "Failed to start voice session")
            return

        ctx.voice_session_id = voice.id
        ctx.state = VoiceState.SESSION_STARTED
        await ctx.connection.send(ServerMessage(
            type="voice_session_started",
            session_id=ctx.session_id,
            voice_session_id=voice.id,
        ).to_wire())

    async def _handle_offer(self, ctx: VoiceConnectionContext, frame: VoiceClientMessage) -> None:
        if not await self._require_voice(ctx):
            return
        if not frame.sdp:
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "offer requires sdp")
            return

        try:
            answer_sdp = await self.adapter.negotiate_offer(ctx.voice_session_id, frame.sdp)
        except Exception as e:
            logger.error("voice_offer_failed", voice_session_id=ctx.voice_session_id, error=str(e))
            await ctx.connection.send_error(ErrorCode.OFFER_FAILED, "Failed to process offer")
            return

        ctx.state = VoiceState.OFFER_ANSWERED
        await ctx.connection.send(ServerMessage(
            type="answer",
            voice_session_id=ctx.voice_session_id,
            sdp=answer_sdp,
        ).to_wire())

    async def _handle_answer(self, ctx: VoiceConnectionContext, frame: VoiceClientMessage) -> None:
        if not await self._require_voice(ctx):
            return
        if not frame.sdp:
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "answer requires sdp")
            return

        try:
            await self.adapter.accept_answer(ctx.voice_session_id, frame.sdp)
            await self.sessions.mark_voice_negotiated(ctx.voice_session_id)
        except Exception as e:
            logger.error("voice_answer_failed", voice_session_id=ctx.voice_session_id, error=str(e))
            await ctx.connection.send_error(ErrorCode.ANSWER_FAILED, "Failed to process answer")
            return

        ctx.state = VoiceState.NEGOTIATED
        logger.info("voice_negotiated", voice_session_id=ctx.voice_session_id)

    async def _handle_ice_candidate(self, ctx: VoiceConnectionContext, frame: VoiceClientMessage) -> None:
        if not await self._require_voice(ctx):
            return
        if frame.candidate is None:
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "ice_candidate requires candidate")
            return

        try:
            await self.adapter.add_ice_candidate(ctx.voice_session_id, frame.candidate)
        except Exception as e:
            logger.error("voice_ice_failed", voice_session_id=ctx.voice_session_id, error=str(e))
            await ctx.connection.send_error(ErrorCode.ICE_FAILED, "Failed to process ICE candidate")

    async def _handle_end(self, ctx: VoiceConnectionContext, frame: VoiceClientMessage) -> None:
        if not ctx.voice_session_id:
            return
        voice_session_id = await self._end_voice(ctx)
        await ctx.connection.send(ServerMessage(
            type="voice_session_ended",
            voice_session_id=voice_session_id,
            reason=USER_ENDED,
        ).to_wire())

    async def _require_voice(self, ctx: VoiceConnectionContext) -> bool:
        if ctx.voice_session_id:
            return True
        await ctx.connection.send_error(ErrorCode.NO_VOICE_SESSION, "No active voice session")
        return False

    async def _end_voice(self, ctx: VoiceConnectionContext) -> Optional[str]:
        voice_session_id = ctx.voice_session_id
        ctx.voice_session_id = None
        ctx.state = VoiceState.AUTHENTICATED
        if voice_session_id is None:
            return None
        try:
            await self.adapter.release(voice_session_id)
        finally:
            await self.sessions.end_voice_session(voice_session_id)
        return voice_session_id
