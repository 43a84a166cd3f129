"""
Chat Gateway.

One ``ChatConnectionContext`` per WebSocket connection, driven through

    UNAUTHENTICATED -> IDLE <-> GENERATING -> ENDED
                    \\-> REJECTED

A ``user_message`` is persisted, then answered by streaming an LLM
completion back as ``token`` frames followed by one final ``message``
frame. While that happens the gateway optionally runs data extraction
over the conversation and pushes ``extraction_update`` frames as results
land. Only one generation is in flight per connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from assistant_gateway.config import ExtractionMode, Settings, get_settings
from assistant_gateway.errors import GatewayError
from assistant_gateway.gateway.connection import GatewayConnection, authenticate
from assistant_gateway.logging_config import bind_connection, get_logger
from assistant_gateway.schemas.app_config import LlmConfig
from assistant_gateway.schemas.protocol import ChatClientMessage, ErrorCode, ServerMessage
from assistant_gateway.schemas.session import ChatMessage, ChatRole, SessionMetadata
from assistant_gateway.services import data_extraction
from assistant_gateway.services.config_store import ConfigStore
from assistant_gateway.services.session_bus import InMemorySessionBus
from assistant_gateway.services.session_store import SessionStore
from assistant_gateway.services.token_service import TokenService

logger = get_logger(__name__)

TYPING_STATES = ("on", "off")


class ChatState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    REJECTED = "REJECTED"
    IDLE = "IDLE"
    GENERATING = "GENERATING"
    ENDED = "ENDED"


@dataclass
class ChatConnectionContext:
    connection: GatewayConnection
    session_id: str = ""
    app_id: str = ""
    state: ChatState = ChatState.UNAUTHENTICATED
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    generation_task: Optional[asyncio.Task[None]] = None
    extraction_tasks: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    @property
    def authenticated(self) -> bool:
        return self.state not in (ChatState.UNAUTHENTICATED, ChatState.REJECTED)


class ChatGateway:
    def __init__(
        self,
        sessions: SessionStore,
        configs: ConfigStore,
        tokens: TokenService,
        llm: Any,
        bus: InMemorySessionBus,
        settings: Settings | None = None,
    ) -> None:
        self.sessions = sessions
        self.configs = configs
        self.tokens = tokens
        self.llm = llm
        self.bus = bus
        self.settings = settings or get_settings()
        # Extraction outlives its connection so results still reach the merged map
        self._extractions: set[asyncio.Task[None]] = set()

    # -- Connection lifecycle --

    async def connect(
        self,
        connection: GatewayConnection,
        session_id: Optional[str],
        token: Optional[str],
    ) -> ChatConnectionContext:
        """
        Authenticate a new connection and acknowledge it.

        The returned context is REJECTED (and the connection already closed)
        when authentication failed.
        """
        ctx = ChatConnectionContext(connection=connection)
        bind_connection(connection.connection_id)

        session = await authenticate(connection, session_id, token, self.tokens, self.sessions)
        if session is None:
            ctx.state = ChatState.REJECTED
            return ctx

        bind_connection(connection.connection_id, session.id)
        ctx.session_id = session.id
        ctx.app_id = session.app_id
        ctx.metadata = session.metadata
        ctx.state = ChatState.IDLE if session.is_active else ChatState.ENDED

        await self.bus.join(session.id, connection.connection_id, connection.send)
        await self.sessions.touch(session.id)
        await self._send_ack(ctx)

        logger.info("chat_connected", state=ctx.state.value, extraction=ctx.metadata.extraction_enabled)
        return ctx

    async def disconnect(self, ctx: ChatConnectionContext) -> None:
        """
        Stop generation and leave the session group.

        Running extractions are left to finish; their frames are dropped by
        the closed connection but their fields are still merged.
        """
        ctx.connection.mark_closed()
        if not ctx.authenticated:
            return

        await _cancel(ctx.generation_task)
        await self.bus.leave(ctx.session_id, ctx.connection_id)
        logger.info("chat_disconnected", state=ctx.state.value, pending_extractions=len(ctx.extraction_tasks))

    async def drain(self) -> None:
        """Wait for extractions still running on behalf of closed connections."""
        if self._extractions:
            await asyncio.gather(*list(self._extractions), return_exceptions=True)

    # -- Inbound frames --

    async def handle_frame(self, ctx: ChatConnectionContext, raw: Any) -> None:
        if not ctx.authenticated:
            return

        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            if not isinstance(data, dict):
                raise ValueError("frame must be a JSON object")
            frame = ChatClientMessage.model_validate(data)
        except (ValueError, PydanticValidationError):
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "Invalid message format")
            return

        handler = {
            "init": self._handle_init,
            "user_message": self._handle_user_message,
            "typing": self._handle_typing,
            "end_session": self._handle_end_session,
        }.get(frame.type)

        if handler is None:
            await ctx.connection.send_error(
                ErrorCode.UNKNOWN_MESSAGE_TYPE, f"Unknown message type: {frame.type}"
            )
            return

        await handler(ctx, frame)

    async def _handle_init(self, ctx: ChatConnectionContext, frame: ChatClientMessage) -> None:
        await self._send_ack(ctx)

    async def _handle_user_message(self, ctx: ChatConnectionContext, frame: ChatClientMessage) -> None:
        if ctx.state == ChatState.ENDED:
            await ctx.connection.send_error(ErrorCode.SESSION_ENDED, "Session has ended")
            return
        if ctx.state == ChatState.GENERATING:
            await ctx.connection.send_error(
                ErrorCode.GENERATION_IN_PROGRESS, "A response is still being generated"
            )
            return

        content = (frame.content or "").strip()
        if not content:
            await ctx.connection.send_error(ErrorCode.EMPTY_MESSAGE, "Message content is empty")
            return

        # Gate before the first await so a racing frame sees GENERATING
        ctx.state = ChatState.GENERATING
        ctx.generation_task = asyncio.create_task(self._run_turn(ctx, content))

    async def _handle_typing(self, ctx: ChatConnectionContext, frame: ChatClientMessage) -> None:
        if frame.state not in TYPING_STATES:
            await ctx.connection.send_error(ErrorCode.INVALID_MESSAGE, "typing state must be 'on' or 'off'")
            return
        await self.bus.publish(
            ctx.session_id,
            ServerMessage(type="typing", session_id=ctx.session_id, state=frame.state).to_wire(),
            sender_id=ctx.connection_id,
        )

    async def _handle_end_session(self, ctx: ChatConnectionContext, frame: ChatClientMessage) -> None:
        ctx.state = ChatState.ENDED
        await _cancel(ctx.generation_task)
        await self.sessions.end_session(ctx.session_id)
        await ctx.connection.send(
            ServerMessage(type="status", session_id=ctx.session_id, status="session_ended").to_wire()
        )
        logger.info("chat_session_ended")

    # -- Generation --

    async def _run_turn(self, ctx: ChatConnectionContext, content: str) -> None:
        message_id = str(uuid.uuid4())
        try:
            async with asyncio.timeout(self.settings.llm_timeout_seconds):
                prior = await self.sessions.list_messages(ctx.session_id, limit=self.settings.history_window)
                await self.sessions.append_message(ctx.session_id, ChatRole.USER, content)

                if ctx.metadata.extraction_enabled:
                    self._spawn_extraction(ctx, prior, content)

                llm_config = await self._llm_config(ctx.app_id)
                system_prompt = await self.configs.system_prompt(ctx.app_id)
                messages = [
                    {"role": "system", "content": system_prompt},
                    *(m.as_prompt_message() for m in prior),
                    {"role": "user", "content": content},
                ]

                parts: list[str] = []
                stream = self.llm.stream_chat(
                    messages,
                    model=llm_config.model or self.settings.default_model,
                    temperature=llm_config.temperature,
                    max_tokens=llm_config.max_tokens,
                )
                async with contextlib.aclosing(stream):
                    async for delta in stream:
                        parts.append(delta)
                        await ctx.connection.send(
                            ServerMessage(type="token", message_id=message_id, delta=delta).to_wire()
                        )

                reply = "".join(parts)
                await self.sessions.append_message(
                    ctx.session_id, ChatRole.ASSISTANT, reply, message_id=message_id
                )

            await ctx.connection.send(ServerMessage(
                type="message",
                session_id=ctx.session_id,
                message_id=message_id,
                role="assistant",
                content=reply,
            ).to_wire())
            logger.info("generation_complete", message_id=message_id, chunks=len(parts))
        except asyncio.CancelledError:
            logger.info("generation_cancelled", message_id=message_id)
            raise
        except TimeoutError:
            logger.warning("generation_timeout", message_id=message_id)
            await ctx.connection.send_error(ErrorCode.MESSAGE_FAILED, "Response timed out")
        except GatewayError as e:
            logger.warning("generation_failed", message_id=message_id, error_code=e.code, error=e.message)
            await ctx.connection.send_error(ErrorCode.MESSAGE_FAILED, "Failed to generate a response")
        except Exception as e:
            logger.error("generation_unexpected_error", message_id=message_id, error=str(e), exc_info=True)
            await ctx.connection.send_error(ErrorCode.MESSAGE_FAILED, "Failed to generate a response")
        finally:
            if ctx.state == ChatState.GENERATING:
                ctx.state = ChatState.IDLE
            ctx.generation_task = None

    async def _llm_config(self, app_id: str) -> LlmConfig:
        config = await self.configs.get_active_config(app_id)
        return config.llm_config if config else LlmConfig()

    # -- Extraction --

    def _spawn_extraction(self, ctx: ChatConnectionContext, prior: list[ChatMessage], content: str) -> None:
        task = asyncio.create_task(self._run_extraction(ctx, prior, content))
        ctx.extraction_tasks.add(task)
        self._extractions.add(task)
        task.add_done_callback(ctx.extraction_tasks.discard)
        task.add_done_callback(self._extractions.discard)

    async def _run_extraction(self, ctx: ChatConnectionContext, prior: list[ChatMessage], content: str) -> None:
        schema = ctx.metadata.form_schema
        form_type = ctx.metadata.form_type
        if schema is None or not form_type:
            return

        try:
            if self.settings.extraction_mode == ExtractionMode.INCREMENTAL:
                previous = await self.sessions.get_merged_fields(ctx.session_id)
                result = await data_extraction.extract_from_message(
                    self.llm, content, previous.values(), schema, form_type
                )
            else:
                turns = [m.as_prompt_message() for m in prior]
                turns.append({"role": "user", "content": content})
                result = await data_extraction.extract(self.llm, turns, schema, form_type)

            outcome = await self.sessions.merge_extraction(ctx.session_id, result.fields)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("extraction_merge_failed", error=str(e))
            return

        await ctx.connection.send(ServerMessage(
            type="extraction_update",
            session_id=ctx.session_id,
            extraction_id=result.extraction_id,
            fields=result.fields,
            extraction_status=result.status.value,
            overall_confidence=result.confidence,
            merged_fields=list(outcome.merged.values()),
        ).to_wire())
        logger.info(
            "extraction_update_sent",
            extraction_id=result.extraction_id,
            changed=outcome.changed,
        )

    async def _send_ack(self, ctx: ChatConnectionContext) -> None:
        await ctx.connection.send(
            ServerMessage(type="session_ack", session_id=ctx.session_id, status="ok").to_wire()
        )


async def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
    """Cancel a task and wait until it has unwound."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
