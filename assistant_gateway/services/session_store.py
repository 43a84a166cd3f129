"""
Session Store.

Durable record of widget sessions, their chat history, voice sessions and
the merged extraction field map. The gateways only ever hold read-mostly
copies; every mutation goes through this module.

Writes for the same ``session_id`` (last-seen updates, message appends,
status transitions, extraction merges) are serialized with a per-session
``asyncio.Lock``. Writes to different sessions never contend.

Two backends share the locking and lifecycle rules in ``SessionStore``:
``InMemorySessionStore`` for development and tests, and
``SupabaseSessionStore`` for deployments.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from assistant_gateway.errors import NotFoundError
from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.extraction import ExtractedField
from assistant_gateway.schemas.session import (
    ChatMessage,
    ChatRole,
    NewSession,
    Session,
    SessionStatus,
    VoiceSession,
    VoiceStatus,
)
from assistant_gateway.services.data_extraction import merge_fields

logger = get_logger(__name__)

NEGOTIATED_CHANNEL_ID = "negotiated"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MergeOutcome:
    """Result of folding one extraction into a session's field map."""
    merged: dict[str, ExtractedField]
    changed: list[str] = field(default_factory=list)


class SessionStore(ABC):
    """Backend-independent session lifecycle with per-session write serialization."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        async with lock:
            yield

    # -- Sessions --

    async def create_session(self, new: NewSession) -> Session:
        now = _utcnow()
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            last_seen_at=now,
            **new.model_dump(),
        )
        await self._insert_session(session)
        logger.info("session_created", session_id=session.id, app_id=session.app_id)
        return session

    async def find_session(self, session_id: str) -> Session | None:
        return await self._load_session(session_id)

    async def get_session(self, session_id: str) -> Session:
        session = await self._load_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", code="SESSION_NOT_FOUND", details={"session_id": session_id})
        return session

    async def touch(self, session_id: str) -> Session:
        """Update ``last_seen_at``."""
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            session.last_seen_at = _utcnow()
            await self._save_session(session)
            return session

    async def end_session(self, session_id: str) -> Session:
        """
        Mark a session ENDED.

        Idempotent: ending an already-ended session returns it unchanged,
        ``ended_at`` included.
        """
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            if session.status == SessionStatus.ENDED:
                return session
            now = _utcnow()
            session.status = SessionStatus.ENDED
            session.ended_at = now
            session.last_seen_at = now
            await self._save_session(session)
            logger.info("session_ended", session_id=session_id)
            return session

    # -- Chat history --

    async def append_message(
        self,
        session_id: str,
        role: ChatRole,
        content: str,
        message_id: Optional[str] = None,
    ) -> ChatMessage:
        """
        Append a message to the session's history.

        ``created_at`` is strictly increasing per session, so ordering by it
        always reproduces append order.
        """
        async with self._session_lock(session_id):
            await self.get_session(session_id)
            created_at = _utcnow()
            latest = await self._latest_message_at(session_id)
            if latest is not None and created_at <= latest:
                created_at = latest + timedelta(microseconds=1)
            message = ChatMessage(
                id=message_id or str(uuid.uuid4()),
                session_id=session_id,
                role=role,
                content=content,
                created_at=created_at,
            )
            await self._insert_message(message)
            return message

    async def list_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Messages in creation order; with ``limit``, only the most recent ones."""
        messages = await self._load_messages(session_id)
        messages.sort(key=lambda m: m.created_at)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    # -- Voice sessions --

    async def create_voice_session(self, widget_session_id: str) -> VoiceSession:
        async with self._session_lock(widget_session_id):
            await self.get_session(widget_session_id)
            voice = VoiceSession(
                id=str(uuid.uuid4()),
                widget_session_id=widget_session_id,
                status=VoiceStatus.ACTIVE,
                started_at=_utcnow(),
            )
            await self._insert_voice_session(voice)
            logger.info("voice_session_created", voice_session_id=voice.id, session_id=widget_session_id)
            return voice

    async def get_voice_session(self, voice_session_id: str) -> VoiceSession:
        voice = await self._load_voice_session(voice_session_id)
        if voice is None:
            raise NotFoundError("Voice session not found", code="NO_VOICE_SESSION")
        return voice

    async def end_voice_session(self, voice_session_id: str) -> VoiceSession:
        """Mark a voice session ENDED. Idempotent like ``end_session``."""
        voice = await self.get_voice_session(voice_session_id)
        async with self._session_lock(voice.widget_session_id):
            voice = await self.get_voice_session(voice_session_id)
            if voice.status == VoiceStatus.ENDED:
                return voice
            voice.status = VoiceStatus.ENDED
            voice.ended_at = _utcnow()
            await self._save_voice_session(voice)
            logger.info("voice_session_ended", voice_session_id=voice_session_id)
            return voice

    async def mark_voice_negotiated(
        self, voice_session_id: str, channel_id: str = NEGOTIATED_CHANNEL_ID
    ) -> VoiceSession:
        voice = await self.get_voice_session(voice_session_id)
        async with self._session_lock(voice.widget_session_id):
            voice = await self.get_voice_session(voice_session_id)
            voice.signaling_channel_id = channel_id
            await self._save_voice_session(voice)
            return voice

    # -- Extraction state --

    async def get_merged_fields(self, session_id: str) -> dict[str, ExtractedField]:
        session = await self.get_session(session_id)
        return dict(session.extracted_fields)

    async def merge_extraction(self, session_id: str, fields: Iterable[ExtractedField]) -> MergeOutcome:
        """
        Fold extracted fields into the session's merged map.

        Results are applied in the order callers reach the lock, which is
        completion order. A field only replaces the stored one when its
        confidence is strictly greater, so stored confidence never drops.
        """
        async with self._session_lock(session_id):
            session = await self.get_session(session_id)
            merged, changed = merge_fields(session.extracted_fields, fields)
            if changed:
                session.extracted_fields = merged
                await self._save_session(session)
            return MergeOutcome(merged=merged, changed=changed)

    # -- Backend primitives --

    @abstractmethod
    async def _insert_session(self, session: Session) -> None: ...

    @abstractmethod
    async def _load_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def _save_session(self, session: Session) -> None: ...

    @abstractmethod
    async def _insert_message(self, message: ChatMessage) -> None: ...

    @abstractmethod
    async def _load_messages(self, session_id: str) -> list[ChatMessage]: ...

    @abstractmethod
    async def _latest_message_at(self, session_id: str) -> Optional[datetime]: ...

    @abstractmethod
    async def _insert_voice_session(self, voice: VoiceSession) -> None: ...

    @abstractmethod
    async def _load_voice_session(self, voice_session_id: str) -> Optional[VoiceSession]: ...

    @abstractmethod
    async def _save_voice_session(self, voice: VoiceSession) -> None: ...


class InMemorySessionStore(SessionStore):
    """Process-local store. Rows are copied in and out so callers never share state."""

    def __init__(self) -> None:
        super().__init__()
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[ChatMessage]] = {}
        self._voice_sessions: dict[str, VoiceSession] = {}

    async def _insert_session(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)
        self._messages[session.id] = []

    async def _load_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def _save_session(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)

    async def _insert_message(self, message: ChatMessage) -> None:
        self._messages.setdefault(message.session_id, []).append(message.model_copy())

    async def _load_messages(self, session_id: str) -> list[ChatMessage]:
        return [m.model_copy() for m in self._messages.get(session_id, [])]

    async def _latest_message_at(self, session_id: str) -> Optional[datetime]:
        messages = self._messages.get(session_id)
        return messages[-1].created_at if messages else None

    async def _insert_voice_session(self, voice: VoiceSession) -> None:
        self._voice_sessions[voice.id] = voice.model_copy()

    async def _load_voice_session(self, voice_session_id: str) -> Optional[VoiceSession]:
        voice = self._voice_sessions.get(voice_session_id)
        return voice.model_copy() if voice else None

    async def _save_voice_session(self, voice: VoiceSession) -> None:
        self._voice_sessions[voice.id] = voice.model_copy()


class SupabaseSessionStore(SessionStore):
    """
    Supabase-backed store.

    Tables: ``widget_sessions``, ``chat_messages``, ``voice_sessions``
    (snake_case columns, jsonb for ``metadata`` and ``extracted_fields``).
    """

    SESSIONS = "widget_sessions"
    MESSAGES = "chat_messages"
    VOICE = "voice_sessions"

    def __init__(self, db: Any = None) -> None:
        super().__init__()
        if db is None:
            from assistant_gateway.db import get_db
            db = get_db()
        self._db = db

    @staticmethod
    def _row(model: Any) -> dict[str, Any]:
        return model.model_dump(mode="json")

    async def _insert_session(self, session: Session) -> None:
        self._db.insert_row(self.SESSIONS, self._row(session))

    async def _load_session(self, session_id: str) -> Optional[Session]:
        row = self._db.fetch_one(self.SESSIONS, id=session_id)
        return Session.model_validate(row) if row else None

    async def _save_session(self, session: Session) -> None:
        row = self._row(session)
        row.pop("id")
        self._db.update_row(self.SESSIONS, session.id, row)

    async def _insert_message(self, message: ChatMessage) -> None:
        self._db.insert_row(self.MESSAGES, self._row(message))

    async def _load_messages(self, session_id: str) -> list[ChatMessage]:
        rows = self._db.fetch_many(self.MESSAGES, order_by="created_at", session_id=session_id)
        return [ChatMessage.model_validate(r) for r in rows]

    async def _latest_message_at(self, session_id: str) -> Optional[datetime]:
        rows = self._db.fetch_many(
            self.MESSAGES, order_by="created_at", desc=True, limit=1, session_id=session_id
        )
        return ChatMessage.model_validate(rows[0]).created_at if rows else None

    async def _insert_voice_session(self, voice: VoiceSession) -> None:
        self._db.insert_row(self.VOICE, self._row(voice))

    async def _load_voice_session(self, voice_session_id: str) -> Optional[VoiceSession]:
        row = self._db.fetch_one(self.VOICE, id=voice_session_id)
        return VoiceSession.model_validate(row) if row else None

    async def _save_voice_session(self, voice: VoiceSession) -> None:
        row = self._row(voice)
        row.pop("id")
        self._db.update_row(self.VOICE, voice.id, row)
