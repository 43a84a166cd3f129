"""Tests for the in-memory session store and its shared lifecycle rules."""

import asyncio

import pytest

from assistant_gateway.errors import NotFoundError
from assistant_gateway.schemas.extraction import ExtractedField
from assistant_gateway.schemas.session import ChatRole, SessionStatus, VoiceStatus


def _field(name, value, confidence):
    return ExtractedField(field_name=name, value=value, confidence=confidence)


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_get(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        loaded = await sessions.get_session(session.id)
        assert loaded.status == SessionStatus.ACTIVE
        assert loaded.app_id == "app-1"
        assert loaded.created_at == loaded.last_seen_at

    @pytest.mark.asyncio
    async def test_unknown_session(self, sessions):
        assert await sessions.find_session("missing") is None
        with pytest.raises(NotFoundError) as exc:
            await sessions.get_session("missing")
        assert exc.value.code == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_touch_moves_last_seen(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        await asyncio.sleep(0.001)
        touched = await sessions.touch(session.id)
        assert touched.last_seen_at > session.last_seen_at

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        first = await sessions.end_session(session.id)
        await asyncio.sleep(0.001)
        second = await sessions.end_session(session.id)
        assert first.status == SessionStatus.ENDED
        assert second.status == SessionStatus.ENDED
        assert second.ended_at == first.ended_at

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        session.status = SessionStatus.ENDED
        assert (await sessions.get_session(session.id)).status == SessionStatus.ACTIVE


class TestMessages:
    @pytest.mark.asyncio
    async def test_append_order_is_preserved(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        for i in range(20):
            role = ChatRole.USER if i % 2 == 0 else ChatRole.ASSISTANT
            await sessions.append_message(session.id, role, f"m{i}")

        messages = await sessions.list_messages(session.id)
        assert [m.content for m in messages] == [f"m{i}" for i in range(20)]
        stamps = [m.created_at for m in messages]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_strict_order(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        await asyncio.gather(*(
            sessions.append_message(session.id, ChatRole.USER, f"m{i}") for i in range(25)
        ))
        stamps = [m.created_at for m in await sessions.list_messages(session.id)]
        assert len(stamps) == 25
        assert len(set(stamps)) == 25

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        for i in range(12):
            await sessions.append_message(session.id, ChatRole.USER, f"m{i}")
        recent = await sessions.list_messages(session.id, limit=10)
        assert [m.content for m in recent] == [f"m{i}" for i in range(2, 12)]
        assert await sessions.list_messages(session.id, limit=0) == []

    @pytest.mark.asyncio
    async def test_explicit_message_id(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        message = await sessions.append_message(session.id, ChatRole.ASSISTANT, "hi", message_id="msg-1")
        assert message.id == "msg-1"

    @pytest.mark.asyncio
    async def test_append_to_unknown_session(self, sessions):
        with pytest.raises(NotFoundError):
            await sessions.append_message("missing", ChatRole.USER, "hello")


class TestVoiceSessions:
    @pytest.mark.asyncio
    async def test_lifecycle(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        voice = await sessions.create_voice_session(session.id)
        assert voice.status == VoiceStatus.ACTIVE

        negotiated = await sessions.mark_voice_negotiated(voice.id)
        assert negotiated.signaling_channel_id == "negotiated"

        ended = await sessions.end_voice_session(voice.id)
        again = await sessions.end_voice_session(voice.id)
        assert ended.status == VoiceStatus.ENDED
        assert again.ended_at == ended.ended_at

    @pytest.mark.asyncio
    async def test_unknown_voice_session(self, sessions):
        with pytest.raises(NotFoundError) as exc:
            await sessions.get_voice_session("missing")
        assert exc.value.code == "NO_VOICE_SESSION"


class TestExtractionMerge:
    @pytest.mark.asyncio
    async def test_confidence_never_decreases(self, sessions, new_session):
        session = await sessions.create_session(new_session())

        await sessions.merge_extraction(session.id, [_field("age", 60, 0.6)])
        await sessions.merge_extraction(session.id, [_field("age", 65, 0.9)])
        outcome = await sessions.merge_extraction(session.id, [_field("age", 70, 0.4)])

        assert outcome.changed == []
        merged = await sessions.get_merged_fields(session.id)
        assert merged["age"].value == 65
        assert merged["age"].confidence == 0.9

    @pytest.mark.asyncio
    async def test_equal_confidence_keeps_existing(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        await sessions.merge_extraction(session.id, [_field("name", "Ann", 0.8)])
        outcome = await sessions.merge_extraction(session.id, [_field("name", "Anne", 0.8)])
        assert outcome.changed == []
        assert outcome.merged["name"].value == "Ann"

    @pytest.mark.asyncio
    async def test_concurrent_merges_keep_highest(self, sessions, new_session):
        session = await sessions.create_session(new_session())
        confidences = [0.3, 0.95, 0.5, 0.7, 0.1, 0.9]
        await asyncio.gather(*(
            sessions.merge_extraction(session.id, [_field("age", i, c)])
            for i, c in enumerate(confidences)
        ))
        merged = await sessions.get_merged_fields(session.id)
        assert merged["age"].confidence == 0.95
        assert merged["age"].value == 1
