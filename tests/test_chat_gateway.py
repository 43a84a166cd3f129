"""Tests for the chat gateway state machine, driven through a recording socket."""

import asyncio
import json

import pytest

from assistant_gateway.errors import UpstreamError
from assistant_gateway.gateway.chat import ChatGateway, ChatState
from assistant_gateway.gateway.connection import POLICY_VIOLATION
from assistant_gateway.schemas.session import ChatRole, SessionStatus

from fakes import AGE_SCHEMA, SYSTEM_PROMPT, FakeLLM, RecordingSocket, wait_until


@pytest.fixture
def gateway(sessions, configs, tokens, llm, bus, settings):
    return ChatGateway(sessions, configs, tokens, llm, bus, settings)


@pytest.fixture
async def session(sessions, new_session):
    return await sessions.create_session(new_session())


async def _open(gateway, tokens, session_id):
    sock = RecordingSocket()
    ctx = await gateway.connect(sock.connection(), session_id, tokens.issue(session_id, "app-1"))
    return sock, ctx


async def _send(gateway, ctx, **frame):
    await gateway.handle_frame(ctx, json.dumps(frame))


async def _finish(ctx):
    if ctx.generation_task is not None:
        await ctx.generation_task


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, gateway, session):
        sock = RecordingSocket()
        ctx = await gateway.connect(sock.connection(), session.id, None)
        assert sock.errors() == ["MISSING_AUTH"]
        assert sock.closed_with == POLICY_VIOLATION
        assert ctx.state == ChatState.REJECTED

    @pytest.mark.asyncio
    async def test_invalid_token(self, gateway, session):
        sock = RecordingSocket()
        ctx = await gateway.connect(sock.connection(), session.id, "garbage")
        assert sock.errors() == ["INVALID_TOKEN"]
        assert sock.closed_with == POLICY_VIOLATION
        assert ctx.state == ChatState.REJECTED

    @pytest.mark.asyncio
    async def test_token_for_other_session(self, gateway, tokens, session):
        sock = RecordingSocket()
        await gateway.connect(sock.connection(), session.id, tokens.issue("someone-else", "app-1"))
        assert sock.errors() == ["INVALID_TOKEN"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, gateway, tokens):
        sock, ctx = await _open(gateway, tokens, "ghost")
        assert sock.errors() == ["SESSION_NOT_FOUND"]
        assert ctx.state == ChatState.REJECTED

    @pytest.mark.asyncio
    async def test_rejected_context_ignores_frames(self, gateway, session):
        sock = RecordingSocket()
        ctx = await gateway.connect(sock.connection(), session.id, None)
        await _send(gateway, ctx, type="user_message", content="hi")
        assert sock.errors() == ["MISSING_AUTH"]

    @pytest.mark.asyncio
    async def test_ack_and_bus_join(self, gateway, tokens, bus, sessions, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        assert sock.sent == [{"type": "session_ack", "sessionId": session.id, "status": "ok"}]
        assert ctx.state == ChatState.IDLE
        assert bus.members(session.id) == [ctx.connection_id]
        assert (await sessions.get_session(session.id)).last_seen_at >= session.last_seen_at

    @pytest.mark.asyncio
    async def test_init_reacknowledges(self, gateway, tokens, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        await _send(gateway, ctx, type="init", sessionId=session.id)
        assert len(sock.of_type("session_ack")) == 2
        assert ctx.state == ChatState.IDLE


class TestGeneration:
    @pytest.mark.asyncio
    async def test_streams_tokens_then_message(self, gateway, tokens, sessions, llm, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        await _send(gateway, ctx, type="user_message", content="Hi!")
        await _finish(ctx)

        token_frames = sock.of_type("token")
        final = sock.of_type("message")
        assert [f["delta"] for f in token_frames] == ["Hello", " there", "!"]
        assert len(final) == 1
        assert final[0]["role"] == "assistant"
        assert final[0]["content"] == "Hello there!"
        assert {f["messageId"] for f in token_frames} == {final[0]["messageId"]}
        assert ctx.state == ChatState.IDLE

        history = await sessions.list_messages(session.id)
        assert [(m.role, m.content) for m in history] == [
            (ChatRole.USER, "Hi!"),
            (ChatRole.ASSISTANT, "Hello there!"),
        ]
        assert history[1].id == final[0]["messageId"]

    @pytest.mark.asyncio
    async def test_prompt_uses_system_profile_config_and_history(self, gateway, tokens, sessions, llm, session):
        for i in range(12):
            await sessions.append_message(session.id, ChatRole.USER if i % 2 == 0 else ChatRole.ASSISTANT, f"m{i}")

        sock, ctx = await _open(gateway, tokens, session.id)
        await _send(gateway, ctx, type="user_message", content="latest")
        await _finish(ctx)

        call = llm.stream_calls[0]
        messages = call["messages"]
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(2, 12)]
        assert messages[1]["role"] == "user"
        assert messages[2]["role"] == "assistant"
        assert messages[-1] == {"role": "user", "content": "latest"}
        assert (call["model"], call["temperature"], call["max_tokens"]) == ("gpt-4o-mini", 0.3, 500)

    @pytest.mark.asyncio
    async def test_second_message_while_generating_rejected(self, gateway, tokens, llm, sessions, session):
        llm.gate = asyncio.Event()
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="first")
        assert ctx.state == ChatState.GENERATING
        await _send(gateway, ctx, type="user_message", content="second")
        assert sock.errors() == ["GENERATION_IN_PROGRESS"]

        llm.gate.set()
        await _finish(ctx)
        assert len(llm.stream_calls) == 1
        contents = [m.content for m in await sessions.list_messages(session.id)]
        assert "second" not in contents

    @pytest.mark.asyncio
    async def test_llm_failure_reports_and_recovers(self, gateway, tokens, llm, session):
        llm.stream_error = UpstreamError("provider down")
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="hello")
        await _finish(ctx)
        assert sock.errors() == ["MESSAGE_FAILED"]
        assert ctx.state == ChatState.IDLE
        assert sock.of_type("message") == []

        llm.stream_error = None
        await _send(gateway, ctx, type="user_message", content="again")
        await _finish(ctx)
        assert len(sock.of_type("message")) == 1

    @pytest.mark.asyncio
    async def test_timeout_reports_message_failed(self, sessions, configs, tokens, bus, settings, session):
        class StuckLLM(FakeLLM):
            async def stream_chat(self, messages, model, temperature=0.7, max_tokens=2000):
                await asyncio.sleep(10)
                yield "never"

        settings.llm_timeout_seconds = 0.05
        gateway = ChatGateway(sessions, configs, tokens, StuckLLM(), bus, settings)
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="hello")
        await _finish(ctx)
        assert sock.errors() == ["MESSAGE_FAILED"]
        assert ctx.state == ChatState.IDLE

    @pytest.mark.parametrize("frame, code", [
        ({"type": "user_message", "content": "   "}, "EMPTY_MESSAGE"),
        ({"type": "user_message"}, "EMPTY_MESSAGE"),
        ({"type": "dance"}, "UNKNOWN_MESSAGE_TYPE"),
        ({"content": "no type"}, "INVALID_MESSAGE"),
        ({"type": "typing", "state": "maybe"}, "INVALID_MESSAGE"),
    ])
    @pytest.mark.asyncio
    async def test_bad_frames(self, gateway, tokens, session, frame, code):
        sock, ctx = await _open(gateway, tokens, session.id)
        await gateway.handle_frame(ctx, json.dumps(frame))
        assert sock.errors() == [code]
        assert ctx.state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_non_json_frame(self, gateway, tokens, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        await gateway.handle_frame(ctx, "{not json")
        await gateway.handle_frame(ctx, "[1, 2]")
        assert sock.errors() == ["INVALID_MESSAGE", "INVALID_MESSAGE"]


class TestEndSession:
    @pytest.mark.asyncio
    async def test_end_stops_generation_and_blocks_messages(self, gateway, tokens, llm, sessions, session):
        llm.gate = asyncio.Event()
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="tell me a story")
        await wait_until(lambda: len(llm.stream_calls) == 1)
        await _send(gateway, ctx, type="end_session")
        llm.gate.set()
        await asyncio.sleep(0.05)

        assert ctx.state == ChatState.ENDED
        assert sock.of_type("token") == []
        assert sock.of_type("message") == []
        assert sock.of_type("status") == [{"type": "status", "sessionId": session.id, "status": "session_ended"}]
        assert (await sessions.get_session(session.id)).status == SessionStatus.ENDED

        await _send(gateway, ctx, type="user_message", content="hello?")
        assert sock.errors() == ["SESSION_ENDED"]

    @pytest.mark.asyncio
    async def test_end_twice_is_harmless(self, gateway, tokens, sessions, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        await _send(gateway, ctx, type="end_session")
        ended_at = (await sessions.get_session(session.id)).ended_at
        await _send(gateway, ctx, type="end_session")
        assert sock.errors() == []
        assert (await sessions.get_session(session.id)).ended_at == ended_at

    @pytest.mark.asyncio
    async def test_reconnect_to_ended_session(self, gateway, tokens, sessions, session):
        await sessions.end_session(session.id)
        sock, ctx = await _open(gateway, tokens, session.id)
        assert sock.of_type("session_ack")
        assert ctx.state == ChatState.ENDED


class TestTypingBroadcast:
    @pytest.mark.asyncio
    async def test_relayed_to_peers_only(self, gateway, tokens, sessions, session, new_session):
        sender, sender_ctx = await _open(gateway, tokens, session.id)
        peer, _ = await _open(gateway, tokens, session.id)
        other_session = await sessions.create_session(new_session())
        outsider, _ = await _open(gateway, tokens, other_session.id)

        await _send(gateway, sender_ctx, type="typing", state="on")

        assert sender.of_type("typing") == []
        assert peer.of_type("typing") == [{"type": "typing", "sessionId": session.id, "state": "on"}]
        assert outsider.of_type("typing") == []
        assert await sessions.list_messages(session.id) == []

    @pytest.mark.asyncio
    async def test_disconnect_leaves_group(self, gateway, tokens, bus, session):
        _, ctx = await _open(gateway, tokens, session.id)
        await gateway.disconnect(ctx)
        assert bus.members(session.id) == []


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_mid_generation_stops_tokens(self, gateway, tokens, llm, sessions, session):
        llm.gate = asyncio.Event()
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="tell me a story")
        await wait_until(lambda: len(llm.stream_calls) == 1)
        await gateway.disconnect(ctx)
        llm.gate.set()
        await asyncio.sleep(0.05)

        assert ctx.generation_task is None
        assert sock.of_type("token") == []
        assert sock.of_type("message") == []
        roles = [m.role for m in await sessions.list_messages(session.id)]
        assert roles == [ChatRole.USER]

    @pytest.mark.asyncio
    async def test_extraction_still_merged_after_close(self, gateway, tokens, llm, sessions, new_session):
        llm.tool_arguments = {"extracted_fields": {"age": 65}, "confidence_scores": {"age": 0.9}}
        llm.tool_gate = asyncio.Event()
        session = await sessions.create_session(new_session(AGE_SCHEMA, "intake"))
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="I am 65")
        await _finish(ctx)
        await wait_until(lambda: len(llm.tool_calls) == 1)
        await gateway.disconnect(ctx)

        llm.tool_gate.set()
        await gateway.drain()

        merged = await sessions.get_merged_fields(session.id)
        assert (merged["age"].value, merged["age"].confidence) == (65, 0.9)
        assert sock.of_type("extraction_update") == []


class TestExtraction:
    @pytest.mark.asyncio
    async def test_update_pushed_and_merged(self, gateway, tokens, llm, sessions, new_session):
        llm.tool_arguments = {"extracted_fields": {"age": 65}, "confidence_scores": {"age": 1.0}}
        session = await sessions.create_session(new_session(AGE_SCHEMA, "intake"))
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="The patient is 65 years old")
        await _finish(ctx)
        await wait_until(lambda: sock.of_type("extraction_update"))

        update = sock.of_type("extraction_update")[0]
        assert update["extractionStatus"] == "complete"
        assert update["overallConfidence"] == 1.0
        assert update["fields"] == [{"fieldName": "age", "value": 65, "confidence": 1.0}]
        assert update["mergedFields"] == update["fields"]
        assert update["extractionId"].startswith("ext_")

        merged = await sessions.get_merged_fields(session.id)
        assert merged["age"].value == 65

        tool_turns = llm.tool_calls[0]["messages"]
        assert {"role": "user", "content": "The patient is 65 years old"} in tool_turns

    @pytest.mark.asyncio
    async def test_lower_confidence_does_not_replace(self, gateway, tokens, llm, sessions, new_session):
        session = await sessions.create_session(new_session(AGE_SCHEMA, "intake"))
        sock, ctx = await _open(gateway, tokens, session.id)

        for value, confidence in [(60, 0.6), (65, 0.9), (70, 0.4)]:
            llm.tool_arguments = {"extracted_fields": {"age": value}, "confidence_scores": {"age": confidence}}
            count = len(sock.of_type("extraction_update"))
            await _send(gateway, ctx, type="user_message", content=f"age {value}")
            await _finish(ctx)
            await wait_until(lambda: len(sock.of_type("extraction_update")) == count + 1)

        merged = await sessions.get_merged_fields(session.id)
        assert (merged["age"].value, merged["age"].confidence) == (65, 0.9)
        assert sock.of_type("extraction_update")[-1]["mergedFields"][0]["confidence"] == 0.9

    @pytest.mark.asyncio
    async def test_failed_extraction_sends_empty_partial(self, gateway, tokens, llm, sessions, new_session):
        llm.tool_error = UpstreamError("tool call failed")
        session = await sessions.create_session(new_session(AGE_SCHEMA, "intake"))
        sock, ctx = await _open(gateway, tokens, session.id)

        await _send(gateway, ctx, type="user_message", content="hello")
        await _finish(ctx)
        await wait_until(lambda: sock.of_type("extraction_update"))

        update = sock.of_type("extraction_update")[0]
        assert update["fields"] == []
        assert update["extractionStatus"] == "partial"
        assert len(sock.of_type("message")) == 1

    @pytest.mark.asyncio
    async def test_no_extraction_without_schema(self, gateway, tokens, llm, session):
        sock, ctx = await _open(gateway, tokens, session.id)
        await _send(gateway, ctx, type="user_message", content="hello")
        await _finish(ctx)
        await asyncio.sleep(0.02)
        assert llm.tool_calls == []
        assert sock.of_type("extraction_update") == []
