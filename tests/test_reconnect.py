"""Tests for the reconnection policy and the websockets client that applies it."""

import json
from contextlib import asynccontextmanager

import pytest

from assistant_gateway.client.reconnect import ReconnectExhausted, ReconnectPolicy
from assistant_gateway.client.widget_client import GatewayClient


class TestReconnectPolicy:
    def test_delay_doubles_up_to_cap(self):
        policy = ReconnectPolicy()
        assert [policy.delay_ms(n) for n in range(7)] == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    def test_gives_up_after_five_unexpected_drops(self):
        policy = ReconnectPolicy()
        delays = [policy.next_delay(explicit=False) for _ in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert policy.next_delay(explicit=False) is None
        assert policy.exhausted

    def test_success_resets_counter(self):
        policy = ReconnectPolicy()
        policy.next_delay(explicit=False)
        policy.next_delay(explicit=False)
        policy.on_connected()
        assert policy.attempts == 0
        assert policy.next_delay(explicit=False) == 1.0

    def test_explicit_disconnect_never_reconnects(self):
        policy = ReconnectPolicy()
        assert policy.next_delay(explicit=True) is None
        assert policy.attempts == 0


class FakeWebSocket:
    def __init__(self, frames):
        self._frames = list(frames)
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True


class TestGatewayClient:
    @pytest.mark.asyncio
    async def test_unreachable_server_surfaces_terminal_error(self):
        attempts = []
        sleeps = []

        @asynccontextmanager
        async def refuse(url):
            attempts.append(url)
            raise OSError("connection refused")
            yield

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async def ignore(frame):
            return None

        client = GatewayClient("ws://gw.test/ws/chat", ignore, sleep=fake_sleep, connector=refuse)
        with pytest.raises(ReconnectExhausted) as exc:
            await client.run()

        assert exc.value.attempts == 5
        assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert len(attempts) == 6

    @pytest.mark.asyncio
    async def test_explicit_close_stops_without_retry(self):
        ws = FakeWebSocket([json.dumps({"type": "session_ack", "status": "ok"}), json.dumps({"type": "token"})])
        received = []
        sleeps = []

        @asynccontextmanager
        async def accept(url):
            yield ws

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async def on_frame(frame):
            received.append(frame)
            await client.send_user_message("hi")
            await client.close()

        client = GatewayClient("ws://gw.test/ws/chat", on_frame, sleep=fake_sleep, connector=accept)
        await client.run()

        assert received == [{"type": "session_ack", "status": "ok"}]
        assert json.loads(ws.sent[0]) == {"type": "user_message", "content": "hi"}
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_drop_then_success_resets_attempts(self):
        outcomes = ["fail", "fail", "ok"]
        sleeps = []

        @asynccontextmanager
        async def flaky(url):
            if outcomes.pop(0) == "fail":
                raise OSError("refused")
            yield FakeWebSocket([json.dumps({"type": "session_ack"})])

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async def on_frame(frame):
            assert client.policy.attempts == 0
            await client.close()

        client = GatewayClient("ws://gw.test/ws/chat", on_frame, sleep=fake_sleep, connector=flaky)
        await client.run()
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_close_during_backoff_prevents_reconnect(self):
        attempts = []

        @asynccontextmanager
        async def refuse_once(url):
            attempts.append(url)
            if len(attempts) == 1:
                raise OSError("refused")
            yield FakeWebSocket([json.dumps({"type": "session_ack"})])

        async def close_while_waiting(seconds):
            await client.close()

        async def ignore(frame):
            return None

        client = GatewayClient("ws://gw.test/ws/chat", ignore, sleep=close_while_waiting, connector=refuse_once)
        await client.run()

        assert len(attempts) == 1
        assert not client.connected.is_set()
