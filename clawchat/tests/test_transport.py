"""Tests for the websocket transport and its reconnection backoff."""

import asyncio
import json

import pytest
import websockets

from clawchat.client.config import RecoveryConfig
from clawchat.client.transport import ConnectionState, WebSocketTransport, calculate_backoff


class TestCalculateBackoff:

    def test_exponential_growth(self):
        config = RecoveryConfig(base_delay=1.0, max_delay=100.0, jitter_factor=0.0)
        assert calculate_backoff(1, config) == pytest.approx(1.0)
        assert calculate_backoff(2, config) == pytest.approx(2.0)
        assert calculate_backoff(3, config) == pytest.approx(4.0)

    def test_max_delay_cap(self):
        config = RecoveryConfig(base_delay=1.0, max_delay=5.0, jitter_factor=0.0)
        assert calculate_backoff(10, config) == pytest.approx(5.0)

    def test_jitter_bounds(self):
        config = RecoveryConfig(base_delay=2.0, max_delay=2.0, jitter_factor=0.5)
        for _ in range(50):
            delay = calculate_backoff(1, config)
            assert 1.0 <= delay <= 3.0


class TestDelivery:

    def setup_method(self):
        self.frames = []
        self.transport = WebSocketTransport("ws://127.0.0.1:1")
        self.transport.set_message_callback(self.frames.append)

    def test_decodes_text_and_bytes(self):
        self.transport._deliver('{"type": "hello"}')
        self.transport._deliver(b'{"type": "res", "id": "x-1"}')
        assert self.frames == [{"type": "hello"}, {"type": "res", "id": "x-1"}]

    def test_drops_undecodable_frames(self):
        self.transport._deliver("not json")
        self.transport._deliver('{"type": "hello"}')
        assert self.frames == [{"type": "hello"}]

    def test_callback_errors_are_contained(self):
        def broken(frame):
            raise RuntimeError("handler failed")

        self.transport.set_message_callback(broken)
        self.transport._deliver('{"type": "hello"}')

    def test_send_when_disconnected(self):
        assert self.transport.state == ConnectionState.DISCONNECTED
        assert not self.transport.send({"type": "req", "id": "x-1", "method": "health"})


class TestWebSocketTransport:

    @pytest.mark.asyncio
    async def test_round_trip_and_close(self):
        received = []
        server_got = asyncio.Event()

        async def handler(ws):
            await ws.send(json.dumps({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n"}}))
            await ws.send("garbage")
            async for message in ws:
                received.append(json.loads(message))
                server_got.set()

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(f"ws://127.0.0.1:{port}", RecoveryConfig(enabled=False))
            frames = []
            states = []
            connected = asyncio.Event()

            def on_frame(frame):
                frames.append(frame)
                transport.send({"type": "req", "id": "connect-1", "method": "connect"})

            def on_state(state):
                states.append(state)
                if state == ConnectionState.CONNECTED:
                    connected.set()

            transport.set_message_callback(on_frame)
            transport.set_state_callback(on_state)
            transport.start()

            await asyncio.wait_for(connected.wait(), timeout=5)
            await asyncio.wait_for(server_got.wait(), timeout=5)
            await transport.close()

        assert [f["event"] for f in frames] == ["connect.challenge"]
        assert received == [{"type": "req", "id": "connect-1", "method": "connect"}]
        assert states[:2] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert states[-1] == ConnectionState.DISCONNECTED
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_gives_up_without_reconnect(self):
        states = []
        # Nothing listens on this port
        transport = WebSocketTransport(
            "ws://127.0.0.1:9",
            RecoveryConfig(enabled=False, connection_timeout=1.0),
        )
        transport.set_state_callback(states.append)
        task = transport.start()
        await asyncio.wait_for(task, timeout=5)

        assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_reconnects_until_max_attempts(self, monkeypatch):
        states = []
        delays = []

        def recording_backoff(attempt, config):
            delays.append(calculate_backoff(attempt, config))
            return delays[-1]

        monkeypatch.setattr("clawchat.client.transport.calculate_backoff", recording_backoff)
        transport = WebSocketTransport(
            "ws://127.0.0.1:9",
            RecoveryConfig(max_attempts=2, base_delay=0.1, max_delay=0.2, jitter_factor=0.0, connection_timeout=1.0),
        )
        transport.set_state_callback(states.append)
        await asyncio.wait_for(transport.start(), timeout=10)

        assert states.count(ConnectionState.RECONNECTING) == 2
        assert states[-1] == ConnectionState.DISCONNECTED
        assert delays == [pytest.approx(0.1), pytest.approx(0.2)]
