"""Tests for the gateway push socket."""

import pytest

from zapflow.adapters.evolution_socket import (
    EvolutionSocket,
    ReconnectPolicy,
    build_socket_url,
    decode_frame,
)
from zapflow.infra.error_handler import MalformedPayloadError

EVENT_FRAME = '42["messages.upsert",{"key":{"id":"R1"}}]'


class FakeWebSocket:
    """Async-iterable socket replaying frames until closed."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self):
        self.closed = True


class FakeConnector:
    """Hands out the given sockets in order, then refuses connections."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append(url)
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestReconnectPolicy:

    def test_delays_double_up_to_cap_then_stop(self):
        policy = ReconnectPolicy(base_delay=1.0, max_delay=30.0, max_attempts=10)

        delays = [policy.next_delay() for _ in range(10)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0, 30.0, 30.0]
        assert policy.exhausted
        assert policy.next_delay() is None

    def test_reset(self):
        policy = ReconnectPolicy(max_attempts=2)
        policy.next_delay()
        policy.next_delay()
        policy.reset()
        assert policy.next_delay() == 1.0


class TestFrames:

    def test_build_socket_url(self):
        assert build_socket_url("wss://gw.example.com", "k") == (
            "wss://gw.example.com/socket.io/?EIO=4&transport=websocket&apikey=k"
        )
        assert build_socket_url("ws://localhost:8080/socket.io/") == (
            "ws://localhost:8080/socket.io/?EIO=4&transport=websocket"
        )

    def test_decode_event_frame(self):
        assert decode_frame(EVENT_FRAME) == {"event": "messages.upsert", "data": {"key": {"id": "R1"}}}

    def test_decode_wrapped_envelope(self):
        frame = '42["evolution",{"event":"messages.update","data":{"keyId":"R1"}}]'
        assert decode_frame(frame) == {"event": "messages.update", "data": {"keyId": "R1"}}

    def test_decode_plain_json_and_bytes(self):
        assert decode_frame(b'{"event":"messages.upsert"}') == {"event": "messages.upsert"}

    def test_control_and_garbage_frames(self):
        assert decode_frame("3") is None
        assert decode_frame("40") is None
        assert decode_frame("42[not json") is None
        assert decode_frame(None) is None


class TestRun:

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        sleep = RecordingSleep()

        async def on_event(event):
            pass

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=3),
            connect=FakeConnector(),
            sleep=sleep,
        )

        await socket.run()

        assert sleep.delays == [1.0, 2.0, 4.0]
        assert socket.gave_up
        assert not socket.running

    @pytest.mark.asyncio
    async def test_handshake_ping_and_events(self):
        ws = FakeWebSocket(['0{"sid":"abc"}', "2", EVENT_FRAME])
        connector = FakeConnector(ws)
        sleep = RecordingSleep()
        events = []

        async def on_event(event):
            events.append(event)

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=1),
            connect=connector,
            sleep=sleep,
        )

        await socket.run()

        assert ws.sent == ["40", "3"]
        assert events == [{"event": "messages.upsert", "data": {"key": {"id": "R1"}}}]
        # The server dropped the connection once; the retry was refused
        assert sleep.delays == [1.0]
        assert len(connector.calls) == 2
        assert socket.gave_up

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_drop_the_connection(self):
        ws = FakeWebSocket([EVENT_FRAME, EVENT_FRAME])
        calls = []

        async def on_event(event):
            calls.append(event)
            raise MalformedPayloadError("bad event")

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=0),
            connect=FakeConnector(ws),
            sleep=RecordingSleep(),
        )

        await socket.run()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unexpected_handler_failure_keeps_consuming(self):
        ws = FakeWebSocket([EVENT_FRAME, "2", EVENT_FRAME])
        connector = FakeConnector(ws)
        calls = []

        async def on_event(event):
            calls.append(event)
            if len(calls) == 1:
                raise RuntimeError("db down")

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=0),
            connect=connector,
            sleep=RecordingSleep(),
        )

        await socket.run()

        assert len(calls) == 2
        assert ws.sent == ["3"]
        assert len(connector.calls) == 1
        assert socket.gave_up

    @pytest.mark.asyncio
    async def test_close_stops_without_reconnecting(self):
        ws = FakeWebSocket([EVENT_FRAME, EVENT_FRAME])
        sleep = RecordingSleep()
        socket = None

        async def on_event(event):
            await socket.close()

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=3),
            connect=FakeConnector(ws),
            sleep=sleep,
        )

        await socket.run()

        assert ws.closed
        assert sleep.delays == []
        assert not socket.gave_up
        assert not socket.running

    @pytest.mark.asyncio
    async def test_trigger_rearms_after_giving_up(self):
        async def on_event(event):
            pass

        socket = EvolutionSocket(
            "wss://gw.example.com/socket.io/",
            on_event,
            policy=ReconnectPolicy(max_attempts=1),
            connect=FakeConnector(),
            sleep=RecordingSleep(),
        )
        await socket.run()
        assert socket.gave_up

        assert socket.trigger()
        assert not socket.gave_up
        assert socket.policy.attempts == 0
