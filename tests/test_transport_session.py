import asyncio
import json

import pytest

from callbridge.config import TransportConfig
from callbridge.core.models import AudioChunk, ConnectionState
from callbridge.transport.codec import MessageType
from callbridge.transport.session import TransportSession


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, payload):
        self.sent.append(payload)

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, payload):
        self._incoming.put_nowait(payload)

    def drop(self):
        """Simulate the server going away."""
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ScriptedConnector:
    """Returns/raises the scripted outcomes in order, then keeps raising."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def eventually(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def make_session(connector, attempts=3, **callbacks):
    config = TransportConfig(
        url="ws://127.0.0.1:9/ws",
        max_reconnect_attempts=attempts,
        reconnect_delay_sec=0.0,
        connect_timeout_sec=1.0,
    )
    return TransportSession(config, connect_factory=connector, **callbacks)


@pytest.mark.asyncio
async def test_connect_success():
    ws = FakeWebSocket()
    states = []
    session = make_session(ScriptedConnector(ws), on_state=states.append)

    assert await session.connect("session_1_aaaaaaaaa") is True
    assert session.connected
    assert session.stream.connection_state is ConnectionState.OPEN
    assert session.stream.reconnect_attempt == 0
    assert states == [True]

    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_gives_up_after_budget():
    connector = ScriptedConnector()
    failures = []
    session = make_session(connector, attempts=3, on_failure=failures.append)

    assert await session.connect("s") is False
    assert connector.calls == 3
    assert session.stream.reconnect_attempt == 3
    assert session.stream.connection_state is ConnectionState.CLOSED
    # Initial connect failure is reported through the return value only
    assert failures == []


@pytest.mark.asyncio
async def test_connect_succeeds_within_budget():
    ws = FakeWebSocket()
    connector = ScriptedConnector(OSError("refused"), asyncio.TimeoutError(), ws)
    session = make_session(connector, attempts=3)

    assert await session.connect("s") is True
    assert connector.calls == 3
    await session.disconnect()


@pytest.mark.asyncio
async def test_non_network_error_not_retried():
    connector = ScriptedConnector(ValueError("bad url"))
    session = make_session(connector, attempts=5)

    assert await session.connect("s") is False
    assert connector.calls == 1


@pytest.mark.asyncio
async def test_inbound_messages_dispatched_and_ack_adopts_session_id():
    ws = FakeWebSocket()
    received = []
    session = make_session(ScriptedConnector(ws), on_message=received.append)
    await session.connect("session_local")

    ws.push(json.dumps({"type": "connection-ack", "data": {"sessionId": "session_server"}}))
    ws.push("{garbage")
    ws.push(json.dumps({"type": "unknown-type", "data": {}}))
    ws.push(json.dumps({"type": "transcription", "data": {"text": "hi"}}))
    ws.push(b"\x01\x02")
    await eventually(lambda: len(received) == 3)

    assert [m.type for m in received] == [
        MessageType.CONNECTION_ACK,
        MessageType.TRANSCRIPTION,
        MessageType.RESPONSE,
    ]
    assert session.session_id == "session_server"
    await session.disconnect()


@pytest.mark.asyncio
async def test_send_audio_and_control():
    ws = FakeWebSocket()
    session = make_session(ScriptedConnector(ws))
    await session.connect("s1")

    assert await session.send_audio(AudioChunk(data=b"\x00\x01"))
    assert await session.send_control("interrupt")
    assert not await session.send_audio(AudioChunk(data=b""))

    sent = [json.loads(p) for p in ws.sent]
    assert [p["type"] for p in sent] == ["audio-append", "control"]
    assert sent[0]["sessionId"] == "s1"
    await session.disconnect()


@pytest.mark.asyncio
async def test_send_before_connect_is_dropped():
    session = make_session(ScriptedConnector())
    assert await session.send_audio(AudioChunk(data=b"\x00\x01")) is False


@pytest.mark.asyncio
async def test_reconnects_after_unexpected_close():
    ws1, ws2 = FakeWebSocket(), FakeWebSocket()
    connector = ScriptedConnector(ws1, OSError("refused"), ws2)
    states = []
    session = make_session(connector, attempts=3, on_state=states.append)
    await session.connect("s")

    ws1.drop()
    await eventually(lambda: states == [True, False, True])

    assert connector.calls == 3
    assert session.connected
    assert session.stream.reconnect_attempt == 0
    await session.disconnect()


@pytest.mark.asyncio
async def test_reconnect_budget_exhaustion_is_terminal():
    ws = FakeWebSocket()
    connector = ScriptedConnector(ws)
    failures = []
    session = make_session(connector, attempts=4, on_failure=failures.append)
    await session.connect("s")

    ws.drop()
    await eventually(lambda: failures)
    await asyncio.sleep(0.05)

    # 1 initial connect + exactly 4 reconnect attempts
    assert connector.calls == 5
    assert len(failures) == 1
    assert session.attempt_budget == 0
    assert not session.connected
    assert session.stream.connection_state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_disconnect_sends_close_and_never_reconnects():
    ws = FakeWebSocket()
    connector = ScriptedConnector(ws, FakeWebSocket())
    states = []
    session = make_session(connector, on_state=states.append)
    await session.connect("s1")

    await session.disconnect()
    await asyncio.sleep(0.05)

    assert ws.closed
    assert json.loads(ws.sent[-1])["data"] == {"action": "close"}
    assert session.attempt_budget == 0
    assert connector.calls == 1
    assert states == [True, False]
    assert session.stream.connection_state is ConnectionState.CLOSED

    # Idempotent
    await session.disconnect()
    assert states == [True, False]
