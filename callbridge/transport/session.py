"""
Reconnecting websocket session to the streaming AI backend.

One session per call. Connect and reconnect attempts share one fixed-delay
retry budget; once it is spent ``on_failure`` fires and nothing retries
again. ``disconnect()`` zeroes the budget before closing so teardown never
races a reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets
from prometheus_client import Counter
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_fixed
from websockets.exceptions import ConnectionClosed, WebSocketException

from callbridge.config import TransportConfig
from callbridge.core.models import AudioChunk, ConnectionState, StreamSession
from callbridge.errors import TransportError
from callbridge.transport.codec import (
    MessageType,
    TransportMessage,
    build_audio_append,
    build_control,
    parse_message,
)

logger = structlog.get_logger(__name__)

_CONNECT_ATTEMPTS = Counter(
    "callbridge_transport_connect_attempts_total",
    "Transport websocket connect attempts (initial and reconnect)",
)
_RECONNECTS = Counter(
    "callbridge_transport_reconnects_total",
    "Unexpected transport closures that triggered a reconnect",
)
_AUDIO_BYTES_TX = Counter(
    "callbridge_transport_audio_tx_bytes_total",
    "PCM bytes forwarded to the streaming backend",
)

_RETRYABLE = (OSError, WebSocketException, asyncio.TimeoutError)

ConnectFactory = Callable[[str], Awaitable[Any]]
MessageCallback = Callable[[TransportMessage], None]
StateCallback = Callable[[bool], None]
FailureCallback = Callable[[str], None]


async def _open_websocket(url: str) -> Any:
    # Reply audio frames can exceed the default 1 MiB limit
    return await websockets.connect(url, max_size=None)


class TransportSession:
    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        *,
        connect_factory: Optional[ConnectFactory] = None,
        on_message: Optional[MessageCallback] = None,
        on_state: Optional[StateCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        self.config = config or TransportConfig()
        self._connect_factory = connect_factory or _open_websocket
        self.on_message = on_message
        self.on_state = on_state
        self.on_failure = on_failure

        self.stream: Optional[StreamSession] = None
        self._ws: Any = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._attempt_budget = self.config.max_reconnect_attempts
        self._closing = False

    @property
    def session_id(self) -> Optional[str]:
        return self.stream.session_id if self.stream else None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.stream is not None and self.stream.connection_state is ConnectionState.OPEN

    @property
    def attempt_budget(self) -> int:
        return self._attempt_budget

    async def connect(self, session_id: str) -> bool:
        """Open the websocket, retrying within the budget. Returns False on failure."""
        self._closing = False
        self._attempt_budget = self.config.max_reconnect_attempts
        self.stream = StreamSession(session_id=session_id)
        logger.info("Connecting transport", session_id=session_id, url=self.config.url)
        try:
            ws = await self._open_with_retry()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.stream.connection_state = ConnectionState.CLOSED
            logger.error(
                "Transport connect failed",
                session_id=session_id,
                attempts=self.stream.reconnect_attempt,
                error=str(exc),
            )
            return False
        if self._closing:
            await self._close_socket(ws)
            return False
        self._attach(ws)
        return True

    async def send_audio(self, chunk: AudioChunk) -> bool:
        """Forward one chunk. Returns False if the socket is not open."""
        if not chunk.data:
            return False
        sent = await self._send(build_audio_append(chunk, self.session_id))
        if sent:
            _AUDIO_BYTES_TX.inc(len(chunk.data))
        return sent

    async def send_control(self, action: str, **extra: Any) -> bool:
        return await self._send(build_control(action, self.session_id, **extra))

    async def disconnect(self) -> None:
        self._closing = True
        self._attempt_budget = 0
        await self._cancel(self._reconnect_task)
        self._reconnect_task = None

        ws = self._ws
        if ws is not None:
            try:
                await ws.send(build_control("close", self.session_id))
            except (ConnectionClosed, OSError):
                logger.debug("Transport close message not delivered", session_id=self.session_id)
            await self._close_socket(ws)
        self._ws = None

        await self._cancel(self._receive_task)
        self._receive_task = None
        if self.stream is not None and self.stream.connection_state is not ConnectionState.CLOSED:
            self.stream.connection_state = ConnectionState.CLOSED
            self._notify_state(False)
        logger.info("Transport disconnected", session_id=self.session_id)

    # Internals -------------------------------------------------------------

    def _stop_retrying(self, retry_state: RetryCallState) -> bool:
        return self._closing or retry_state.attempt_number >= self._attempt_budget

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transport connect attempt failed, will retry",
            session_id=self.session_id,
            attempt=retry_state.attempt_number,
            budget=self._attempt_budget,
            delay_sec=self.config.reconnect_delay_sec,
            error=str(exc) if exc else None,
        )

    async def _open_with_retry(self) -> Any:
        if self._attempt_budget <= 0:
            raise TransportError("transport retry budget is exhausted")
        retrying = AsyncRetrying(
            stop=self._stop_retrying,
            wait=wait_fixed(self.config.reconnect_delay_sec),
            retry=retry_if_exception_type(_RETRYABLE),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self.stream.reconnect_attempt = attempt.retry_state.attempt_number
                self.stream.connection_state = ConnectionState.CONNECTING
                _CONNECT_ATTEMPTS.inc()
                return await asyncio.wait_for(
                    self._connect_factory(self.config.url),
                    timeout=self.config.connect_timeout_sec,
                )
        raise TransportError("transport connect did not complete")

    def _attach(self, ws: Any) -> None:
        self._ws = ws
        self.stream.connection_state = ConnectionState.OPEN
        logger.info(
            "Transport connected",
            session_id=self.session_id,
            attempt=self.stream.reconnect_attempt,
        )
        self.stream.reconnect_attempt = 0
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._notify_state(True)

    async def _send(self, payload: str) -> bool:
        ws = self._ws
        if ws is None or self._closing:
            return False
        try:
            await ws.send(payload)
            return True
        except ConnectionClosed:
            # The receive loop observes the closure and schedules the reconnect
            logger.debug("Transport send on closed socket", session_id=self.session_id)
            return False

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                message = parse_message(raw)
                if message is None:
                    continue
                if message.type is MessageType.CONNECTION_ACK:
                    self._adopt_session_id(message)
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            logger.info("Transport connection closed", session_id=self.session_id)
        except Exception:
            logger.error("Transport receive loop error", session_id=self.session_id, exc_info=True)
        finally:
            if self._ws is ws:
                self._ws = None
                if self.stream is not None:
                    self.stream.connection_state = ConnectionState.CLOSED
                self._notify_state(False)
                if not self._closing:
                    self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        _RECONNECTS.inc()
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        logger.info("Transport reconnecting", session_id=self.session_id, budget=self._attempt_budget)
        try:
            ws = await self._open_with_retry()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closing:
                return
            if self.stream is not None:
                self.stream.connection_state = ConnectionState.CLOSED
            logger.error(
                "Transport reconnection exhausted attempts",
                session_id=self.session_id,
                attempts=self.stream.reconnect_attempt if self.stream else 0,
                error=str(exc),
            )
            self._attempt_budget = 0
            self._notify_failure(f"transport reconnect failed: {exc}")
            return
        if self._closing:
            await self._close_socket(ws)
            return
        self._attach(ws)

    def _adopt_session_id(self, message: TransportMessage) -> None:
        server_id = message.data.get("sessionId") or message.session_id
        if self.stream is None or not isinstance(server_id, str) or not server_id:
            return
        if server_id != self.stream.session_id:
            logger.info(
                "Adopting server session id",
                previous=self.stream.session_id,
                session_id=server_id,
            )
            self.stream.session_id = server_id

    def _dispatch(self, message: TransportMessage) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception:
            logger.error("Transport message handler failed", type=message.type.value, exc_info=True)

    def _notify_state(self, connected: bool) -> None:
        if self.on_state is not None:
            self.on_state(connected)

    def _notify_failure(self, reason: str) -> None:
        if self.on_failure is not None:
            self.on_failure(reason)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except (ConnectionClosed, OSError):
            logger.debug("Transport socket already closed")

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
