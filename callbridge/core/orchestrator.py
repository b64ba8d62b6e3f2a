"""
Call orchestrator - the state machine behind one answered call.

Telephony push notifications and the watchdog poll are normalised to
idle/ringing/active and posted, together with capture, chunk and transport
events, to one queue consumed by a single dispatch loop. A transition is only
acted on when it changes the current classification, and the guard flags on
CallSession make session start and teardown single-shot even when both
sources report the same change.

Long work (answer settle delay, transport connect, chunk processing,
playback) runs in tasks so the dispatch loop can always observe a call-ended
event. Turn work is serialised through one worker per call, so turns are
appended in the order they are produced.

Nothing here ever hangs up the call: AI-path failures only end the AI path.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple, Union

import structlog
from prometheus_client import Counter, Gauge

from callbridge.audio.device import AudioDeviceAdapter
from callbridge.config import AppConfig
from callbridge.core.conversation import ConversationHistory
from callbridge.core.events import (
    CallEvent,
    CaptureFailed,
    ChunkReady,
    TelephonyEvent,
    TransportFailed,
    TransportMessage,
    TransportStateChanged,
)
from callbridge.core.models import AudioChunk, CallSession, CallState, TelephonyState, TurnRole
from callbridge.core.presentation import StatePublisher
from callbridge.core.timer import IntervalTimer
from callbridge.errors import AudioDeviceError
from callbridge.logging_config import clear_correlation_id, set_correlation_id
from callbridge.processors.base import TurnProcessor
from callbridge.telephony.source import TelephonySource, normalize_telephony_state

logger = structlog.get_logger(__name__)

_CALLS_HANDLED = Counter(
    "callbridge_calls_handled_total",
    "Calls for which an AI session was started",
)
_ACTIVE_CALLS = Gauge(
    "callbridge_active_calls",
    "Calls with an AI session in progress",
)
_CHUNKS_PROCESSED = Counter(
    "callbridge_chunks_processed_total",
    "Audio chunks handed to the turn processor successfully",
)
_CHUNKS_FAILED = Counter(
    "callbridge_turn_failures_total",
    "Chunks or transport messages whose processing failed",
)

ProcessorFactory = Callable[[], TurnProcessor]
SleepFn = Callable[[float], Awaitable[None]]
TurnWork = Tuple[str, Union[AudioChunk, object]]


class CallOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        telephony: TelephonySource,
        audio: AudioDeviceAdapter,
        processor_factory: ProcessorFactory,
        *,
        publisher: Optional[StatePublisher] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config
        self.telephony = telephony
        self.audio = audio
        self.publisher = publisher or StatePublisher()
        self.history = ConversationHistory(limit=config.conversation.history_limit)
        self._processor_factory = processor_factory
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self.classification = TelephonyState.IDLE
        self.call: Optional[CallSession] = None
        self.processor: Optional[TurnProcessor] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional["asyncio.Queue[CallEvent]"] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        # Per-call work
        self._answer_task: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._chunk_task: Optional[asyncio.Task] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._turn_queue: Optional["asyncio.Queue[TurnWork]"] = None
        self._capture_buffer: Optional[bytearray] = None
        self.dropped_frames = 0

    # Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        # Created here so the queue belongs to the running loop
        self._queue = asyncio.Queue()
        self._unsubscribe = self.telephony.subscribe(self._on_push)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info(
            "Call orchestrator started",
            mode=self.config.mode,
            auto_answer=self.config.telephony.auto_answer,
            poll_interval_sec=self.config.telephony.poll_interval_sec,
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.call is not None:
            await self._teardown(self.call, "orchestrator stopped")
        await self._cancel_tasks(self._watchdog_task, self._dispatch_task)
        self._watchdog_task = None
        self._dispatch_task = None
        logger.info("Call orchestrator stopped")

    def post(self, event: CallEvent) -> None:
        """Queue an event for the dispatch loop. Safe from any thread."""
        if self._queue is None:
            logger.warning("Event posted before orchestrator start", event_type=type(event).__name__)
            return
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._queue.put_nowait, event)
                return
        self._queue.put_nowait(event)

    async def run_until_idle(self) -> None:
        """Dispatch queued events inline until the queue is empty (tests and tools)."""
        while self._queue is not None and not self._queue.empty():
            await self.dispatch(self._queue.get_nowait())

    # Telephony inputs ----------------------------------------------------

    def _on_push(self, raw, remote_number: Optional[str] = None) -> None:
        state = normalize_telephony_state(raw)
        if state is None:
            logger.warning("Ignoring unrecognised telephony state", raw_state=str(raw)[:40], source="push")
            return
        self.post(TelephonyEvent(state=state, source="push", remote_number=remote_number))

    async def poll_once(self) -> None:
        try:
            raw = await self.telephony.get_state()
        except Exception:
            logger.warning("Telephony state query failed", exc_info=True)
            return
        state = normalize_telephony_state(raw)
        if state is None:
            logger.debug("Ignoring unrecognised telephony state", raw_state=str(raw)[:40], source="poll")
            return
        self.post(TelephonyEvent(state=state, source="poll"))
        call = self.call
        if call is not None and call.live:
            self.publisher.publish(call_duration=call.duration_seconds)

    async def _watchdog_loop(self) -> None:
        interval = self.config.telephony.poll_interval_sec
        while True:
            await asyncio.sleep(interval)
            await self.poll_once()

    # Dispatch ------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.error("Event dispatch failed", event_type=type(event).__name__, exc_info=True)

    async def dispatch(self, event: CallEvent) -> None:
        if isinstance(event, TelephonyEvent):
            await self._on_telephony(event)
            return

        call = self.call
        if call is None or call.call_id != event.call_id or call.teardown_done:
            logger.debug("Discarding event for stale call", event_type=type(event).__name__, call_id=event.call_id)
            return

        if isinstance(event, ChunkReady):
            self._enqueue_turn(("chunk", event.chunk))
        elif isinstance(event, TransportMessage):
            self._enqueue_turn(("message", event.message))
        elif isinstance(event, TransportStateChanged):
            call.is_connected = event.connected
            self.publisher.publish(is_connected=event.connected)
        elif isinstance(event, TransportFailed):
            await self._end_ai_path(call, event.reason)
        elif isinstance(event, CaptureFailed):
            await self._end_ai_path(call, event.reason, permission_denied=event.permission_denied)

    async def _on_telephony(self, event: TelephonyEvent) -> None:
        state = event.state
        previous = self.classification

        if state is previous:
            # Duplicate notification; a repeated ring is the retry path for a failed answer
            if state is TelephonyState.RINGING and self.call is not None:
                self._maybe_answer(self.call)
            return

        if state is TelephonyState.RINGING and previous is TelephonyState.ACTIVE:
            logger.info("Ringing while a call is active ignored", source=event.source)
            return

        self.classification = state
        logger.info(
            "Telephony state changed",
            previous=previous.value,
            state=state.value,
            source=event.source,
        )

        if state is TelephonyState.RINGING:
            self._on_ringing(event)
        elif state is TelephonyState.ACTIVE:
            self._on_active(event)
        else:
            call = self.call
            if call is not None:
                await self._teardown(call, f"call ended ({event.source})")

    def _new_call(self, remote_number: Optional[str]) -> CallSession:
        call = CallSession(call_id=f"call-{uuid.uuid4().hex[:12]}", remote_number=remote_number)
        self.call = call
        set_correlation_id(call.call_id)
        return call

    def _on_ringing(self, event: TelephonyEvent) -> None:
        call = self.call
        if call is None:
            call = self._new_call(event.remote_number)
        elif event.remote_number:
            call.remote_number = event.remote_number
        call.classification = TelephonyState.RINGING
        call.state = CallState.INCOMING
        self.publisher.publish(call_state=CallState.INCOMING, remote_number=call.remote_number, last_error=None)
        self._maybe_answer(call)

    def _maybe_answer(self, call: CallSession) -> None:
        if not self.config.telephony.auto_answer or call.answering:
            return
        call.answering = True
        self._answer_task = asyncio.create_task(self._answer(call))

    async def _answer(self, call: CallSession) -> None:
        await self._sleep(self.config.telephony.answer_delay_sec)
        if not self.is_current(call) or call.classification is not TelephonyState.RINGING:
            return
        logger.info("Answering call", call_id=call.call_id, remote_number=call.remote_number)
        try:
            answered = await self.telephony.answer()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Answer command raised", call_id=call.call_id, error=str(exc))
            answered = False
        if answered:
            return
        logger.warning("Answer command failed; waiting for retry or manual pickup", call_id=call.call_id)
        if self.is_current(call) and call.classification is TelephonyState.RINGING:
            call.answering = False

    def _on_active(self, event: TelephonyEvent) -> None:
        call = self.call
        if call is None:
            call = self._new_call(event.remote_number)
        call.answering = False
        call.classification = TelephonyState.ACTIVE
        if call.active_since is None:
            call.active_since = time.time()

        if call.in_progress or call.ai_path_failed:
            logger.debug("Session already in progress", call_id=call.call_id)
            return
        call.in_progress = True
        call.state = CallState.ACTIVE
        _CALLS_HANDLED.inc()
        _ACTIVE_CALLS.inc()
        self.publisher.publish(call_state=CallState.ACTIVE, remote_number=call.remote_number, call_duration=0)
        self._start_task = asyncio.create_task(self._start_session(call))

    # Session -------------------------------------------------------------

    async def _start_session(self, call: CallSession) -> None:
        self.history.clear()
        call.turn_count = 0
        call.last_transcription = ""
        self.publisher.publish(conversation_history=(), last_transcription="", last_error=None)

        await self._sleep(self.config.audio.settle_delay_sec)
        if not self.is_current(call):
            return

        processor = self._processor_factory()
        self.processor = processor
        self._turn_queue = asyncio.Queue()
        self._worker_task = asyncio.create_task(self._turn_worker(call, processor))
        logger.info("Starting AI session", call_id=call.call_id, processor=processor.name)

        try:
            ready = await processor.start(self, call)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Turn processor failed to start", call_id=call.call_id, error=str(exc), exc_info=True)
            ready = False

        if not self.is_current(call):
            return
        if not ready:
            # The caller keeps a live line; only the AI path is unavailable
            logger.error("AI path unavailable, call stays connected", call_id=call.call_id)
            call.ai_path_failed = True
            call.last_error = "AI connection unavailable"
            call.mic.release()
            self.publisher.publish(call_state=CallState.ACTIVE, is_connected=False, last_error=call.last_error)
            return

        if call.stream is not None:
            logger.info("Stream session ready", call_id=call.call_id, session_id=call.stream.session_id)

        if not call.mic.acquire_capture():
            logger.warning("Capture not granted at session start", call_id=call.call_id)
        try:
            frames = self.audio.start_capture()
        except PermissionError:
            self.post(CaptureFailed(call.call_id, "microphone permission denied", permission_denied=True))
            return
        except AudioDeviceError as exc:
            self.post(CaptureFailed(call.call_id, str(exc)))
            return

        if not call.mic.playing:
            call.state = CallState.RECORDING
            self.publisher.publish(call_state=CallState.RECORDING)
        self._pump_task = asyncio.create_task(self._capture_pump(call, processor, frames))
        if processor.uses_chunk_loop:
            self._chunk_task = asyncio.create_task(self._chunk_loop(call))

    async def _teardown(self, call: CallSession, reason: str) -> None:
        if call.teardown_done:
            return
        call.teardown_done = True
        was_in_progress = call.in_progress
        logger.info("Tearing down call", call_id=call.call_id, reason=reason, turns=call.turn_count)

        await self._cancel_tasks(
            self._answer_task,
            self._start_task,
            self._chunk_task,
            self._pump_task,
            self._worker_task,
        )
        self._answer_task = self._start_task = self._chunk_task = None
        self._pump_task = self._worker_task = None
        self._turn_queue = None
        self._capture_buffer = None

        self.audio.stop_capture()
        self.audio.stop_playback_stream()
        call.mic.release()

        processor, self.processor = self.processor, None
        if processor is not None:
            try:
                await processor.stop(call)
            except Exception:
                logger.warning("Turn processor stop failed", call_id=call.call_id, exc_info=True)

        duration = call.duration_seconds
        call.answering = False
        call.in_progress = False
        call.is_connected = False
        call.state = CallState.IDLE
        if was_in_progress:
            _ACTIVE_CALLS.dec()
        if self.call is call:
            self.call = None
        self.publisher.publish(call_state=CallState.IDLE, is_connected=False, call_duration=duration)
        logger.info("Call torn down", call_id=call.call_id, duration_seconds=duration)
        clear_correlation_id()

    async def _end_ai_path(self, call: CallSession, reason: str, permission_denied: bool = False) -> None:
        """Stop the AI side of the call. The phone call itself is left alone."""
        if call.ai_path_failed and not call.mic.capturing and not call.mic.playing:
            return
        logger.error(
            "AI path ended, call stays connected",
            call_id=call.call_id,
            reason=reason,
            permission_denied=permission_denied,
        )
        call.ai_path_failed = True
        call.last_error = reason
        call.is_connected = False
        await self._cancel_tasks(self._chunk_task, self._pump_task)
        self._chunk_task = self._pump_task = None
        self._capture_buffer = None
        self.audio.stop_capture()
        self.audio.stop_playback_stream()
        call.mic.release()

        processor = self.processor
        if processor is not None:
            try:
                await processor.stop(call)
            except Exception:
                logger.warning("Turn processor stop failed", call_id=call.call_id, exc_info=True)

        call.state = CallState.ACTIVE
        self.publisher.publish(call_state=CallState.ACTIVE, is_connected=False, last_error=reason)

    # Capture & chunking --------------------------------------------------

    async def _capture_pump(self, call: CallSession, processor: TurnProcessor, frames: AsyncIterator[bytes]) -> None:
        try:
            async for frame in frames:
                if not self.is_current(call):
                    return
                if not call.mic.capturing:
                    self.dropped_frames += 1
                    continue
                if processor.uses_chunk_loop:
                    if self._capture_buffer is not None:
                        self._capture_buffer.extend(frame)
                    continue
                try:
                    await processor.handle_frame(self, call, frame)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning("Frame forward failed", call_id=call.call_id, exc_info=True)
        except PermissionError:
            self.post(CaptureFailed(call.call_id, "microphone permission denied", permission_denied=True))
        except AudioDeviceError as exc:
            self.post(CaptureFailed(call.call_id, str(exc)))

    async def _chunk_loop(self, call: CallSession) -> None:
        conv = self.config.conversation
        timer = IntervalTimer(conv.chunk_interval_sec, clock=self._clock)
        call.chunk_timer = timer
        self._open_buffer(call)
        timer.start()
        if call.mic.playing:
            timer.pause()

        while self.is_current(call) and call.live:
            if call.mic.playing:
                # begin_playback/end_playback pause and resume the timer
                await self._sleep(conv.paused_tick_sec)
                continue
            if not call.mic.capturing:
                logger.info("Capture ownership lost, chunk loop stopping", call_id=call.call_id)
                return
            if self._capture_buffer is None:
                self._open_buffer(call)
                timer.restart()
            remaining = timer.remaining()
            if remaining > 0:
                await self._sleep(remaining)
                continue

            chunk = self._close_buffer(call)
            timer.restart()
            if chunk is not None:
                self.post(ChunkReady(call.call_id, chunk))
            if call.mic.capturing and call.live:
                self._open_buffer(call)

    def _open_buffer(self, call: CallSession) -> None:
        self._capture_buffer = bytearray()
        logger.debug("Capture buffer opened", call_id=call.call_id)

    def _close_buffer(self, call: CallSession) -> Optional[AudioChunk]:
        data, self._capture_buffer = self._capture_buffer, None
        if not data:
            logger.debug("Empty capture buffer, no chunk", call_id=call.call_id)
            return None
        audio_cfg = self.config.audio
        chunk = AudioChunk(
            data=bytes(data),
            sample_rate=audio_cfg.sample_rate,
            channels=audio_cfg.channels,
            format=audio_cfg.format,
        )
        logger.debug("Chunk boundary", call_id=call.call_id, bytes=len(chunk), duration_ms=round(chunk.duration_ms))
        return chunk

    # Turn work -----------------------------------------------------------

    def _enqueue_turn(self, work: TurnWork) -> None:
        if self._turn_queue is None:
            logger.debug("No turn worker, dropping work", kind=work[0])
            return
        self._turn_queue.put_nowait(work)

    async def _turn_worker(self, call: CallSession, processor: TurnProcessor) -> None:
        queue = self._turn_queue
        while True:
            kind, payload = await queue.get()
            if not self.is_current(call):
                continue
            try:
                if kind == "chunk":
                    await processor.handle_chunk(self, call, payload)
                    _CHUNKS_PROCESSED.inc()
                else:
                    await processor.handle_message(self, call, payload)
            except asyncio.CancelledError:
                raise
            except AudioDeviceError as exc:
                _CHUNKS_FAILED.inc()
                logger.error("Playback failed", call_id=call.call_id, error=str(exc))
                self.set_error(call, str(exc))
            except Exception as exc:
                _CHUNKS_FAILED.inc()
                logger.warning("Turn processing failed, continuing", call_id=call.call_id, kind=kind, error=str(exc))

    # Host callbacks for turn processors ----------------------------------

    def is_current(self, call: CallSession) -> bool:
        return self.call is call and not call.teardown_done

    def begin_playback(self, call: CallSession) -> bool:
        if not self.is_current(call) or not call.live or call.ai_path_failed:
            return False
        if not call.mic.acquire_playback():
            logger.warning("Playback already in flight", call_id=call.call_id)
            return False
        if call.chunk_timer is not None:
            call.chunk_timer.pause()
        call.state = CallState.AI_SPEAKING
        self.publisher.publish(call_state=CallState.AI_SPEAKING)
        return True

    def end_playback(self, call: CallSession) -> None:
        if not self.is_current(call) or not call.mic.playing:
            return
        if self._pump_task is not None and not self._pump_task.done():
            call.mic.release_playback()
            call.state = CallState.RECORDING
        else:
            call.mic.release()
            call.state = CallState.ACTIVE
        if call.chunk_timer is not None:
            call.chunk_timer.resume()
        self.publisher.publish(call_state=call.state)

    @asynccontextmanager
    async def speaking(self, call: CallSession) -> AsyncIterator[bool]:
        granted = self.begin_playback(call)
        try:
            yield granted
        finally:
            if granted:
                self.end_playback(call)

    def add_turn(self, call: CallSession, role: TurnRole, text: str) -> None:
        if not self.is_current(call):
            logger.debug("Discarding turn for ended call", call_id=call.call_id)
            return
        self.history.append(role, text)
        if role is TurnRole.CALLER:
            call.next_turn()
        self.publisher.publish(conversation_history=self.history.snapshot())

    def set_transcription(self, call: CallSession, text: str) -> None:
        if not self.is_current(call):
            return
        call.last_transcription = text
        self.publisher.publish(last_transcription=text)

    def set_error(self, call: CallSession, message: Optional[str]) -> None:
        if not self.is_current(call):
            return
        call.last_error = message
        self.publisher.publish(last_error=message)

    # Helpers -------------------------------------------------------------

    @staticmethod
    async def _cancel_tasks(*tasks: Optional[asyncio.Task]) -> None:
        current = asyncio.current_task()
        pending = [t for t in tasks if t is not None and t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
