"""
Audio device adapter.

``AudioDevice`` is the platform capture/playback driver, which lives outside
this package. ``AudioDeviceAdapter`` turns its callback-based capture into an
async frame stream and gives playback idempotent open/close semantics. Chunk
interval logic is not handled here; the orchestrator owns it.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import structlog

from callbridge.audio.pcm import chunk_audio, duration_seconds, unwrap_wav
from callbridge.config import AudioConfig
from callbridge.errors import AudioDeviceError

logger = structlog.get_logger(__name__)

FrameCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]

_END = object()


class AudioDevice(ABC):
    """Platform audio primitives. Callbacks may fire on a driver thread."""

    @abstractmethod
    def start_capture(self, on_frame: FrameCallback, on_error: ErrorCallback) -> None:
        """Begin delivering fixed-size PCM frames. Raise PermissionError if denied."""

    @abstractmethod
    def stop_capture(self) -> None:
        ...

    @abstractmethod
    def open_output(self, sample_rate: int) -> None:
        ...

    @abstractmethod
    def write_output(self, frame: bytes) -> None:
        ...

    @abstractmethod
    def close_output(self) -> None:
        ...


class AudioDeviceAdapter:
    def __init__(
        self,
        device: AudioDevice,
        config: Optional[AudioConfig] = None,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._device = device
        self._config = config or AudioConfig()
        self._sleep = sleep or asyncio.sleep
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional["asyncio.Queue[Union[bytes, BaseException, object]]"] = None
        self._capturing = False
        self._output_rate: Optional[int] = None

    @property
    def capturing(self) -> bool:
        return self._capturing

    @property
    def playing(self) -> bool:
        return self._output_rate is not None

    # Capture -------------------------------------------------------------

    def start_capture(self) -> AsyncIterator[bytes]:
        """Start the device and return the frame stream, in capture order.

        PermissionError from the driver propagates unchanged so callers can
        surface a permission denial; other driver failures raise
        AudioDeviceError.
        """
        if self._capturing:
            raise AudioDeviceError("capture already started")
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        try:
            self._device.start_capture(self._on_frame, self._on_error)
        except PermissionError:
            self._queue = None
            raise
        except Exception as exc:
            self._queue = None
            raise AudioDeviceError(f"failed to start capture: {exc}") from exc
        self._capturing = True
        logger.info("Audio capture started", sample_rate=self._config.sample_rate)
        return self._frames(queue)

    def stop_capture(self) -> None:
        if not self._capturing:
            return
        self._capturing = False
        try:
            self._device.stop_capture()
        except Exception:
            logger.warning("Audio device stop_capture failed", exc_info=True)
        if self._queue is not None:
            self._queue.put_nowait(_END)
            self._queue = None
        logger.info("Audio capture stopped")

    async def _frames(self, queue: asyncio.Queue) -> AsyncIterator[bytes]:
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                if isinstance(item, PermissionError):
                    raise item
                raise AudioDeviceError(f"capture failed: {item}") from item
            yield item

    def _hand_off(self, item) -> None:
        queue = self._queue
        loop = self._loop
        if queue is None or loop is None:
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # Loop already closed; the capture session is gone
            logger.debug("Dropping audio frame after loop shutdown")

    def _on_frame(self, frame: bytes) -> None:
        if frame:
            self._hand_off(bytes(frame))

    def _on_error(self, error: BaseException) -> None:
        logger.error("Audio capture error reported by device", error=str(error))
        self._hand_off(error)

    # Playback ------------------------------------------------------------

    def start_playback_stream(self, sample_rate: Optional[int] = None) -> None:
        rate = int(sample_rate or self._config.playback_sample_rate)
        if self._output_rate == rate:
            return
        if self._output_rate is not None:
            self.stop_playback_stream()
        try:
            self._device.open_output(rate)
        except Exception as exc:
            raise AudioDeviceError(f"failed to open playback stream: {exc}") from exc
        self._output_rate = rate
        logger.debug("Playback stream opened", sample_rate=rate)

    def write_playback_frame(self, frame: bytes) -> None:
        if self._output_rate is None:
            raise AudioDeviceError("playback stream is not open")
        try:
            self._device.write_output(frame)
        except Exception as exc:
            raise AudioDeviceError(f"playback write failed: {exc}") from exc

    def stop_playback_stream(self) -> None:
        if self._output_rate is None:
            return
        self._output_rate = None
        try:
            self._device.close_output()
        except Exception:
            logger.warning("Audio device close_output failed", exc_info=True)
        logger.debug("Playback stream closed")

    async def play(self, audio: bytes, sample_rate: Optional[int] = None) -> float:
        """Write ``audio`` in paced frames and return once it has played out.

        WAV payloads are unwrapped and played at their own rate. Returns the
        played duration in seconds. The stream is closed on exit, including
        cancellation.
        """
        pcm, rate = unwrap_wav(audio, int(sample_rate or self._config.playback_sample_rate))
        if not pcm:
            return 0.0
        chunk_ms = self._config.playback_chunk_ms
        self.start_playback_stream(rate)
        try:
            for frame in chunk_audio(pcm, "pcm16", rate, chunk_ms):
                self.write_playback_frame(frame)
                await self._sleep(duration_seconds(frame, rate))
        finally:
            self.stop_playback_stream()
        return duration_seconds(pcm, rate)
