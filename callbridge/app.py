"""
Application wiring.

The telephony stack and the audio driver are platform code supplied by the
embedding host; everything else is built here from ``AppConfig``.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Callable, Optional

import structlog

from callbridge.audio.device import AudioDevice, AudioDeviceAdapter
from callbridge.config import AppConfig, load_config, validate_runtime_config
from callbridge.core.orchestrator import CallOrchestrator
from callbridge.core.presentation import StatePublisher
from callbridge.logging_config import configure_logging
from callbridge.processors.backends import HttpConversationBackend, WhisperTranscriber
from callbridge.processors.base import TurnProcessor, create_turn_processor
from callbridge.telephony.source import TelephonySource
from callbridge.transport.session import TransportSession

logger = structlog.get_logger(__name__)


class CallBridge:
    """Owns the orchestrator and the long-lived HTTP clients for one device."""

    def __init__(
        self,
        config: AppConfig,
        telephony: TelephonySource,
        device: AudioDevice,
        *,
        publisher: Optional[StatePublisher] = None,
    ):
        self.config = config
        self.publisher = publisher or StatePublisher()
        self.audio = AudioDeviceAdapter(device, config.audio)
        self.transcriber: Optional[WhisperTranscriber] = None
        self.backend: Optional[HttpConversationBackend] = None
        if config.mode == "batched":
            self.transcriber = WhisperTranscriber(config.stt)
            self.backend = HttpConversationBackend(config.backend)
        self.orchestrator = CallOrchestrator(
            config,
            telephony,
            self.audio,
            self.processor_factory(),
            publisher=self.publisher,
        )

    def processor_factory(self) -> Callable[[], TurnProcessor]:
        config = self.config

        def _build() -> TurnProcessor:
            return create_turn_processor(
                config.mode,
                transport_factory=lambda: TransportSession(config.transport),
                playback_sample_rate=config.audio.playback_sample_rate,
                audio_config=config.audio,
                transcriber=self.transcriber,
                backend=self.backend,
                dual_endpoint=config.backend.dual_endpoint,
            )

        return _build

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()
        if self.transcriber is not None:
            await self.transcriber.close()
        if self.backend is not None:
            await self.backend.close()


async def run(telephony: TelephonySource, device: AudioDevice, config_path: Optional[str] = None) -> None:
    """Load config, start the bridge and run until SIGINT/SIGTERM."""
    config = load_config(config_path) if config_path else load_config()
    configure_logging(log_level=config.logging.level.upper())

    errors, warnings = validate_runtime_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    bridge = CallBridge(config, telephony, device)
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await bridge.start()
    try:
        await shutdown_event.wait()
    finally:
        await bridge.stop()
        logger.info("Call bridge has shut down")
