"""
Scan Orchestrator

Drives the capture -> recognize -> display -> speak cycle for live
scanning and single uploads.

One recognition is in flight per scan stream at a time. Switching the
recognition backend starts a new stream; results that arrive from the
previous stream are dropped. Failures never stop the loop, they only push
the next scan further out.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from loguru import logger

from kanwen.config import Settings
from kanwen.errors import RecognitionError, RecognitionUnavailable
from kanwen.ocr.backends import ProgressCallback, RecognitionBackend, RecognitionMode
from kanwen.ocr.text_cleaner import NO_TEXT, PENDING_TEXT, failure_text
from kanwen.scan.history import ScanHistory, ScanResult
from kanwen.speech.playback import PlaybackController
from kanwen.vision.preprocessing import EncodedImage, ImageInput


class ScanStatus(str, Enum):
    """State of the most recent scan."""
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class FrameSource(ABC):
    """Source of captured frames (camera, screen grab, test fixture)."""

    @abstractmethod
    async def capture(self) -> Optional[EncodedImage]:
        """Capture one frame, or None when no frame is available yet."""
        pass


@dataclass
class ScanConfig:
    """Cadence and speech settings for the scan loop."""

    scan_interval: float = 5.0
    error_backoff: float = 5.0
    auto_speak: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScanConfig":
        return cls(
            scan_interval=settings.scan_interval,
            error_backoff=settings.error_backoff,
            auto_speak=settings.auto_speak,
        )


def _image_url(image: ImageInput) -> str:
    if isinstance(image, EncodedImage):
        return image.to_data_url()
    if isinstance(image, str):
        return image
    return EncodedImage(data=bytes(image)).to_data_url()


class ScanOrchestrator:
    """
    Live scan loop over a frame source and a set of recognition backends.

    Usage:
        orchestrator = ScanOrchestrator(camera, {RecognitionMode.CLOUD: backend})
        stop = asyncio.Event()
        await orchestrator.run(stop)
    """

    def __init__(
        self,
        frame_source: FrameSource,
        backends: Mapping[RecognitionMode, RecognitionBackend],
        history: Optional[ScanHistory] = None,
        playback: Optional[PlaybackController] = None,
        config: Optional[ScanConfig] = None,
        mode: RecognitionMode = RecognitionMode.CLOUD,
    ):
        if mode not in backends:
            raise ValueError(f"No backend configured for mode '{mode.value}'")

        self.frame_source = frame_source
        self.backends = dict(backends)
        self.history = history if history is not None else ScanHistory()
        self.playback = playback
        self.config = config or ScanConfig()
        self.mode = mode

        self.status = ScanStatus.IDLE
        self.latest: Optional[ScanResult] = None
        self.result_text = ""
        self.error_message: Optional[str] = None
        self.progress = 0.0
        self.paused = False
        self.next_delay = self.config.scan_interval

        self._epoch = 0
        self._in_flight_epoch: Optional[int] = None

    @classmethod
    def from_settings(
        cls,
        frame_source: FrameSource,
        backends: Mapping[RecognitionMode, RecognitionBackend],
        settings: Settings,
        playback: Optional[PlaybackController] = None,
    ) -> "ScanOrchestrator":
        """Build an orchestrator with cadence, history size and mode taken from settings."""
        return cls(
            frame_source,
            backends,
            history=ScanHistory(limit=settings.history_limit),
            playback=playback,
            config=ScanConfig.from_settings(settings),
            mode=RecognitionMode(settings.recognition_mode),
        )

    @property
    def backend(self) -> RecognitionBackend:
        return self.backends[self.mode]

    @property
    def is_busy(self) -> bool:
        return self._in_flight_epoch == self._epoch

    def set_mode(self, mode: RecognitionMode) -> None:
        """Switch recognition backend; pending results of the old one are dropped."""
        mode = RecognitionMode(mode)
        if mode not in self.backends:
            raise ValueError(f"No backend configured for mode '{mode.value}'")
        if mode == self.mode:
            return

        logger.info(f"Switching recognition backend: {self.mode.value} -> {mode.value}")
        self.mode = mode
        self._epoch += 1
        self.error_message = None
        if self.status == ScanStatus.PROCESSING:
            self.status = ScanStatus.IDLE
            self.latest = None

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    async def scan_once(self) -> Optional[ScanResult]:
        """
        Capture a frame and run one recognition cycle.

        Returns:
            The new ScanResult, or None if nothing was recorded (busy,
            paused, no frame, no text, failure, or discarded)
        """
        if self.paused or self.is_busy:
            return None

        epoch = self._epoch
        self._in_flight_epoch = epoch
        try:
            frame = await self.frame_source.capture()
            if frame is None:
                return None
            return await self._recognize(frame, epoch, from_upload=False)
        finally:
            if self._in_flight_epoch == epoch:
                self._in_flight_epoch = None

    async def recognize_upload(self, image: ImageInput) -> Optional[ScanResult]:
        """
        Recognize a single uploaded image.

        The result is spoken immediately (bypassing suppression) and is
        not added to the live scan history.
        """
        if self.is_busy:
            return None

        epoch = self._epoch
        self._in_flight_epoch = epoch
        try:
            return await self._recognize(image, epoch, from_upload=True)
        finally:
            if self._in_flight_epoch == epoch:
                self._in_flight_epoch = None

    def replay(self) -> bool:
        """Speak the last result again, interrupting whatever is playing."""
        if self.playback is None or not self.result_text:
            return False
        return self.playback.play(self.result_text, force=True)

    def stop_speech(self) -> None:
        if self.playback is not None:
            self.playback.stop()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Scan repeatedly until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Live scanning started (every {self.config.scan_interval}s)")

        while not stop_event.is_set():
            if not self.paused:
                try:
                    await self.scan_once()
                except Exception as e:
                    logger.exception(f"Scan cycle failed: {e}")
                    self.next_delay = self.config.scan_interval + self.config.error_backoff

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.next_delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Live scanning stopped")

    def _progress_sink(self, epoch: int) -> ProgressCallback:
        def report(progress: float) -> None:
            if epoch == self._epoch:
                self.progress = min(1.0, max(0.0, float(progress)))
        return report

    async def _recognize(
        self,
        image: ImageInput,
        epoch: int,
        from_upload: bool,
    ) -> Optional[ScanResult]:
        backend = self.backend
        image_url = _image_url(image)
        placeholder = ScanResult(text=PENDING_TEXT, image_url=image_url, pending=True)

        self.status = ScanStatus.PROCESSING
        self.progress = 0.0
        self.error_message = None
        self.latest = placeholder

        error: Optional[RecognitionError] = None
        text = ""
        try:
            text = await backend.recognize(image, progress_callback=self._progress_sink(epoch))
        except RecognitionError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected recognition failure: {e}")
            error = RecognitionUnavailable(str(e) or type(e).__name__)

        if epoch != self._epoch:
            logger.warning(f"Discarding result from previous {backend.mode.value} stream")
            return None

        if error is not None:
            logger.warning(f"Recognition failed ({error.code}): {error.message}")
            self.status = ScanStatus.ERROR
            self.error_message = error.message
            # Shown in place of the scan but never recorded in history
            self.latest = ScanResult(
                text=failure_text(error.message),
                image_url=image_url,
                id=placeholder.id,
            )
            self.next_delay = self.config.scan_interval + self.config.error_backoff
            return None

        self.next_delay = self.config.scan_interval

        if not text or not text.strip() or text == NO_TEXT:
            self.latest = None
            self.result_text = ""
            self.status = ScanStatus.IDLE
            return None

        result = ScanResult(text=text, image_url=image_url, id=placeholder.id)
        if not from_upload:
            self.history.add(result)
        self.latest = result
        self.result_text = text
        self.status = ScanStatus.SUCCESS

        if self.playback is not None and (from_upload or self.config.auto_speak):
            self.playback.play(text, force=from_upload)

        return result
