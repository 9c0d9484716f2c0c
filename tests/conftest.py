"""
Pytest configuration and fixtures for Kanwen tests.
"""

import io
import sys
import threading
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest
from PIL import Image

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kanwen.errors import RecognitionError
from kanwen.ocr.backends import RecognitionBackend, RecognitionMode
from kanwen.scan.orchestrator import FrameSource
from kanwen.speech.playback import SpeechEngine
from kanwen.vision.preprocessing import EncodedImage


# =============================================================================
# Image Fixtures
# =============================================================================

def encode_image(image: Image.Image, fmt: str = "JPEG") -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def sample_page_image() -> Image.Image:
    """Synthetic 'page': light background with dark text-like bars."""
    pixels = np.full((480, 640, 3), 200, dtype=np.uint8)
    for row in range(60, 420, 60):
        pixels[row:row + 20, 40:600] = (30, 30, 30)
    return Image.fromarray(pixels)


@pytest.fixture
def sample_jpeg(sample_page_image) -> EncodedImage:
    return EncodedImage(data=encode_image(sample_page_image), mime_type="image/jpeg")


@pytest.fixture
def large_jpeg() -> EncodedImage:
    """3200x1800 frame, larger than the normalization bound."""
    image = Image.new("RGB", (3200, 1800), color=(180, 180, 180))
    return EncodedImage(data=encode_image(image), mime_type="image/jpeg")


# =============================================================================
# Speech Fixtures
# =============================================================================

class FakeSpeechEngine(SpeechEngine):
    """
    Speech engine that blocks until released or stopped.

    Every call to speak() records the text and waits on `release`,
    which is re-armed after each utterance.
    """

    def __init__(self, fail_with: Optional[Exception] = None):
        self.spoken: List[str] = []
        self.stop_calls = 0
        self.release = threading.Event()
        self.started = threading.Event()
        self.fail_with = fail_with

    def speak(self, text: str, rate: float = 1.0, cancelled=None) -> None:
        self.spoken.append(text)
        self.started.set()
        if self.fail_with is not None:
            raise self.fail_with
        self.release.wait(timeout=5)
        self.release.clear()

    def stop(self) -> None:
        self.stop_calls += 1
        self.release.set()

    def finish(self) -> None:
        self.release.set()


@pytest.fixture
def speech_engine() -> FakeSpeechEngine:
    return FakeSpeechEngine()


# =============================================================================
# Recognition Fixtures
# =============================================================================

class FakeBackend(RecognitionBackend):
    """Backend returning queued texts or raising queued errors."""

    def __init__(self, mode: RecognitionMode = RecognitionMode.CLOUD, results=None):
        self.mode = mode
        self.results = list(results or [])
        self.calls = 0
        self.gate = None  # optional asyncio.Event to hold recognition open

    async def recognize(self, image, progress_callback=None) -> str:
        self.calls += 1
        if progress_callback is not None:
            progress_callback(0.5)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else ""
        if isinstance(result, RecognitionError):
            raise result
        return result


class FakeFrameSource(FrameSource):
    def __init__(self, frame: Optional[EncodedImage]):
        self.frame = frame
        self.captures = 0

    async def capture(self) -> Optional[EncodedImage]:
        self.captures += 1
        return self.frame


@pytest.fixture
def frame(sample_jpeg) -> EncodedImage:
    return sample_jpeg


@pytest.fixture
def frame_source(frame) -> FakeFrameSource:
    return FakeFrameSource(frame)
