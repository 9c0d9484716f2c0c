"""
Speech playback for Kanwen.

A PlaybackController owns the speech state of one reader session: what is
being spoken right now and whether anything is being spoken at all. All
writes go through play() and stop(); the similarity gate always decides on
a snapshot taken under the same lock, so two scans finishing back to back
cannot both start talking.
"""

import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

import pyttsx3
from loguru import logger

from kanwen.errors import PlaybackFailure
from kanwen.speech.similarity import SimilarityGate, is_speakable


MIN_RATE = 0.5
MAX_RATE = 2.0


@dataclass(frozen=True)
class SpeechState:
    """What the reader is saying right now."""

    is_speaking: bool = False
    current_text: str = ""


IDLE = SpeechState()

CancelCheck = Callable[[], bool]


class SpeechEngine(ABC):
    """Blocking text-to-speech backend."""

    @abstractmethod
    def speak(
        self,
        text: str,
        rate: float = 1.0,
        cancelled: Optional[CancelCheck] = None,
    ) -> None:
        """
        Speak `text` and return when the utterance ends or is stopped.

        `cancelled` is polled right before audio output starts; when it
        returns True the utterance is dropped without being spoken.
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Interrupt the utterance in progress, if any."""
        pass


def _voice_tags(voice: Any) -> list:
    tags = []
    for language in getattr(voice, "languages", None) or []:
        if isinstance(language, bytes):
            language = language.decode("utf-8", errors="ignore")
        tags.append(str(language))
    tags.append(str(getattr(voice, "id", "") or ""))
    return [t.replace("_", "-").lower() for t in tags]


def select_voice(voices: Iterable[Any], preference: Sequence[str]) -> Optional[Any]:
    """
    Pick the first voice matching the language preference order.

    A voice matches a locale when the locale appears in its language list
    or its id (``zh_TW`` and ``zh-TW`` are treated alike).
    """
    voices = list(voices)
    for locale in preference:
        wanted = locale.replace("_", "-").lower()
        for voice in voices:
            if any(wanted in tag for tag in _voice_tags(voice)):
                return voice
    return None


class Pyttsx3SpeechEngine(SpeechEngine):
    """
    Offline speech synthesis through pyttsx3.

    The driver is created lazily on first use so it lives on the playback
    worker thread.
    """

    VOICE_PREFERENCE = ("zh-TW", "zh-HK", "zh-CN")
    DEFAULT_WORDS_PER_MINUTE = 200

    def __init__(self, driver_name: Optional[str] = None):
        self.driver_name = driver_name
        self.voice_id: Optional[str] = None
        self._engine = None
        self._base_rate = self.DEFAULT_WORDS_PER_MINUTE
        self._lock = threading.Lock()

    def _get_engine(self):
        """Lazy initialization of the pyttsx3 driver."""
        if self._engine is None:
            try:
                engine = pyttsx3.init(driverName=self.driver_name)
            except Exception as e:
                raise PlaybackFailure("Speech engine unavailable", detail=str(e))

            self._base_rate = engine.getProperty("rate") or self.DEFAULT_WORDS_PER_MINUTE

            voice = select_voice(engine.getProperty("voices") or [], self.VOICE_PREFERENCE)
            if voice is not None:
                engine.setProperty("voice", voice.id)
                self.voice_id = voice.id
            else:
                logger.warning("No Chinese voice installed, using the default voice")

            self._engine = engine
            logger.info(f"Speech engine initialized (voice: {self.voice_id})")
        return self._engine

    def speak(
        self,
        text: str,
        rate: float = 1.0,
        cancelled: Optional[CancelCheck] = None,
    ) -> None:
        engine = self._get_engine()

        # stop() takes the same lock, so it either lands before the check
        # or after say() has queued the utterance and can clear it
        with self._lock:
            if cancelled is not None and cancelled():
                logger.debug("Utterance cancelled before playback")
                return
            engine.setProperty("rate", int(self._base_rate * rate))
            engine.say(text)

        engine.runAndWait()

    def stop(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.stop()


class PlaybackController:
    """
    Single-voice narration with similarity-based suppression.

    Utterances are spoken one at a time on a worker thread. Starting new
    playback cancels the current one first; queued utterances that were
    superseded are skipped.

    Usage:
        controller = PlaybackController(Pyttsx3SpeechEngine())
        controller.play("今天天氣很好")
        controller.play("今天天氣很好。")  # suppressed while still speaking
        controller.play("明日有雨", force=True)
    """

    def __init__(
        self,
        engine: SpeechEngine,
        gate: Optional[SimilarityGate] = None,
        rate: float = 1.0,
    ):
        self.engine = engine
        self.gate = gate or SimilarityGate()
        self.last_error: Optional[PlaybackFailure] = None

        self._rate = self._clamp_rate(rate)
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._state = IDLE
        self._generation = 0
        self._active_generation: Optional[int] = None
        self._queue: "queue.Queue[Optional[Tuple[int, str]]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    @staticmethod
    def _clamp_rate(rate: float) -> float:
        return max(MIN_RATE, min(MAX_RATE, float(rate)))

    @property
    def rate(self) -> float:
        return self._rate

    @rate.setter
    def rate(self, value: float) -> None:
        self._rate = self._clamp_rate(value)

    @property
    def smart_suppression(self) -> bool:
        return self.gate.smart_suppression

    @smart_suppression.setter
    def smart_suppression(self, enabled: bool) -> None:
        self.gate.smart_suppression = enabled

    def snapshot(self) -> SpeechState:
        """Consistent view of the current speech state."""
        with self._lock:
            return self._state

    @property
    def is_speaking(self) -> bool:
        return self.snapshot().is_speaking

    def play(self, text: str, force: bool = False) -> bool:
        """
        Speak `text` unless the gate suppresses it.

        Args:
            text: Cleaned text to speak
            force: Explicit replay; bypasses similarity suppression

        Returns:
            True if playback was started
        """
        if not is_speakable(text):
            return False

        with self._lock:
            state = self._state
            if not self.gate.should_speak(
                text, state.current_text, state.is_speaking, force=force
            ):
                return False

            self._cancel_locked()
            self._state = SpeechState(is_speaking=True, current_text=text)
            self._queue.put((self._generation, text))
            self._ensure_worker()

        logger.info(f"Speaking {len(text)} chars (forced: {force})")
        return True

    def stop(self) -> None:
        """Stop all speech and reset the state."""
        with self._lock:
            self._cancel_locked()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is being spoken. Returns False on timeout."""
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._state.is_speaking, timeout=timeout
            )

    def close(self, timeout: float = 2.0) -> None:
        """Stop speech and shut down the worker thread."""
        self.stop()
        worker = self._worker
        if worker is not None and worker.is_alive():
            self._queue.put(None)
            worker.join(timeout=timeout)
        self._worker = None

    def _cancel_locked(self) -> None:
        self._generation += 1
        if self._active_generation is not None:
            self.engine.stop()
        self._state = IDLE
        self._changed.notify_all()

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._run, name="kanwen-playback", daemon=True
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break

            generation, text = item
            with self._lock:
                if generation != self._generation:
                    continue
                self._active_generation = generation
                rate = self._rate

            def cancelled(generation: int = generation) -> bool:
                return generation != self._generation

            error = None
            try:
                self.engine.speak(text, rate, cancelled=cancelled)
            except PlaybackFailure as e:
                error = e
            except Exception as e:
                error = PlaybackFailure(f"Speech synthesis failed: {e}", detail=type(e).__name__)

            with self._lock:
                self._active_generation = None
                if error is not None:
                    logger.error(f"Playback failed: {error.message}")
                    self.last_error = error
                if generation == self._generation:
                    self._state = IDLE
                    self._changed.notify_all()
