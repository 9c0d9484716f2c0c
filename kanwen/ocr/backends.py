"""
Recognition Backends

Two interchangeable ways to turn an image into text:
- Cloud: a hosted multimodal model (Google Gemini)
- Local: an offline engine (Tesseract, optionally EasyOCR) with
  image normalization before and text cleaning after recognition
"""

import asyncio
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from enum import Enum
from typing import Callable, List, Optional

import cv2
import numpy as np
import pytesseract
from loguru import logger

from kanwen.config import Settings, get_settings
from kanwen.errors import (
    RecognitionError,
    RecognitionInputInvalid,
    RecognitionRateLimited,
    RecognitionUnavailable,
)
from kanwen.ocr.text_cleaner import NO_TEXT, TextCleaner
from kanwen.vision.preprocessing import (
    EncodedImage,
    ImageInput,
    ImageNormalizer,
    NormalizeConfig,
)

try:
    import easyocr
    EASYOCR_AVAILABLE = True
except ImportError:
    EASYOCR_AVAILABLE = False


ProgressCallback = Callable[[float], None]

OCR_INSTRUCTION = (
    "辨識圖片中的繁體中文文字。只需輸出純文字內容，保持段落。若無文字則回覆「無文字」。"
)

# Payloads shorter than this cannot be an image
MIN_PAYLOAD_BYTES = 10


class RecognitionMode(str, Enum):
    """Available recognition backends."""
    CLOUD = "cloud"
    LOCAL = "local"


class RecognitionBackend(ABC):
    """Abstract base class for recognition backends."""

    mode: RecognitionMode

    @abstractmethod
    async def recognize(
        self,
        image: ImageInput,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Recognize text in an image.

        Returns:
            Recognized text, or NO_TEXT when the image holds none

        Raises:
            RecognitionError: one of its three subclasses
        """
        pass


class ProgressChannel:
    """
    Async stream view of a progress callback.

    Pass the channel as `progress_callback` and iterate it from another
    task; iteration ends after close().
    """

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[float]]" = asyncio.Queue()

    def __call__(self, progress: float) -> None:
        self._queue.put_nowait(progress)

    def close(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> float:
        value = await self._queue.get()
        if value is None:
            raise StopAsyncIteration
        return value


def classify_recognition_error(error: Exception) -> RecognitionError:
    """Map a backend exception onto the recognition error taxonomy."""
    message = str(error)
    code = getattr(error, "code", None)

    if code == 429 or "429" in message or "RESOURCE_EXHAUSTED" in message:
        return RecognitionRateLimited(detail=message)

    if code == 400 or "INVALID_ARGUMENT" in message or "MIME type" in message:
        return RecognitionInputInvalid(detail=message)

    return RecognitionUnavailable(
        f"AI 辨識異常: {message or '未知錯誤'}",
        detail=type(error).__name__,
    )


def _to_encoded(image: ImageInput) -> EncodedImage:
    if isinstance(image, EncodedImage):
        return image
    if isinstance(image, (bytes, bytearray)):
        return EncodedImage(data=bytes(image))
    if isinstance(image, str):
        try:
            return EncodedImage.from_data_url(image)
        except ValueError as e:
            raise RecognitionInputInvalid("影像數據格式錯誤，請重新拍攝。", detail=str(e))
    raise RecognitionInputInvalid(
        "影像數據格式錯誤，請重新拍攝。", detail=type(image).__name__
    )


class CloudOCRBackend(RecognitionBackend):
    """
    Google Gemini recognition.

    Sends one image part and one fixed instruction per request.
    """

    mode = RecognitionMode.CLOUD

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        instruction: str = OCR_INSTRUCTION,
    ):
        self.api_key = api_key
        self.model = model
        self.instruction = instruction
        self._model = None

    def _get_model(self):
        """Lazy initialization of the Gemini model."""
        if self._model is None:
            try:
                import google.generativeai as genai
                genai.configure(api_key=self.api_key)
                self._model = genai.GenerativeModel(self.model)
            except ImportError:
                raise ImportError(
                    "google-generativeai package required. Install with: pip install google-generativeai"
                )
            logger.info(f"Gemini OCR initialized (model: {self.model})")
        return self._model

    async def recognize(
        self,
        image: ImageInput,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        encoded = _to_encoded(image)
        if encoded.size < MIN_PAYLOAD_BYTES:
            raise RecognitionInputInvalid(
                "影像數據格式錯誤，請重新拍攝。",
                detail=f"payload of {encoded.size} bytes",
            )

        if not self.api_key:
            raise RecognitionUnavailable("AI 辨識異常: API Key 未設定")

        try:
            model = self._get_model()
        except ImportError as e:
            logger.error(f"Gemini OCR unavailable: {e}")
            raise RecognitionUnavailable("AI 辨識異常: 缺少 Gemini 套件", detail=str(e)) from e

        try:
            response = await model.generate_content_async(
                [
                    {"mime_type": encoded.mime_type, "data": encoded.data},
                    self.instruction,
                ]
            )
        except Exception as e:
            logger.error(f"Gemini OCR failed: {e}")
            raise classify_recognition_error(e) from e

        return self._response_text(response) or NO_TEXT

    @staticmethod
    def _response_text(response) -> str:
        # .text raises ValueError when the response has no text parts
        try:
            text = response.text
        except ValueError:
            return ""
        return (text or "").strip()


class LocalOCRBackend(RecognitionBackend):
    """
    Offline recognition for Traditional Chinese and Latin script.

    Pipeline: ImageNormalizer -> engine (in an executor) -> TextCleaner.
    """

    mode = RecognitionMode.LOCAL

    EASYOCR_LANGUAGES = ["ch_tra", "en"]

    def __init__(
        self,
        engine: str = "tesseract",
        languages: str = "chi_tra+eng",
        normalizer: Optional[ImageNormalizer] = None,
        cleaner: Optional[TextCleaner] = None,
        executor: Optional[Executor] = None,
        tesseract_config: str = "--oem 3 --psm 6",
        use_gpu: bool = False,
    ):
        """
        Initialize the local backend.

        Args:
            engine: "tesseract" or "easyocr"
            languages: Tesseract language pack identifier
            normalizer: Image preprocessing (default ImageNormalizer())
            cleaner: Text post-processing (default TextCleaner())
            executor: Executor for blocking work (default loop executor)
            tesseract_config: Extra Tesseract CLI flags
            use_gpu: GPU flag passed to EasyOCR
        """
        if engine == "easyocr" and not EASYOCR_AVAILABLE:
            logger.warning("EasyOCR not available, falling back to Tesseract")
            engine = "tesseract"

        self.engine = engine
        self.languages = languages
        self.normalizer = normalizer or ImageNormalizer()
        self.cleaner = cleaner or TextCleaner()
        self.executor = executor
        self.tesseract_config = tesseract_config
        self.use_gpu = use_gpu
        self._easyocr_reader = None

        logger.info(f"Local OCR initialized (engine: {self.engine}, languages: {self.languages})")

    async def recognize(
        self,
        image: ImageInput,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        loop = asyncio.get_running_loop()

        pixels = await loop.run_in_executor(self.executor, self._prepare, image)

        if progress_callback is not None:
            progress_callback(0.0)

        try:
            raw_text = await loop.run_in_executor(self.executor, self._run_engine, pixels)
        except Exception as e:
            logger.error(f"Local OCR failed: {e}")
            raise RecognitionUnavailable(
                f"本地辨識失敗: {str(e) or '引擎未響應'}",
                detail=type(e).__name__,
            ) from e

        if progress_callback is not None:
            progress_callback(1.0)

        cleaned = self.cleaner.clean(raw_text)
        return cleaned if cleaned else NO_TEXT

    def _prepare(self, image: ImageInput) -> np.ndarray:
        """Normalize the image and decode it into a grayscale array."""
        normalized = _to_encoded(self.normalizer.normalize(image))

        pixels = None
        if normalized.data:
            try:
                pixels = cv2.imdecode(np.frombuffer(normalized.data, np.uint8), cv2.IMREAD_COLOR)
            except cv2.error as e:
                logger.warning(f"Image decode failed: {e}")
        if pixels is None:
            raise RecognitionInputInvalid(
                "影像格式不相容或數據受損，請嘗試重新拍照。",
                detail="undecodable image",
            )

        # The contrast stretch leaves all three channels equal
        return cv2.cvtColor(pixels, cv2.COLOR_BGR2GRAY)

    def _run_engine(self, pixels: np.ndarray) -> str:
        if self.engine == "easyocr":
            return self._run_easyocr(pixels)
        return pytesseract.image_to_string(
            pixels,
            lang=self.languages,
            config=self.tesseract_config,
        )

    def _run_easyocr(self, pixels: np.ndarray) -> str:
        if self._easyocr_reader is None:
            self._easyocr_reader = easyocr.Reader(
                self.EASYOCR_LANGUAGES,
                gpu=self.use_gpu,
                verbose=False,
            )
        lines: List[str] = self._easyocr_reader.readtext(pixels, detail=0, paragraph=True)
        return "\n".join(lines)


def create_backend(
    mode: RecognitionMode,
    settings: Optional[Settings] = None,
) -> RecognitionBackend:
    """
    Factory function to create a recognition backend.

    Args:
        mode: Which backend to build
        settings: Settings to read from (defaults to get_settings())
    """
    settings = settings or get_settings()
    mode = RecognitionMode(mode)

    if mode == RecognitionMode.CLOUD:
        if not settings.google_api_key:
            logger.warning("No Gemini API key configured; cloud recognition will fail")
        return CloudOCRBackend(
            api_key=settings.google_api_key,
            model=settings.gemini_model,
        )

    normalizer = ImageNormalizer(
        NormalizeConfig(
            max_dimension=settings.max_dimension,
            jpeg_quality=settings.jpeg_quality,
        )
    )
    return LocalOCRBackend(
        engine=settings.local_engine,
        languages=settings.tesseract_lang,
        normalizer=normalizer,
    )
