"""
Configuration for Kanwen.

Settings are read from the environment (and a local .env file) once and
cached for the lifetime of the process.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Application settings loaded from environment."""

    # Recognition
    recognition_mode: str = "cloud"  # cloud or local
    google_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    local_engine: str = "tesseract"  # or "easyocr"
    tesseract_lang: str = "chi_tra+eng"

    # Image normalization
    max_dimension: int = 1600
    jpeg_quality: int = 85

    # Live scanning
    scan_interval: float = 5.0
    error_backoff: float = 5.0
    history_limit: int = 50

    # Speech
    auto_speak: bool = True
    smart_suppression: bool = True
    similarity_threshold: float = 0.25
    speech_rate: float = 1.0

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            recognition_mode=os.getenv("KANWEN_RECOGNITION_MODE", cls.recognition_mode),
            google_api_key=(
                os.getenv("GOOGLE_API_KEY")
                or os.getenv("GEMINI_API_KEY")
                or os.getenv("API_KEY")
            ),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            local_engine=os.getenv("KANWEN_LOCAL_ENGINE", cls.local_engine),
            tesseract_lang=os.getenv("TESSERACT_LANG", cls.tesseract_lang),
            max_dimension=int(os.getenv("KANWEN_MAX_DIMENSION", cls.max_dimension)),
            jpeg_quality=int(os.getenv("KANWEN_JPEG_QUALITY", cls.jpeg_quality)),
            scan_interval=float(os.getenv("KANWEN_SCAN_INTERVAL", cls.scan_interval)),
            error_backoff=float(os.getenv("KANWEN_ERROR_BACKOFF", cls.error_backoff)),
            history_limit=int(os.getenv("KANWEN_HISTORY_LIMIT", cls.history_limit)),
            auto_speak=_env_bool("KANWEN_AUTO_SPEAK", cls.auto_speak),
            smart_suppression=_env_bool("KANWEN_SMART_SUPPRESSION", cls.smart_suppression),
            similarity_threshold=float(
                os.getenv("KANWEN_SIMILARITY_THRESHOLD", cls.similarity_threshold)
            ),
            speech_rate=float(os.getenv("KANWEN_SPEECH_RATE", cls.speech_rate)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    load_dotenv()
    return Settings.from_env()
