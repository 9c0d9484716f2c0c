"""
OCR & Text Processing Module

Handles text extraction from captured frames:
- Cloud (Gemini) and local (Tesseract/EasyOCR) recognition
- Noise cleaning of recognizer output
"""

from kanwen.ocr.text_cleaner import TextCleaner, clean_ocr_text, NO_TEXT
from kanwen.ocr.backends import (
    RecognitionBackend,
    RecognitionMode,
    CloudOCRBackend,
    LocalOCRBackend,
    ProgressChannel,
    create_backend,
)

__all__ = [
    "TextCleaner",
    "clean_ocr_text",
    "NO_TEXT",
    "RecognitionBackend",
    "RecognitionMode",
    "CloudOCRBackend",
    "LocalOCRBackend",
    "ProgressChannel",
    "create_backend",
]
