"""
Text Cleaner for Kanwen

Post-processing for raw recognizer output:
- Removal of common recognizer "hallucination" symbols
- Removal of isolated noise glyphs between CJK ideographs
- Collapse of repeated punctuation
- Whitespace and blank-line cleanup
"""

import re
from typing import Iterable, Optional

from loguru import logger


# Recognition succeeded but found no text
NO_TEXT = "無文字"

# Placeholder shown while recognition is running
PENDING_TEXT = "正在辨識中..."
PENDING_MARKER = "正在辨識"

# Prefix of the placeholder shown after a failed recognition
FAILURE_MARKER = "辨識失敗"


def failure_text(message: str) -> str:
    return f"{FAILURE_MARKER}: {message}"


def is_cjk(char: str) -> bool:
    """True for characters in the common CJK ideograph block."""
    return "一" <= char <= "龥"


def _is_ascii_alnum(char: str) -> bool:
    return char.isascii() and char.isalnum()


class TextCleaner:
    """
    Noise cleaning for Traditional Chinese OCR output.

    Tesseract's Chinese models tend to emit stray symbols between real
    words, long punctuation runs and a space between every ideograph.
    The cleaner strips these while keeping legitimate punctuation.

    Usage:
        cleaner = TextCleaner()
        cleaner.clean("今 | 天_天 ^ 氣 真 好!!!")  # "今天天氣真好!"
    """

    # Removed anywhere in the text
    DENYLIST = "|\\_~^`"

    # Punctuation that may sit between two ideographs
    ALLOWED_PUNCTUATION = "，。！?？：；（）「」『』"

    # Runs of these collapse to a single occurrence
    REPEATABLE_PUNCTUATION = "!！?？,，.。"

    def __init__(
        self,
        allowed_punctuation: Optional[Iterable[str]] = None,
        join_cjk_spacing: bool = True,
    ):
        """
        Initialize the cleaner.

        Args:
            allowed_punctuation: Characters kept even when isolated between
                two ideographs. Defaults to ALLOWED_PUNCTUATION.
            join_cjk_spacing: Remove single spaces between two ideographs
        """
        if allowed_punctuation is None:
            allowed_punctuation = self.ALLOWED_PUNCTUATION
        self.allowed_punctuation = frozenset(allowed_punctuation)
        self.join_cjk_spacing = join_cjk_spacing

        self._denylist_pattern = re.compile(f"[{re.escape(self.DENYLIST)}]")
        self._repeat_pattern = re.compile(
            f"([{re.escape(self.REPEATABLE_PUNCTUATION)}])\\1+"
        )
        self._spaces_pattern = re.compile(r"[ ]+")
        self._blank_lines_pattern = re.compile(r"\n\s*\n")
        self._cjk_space_pattern = re.compile(r"(?<=[一-龥]) (?=[一-龥])")

    def clean(self, text: str) -> str:
        """
        Clean raw recognizer output.

        Args:
            text: Raw OCR text

        Returns:
            Cleaned text; empty string when nothing remains
        """
        if not text:
            return ""

        # Step 1: hallucination symbols
        cleaned = self._denylist_pattern.sub("", text)

        # Step 2: isolated noise between ideographs
        cleaned = self._drop_isolated_symbols(cleaned)

        # Step 3: repeated punctuation
        cleaned = self._repeat_pattern.sub(r"\1", cleaned)

        # Step 4: whitespace
        cleaned = self._normalize_whitespace(cleaned)

        if cleaned != text:
            logger.debug(f"Cleaned OCR text: {len(text)} -> {len(cleaned)} chars")

        return cleaned

    def is_noise_symbol(self, char: str) -> bool:
        """True if `char` is droppable when it sits between two ideographs."""
        return not (
            is_cjk(char)
            or _is_ascii_alnum(char)
            or char.isspace()
            or char in self.allowed_punctuation
        )

    def _drop_isolated_symbols(self, text: str) -> str:
        result = []
        last = len(text) - 1

        for i, char in enumerate(text):
            if (
                0 < i < last
                and self.is_noise_symbol(char)
                and is_cjk(text[i - 1])
                and is_cjk(text[i + 1])
            ):
                continue
            result.append(char)

        return "".join(result)

    def _normalize_whitespace(self, text: str) -> str:
        text = self._spaces_pattern.sub(" ", text)
        text = self._blank_lines_pattern.sub("\n", text)
        if self.join_cjk_spacing:
            text = self._cjk_space_pattern.sub("", text)
        return text.strip()


_default_cleaner = TextCleaner()


def clean_ocr_text(text: str) -> str:
    """Clean text with the default TextCleaner."""
    return _default_cleaner.clean(text)
