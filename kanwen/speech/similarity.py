"""
Speech de-duplication for continuous scanning.

A freshly recognized text block only interrupts ongoing narration when it
is different enough from what is currently being spoken. Difference is a
Jaccard index over unique characters: order and multiplicity are ignored,
which keeps the check cheap enough to run on every scan.
"""

from loguru import logger

from kanwen.ocr.text_cleaner import FAILURE_MARKER, NO_TEXT, PENDING_MARKER


DEFAULT_SIMILARITY_THRESHOLD = 0.25


def similarity(first: str, second: str) -> float:
    """
    Jaccard index of the character sets of two strings.

    Returns 0.0 when either string is empty and 1.0 for identical strings.
    """
    if not first or not second:
        return 0.0
    if first == second:
        return 1.0

    chars_a = set(first)
    chars_b = set(second)
    return len(chars_a & chars_b) / len(chars_a | chars_b)


def is_speakable(text: str) -> bool:
    """False for empty text, the no-text sentinel and scan placeholders."""
    if not text or not text.strip():
        return False
    if text == NO_TEXT:
        return False
    return PENDING_MARKER not in text and FAILURE_MARKER not in text


class SimilarityGate:
    """
    Decides whether a candidate text should start narration.

    Usage:
        gate = SimilarityGate()
        gate.should_speak("今天天氣很好！", "今天天氣很好", is_currently_speaking=True)
        # False: same utterance, keep talking
    """

    def __init__(
        self,
        smart_suppression: bool = True,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        self.smart_suppression = smart_suppression
        self.threshold = threshold

    def should_speak(
        self,
        candidate: str,
        currently_spoken: str,
        is_currently_speaking: bool,
        force: bool = False,
    ) -> bool:
        """
        Args:
            candidate: Newly recognized text
            currently_spoken: Text of the utterance in progress, or ""
            is_currently_speaking: Whether playback is active
            force: Explicit user replay; bypasses every check

        Returns:
            True if the candidate should be spoken now
        """
        if force:
            return True

        if not is_speakable(candidate):
            return False

        if self.smart_suppression and is_currently_speaking:
            score = similarity(candidate, currently_spoken)
            if score >= self.threshold:
                logger.debug(f"Suppressed speech (similarity {score:.2f})")
                return False

        return True
