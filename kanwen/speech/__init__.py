"""
Speech Module

Similarity-gated text-to-speech playback.
"""

from kanwen.speech.similarity import SimilarityGate, similarity, is_speakable
from kanwen.speech.playback import (
    PlaybackController,
    Pyttsx3SpeechEngine,
    SpeechEngine,
    SpeechState,
)

__all__ = [
    "SimilarityGate",
    "similarity",
    "is_speakable",
    "PlaybackController",
    "Pyttsx3SpeechEngine",
    "SpeechEngine",
    "SpeechState",
]
