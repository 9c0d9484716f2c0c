"""
Vision Module

Image preprocessing ahead of local text recognition.
"""

from kanwen.vision.preprocessing import (
    EncodedImage,
    ImageNormalizer,
    NormalizeConfig,
    enhance_contrast,
)

__all__ = [
    "EncodedImage",
    "ImageNormalizer",
    "NormalizeConfig",
    "enhance_contrast",
]
