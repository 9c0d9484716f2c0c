"""
Image Preprocessing for Kanwen

Prepares captured frames for the local recognizer:
- Decoding from bytes or data URIs
- Bounded resizing that preserves aspect ratio
- Fixed-threshold contrast stretch
- Lossy re-encoding

Normalization is fail-soft: anything that cannot be processed is
returned to the caller unchanged.
"""

import base64
import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from loguru import logger

from kanwen.errors import ImageProcessingFailure


DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class EncodedImage:
    """An encoded raster image: content type plus payload bytes."""

    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_data_url(cls, data_url: str) -> "EncodedImage":
        """
        Parse a ``data:<mime>;base64,<payload>`` string.

        Strings without the header are treated as bare base64 (anything
        before the first comma is dropped). Raises ValueError if the
        payload is not valid base64.
        """
        match = DATA_URL_PATTERN.match(data_url.strip())
        if match:
            mime_type, payload = match.group(1), match.group(2)
        elif "," in data_url:
            mime_type, payload = "image/jpeg", data_url.split(",", 1)[1]
        else:
            mime_type, payload = "image/jpeg", data_url

        return cls(data=base64.b64decode(payload.strip()), mime_type=mime_type)

    def to_data_url(self) -> str:
        payload = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{payload}"

    @property
    def size(self) -> int:
        return len(self.data)


ImageInput = Union[EncodedImage, bytes, str]


@dataclass
class NormalizeConfig:
    """Configuration for image normalization."""

    max_dimension: int = 1600

    # Pixels whose channel mean is below the threshold are darkened,
    # the rest are lightened, both by `contrast_shift`.
    dark_threshold: float = 120.0
    contrast_shift: float = 40.0

    jpeg_quality: int = 85

    # Encoded payloads smaller than this are treated as degenerate
    min_encoded_bytes: int = 64


def enhance_contrast(
    pixels: np.ndarray,
    threshold: float = 120.0,
    shift: float = 40.0,
) -> np.ndarray:
    """
    Push every pixel away from mid-gray.

    The unweighted mean of the three colour channels is darkened by
    `shift` when below `threshold` and lightened by `shift` otherwise,
    clamped to [0, 255], and written back to all three colour channels.
    A fourth (alpha) channel is left as-is. Grayscale gradation is kept;
    this is not a binarization.

    Args:
        pixels: HxW, HxWx3 or HxWx4 uint8 array

    Returns:
        New uint8 array of the same shape
    """
    if pixels.ndim == 2:
        mean = pixels.astype(np.float32)
    else:
        mean = pixels[..., :3].astype(np.float32).mean(axis=-1)

    adjusted = np.where(
        mean < threshold,
        np.maximum(0.0, mean - shift),
        np.minimum(255.0, mean + shift),
    )
    value = np.rint(adjusted).astype(np.uint8)

    if pixels.ndim == 2:
        return value

    result = pixels.copy()
    result[..., :3] = value[..., np.newaxis]
    return result


class ImageNormalizer:
    """
    Resize and contrast-normalize captured frames before local OCR.

    Usage:
        normalizer = ImageNormalizer()
        normalized = normalizer.normalize(data_url)  # returns a data URL
    """

    def __init__(self, config: Optional[NormalizeConfig] = None):
        self.config = config or NormalizeConfig()

    def normalize(self, image: ImageInput) -> ImageInput:
        """
        Normalize an encoded image.

        Args:
            image: EncodedImage, raw encoded bytes, or a data URI string

        Returns:
            The normalized image in the same form as the input, or the
            input object itself if it could not be processed.
        """
        try:
            encoded = self._coerce(image)
            pixels = self.decode(encoded.data)
            pixels = self.normalize_pixels(pixels)
            data = self.encode(pixels)
        except ImageProcessingFailure as e:
            logger.warning(f"Image normalization skipped: {e.message}")
            return image
        except (cv2.error, ValueError, TypeError) as e:
            logger.warning(f"Image normalization skipped: {e}")
            return image

        normalized = EncodedImage(data=data, mime_type="image/jpeg")

        if isinstance(image, str):
            return normalized.to_data_url()
        if isinstance(image, (bytes, bytearray)):
            return normalized.data
        return normalized

    def normalize_pixels(self, pixels: np.ndarray) -> np.ndarray:
        """Resize and contrast-stretch a decoded pixel array."""
        height, width = pixels.shape[:2]
        if width == 0 or height == 0:
            raise ImageProcessingFailure(f"Degenerate image size: {width}x{height}")

        new_width, new_height = self.target_size(width, height)
        if (new_width, new_height) != (width, height):
            pixels = cv2.resize(
                pixels, (new_width, new_height), interpolation=cv2.INTER_AREA
            )

        return enhance_contrast(
            pixels,
            threshold=self.config.dark_threshold,
            shift=self.config.contrast_shift,
        )

    def target_size(self, width: int, height: int) -> Tuple[int, int]:
        """
        Compute output dimensions.

        Images within the bound keep their size. Otherwise the larger side
        becomes `max_dimension` and the other is scaled by the same factor,
        rounded to the nearest pixel.
        """
        max_dim = self.config.max_dimension
        if width <= max_dim and height <= max_dim:
            return width, height

        if width > height:
            return max_dim, max(1, round(height * max_dim / width))
        return max(1, round(width * max_dim / height)), max_dim

    def decode(self, data: bytes) -> np.ndarray:
        """Decode image bytes into a BGR array."""
        if not data:
            raise ImageProcessingFailure("Empty image payload")

        buffer = np.frombuffer(data, np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None:
            raise ImageProcessingFailure("Could not decode image bytes")
        return image

    def encode(self, pixels: np.ndarray) -> bytes:
        """Encode a BGR array as JPEG."""
        ok, buffer = cv2.imencode(
            ".jpg",
            pixels,
            [int(cv2.IMWRITE_JPEG_QUALITY), int(self.config.jpeg_quality)],
        )
        if not ok:
            raise ImageProcessingFailure("JPEG encoding failed")

        data = buffer.tobytes()
        if len(data) < self.config.min_encoded_bytes:
            raise ImageProcessingFailure(
                f"Encoded image too small ({len(data)} bytes)"
            )
        return data

    def _coerce(self, image: ImageInput) -> EncodedImage:
        if isinstance(image, EncodedImage):
            return image
        if isinstance(image, (bytes, bytearray)):
            return EncodedImage(data=bytes(image))
        if isinstance(image, str):
            return EncodedImage.from_data_url(image)
        raise ImageProcessingFailure(f"Unsupported image type: {type(image).__name__}")
