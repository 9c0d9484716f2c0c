"""
Scan Image Script

Runs one recognition pass on an image file and prints the text.
Optionally reads the result aloud.

Usage:
    python scripts/scan_image.py photo.jpg --mode local --speak
"""
import argparse
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

# Ensure current dir is in path
sys.path.append(os.getcwd())

load_dotenv()

from kanwen.config import get_settings
from kanwen.errors import RecognitionError
from kanwen.ocr.backends import RecognitionMode, create_backend
from kanwen.speech.playback import PlaybackController, Pyttsx3SpeechEngine
from kanwen.speech.similarity import SimilarityGate
from kanwen.vision.preprocessing import EncodedImage

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


def parse_args():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Recognize Traditional Chinese text in an image")
    parser.add_argument("image", type=Path, help="Image file to scan")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RecognitionMode],
        default=settings.recognition_mode,
        help="Recognition backend",
    )
    parser.add_argument("--speak", action="store_true", help="Read the result aloud")
    parser.add_argument("--log-level", default=settings.log_level)
    return parser.parse_args()


async def scan(path: Path, mode: RecognitionMode) -> str:
    image = EncodedImage(
        data=path.read_bytes(),
        mime_type=MIME_TYPES.get(path.suffix.lower(), "image/jpeg"),
    )
    backend = create_backend(mode)

    def show_progress(progress: float) -> None:
        logger.info(f"Progress: {progress * 100:.0f}%")

    return await backend.recognize(image, progress_callback=show_progress)


def main():
    args = parse_args()

    logger.remove()
    logger.add(sys.stderr, level=args.log_level)

    if not args.image.exists():
        logger.error(f"Image not found: {args.image}")
        return 1

    try:
        text = asyncio.run(scan(args.image, RecognitionMode(args.mode)))
    except RecognitionError as e:
        logger.error(f"{e.code}: {e.message}")
        return 2

    print(text)

    if args.speak:
        settings = get_settings()
        controller = PlaybackController(
            Pyttsx3SpeechEngine(),
            gate=SimilarityGate(
                smart_suppression=settings.smart_suppression,
                threshold=settings.similarity_threshold,
            ),
            rate=settings.speech_rate,
        )
        if controller.play(text, force=True):
            controller.wait_until_idle()
        controller.close()
        if controller.last_error is not None:
            logger.error(f"Playback failed: {controller.last_error.message}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
