"""
Image analyses. Both are pure functions of the file on disk.

- Text detection: tesseract OCR, cleaned down to letters and periods.
  Short output is texture noise, not text.
- Correct gray: the top row of pixels is mostly the reference gray
  (#161618). Looking at one row is enough for the border pattern and
  much cheaper than the full image.
"""

import logging
import re
from pathlib import Path

import pytesseract
from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)

TEXT_MIN_CHARS = 30
OCR_TIMEOUT = 30

# 16-bit per channel, like 0x16 -> 0x1616
GRAY_REFERENCE = (0x1616, 0x1616, 0x1818)
GRAY_THRESHOLD = 0x0606
GRAY_FRACTION = 0.75

_NOT_TEXT = re.compile(r"[^a-zA-Z.]")


class ClassificationError(Exception):
    """Raised when an image can't be analyzed."""
    pass


def clean_ocr_text(raw: str) -> str:
    """Keep only ASCII letters and periods."""
    return _NOT_TEXT.sub("", raw)


def has_text(raw: str, min_chars: int = TEXT_MIN_CHARS) -> bool:
    return len(clean_ocr_text(raw)) > min_chars


def run_ocr(path: Path, timeout: float = OCR_TIMEOUT) -> str:
    """Run tesseract on `path`. The process is killed after `timeout` seconds."""
    try:
        return pytesseract.image_to_string(str(path), timeout=timeout)
    except (pytesseract.TesseractError, OSError) as e:
        raise ClassificationError(f"running tesseract on {path}: {e}") from e
    except RuntimeError as e:
        # pytesseract signals a timeout with a bare RuntimeError
        raise ClassificationError(f"tesseract timed out on {path}") from e


def detect_text(path: Path, min_chars: int = TEXT_MIN_CHARS, timeout: float = OCR_TIMEOUT) -> bool:
    """
    Whether the image contains real text.

    OCR failures are soft: they are logged and count as "no text", so a
    broken or slow tesseract run never fails the item.
    """
    try:
        raw = run_ocr(path, timeout=timeout)
    except ClassificationError as e:
        log.warning(f"OCR failed, assuming no text: {e}")
        return False

    return has_text(raw, min_chars)


def _is_reference_gray(pixel: tuple[int, ...]) -> bool:
    r, g, b = (channel * 0x101 for channel in pixel[:3])
    d_r = GRAY_REFERENCE[0] - r
    d_g = GRAY_REFERENCE[1] - g
    d_b = GRAY_REFERENCE[2] - b
    return d_r * d_r + d_g * d_g + d_b * d_b < GRAY_THRESHOLD * GRAY_THRESHOLD


def detect_correct_gray(path: Path, fraction: float = GRAY_FRACTION) -> bool:
    """
    Whether more than `fraction` of the top row is the reference gray.

    Pixels are compared with alpha premultiplied, so a transparent pixel
    counts as black whatever its stored color.
    """
    try:
        with Image.open(path) as image:
            pixels = image.convert("RGBA").convert("RGBa")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ClassificationError(f"decoding {path}: {e}") from e

    width = pixels.width
    if width == 0:
        return False

    gray_count = sum(1 for x in range(width) if _is_reference_gray(pixels.getpixel((x, 0))))
    return gray_count > width * fraction
