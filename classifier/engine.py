"""
Classifier. Runs every analysis against a downloaded file and merges
the results into one ClassificationResult.
"""

import logging
from pathlib import Path

import pytesseract

from classifier.analysis import detect_correct_gray, detect_text
from config.settings import Config
from models import ClassificationResult

log = logging.getLogger(__name__)


class Classifier:
    def __init__(self, config: Config):
        self._min_chars = config.text_min_chars
        self._ocr_timeout = config.ocr_timeout
        self._gray_fraction = config.gray_fraction
        if config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = config.tesseract_cmd

    def classify(self, item_id: int, path: Path) -> ClassificationResult:
        """
        Classify one file.

        Raises:
            ClassificationError: if the image can't be decoded.
        """
        text = detect_text(path, min_chars=self._min_chars, timeout=self._ocr_timeout)
        gray = detect_correct_gray(path, fraction=self._gray_fraction)

        result = ClassificationResult(item_id=item_id, has_text=text, correct_gray=gray)
        log.debug(f"item {item_id}: text={text} gray={gray}")
        return result
