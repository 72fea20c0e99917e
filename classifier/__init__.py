from classifier.analysis import (
    ClassificationError,
    clean_ocr_text,
    detect_correct_gray,
    detect_text,
    has_text,
)
from classifier.engine import Classifier

__all__ = [
    "ClassificationError",
    "Classifier",
    "clean_ocr_text",
    "detect_correct_gray",
    "detect_text",
    "has_text",
]
