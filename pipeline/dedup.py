"""
Dedup checks. Answer "has this item been handled" before any network
or OCR work happens.
"""

import threading
from abc import ABC, abstractmethod

from storage.db import Storage


class Cursor:
    """
    High-water mark: the largest item id known to be processed or
    permanently skipped. Never moves backwards.
    """

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def advance(self, item_id: int) -> bool:
        """Move the mark up to `item_id`. Lower ids are ignored. Returns True if it moved."""
        with self._lock:
            if item_id <= self._value:
                return False
            self._value = item_id
            return True

    def __repr__(self) -> str:
        return f"Cursor({self.value})"


class DedupStore(ABC):
    @abstractmethod
    def is_processed(self, item_id: int) -> bool:
        ...


class DatabaseDedup(DedupStore):
    """Looks the id up in items_text. Rows are written by the DatabaseSink."""

    def __init__(self, storage: Storage):
        self._storage = storage

    def is_processed(self, item_id: int) -> bool:
        return self._storage.has_processed(item_id)


class CursorDedup(DedupStore):
    """Everything at or below the cursor counts as handled."""

    def __init__(self, cursor: Cursor):
        self._cursor = cursor

    def is_processed(self, item_id: int) -> bool:
        return item_id <= self._cursor.value
