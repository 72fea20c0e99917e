"""
Result sinks. Database row or tags on the platform.

A sink either records the result or raises SinkError. It never decides
whether the worker goes on; the coordinator does.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod

from feed.base import FeedError
from feed.pr0gramm import Pr0grammClient
from models import ClassificationResult, ProcessedRecord
from storage.db import Storage

log = logging.getLogger(__name__)


class SinkError(Exception):
    """Raised when a result can't be stored or published."""
    pass


class Sink(ABC):
    @abstractmethod
    def publish(self, result: ClassificationResult):
        ...

    @abstractmethod
    def name(self) -> str:
        ...


class DatabaseSink(Sink):
    """Insert-if-absent into items_text. Results without text are stored too."""

    def __init__(self, storage: Storage):
        self._storage = storage

    def name(self) -> str:
        return "database"

    def publish(self, result: ClassificationResult):
        record = ProcessedRecord(item_id=result.item_id, has_text=result.has_text)
        try:
            is_new = self._storage.insert_if_absent(record)
        except sqlite3.Error as e:
            raise SinkError(f"storing item {result.item_id}: {e}") from e

        if not is_new:
            log.debug(f"item {result.item_id} was already stored")


class TagSink(Sink):
    """Add the result's tags to the item. Empty tag sets are not sent."""

    def __init__(self, client: Pr0grammClient):
        self._client = client

    def name(self) -> str:
        return "tags"

    def publish(self, result: ClassificationResult):
        tags = sorted(result.tags)
        if not tags:
            return

        log.info(f"item {result.item_id}: adding tags {', '.join(tags)}")
        try:
            self._client.add_tags(result.item_id, tags)
        except FeedError as e:
            raise SinkError(f"tagging item {result.item_id}: {e}") from e
