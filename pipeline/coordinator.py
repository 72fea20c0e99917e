"""
Pipeline coordinator. Wires source, dedup, downloader, classifier and
sink together and hands the item stream to a ProcessingPolicy.

Per item: image check -> dedup check -> download -> classify -> sink.
Every item ends with exactly one Outcome.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta

from classifier.analysis import ClassificationError
from classifier.engine import Classifier
from config.settings import CLEANUP_POLICIES
from downloader.cleanup import CleanupScheduler
from downloader.download import DownloadError, Downloader, MalformedReferenceError
from feed.base import ItemSource
from models import Item, Outcome, RunSummary
from pipeline.dedup import DedupStore
from pipeline.policy import ProcessingPolicy
from sinks.output import Sink, SinkError

log = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        source: ItemSource,
        dedup: DedupStore,
        downloader: Downloader,
        classifier: Classifier,
        sink: Sink,
        policy: ProcessingPolicy,
        flags: int = 1,
        cleanup: str = "keep",
        scheduler: CleanupScheduler | None = None,
    ):
        if cleanup not in CLEANUP_POLICIES:
            raise ValueError(f"Unknown cleanup policy: '{cleanup}'. Use one of {', '.join(CLEANUP_POLICIES)}.")
        if cleanup == "deferred" and scheduler is None:
            raise ValueError("Deferred cleanup needs a CleanupScheduler")

        self.source = source
        self.dedup = dedup
        self.downloader = downloader
        self.classifier = classifier
        self.sink = sink
        self.policy = policy
        self.flags = flags
        self.cleanup = cleanup
        self.scheduler = scheduler

    def run(self, older: int | None = None, max_age: timedelta | None = None) -> RunSummary:
        """
        One pass over the feed.

        Args:
            older: only items with a smaller id (backfill). None = newest.
            max_age: drop items created longer ago than this. None = no bound.
        """
        items = self.source.iter_items(self.flags, older=older, max_age=max_age)
        summary = self.policy.run(items, self.process_item)
        log.info(f"Run finished: {summary.describe()}")
        return summary

    def process_item(self, item: Item) -> Outcome:
        if not item.is_image:
            log.debug(f"item {item.id}: not an image, skipping")
            return Outcome.SKIPPED

        try:
            if self.dedup.is_processed(item.id):
                return Outcome.DUPLICATE
        except Exception as e:
            # leave it for the next run rather than risk reprocessing
            log.warning(f"item {item.id}: dedup check failed, leaving it alone: {e}")
            return Outcome.UNCHECKED

        log.info(f"Checking item {item.id} {item.image_url}")

        try:
            path = self.downloader.download(item.image)
        except MalformedReferenceError as e:
            log.warning(f"item {item.id}: rejected: {e}")
            return Outcome.REJECTED
        except DownloadError as e:
            log.warning(f"item {item.id} {item.image_url}: {e}")
            return Outcome.FAILED

        try:
            result = self.classifier.classify(item.id, path)
        except ClassificationError as e:
            log.warning(f"item {item.id} {item.image_url}: {e}")
            return Outcome.FAILED
        finally:
            self._release(path)

        try:
            self.sink.publish(result)
        except SinkError as e:
            log.warning(f"item {item.id}: {self.sink.name()} sink failed: {e}")
            return Outcome.FAILED

        return Outcome.PROCESSED

    def _release(self, path):
        if self.cleanup == "immediate":
            path.unlink(missing_ok=True)
        elif self.cleanup == "deferred":
            self.scheduler.schedule(path)


def repeat(
    run: Callable[[], RunSummary],
    interval: float,
    stop: threading.Event | None = None,
    max_runs: int | None = None,
) -> int:
    """
    Call `run` every `interval` seconds until `stop` is set or `max_runs`
    is reached. A failing run is logged and the loop goes on.
    Returns the number of runs.
    """
    stop = stop or threading.Event()
    runs = 0
    while not stop.is_set():
        started = time.monotonic()
        try:
            run()
        except Exception:
            log.exception("Update run failed")
        runs += 1

        if max_runs is not None and runs >= max_runs:
            break

        wait = max(interval - (time.monotonic() - started), 0)
        log.info(f"Sleeping for {wait:.0f}s")
        stop.wait(wait)

    return runs
