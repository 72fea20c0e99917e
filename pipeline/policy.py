"""
Processing policies. How a stream of items is turned into outcomes.

Two strategies, picked per mode:

- ConcurrentPolicy: one producer, W worker threads, one bounded queue.
  Best effort: a failed item is logged and the rest go on. Completion
  order is arbitrary, so it tracks a resume point (the last item of the
  fully finished prefix, in emission order) instead of a cursor.
- AscendingPolicy: sorts the batch by id and works through it on the
  calling thread. Stops at the first failure so the cursor can never
  move past an item that wasn't handled.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable

from feed.base import FeedError
from models import Item, Outcome, RunSummary
from pipeline.dedup import Cursor

log = logging.getLogger(__name__)

ProcessFn = Callable[[Item], Outcome]
ProgressFn = Callable[[int], None]

_STOP = object()

# a feed page is 120 items, so repeats further apart than this don't happen
SEEN_WINDOW = 1000


class RecentIds:
    """Set of the last `size` ids added. Older ids are forgotten."""

    def __init__(self, size: int = SEEN_WINDOW):
        self._order: deque[int] = deque()
        self._ids: set[int] = set()
        self._size = max(size, 1)

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item_id: int) -> bool:
        """Add `item_id`. Returns False if it was already present."""
        if item_id in self._ids:
            return False
        self._ids.add(item_id)
        self._order.append(item_id)
        if len(self._order) > self._size:
            self._ids.discard(self._order.popleft())
        return True


def _safe_process(process: ProcessFn, item: Item) -> Outcome:
    """Run one item. Whatever goes wrong stays with that item."""
    try:
        return process(item)
    except Exception:
        log.exception(f"item {item.id}: unexpected error")
        return Outcome.FAILED


class ProcessingPolicy(ABC):
    @abstractmethod
    def run(self, items: Iterable[Item], process: ProcessFn) -> RunSummary:
        """Process every item exactly once and report the outcomes."""
        ...


class ProgressTracker:
    """
    Tracks the longest prefix of emitted items with a permanent outcome.

    `on_progress` is called with the id of the last item of that prefix
    each time it grows. Calls are serialized and in order.
    """

    def __init__(self, on_progress: ProgressFn | None = None):
        self._on_progress = on_progress
        self._lock = threading.Lock()
        # only in-flight items are held: entries are dropped once the
        # prefix moves past them, and everything once the prefix is stuck
        self._ids: dict[int, int] = {}
        self._done: dict[int, Outcome] = {}
        self._seq = 0
        self._next = 0
        self._stuck = False
        self.resume_id: int | None = None

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._ids)

    def emit(self, item_id: int) -> int:
        with self._lock:
            seq = self._seq
            self._seq += 1
            if not self._stuck:
                self._ids[seq] = item_id
            return seq

    def finish(self, seq: int, outcome: Outcome):
        with self._lock:
            if self._stuck:
                return

            self._done[seq] = outcome
            moved = False
            while self._next in self._done and self._done[self._next].permanent:
                del self._done[self._next]
                self.resume_id = self._ids.pop(self._next)
                self._next += 1
                moved = True

            if self._next in self._done:
                # a non-permanent outcome: the prefix can't grow this run
                self._stuck = True
                self._ids.clear()
                self._done.clear()

            if moved and self._on_progress is not None:
                self._on_progress(self.resume_id)


class ConcurrentPolicy(ProcessingPolicy):
    def __init__(
        self,
        workers: int = 6,
        queue_size: int | None = None,
        on_progress: ProgressFn | None = None,
        keep_outcomes: bool = True,
        seen_window: int = SEEN_WINDOW,
    ):
        if workers < 1:
            raise ValueError("need at least one worker")
        self._workers = workers
        self._queue_size = queue_size or workers * 2
        self._on_progress = on_progress
        self._keep_outcomes = keep_outcomes
        self._seen_window = seen_window

    def run(self, items: Iterable[Item], process: ProcessFn) -> RunSummary:
        summary = RunSummary() if self._keep_outcomes else RunSummary(outcomes=None)
        summary_lock = threading.Lock()
        tracker = ProgressTracker(self._on_progress)
        work: queue.Queue = queue.Queue(maxsize=self._queue_size)

        def worker():
            while True:
                entry = work.get()
                if entry is _STOP:
                    return
                seq, item = entry
                outcome = _safe_process(process, item)
                with summary_lock:
                    summary.record(item.id, outcome)
                try:
                    tracker.finish(seq, outcome)
                except Exception:
                    log.exception(f"Recording progress for item {item.id} failed")

        threads = [
            threading.Thread(target=worker, name=f"worker-{n}", daemon=True)
            for n in range(self._workers)
        ]
        for thread in threads:
            thread.start()

        seen = RecentIds(self._seen_window)
        try:
            for item in items:
                if not seen.add(item.id):
                    continue
                # blocks while the queue is full
                work.put((tracker.emit(item.id), item))
        except FeedError as e:
            log.warning(f"Item source failed, finishing queued items: {e}")
            summary.source_error = str(e)
        finally:
            for _ in threads:
                work.put(_STOP)
            for thread in threads:
                thread.join()

        summary.resume_id = tracker.resume_id
        return summary


class AscendingPolicy(ProcessingPolicy):
    def __init__(self, cursor: Cursor, on_progress: ProgressFn | None = None):
        self._cursor = cursor
        self._on_progress = on_progress

    def run(self, items: Iterable[Item], process: ProcessFn) -> RunSummary:
        summary = RunSummary()

        # The whole window is needed before sorting. A partial window could
        # move the cursor past items that were never fetched.
        try:
            batch = sorted({item.id: item for item in items}.values(), key=lambda item: item.id)
        except FeedError as e:
            log.warning(f"Item source failed, skipping this batch: {e}")
            summary.source_error = str(e)
            summary.resume_id = self._cursor.value
            return summary

        stopped_at = None
        for item in batch:
            if stopped_at is not None:
                summary.record(item.id, Outcome.ABORTED)
                continue

            outcome = _safe_process(process, item)
            summary.record(item.id, outcome)

            if outcome.permanent:
                if self._cursor.advance(item.id) and self._on_progress is not None:
                    self._on_progress(item.id)
            else:
                stopped_at = item.id
                log.warning(f"Stopping batch at item {item.id} ({outcome.value})")

        summary.resume_id = self._cursor.value
        return summary
