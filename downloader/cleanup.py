"""
Deferred deletion of scratch files.

One daemon thread owns a delay queue of (due time, path). Files are
deleted when due; shutdown(drain=True) deletes everything still pending.
"""

import heapq
import itertools
import logging
import threading
import time
from pathlib import Path

log = logging.getLogger(__name__)


class CleanupScheduler:
    def __init__(self, delay: float = 900.0, clock=time.monotonic):
        self._delay = delay
        self._clock = clock
        self._pending: list[tuple[float, int, Path]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread: threading.Thread | None = None

    def start(self):
        with self._cond:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._loop, name="cleanup", daemon=True)
            self._thread.start()

    def schedule(self, path: Path, delay: float | None = None):
        """Delete `path` after `delay` seconds (default: the scheduler's delay)."""
        due = self._clock() + (self._delay if delay is None else delay)
        with self._cond:
            if self._stopped:
                raise RuntimeError("cleanup scheduler is shut down")
            heapq.heappush(self._pending, (due, next(self._seq), path))
            self._cond.notify()

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    def run_due(self) -> int:
        """Delete every file that is due now. Returns how many were handled."""
        due = []
        with self._cond:
            now = self._clock()
            while self._pending and self._pending[0][0] <= now:
                due.append(heapq.heappop(self._pending)[2])
        for path in due:
            _remove(path)
        return len(due)

    def _loop(self):
        while True:
            with self._cond:
                if self._stopped:
                    return
                if self._pending:
                    timeout = max(self._pending[0][0] - self._clock(), 0)
                else:
                    timeout = None
                self._cond.wait(timeout)
                if self._stopped:
                    return
            self.run_due()

    def shutdown(self, drain: bool = True):
        """Stop the thread. With drain, pending files are deleted right away."""
        with self._cond:
            self._stopped = True
            remaining = [path for _, _, path in self._pending]
            self._pending.clear()
            self._cond.notify_all()

        if self._thread is not None:
            self._thread.join()

        if drain:
            for path in remaining:
                _remove(path)
        elif remaining:
            log.info(f"Dropped {len(remaining)} pending cleanups")


def _remove(path: Path):
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"Could not delete {path}: {e}")
