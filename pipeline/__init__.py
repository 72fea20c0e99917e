from pipeline.coordinator import Pipeline, repeat
from pipeline.dedup import Cursor, CursorDedup, DatabaseDedup, DedupStore
from pipeline.policy import AscendingPolicy, ConcurrentPolicy, ProcessingPolicy, ProgressTracker, RecentIds

__all__ = [
    "AscendingPolicy",
    "ConcurrentPolicy",
    "Cursor",
    "CursorDedup",
    "DatabaseDedup",
    "DedupStore",
    "Pipeline",
    "ProcessingPolicy",
    "ProgressTracker",
    "RecentIds",
    "repeat",
]
