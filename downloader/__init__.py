from downloader.cleanup import CleanupScheduler
from downloader.download import (
    DownloadError,
    Downloader,
    MalformedReferenceError,
    cache_filename,
)

__all__ = [
    "CleanupScheduler",
    "DownloadError",
    "Downloader",
    "MalformedReferenceError",
    "cache_filename",
]
