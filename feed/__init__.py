from feed.base import FeedError, ItemSource
from feed.pr0gramm import LoginError, Pr0grammClient

__all__ = [
    "FeedError",
    "ItemSource",
    "LoginError",
    "Pr0grammClient",
]
