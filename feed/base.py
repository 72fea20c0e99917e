"""
Item source interface. The pipeline only ever sees this.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

from models import Item


class FeedError(Exception):
    """Raised when the feed can't be read."""
    pass


class ItemSource(ABC):
    """
    Yields feed items newest-first.

    Contract:
    - iter_items() pages through the feed lazily; callers may stop early.
    - With `older` set, only items with id < older are yielded.
    - With `max_age` set, iteration stops at the first item created
      before now - max_age (wall clock at fetch time). Pages are
      newest-first, so everything after it is older still.
    - Source errors raise FeedError from the iterator.
    """

    @abstractmethod
    def fetch_page(self, flags: int, older: int | None = None) -> tuple[list[Item], bool]:
        """Fetch one page. Returns (items, at_end)."""
        ...

    def iter_items(
        self,
        flags: int,
        older: int | None = None,
        max_age: timedelta | None = None,
    ) -> Iterator[Item]:
        while True:
            items, at_end = self.fetch_page(flags, older)
            if not items:
                return

            for item in items:
                if max_age is not None and _too_old(item, max_age):
                    return
                yield item

            if at_end:
                return

            older = min(item.id for item in items)
            self.pause()

    def pause(self):
        """Hook between pages. Sources with a rate limit override it."""
        pass


def _too_old(item: Item, max_age: timedelta) -> bool:
    return item.created < datetime.now(timezone.utc) - max_age
