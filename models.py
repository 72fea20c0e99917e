"""
Core data types: feed items, classification results, stored records and
run outcomes. Behavior is limited to parsing and derived properties.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

IMAGE_BASE_URL = "https://img.pr0gramm.com/"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")

TAG_TEXT = "text"
TAG_CORRECT_GRAY = "richtiges grau"


@dataclass(frozen=True)
class Item:
    """A single post from the feed. Immutable once fetched."""
    id: int
    image: str              # relative image path, e.g. "2024/01/01/abc.jpg"
    created: datetime
    flags: int = 1

    @classmethod
    def from_api(cls, data: dict) -> "Item":
        return cls(
            id=int(data["id"]),
            image=data.get("image", "") or "",
            created=datetime.fromtimestamp(int(data.get("created", 0)), tz=timezone.utc),
            flags=int(data.get("flags", 1)),
        )

    @property
    def is_image(self) -> bool:
        return self.image.lower().endswith(IMAGE_EXTENSIONS)

    @property
    def image_url(self) -> str:
        return IMAGE_BASE_URL + self.image.lstrip("/")

    def __repr__(self) -> str:
        return f"Item({self.id}, {self.image})"


@dataclass(frozen=True)
class ClassificationResult:
    """Output of the classifier for one item."""
    item_id: int
    has_text: bool
    correct_gray: bool

    @property
    def tags(self) -> frozenset[str]:
        tags = set()
        if self.has_text:
            tags.add(TAG_TEXT)
        if self.correct_gray:
            tags.add(TAG_CORRECT_GRAY)
        return frozenset(tags)


@dataclass
class ProcessedRecord:
    """A row of the items_text table."""
    item_id: int
    has_text: bool
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Outcome(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"     # already handled earlier
    SKIPPED = "skipped"         # not an image
    REJECTED = "rejected"       # malformed image reference
    UNCHECKED = "unchecked"     # dedup check failed, left alone
    FAILED = "failed"
    ABORTED = "aborted"         # not attempted, batch stopped earlier

    @property
    def permanent(self) -> bool:
        """Whether this outcome is final and may move a cursor past the item."""
        return self in _PERMANENT


_PERMANENT = {Outcome.PROCESSED, Outcome.DUPLICATE, Outcome.SKIPPED, Outcome.REJECTED}


@dataclass
class RunSummary:
    """
    What one pipeline run did. Counts are always kept; per-item outcomes
    only when `outcomes` is a dict (None for unbounded backfills).
    """
    outcomes: dict[int, Outcome] | None = field(default_factory=dict)
    counts: Counter = field(default_factory=Counter)
    source_error: str | None = None
    resume_id: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record(self, item_id: int, outcome: Outcome):
        self.counts[outcome] += 1
        if self.outcomes is not None:
            self.outcomes[item_id] = outcome

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def count(self, outcome: Outcome) -> int:
        return self.counts[outcome]

    def describe(self) -> str:
        parts = ", ".join(
            f"{outcome.value}={n}"
            for outcome, n in sorted(self.counts.items(), key=lambda entry: entry[0].value)
        )
        return f"{self.total} items ({parts or 'none'})"
