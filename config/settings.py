"""
Configuration. All settings from env vars (or a .env file).
CLI flags override individual fields after loading.
"""

import os
from dataclasses import dataclass
from pathlib import Path

# Auto-load .env file so you don't need `export $(grep ...)` every time
from dotenv import load_dotenv
load_dotenv()


@dataclass
class Config:
    # ── Feed API ──
    api_url: str = os.environ.get("ANALYZE_API_URL", "https://pr0gramm.com/api")
    image_url: str = os.environ.get("ANALYZE_IMAGE_URL", "https://img.pr0gramm.com/")
    user_agent: str = os.environ.get("ANALYZE_USER_AGENT", "pr0-analyze/0.1")
    # content flags bitset: 1=sfw, 2=nsfw, 4=nsfl, 8=nsfp
    feed_flags: int = int(os.environ.get("ANALYZE_FEED_FLAGS", "1"))
    # seconds to wait between feed pages, to stay under the rate limit
    page_delay: float = float(os.environ.get("ANALYZE_PAGE_DELAY", "0.5"))

    # Credentials for the tag mode, from env or CLI flags
    username: str = os.environ.get("ANALYZE_USERNAME", "")
    password: str = os.environ.get("ANALYZE_PASSWORD", "")

    # HTTP timeouts (connect, read) in seconds
    http_connect_timeout: float = float(os.environ.get("ANALYZE_HTTP_CONNECT_TIMEOUT", "10"))
    http_read_timeout: float = float(os.environ.get("ANALYZE_HTTP_READ_TIMEOUT", "30"))

    # ── Storage ──
    db_path: Path = Path(os.environ.get("ANALYZE_DB_PATH", "data/analyze.db"))
    db_max_open: int = int(os.environ.get("ANALYZE_DB_MAX_OPEN", "2"))
    db_max_idle: int = int(os.environ.get("ANALYZE_DB_MAX_IDLE", "1"))
    db_max_lifetime: float = float(os.environ.get("ANALYZE_DB_MAX_LIFETIME", "3600"))

    # ── Scratch cache ──
    cache_dir: Path = Path(os.environ.get("ANALYZE_CACHE_DIR", "cache"))
    # "keep" | "immediate" | "deferred"
    cleanup: str = os.environ.get("ANALYZE_CLEANUP", "keep")
    cleanup_delay: float = float(os.environ.get("ANALYZE_CLEANUP_DELAY", "900"))

    # ── Pipeline ──
    workers: int = int(os.environ.get("ANALYZE_WORKERS", "6"))
    queue_size: int = int(os.environ.get("ANALYZE_QUEUE_SIZE", "12"))
    max_age_minutes: float = float(os.environ.get("ANALYZE_MAX_AGE_MINUTES", "15"))
    poll_interval: float = float(os.environ.get("ANALYZE_POLL_INTERVAL", "120"))
    tag_poll_interval: float = float(os.environ.get("ANALYZE_TAG_POLL_INTERVAL", "60"))

    # ── Classifier ──
    tesseract_cmd: str = os.environ.get("ANALYZE_TESSERACT_CMD", "tesseract")
    ocr_timeout: float = float(os.environ.get("ANALYZE_OCR_TIMEOUT", "30"))
    # Cleaned OCR output must be longer than this to count as text
    text_min_chars: int = int(os.environ.get("ANALYZE_TEXT_MIN_CHARS", "30"))
    gray_fraction: float = float(os.environ.get("ANALYZE_GRAY_FRACTION", "0.75"))

    @property
    def http_timeout(self) -> tuple[float, float]:
        return (self.http_connect_timeout, self.http_read_timeout)


def load_config() -> Config:
    return Config()


CLEANUP_POLICIES = ("keep", "immediate", "deferred")


def validate_config(config: Config) -> Config:
    """Reject settings the pipeline can't run with. Raises ValueError."""
    if config.cleanup not in CLEANUP_POLICIES:
        raise ValueError(
            f"cleanup must be one of {', '.join(CLEANUP_POLICIES)}, got {config.cleanup!r}"
        )
    for name in ("workers", "queue_size", "db_max_open"):
        if getattr(config, name) < 1:
            raise ValueError(f"{name} must be at least 1, got {getattr(config, name)}")
    if config.db_max_idle < 0:
        raise ValueError(f"db_max_idle can't be negative, got {config.db_max_idle}")
    return config
