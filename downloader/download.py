"""
Image downloader. Fetches an item's image into the scratch cache.

Guarantees:
- A non-empty cached file is returned without touching the network.
- A failed transfer never leaves a file at the cache path.
- The response body is drained and closed on every path, so the
  connection goes back to the pool.
"""

import logging
import os
import re
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter

from config.settings import Config

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.]+")
_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")


class DownloadError(Exception):
    """Raised when an image can't be downloaded."""
    pass


class MalformedReferenceError(DownloadError):
    """Raised for image references that are absolute URLs instead of paths."""
    pass


def cache_filename(image: str) -> str:
    """Filesystem-safe name for an image path."""
    return _UNSAFE_CHARS.sub("_", image)


def validate_reference(image: str):
    if not image:
        raise MalformedReferenceError("empty image reference")
    if image.startswith("//") or _SCHEME.match(image):
        raise MalformedReferenceError(f"image reference looks like a URL: {image!r}")


class Downloader:
    def __init__(self, config: Config, session: requests.Session | None = None):
        self._base_url = config.image_url.rstrip("/") + "/"
        self._cache_dir = config.cache_dir
        self._timeout = config.http_timeout
        if session is None:
            session = requests.Session()
            # one pooled connection per worker
            adapter = HTTPAdapter(pool_maxsize=max(config.workers, 1))
            session.mount("https://", adapter)
            session.mount("http://", adapter)
            session.headers["User-Agent"] = config.user_agent
        self._session = session

    def cache_path(self, image: str) -> Path:
        return self._cache_dir / cache_filename(image)

    def download(self, image: str) -> Path:
        """Download `image` into the cache and return the local path."""
        validate_reference(image)

        target = self.cache_path(image)
        if target.is_file() and target.stat().st_size > 0:
            log.debug(f"Cache hit for {image}")
            return target

        self._cache_dir.mkdir(parents=True, exist_ok=True)

        url = self._base_url + image.lstrip("/")
        try:
            response = self._session.get(url, stream=True, timeout=self._timeout)
        except requests.RequestException as e:
            raise DownloadError(f"download {url}: {e}") from e

        try:
            if response.status_code != 200:
                raise DownloadError(f"download {url}: HTTP {response.status_code}")
            self._write(response, target)
        finally:
            _drain(response)

        return target

    def _write(self, response: requests.Response, target: Path):
        # the cache path only ever holds complete files
        partial = target.with_suffix(target.suffix + ".part")
        try:
            with open(partial, "wb") as fp:
                for chunk in response.iter_content(CHUNK_SIZE):
                    fp.write(chunk)
            os.replace(partial, target)
        except (OSError, requests.RequestException) as e:
            raise DownloadError(f"writing {target}: {e}") from e
        finally:
            partial.unlink(missing_ok=True)


def _drain(response: requests.Response):
    """Consume whatever is left of the body, then close it."""
    try:
        while response.raw.read(CHUNK_SIZE):
            pass
    except Exception as e:
        log.debug(f"Draining response failed: {e}")
    finally:
        response.close()
