"""
pr0gramm API client. Reads the item feed, logs in, and adds tags.

Endpoints used:
- GET  /items/get    item pages, newest first, paged with `older`
- POST /user/login   form login, sets the `me` session cookie
- POST /tags/add     add comma-separated tags, needs the session nonce
"""

import json
import logging
import time
from urllib.parse import unquote

import requests

from config.settings import Config
from feed.base import FeedError, ItemSource
from models import Item

log = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 5.0


class LoginError(FeedError):
    """Raised when the login is rejected."""
    pass


class Pr0grammClient(ItemSource):
    def __init__(self, config: Config, session: requests.Session | None = None):
        self._api = config.api_url.rstrip("/")
        self._timeout = config.http_timeout
        self._page_delay = config.page_delay
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = config.user_agent

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Make an API request. Waits once on HTTP 429, then gives up."""
        url = f"{self._api}{path}"
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
            if resp.status_code == 429:
                wait = _retry_after(resp)
                log.warning(f"Rate limited on {path}, waiting {wait:.0f}s")
                time.sleep(wait)
                resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise FeedError(f"{method} {path}: {e}") from e

        if resp.status_code != 200:
            raise FeedError(f"{method} {path}: HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as e:
            raise FeedError(f"{method} {path}: invalid JSON") from e

    def fetch_page(self, flags: int, older: int | None = None) -> tuple[list[Item], bool]:
        params = {"flags": flags}
        if older is not None:
            params["older"] = older

        data = self._request("GET", "/items/get", params=params)
        items = []
        for raw in data.get("items", []):
            try:
                items.append(Item.from_api(raw))
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"Skipping unparseable feed entry {raw.get('id')!r}: {e}")

        return items, bool(data.get("atEnd", False))

    def pause(self):
        if self._page_delay > 0:
            time.sleep(self._page_delay)

    def login(self, username: str, password: str):
        """Log in and keep the session cookie. Raises LoginError on rejection."""
        if not username or not password:
            raise LoginError("Username and password are required")

        data = self._request("POST", "/user/login", data={"name": username, "password": password})
        if not data.get("success"):
            reason = "banned" if data.get("ban") else "wrong credentials"
            raise LoginError(f"Login failed for {username}: {reason}")

        log.info(f"Logged in as {username}")

    def nonce(self) -> str:
        """Nonce for write calls: first 16 chars of the session id in the `me` cookie."""
        cookie = self._session.cookies.get("me")
        if not cookie:
            raise LoginError("Not logged in (no `me` cookie)")

        try:
            session_id = json.loads(unquote(cookie))["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise LoginError("Malformed `me` cookie") from e

        return session_id[:16]

    def add_tags(self, item_id: int, tags: list[str]):
        self._request(
            "POST",
            "/tags/add",
            data={"itemId": item_id, "tags": ",".join(tags), "_nonce": self.nonce()},
        )


def _retry_after(resp: requests.Response) -> float:
    try:
        return float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except ValueError:
        return DEFAULT_RETRY_AFTER
