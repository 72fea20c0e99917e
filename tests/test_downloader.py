"""
Tests for the image downloader and deferred cleanup:
- cache hits skip the network
- failed transfers leave nothing behind
- URL-like references are rejected
- the cleanup scheduler deletes on time and drains on shutdown
"""

import time
from pathlib import Path

import pytest
import requests
import sys

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import Config
from downloader import (
    CleanupScheduler,
    DownloadError,
    Downloader,
    MalformedReferenceError,
    cache_filename,
)


# ──────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────

class FakeRaw:
    def __init__(self, chunks: list[bytes]):
        self._chunks = list(chunks)

    def read(self, size=-1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""

    @property
    def exhausted(self) -> bool:
        return not self._chunks


class FakeResponse:
    def __init__(self, chunks: list[bytes], status_code: int = 200, fail_after: int | None = None):
        self.status_code = status_code
        self.raw = FakeRaw(chunks)
        self.closed = False
        self._fail_after = fail_after

    def iter_content(self, chunk_size):
        sent = 0
        while True:
            if self._fail_after is not None and sent == self._fail_after:
                raise requests.ConnectionError("connection reset")
            chunk = self.raw.read(chunk_size)
            if not chunk:
                return
            sent += 1
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, make_response=None, error: Exception | None = None):
        self.calls: list[str] = []
        self.responses: list[FakeResponse] = []
        self._make_response = make_response or (lambda: FakeResponse([b"\x89PNG", b"data"]))
        self._error = error

    def get(self, url, stream=False, timeout=None):
        self.calls.append(url)
        assert stream
        assert timeout is not None
        if self._error is not None:
            raise self._error
        response = self._make_response()
        self.responses.append(response)
        return response


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.cache_dir = tmp_path / "cache"
    config.image_url = "https://img.example.com/"
    return config


# ──────────────────────────────────────────────
# Cache paths
# ──────────────────────────────────────────────

class TestCacheFilename:
    def test_sanitizes_path(self):
        assert cache_filename("2024/01/01/abc-def.jpg") == "2024_01_01_abc_def.jpg"

    def test_collapses_runs(self):
        assert cache_filename("a//b  c.png") == "a_b_c.png"


# ──────────────────────────────────────────────
# Downloads
# ──────────────────────────────────────────────

class TestDownloader:
    def test_downloads_to_cache(self, config):
        session = FakeSession()
        path = Downloader(config, session=session).download("2024/01/01/abc.png")

        assert path == config.cache_dir / "2024_01_01_abc.png"
        assert path.read_bytes() == b"\x89PNGdata"
        assert session.calls == ["https://img.example.com/2024/01/01/abc.png"]
        assert session.responses[0].closed

    def test_second_download_hits_cache(self, config):
        session = FakeSession()
        downloader = Downloader(config, session=session)

        first = downloader.download("a/b.jpg")
        second = downloader.download("a/b.jpg")

        assert first == second
        assert len(session.calls) == 1

    def test_empty_cache_file_is_refetched(self, config):
        session = FakeSession()
        downloader = Downloader(config, session=session)
        config.cache_dir.mkdir(parents=True)
        downloader.cache_path("a/b.jpg").touch()

        path = downloader.download("a/b.jpg")

        assert len(session.calls) == 1
        assert path.stat().st_size > 0

    def test_failure_mid_transfer_leaves_no_file(self, config):
        session = FakeSession(lambda: FakeResponse([b"one", b"two", b"three"], fail_after=1))
        downloader = Downloader(config, session=session)

        with pytest.raises(DownloadError):
            downloader.download("a/b.jpg")

        assert not downloader.cache_path("a/b.jpg").exists()
        response = session.responses[0]
        assert response.closed
        assert response.raw.exhausted

    def test_interrupted_transfer_leaves_no_file(self, config):
        class InterruptedResponse(FakeResponse):
            def iter_content(self, chunk_size):
                yield b"\xff\xd8\xff partial jpeg"
                raise KeyboardInterrupt

        session = FakeSession(lambda: InterruptedResponse([b"rest"]))
        downloader = Downloader(config, session=session)

        with pytest.raises(KeyboardInterrupt):
            downloader.download("2024/01/01/a.jpg")

        assert not downloader.cache_path("2024/01/01/a.jpg").exists()
        assert list(config.cache_dir.iterdir()) == []
        assert session.responses[0].closed

    def test_retry_after_failure_fetches_again(self, config):
        responses = iter([
            FakeResponse([b"one", b"two"], fail_after=1),
            FakeResponse([b"one", b"two"]),
        ])
        session = FakeSession(lambda: next(responses))
        downloader = Downloader(config, session=session)

        with pytest.raises(DownloadError):
            downloader.download("a/b.jpg")
        path = downloader.download("a/b.jpg")

        assert path.read_bytes() == b"onetwo"
        assert len(session.calls) == 2

    def test_http_error_creates_no_file(self, config):
        session = FakeSession(lambda: FakeResponse([b"not found"], status_code=404))
        downloader = Downloader(config, session=session)

        with pytest.raises(DownloadError, match="404"):
            downloader.download("a/b.jpg")

        assert not downloader.cache_path("a/b.jpg").exists()
        assert session.responses[0].closed
        assert session.responses[0].raw.exhausted

    def test_connection_error(self, config):
        session = FakeSession(error=requests.ConnectionError("unreachable"))
        with pytest.raises(DownloadError, match="unreachable"):
            Downloader(config, session=session).download("a/b.jpg")

    @pytest.mark.parametrize("reference", [
        "//img.example.com/a.jpg",
        "https://img.example.com/a.jpg",
        "http://evil/a.png",
        "",
    ])
    def test_url_like_reference_is_rejected(self, config, reference):
        session = FakeSession()
        with pytest.raises(MalformedReferenceError):
            Downloader(config, session=session).download(reference)
        assert session.calls == []

    def test_malformed_is_a_download_error(self):
        assert issubclass(MalformedReferenceError, DownloadError)


# ──────────────────────────────────────────────
# Deferred cleanup
# ──────────────────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCleanupScheduler:
    def test_deletes_when_due(self, tmp_path):
        clock = FakeClock()
        scheduler = CleanupScheduler(delay=900, clock=clock)
        path = tmp_path / "img.jpg"
        path.write_bytes(b"x")

        scheduler.schedule(path)
        assert scheduler.run_due() == 0
        assert path.exists()

        clock.now += 901
        assert scheduler.run_due() == 1
        assert not path.exists()

    def test_due_order(self, tmp_path):
        clock = FakeClock()
        scheduler = CleanupScheduler(delay=900, clock=clock)
        late, early = tmp_path / "late.jpg", tmp_path / "early.jpg"
        late.write_bytes(b"x")
        early.write_bytes(b"x")

        scheduler.schedule(late, delay=100)
        scheduler.schedule(early, delay=10)
        clock.now += 50

        assert scheduler.run_due() == 1
        assert not early.exists()
        assert late.exists()
        assert scheduler.pending == 1

    def test_missing_file_is_fine(self, tmp_path):
        clock = FakeClock()
        scheduler = CleanupScheduler(delay=0, clock=clock)
        scheduler.schedule(tmp_path / "gone.jpg")
        assert scheduler.run_due() == 1

    def test_shutdown_drains(self, tmp_path):
        scheduler = CleanupScheduler(delay=900)
        scheduler.start()
        path = tmp_path / "img.jpg"
        path.write_bytes(b"x")
        scheduler.schedule(path)

        scheduler.shutdown(drain=True)

        assert not path.exists()
        assert scheduler.pending == 0

    def test_shutdown_without_drain_keeps_files(self, tmp_path):
        scheduler = CleanupScheduler(delay=900)
        scheduler.start()
        path = tmp_path / "img.jpg"
        path.write_bytes(b"x")
        scheduler.schedule(path)

        scheduler.shutdown(drain=False)

        assert path.exists()

    def test_background_thread_deletes(self, tmp_path):
        scheduler = CleanupScheduler(delay=0.05)
        scheduler.start()
        path = tmp_path / "img.jpg"
        path.write_bytes(b"x")
        scheduler.schedule(path)

        deadline = time.monotonic() + 5
        while path.exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.shutdown(drain=False)

        assert not path.exists()

    def test_schedule_after_shutdown(self, tmp_path):
        scheduler = CleanupScheduler()
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.schedule(tmp_path / "img.jpg")
