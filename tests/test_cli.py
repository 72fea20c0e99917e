"""
Tests for the command line entry point. No network: the feed client is
replaced by a fake, everything else works on local files and the database.
"""

from pathlib import Path

import pytest
import pytesseract
from PIL import Image
import sys

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import main
from config.settings import Config
from feed import ItemSource, LoginError
from models import ProcessedRecord
from storage import Storage


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


# ──────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────

class FakeClient(ItemSource):
    """Stands in for Pr0grammClient. Serves an empty feed."""

    requests: list[int | None] = []
    login_error: Exception | None = None

    def __init__(self, config, session=None):
        self.logged_in = False

    def fetch_page(self, flags, older=None):
        FakeClient.requests.append(older)
        return [], True

    def login(self, username, password):
        if FakeClient.login_error is not None:
            raise FakeClient.login_error
        self.logged_in = True

    def add_tags(self, item_id, tags):
        pass


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.requests = []
    FakeClient.login_error = None
    monkeypatch.setattr(main, "Pr0grammClient", FakeClient)
    return FakeClient


@pytest.fixture
def pipelines(monkeypatch):
    """Records every Pipeline the CLI builds."""
    created = []

    class RecordingPipeline(main.Pipeline):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(main, "Pipeline", RecordingPipeline)
    return created


class TestParser:
    def test_backfill_needs_a_start(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["backfill"])

    def test_overrides(self, tmp_path):
        args = main.build_parser().parse_args([
            "poll", "--workers", "3", "--max-age", "5", "--interval", "30",
            "--db", str(tmp_path / "x.db"), "--cleanup", "deferred",
        ])
        config = main.apply_overrides(main.load_config(), args)

        assert config.workers == 3
        assert config.max_age_minutes == 5
        assert config.poll_interval == 30
        assert config.db_path == tmp_path / "x.db"
        assert config.cleanup == "deferred"

    def test_tag_interval_override(self):
        args = main.build_parser().parse_args(["tag", "--interval", "15", "--username", "u"])
        config = main.apply_overrides(main.load_config(), args)

        assert config.tag_poll_interval == 15
        assert config.username == "u"


class TestCommands:
    def test_no_command(self):
        assert main.cli([]) == 1

    def test_stats(self, db_path, capsys):
        storage = Storage(db_path)
        storage.insert_if_absent(ProcessedRecord(item_id=11, has_text=True))
        storage.close()

        assert main.cli(["stats", "--db", str(db_path)]) == 0
        out = capsys.readouterr().out
        assert "Processed items: 1" in out
        assert "with text: 1" in out

    def test_resume_without_state(self, db_path):
        assert main.cli(["backfill", "--resume", "--db", str(db_path)]) == 1

    def test_classify(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(
            pytesseract, "image_to_string",
            lambda image, timeout=0, **kwargs: "The quick brown fox jumps over the lazy dog.",
        )
        path = tmp_path / "gray.png"
        Image.new("RGB", (10, 1), (0x16, 0x16, 0x18)).save(path)

        assert main.cli(["classify", str(path)]) == 0
        assert "text=yes correct_gray=yes" in capsys.readouterr().out

    def test_classify_broken_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(pytesseract, "image_to_string", lambda image, timeout=0, **kwargs: "")
        path = tmp_path / "broken.png"
        path.write_bytes(b"nope")

        assert main.cli(["classify", str(path)]) == 1


class TestFeedCommands:
    def test_tag_with_failed_login(self, db_path, tmp_path, fake_client):
        fake_client.login_error = LoginError("wrong password")

        code = main.cli([
            "tag", "--once", "--username", "u", "--password", "p",
            "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"),
        ])

        assert code == 1
        assert fake_client.requests == []

    def test_tag_turns_keep_into_immediate_cleanup(self, db_path, tmp_path, fake_client, pipelines, monkeypatch):
        monkeypatch.setattr(main, "load_config", lambda: Config(cleanup="keep"))

        code = main.cli([
            "tag", "--once", "--username", "u", "--password", "p",
            "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"),
        ])

        assert code == 0
        assert len(pipelines) == 1
        assert pipelines[0].cleanup == "immediate"
        assert isinstance(pipelines[0].policy, main.AscendingPolicy)

    def test_backfill_resumes_from_saved_position(self, db_path, tmp_path, fake_client):
        storage = Storage(db_path)
        storage.set_state(main.BACKFILL_STATE, {"older": 500})
        storage.close()

        code = main.cli([
            "backfill", "--resume",
            "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"),
        ])

        assert code == 0
        assert fake_client.requests[0] == 500

    def test_backfill_from_explicit_start(self, db_path, tmp_path, fake_client):
        code = main.cli([
            "backfill", "--older", "1234",
            "--db", str(db_path), "--cache-dir", str(tmp_path / "cache"),
        ])

        assert code == 0
        assert fake_client.requests == [1234]


class TestInvalidConfig:
    def test_zero_workers(self, db_path, fake_client):
        assert main.cli(["poll", "--once", "--workers", "0", "--db", str(db_path)]) == 1
        assert fake_client.requests == []
        assert not db_path.exists()

    def test_unknown_cleanup_policy(self, db_path, fake_client, monkeypatch):
        monkeypatch.setattr(main, "load_config", lambda: Config(cleanup="sometimes"))

        assert main.cli(["poll", "--once", "--db", str(db_path)]) == 1
        assert fake_client.requests == []

    def test_zero_queue_size(self, db_path, monkeypatch):
        monkeypatch.setattr(main, "load_config", lambda: Config(queue_size=0))
        assert main.cli(["stats", "--db", str(db_path)]) == 1
