"""Tests for the command-line interface."""

import pytest
from typer.testing import CliRunner

from video_archiver.cli import app
from video_archiver.core.service import ArchiveService
from video_archiver.core.state import ItemStatus
from video_archiver.utils.config import ArchiveConfig

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("FILEMOON_API_KEY", "FILES_VC_API_KEY", "VIDEO_ARCHIVER_WORKDIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workdir(temp_dir):
    return temp_dir / "work"


def invoke(workdir, *args, **kwargs):
    return runner.invoke(app, [*args, "--workdir", str(workdir)], **kwargs)


def stored_items(workdir):
    with ArchiveService(ArchiveConfig(workdir=workdir), env={}) as service:
        return service.db.list_all()


class TestAdd:
    def test_add_url(self, workdir):
        result = invoke(workdir, "add", "https://example.com/v/1")

        assert result.exit_code == 0
        assert "URL added to the queue." in result.output
        assert [item.url for item in stored_items(workdir)] == ["https://example.com/v/1"]

    def test_add_duplicate_fails(self, workdir):
        invoke(workdir, "add", "https://example.com/v/1")
        result = invoke(workdir, "add", "https://example.com/v/1")

        assert result.exit_code == 1
        assert "already queued" in result.output

    def test_add_invalid_url(self, workdir):
        result = invoke(workdir, "add", "ftp://example.com/x")

        assert result.exit_code == 1
        assert "Invalid URL" in result.output

    def test_add_from_file(self, workdir, sample_links_file):
        result = invoke(workdir, "add", "--file", str(sample_links_file))

        assert result.exit_code == 0
        assert "Added 3 URL(s), skipped 0." in result.output
        assert len(stored_items(workdir)) == 3

    def test_url_or_file_required(self, workdir):
        result = invoke(workdir, "add")
        assert result.exit_code == 2


class TestQueue:
    def test_empty_queue(self, workdir):
        result = invoke(workdir, "queue")

        assert result.exit_code == 0
        assert "No items found." in result.output
        assert "Total: 0" in result.output

    def test_lists_items(self, workdir):
        invoke(workdir, "add", "https://example.com/v/1")
        result = invoke(workdir, "queue")

        assert result.exit_code == 0
        assert "Total: 1" in result.output

    def test_show_missing_item(self, workdir):
        result = invoke(workdir, "show", "nope")

        assert result.exit_code == 1
        assert "not found" in result.output


class TestItemCommands:
    def test_cancel_queued_item(self, workdir):
        invoke(workdir, "add", "https://example.com/v/1")
        item_id = stored_items(workdir)[0].id

        result = invoke(workdir, "cancel", item_id)

        assert result.exit_code == 0
        assert "Queued item cancelled." in result.output
        assert stored_items(workdir) == []

    def test_retry_non_failed_item(self, workdir):
        invoke(workdir, "add", "https://example.com/v/1")
        item_id = stored_items(workdir)[0].id

        result = invoke(workdir, "retry", item_id)

        assert result.exit_code == 1
        assert "only failed items" in result.output

    def test_upload_rejects_unknown_target(self, workdir):
        result = invoke(workdir, "upload", "some-id", "--target", "dropbox")
        assert result.exit_code == 2

    def test_clear_with_confirmation_declined(self, workdir):
        with ArchiveService(ArchiveConfig(workdir=workdir), env={}) as service:
            item = service.db.enqueue("https://example.com/v/1").item
            service.db.update_status(item.id, ItemStatus.FAILED, "boom")

        result = invoke(workdir, "clear", "failed", input="n\n")

        assert "Cancelled." in result.output
        assert len(stored_items(workdir)) == 1

    def test_clear_forced(self, workdir):
        with ArchiveService(ArchiveConfig(workdir=workdir), env={}) as service:
            item = service.db.enqueue("https://example.com/v/1").item
            service.db.update_status(item.id, ItemStatus.FAILED, "boom")

        result = invoke(workdir, "clear", "failed", "--force")

        assert result.exit_code == 0
        assert "Cleared 1 failed items." in result.output
        assert stored_items(workdir) == []


class TestSettings:
    def test_show_defaults(self, workdir):
        result = invoke(workdir, "settings")

        assert result.exit_code == 0
        assert "upload_target" in result.output
        assert "filemoon" in result.output

    def test_set_and_show_one(self, workdir):
        assert invoke(workdir, "settings", "upload_target", "both").exit_code == 0

        result = invoke(workdir, "settings", "upload_target")

        assert result.exit_code == 0
        assert "both" in result.output

    def test_invalid_value(self, workdir):
        result = invoke(workdir, "settings", "upload_target", "dropbox")

        assert result.exit_code == 1
        assert "Invalid upload target" in result.output

    def test_api_key_is_masked(self, workdir):
        invoke(workdir, "settings", "filemoon_api_key", "supersecretkey123")

        result = invoke(workdir, "settings", "filemoon_api_key")

        assert result.exit_code == 0
        assert "supersecretkey123" not in result.output

    def test_unknown_key(self, workdir):
        result = invoke(workdir, "settings", "nope")
        assert result.exit_code == 1


class TestPoll:
    def test_nothing_to_poll(self, workdir):
        result = invoke(workdir, "poll")

        assert result.exit_code == 0
        assert "No items are waiting for encoding." in result.output
