"""Tests for the yt-dlp download orchestrator.

A small Python script stands in for yt-dlp, so these tests spawn real
processes without touching the network.
"""

import subprocess
import time
from unittest import mock

import pytest

from video_archiver.core.registry import ProcessRegistry
from video_archiver.downloaders.ytdlp import (
    PROGRESS_PATTERN,
    DownloadOutcome,
    YtDlpDownloader,
)


@pytest.fixture
def downloader(fake_ytdlp):
    return YtDlpDownloader(
        fake_ytdlp,
        registry=ProcessRegistry(),
        timeout=10,
        progress_throttle=0,
        cancel_check_interval=0.05,
    )


class TestProgressPattern:
    """Tests for progress line parsing."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("[download]  42.3% of 10.00MiB at 1.00MiB/s ETA 00:05", "42.3"),
            ("[download] 100% of 10.00MiB", "100"),
            ("[download]   5.0% of ~ 3.1GiB", "5.0"),
        ],
    )
    def test_matches(self, line, expected):
        assert PROGRESS_PATTERN.search(line).group(1) == expected

    def test_ignores_other_lines(self):
        assert PROGRESS_PATTERN.search("[info] Writing video metadata as JSON") is None


class TestVersion:
    """Tests for installation checks."""

    def test_version(self, downloader):
        assert downloader.version() == "2024.01.01"
        assert downloader.verify_installation() is True

    def test_missing_executable(self, temp_dir):
        missing = YtDlpDownloader(str(temp_dir / "no-such-yt-dlp"))
        assert missing.version() is None
        assert missing.verify_installation() is False

    def test_executable_name(self, fake_ytdlp):
        assert YtDlpDownloader(fake_ytdlp).executable_name == "fake_ytdlp.py"
        assert YtDlpDownloader("/usr/local/bin/yt-dlp").executable_name == "yt-dlp"


class TestFetchTitle:
    """Tests for the title-only lookup."""

    def test_fetch_title(self, downloader, temp_dir):
        assert downloader.fetch_title("item1", "https://example.com/v", temp_dir) == "Fake Video: Part 1"

    def test_fetch_title_failure_returns_none(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "no_title")
        assert downloader.fetch_title("item1", "https://example.com/v", temp_dir) is None

    def test_fetch_title_timeout_returns_none(self, downloader, temp_dir):
        with mock.patch(
            "video_archiver.downloaders.ytdlp.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="yt-dlp", timeout=30),
        ):
            assert downloader.fetch_title("item1", "https://example.com/v", temp_dir) is None


class TestDownload:
    """Tests for full downloads."""

    def test_successful_download(self, downloader, temp_dir):
        progress = []
        out_dir = temp_dir / "downloads"

        result = downloader.download(
            "item1",
            "https://example.com/v",
            out_dir,
            on_progress=progress.append,
        )

        assert result.outcome == DownloadOutcome.SUCCESS
        assert result.success is True
        assert result.title == "Fake Video: Part 1"
        assert result.local_path == out_dir / "Fake_Video_Part_1.mp4"
        assert result.sidecar_path == out_dir / "Fake_Video_Part_1.info.json"
        assert result.thumbnail_url == "https://img.example.com/t.jpg"
        assert result.message == "Download complete: Fake_Video_Part_1.mp4"
        assert progress[-1] == 100
        assert progress == sorted(progress)

    def test_known_title_skips_lookup(self, downloader, temp_dir, monkeypatch):
        """A stored title is used as-is; the lookup would fail in this mode."""
        monkeypatch.setenv("FAKE_YTDLP_MODE", "no_title")
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Stored Title")

        assert result.title == "Stored Title"
        assert result.local_path.name == "Stored_Title.mp4"

    def test_title_lookup_failure_uses_sidecar_title(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "no_title")
        # no_title only affects --get-title; the download itself succeeds
        result = downloader.download("item1", "https://example.com/v", temp_dir)

        assert result.outcome == DownloadOutcome.SUCCESS
        assert result.local_path.name == "unknown_title.mp4"
        assert result.title == "Sidecar Title"

    def test_metadata_only_is_partial(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "metadata_only")
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.outcome == DownloadOutcome.PARTIAL
        assert result.message == "Metadata downloaded, video file missing/failed."
        assert result.local_path is None
        assert result.sidecar_path == temp_dir / "Clip.info.json"

    def test_no_artifacts_is_failure(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "empty")
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.outcome == DownloadOutcome.FAILED
        assert result.message == "Download finished, but no video or info.json file was found."

    def test_nonzero_exit_reports_last_error_line(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "error")
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.outcome == DownloadOutcome.FAILED
        assert result.message == (
            "yt-dlp exited with error code 1. ERROR: [generic] Unsupported URL: https://example.com/v"
        )

    def test_missing_executable(self, temp_dir):
        downloader = YtDlpDownloader(str(temp_dir / "yt-dlp-missing"))
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.outcome == DownloadOutcome.FAILED
        assert result.message.startswith("Could not find 'yt-dlp-missing'. Ensure yt-dlp is installed")

    def test_unusable_output_dir(self, downloader, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")

        result = downloader.download("item1", "https://example.com/v", blocker / "sub", title="Clip")

        assert result.outcome == DownloadOutcome.FAILED
        assert "Download directory is not usable" in result.message

    def test_registry_is_cleaned_up(self, downloader, temp_dir):
        downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")
        assert len(downloader.registry) == 0


class TestCancellationAndTimeout:
    """Tests for stopping a running download."""

    def test_should_cancel_stops_download(self, downloader, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "hang")
        started = time.monotonic()

        result = downloader.download(
            "item1",
            "https://example.com/v",
            temp_dir,
            title="Clip",
            should_cancel=lambda: True,
        )

        assert result.outcome == DownloadOutcome.CANCELLED
        assert result.message == "Download cancelled by user."
        assert time.monotonic() - started < 10
        assert len(downloader.registry) == 0

    def test_registry_terminate_from_another_thread(self, downloader, temp_dir, monkeypatch):
        import threading

        monkeypatch.setenv("FAKE_YTDLP_MODE", "hang")

        def cancel_when_running():
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if downloader.registry.terminate("item1"):
                    return
                time.sleep(0.02)

        canceller = threading.Thread(target=cancel_when_running)
        canceller.start()
        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")
        canceller.join()

        assert result.outcome == DownloadOutcome.CANCELLED

    def test_timeout_kills_process(self, fake_ytdlp, temp_dir, monkeypatch):
        monkeypatch.setenv("FAKE_YTDLP_MODE", "hang")
        downloader = YtDlpDownloader(fake_ytdlp, timeout=0.5, cancel_check_interval=0.05)

        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.outcome == DownloadOutcome.FAILED
        assert result.message == "Download timed out after 0.5 seconds."

    def test_timeout_message_in_minutes(self, fake_ytdlp, temp_dir, monkeypatch):
        """The limit is reported the way users configure it."""
        monkeypatch.setenv("FAKE_YTDLP_MODE", "hang")
        ticks = iter(range(0, 100000, 600))
        downloader = YtDlpDownloader(
            fake_ytdlp,
            timeout=1800,
            cancel_check_interval=0.05,
            clock=lambda: next(ticks),
        )

        result = downloader.download("item1", "https://example.com/v", temp_dir, title="Clip")

        assert result.message == "Download timed out after 30 minutes."

    def test_cancel_check_errors_do_not_abort(self, downloader, temp_dir):
        def broken():
            raise RuntimeError("db locked")

        result = downloader.download(
            "item1",
            "https://example.com/v",
            temp_dir,
            title="Clip",
            should_cancel=broken,
        )
        assert result.outcome == DownloadOutcome.SUCCESS
