"""Shared pytest fixtures for video_archiver tests."""

import sys
import tempfile
import textwrap
import time
from datetime import datetime, timedelta
from pathlib import Path

import pytest


class FakeClock:
    """Controllable wall clock for the queue store."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    pytest.fail("Condition not met within timeout")


FAKE_YTDLP_SCRIPT = textwrap.dedent('''
    """Stand-in for yt-dlp; behaviour is selected by FAKE_YTDLP_MODE."""
    import json
    import os
    import sys
    import time

    args = sys.argv[1:]
    mode = os.environ.get("FAKE_YTDLP_MODE", "success")

    if "--version" in args:
        print("2024.01.01")
        sys.exit(0)

    if "--get-title" in args:
        if mode == "no_title":
            print("ERROR: title lookup failed", file=sys.stderr)
            sys.exit(1)
        print(os.environ.get("FAKE_YTDLP_TITLE", "Fake Video: Part 1"))
        sys.exit(0)

    template = args[args.index("--output") + 1]

    if mode == "error":
        print("WARNING: something odd", file=sys.stderr)
        print("ERROR: [generic] Unsupported URL: " + args[0], file=sys.stderr)
        sys.exit(1)

    if mode == "hang":
        print("[download]   1.0% of 10.00MiB", flush=True)
        time.sleep(60)
        sys.exit(0)

    if mode == "empty":
        sys.exit(0)

    for pct in ("10.0", "55.5", "100.0"):
        print("[download]  %s%% of 1.00MiB at 1.00MiB/s ETA 00:00" % pct, flush=True)

    with open(template.replace("%(ext)s", "info.json"), "w", encoding="utf-8") as f:
        json.dump({"title": "Sidecar Title", "thumbnail": "https://img.example.com/t.jpg"}, f)

    if mode != "metadata_only":
        with open(template.replace("%(ext)s", "mp4"), "wb") as f:
            f.write(b"\\0" * 2048)

    sys.exit(0)
''')


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests.

    Yields:
        Path to the temporary directory that is automatically
        cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    """Controllable clock starting at 2024-01-01 12:00."""
    return FakeClock()


@pytest.fixture
def queue_db(temp_dir, clock):
    """Create an initialized QueueDB driven by the fake clock.

    Args:
        temp_dir: Temporary directory fixture.
        clock: Fake clock fixture.

    Returns:
        Initialized QueueDB instance.
    """
    from video_archiver.core.state import QueueDB

    db = QueueDB(temp_dir / "archive.db", clock=clock)
    db.init_db()
    return db


@pytest.fixture
def settings(temp_dir):
    """Create an initialized SettingsStore that ignores the real environment.

    Returns:
        SettingsStore sharing the queue database file.
    """
    from video_archiver.utils.config import SettingsStore

    store = SettingsStore(temp_dir / "archive.db", temp_dir / "downloads", env={})
    store.init_db()
    return store


@pytest.fixture
def config(temp_dir):
    """ArchiveConfig with short timings for tests."""
    from video_archiver.utils.config import ArchiveConfig

    return ArchiveConfig(
        workdir=temp_dir,
        download_timeout=10,
        progress_throttle=0,
        cancel_check_interval=0.05,
        queue_poll_interval=0.05,
        reconcile_interval=0.05,
        reconcile_initial_delay=0,
        filemoon_api_base="https://filemoon.test/api",
        files_vc_api_base="https://files.test",
        upload_workers=1,
    )


@pytest.fixture
def fake_ytdlp(temp_dir):
    """Write a fake yt-dlp script and return the command prefix that runs it."""
    script = temp_dir / "fake_ytdlp.py"
    script.write_text(FAKE_YTDLP_SCRIPT, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def sample_links_file(temp_dir):
    """Create a sample links file with comments, blanks and a duplicate.

    Returns:
        Path to the created links file.
    """
    links_content = """# Videos to archive
# This is a comment line

https://www.youtube.com/watch?v=abc123
https://vimeo.com/76979871

# Duplicates are ignored
https://www.youtube.com/watch?v=abc123

   https://example.com/video/42
"""
    links_file = temp_dir / "links.txt"
    links_file.write_text(links_content, encoding="utf-8")
    return links_file


@pytest.fixture
def empty_links_file(temp_dir):
    """Create a links file with only comments.

    Returns:
        Path to the links file.
    """
    links_file = temp_dir / "empty_links.txt"
    links_file.write_text("# Only comments\n# No actual URLs\n", encoding="utf-8")
    return links_file


@pytest.fixture
def workdir_manager(temp_dir):
    """Create a WorkdirManager with a temporary directory.

    Returns:
        Initialized WorkdirManager instance.
    """
    from video_archiver.utils.paths import WorkdirManager

    manager = WorkdirManager(temp_dir)
    manager.ensure_dirs()
    return manager
