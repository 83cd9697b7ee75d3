"""Path utilities and working directory management.

This module provides the WorkdirManager class for the service's working
directory, plus the helpers used to turn video titles into file stems and to
locate the artifacts the fetch utility leaves behind.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger("video_archiver.paths")

MAX_STEM_LENGTH = 200
SIDECAR_SUFFIX = ".info.json"

# Suffixes of files the fetch utility writes while a download is in flight.
_TRANSIENT_SUFFIXES = (".part", ".ytdl", ".temp")

_ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\s]+')


class WorkdirManager:
    """Manages the working directory structure.

    The working directory follows this structure:
        workdir/
        ├── downloads/          # Default download directory
        ├── logs/               # Log files
        └── archive.db          # SQLite queue + settings database

    Attributes:
        workdir: The root working directory path.
    """

    def __init__(self, workdir: Path) -> None:
        """Initialize the WorkdirManager with a root working directory.

        Args:
            workdir: Path to the root working directory. Can be a string
                that will be converted to Path.
        """
        self._workdir = Path(workdir).expanduser().resolve()

    @property
    def workdir(self) -> Path:
        return self._workdir

    @property
    def downloads_dir(self) -> Path:
        return self._workdir / "downloads"

    @property
    def logs_dir(self) -> Path:
        return self._workdir / "logs"

    @property
    def db_path(self) -> Path:
        return self._workdir / "archive.db"

    def ensure_dirs(self) -> None:
        """Create the downloads/ and logs/ directories if they don't exist."""
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def get_disk_usage(self) -> dict[str, int]:
        """Calculate disk usage for each directory.

        Returns:
            Dictionary with directory names as keys and bytes used as values.
        """
        usage = {"downloads": 0, "logs": 0, "total": 0}

        for name, path in [("downloads", self.downloads_dir), ("logs", self.logs_dir)]:
            if path.exists():
                size = sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
                usage[name] = size
                usage["total"] += size

        return usage

    def __repr__(self) -> str:
        return f"WorkdirManager(workdir={self._workdir!r})"


def sanitize_filename(name: str) -> str:
    """Turn an arbitrary title into a filesystem-safe file stem.

    Characters illegal in file names and runs of whitespace are collapsed to
    a single underscore, leading/trailing dots and underscores are trimmed and
    the result is capped at 200 characters.

    Args:
        name: Raw title, possibly containing path separators or emoji.

    Returns:
        Safe stem, or "untitled" if nothing usable remains.

    Examples:
        >>> sanitize_filename("My Video: Part 1/2")
        'My_Video_Part_1_2'
        >>> sanitize_filename("...")
        'untitled'
    """
    if not name:
        return "untitled"

    cleaned = _ILLEGAL_FILENAME_CHARS.sub("_", name)
    cleaned = cleaned.strip("._")
    cleaned = cleaned[:MAX_STEM_LENGTH]
    # Truncation can expose a trailing separator again
    cleaned = cleaned.rstrip("._")

    return cleaned or "untitled"


def sidecar_path_for(directory: Path, stem: str) -> Path:
    """Return the metadata sidecar path the fetch utility writes for a stem."""
    return Path(directory) / f"{stem}{SIDECAR_SUFFIX}"


def find_video_file(directory: Path, stem: str) -> Optional[Path]:
    """Find the downloaded video for a stem.

    The fetch utility chooses the extension itself, so the directory is scanned
    for a regular file whose name starts with the stem. The sidecar and
    in-flight fragments are not videos.

    Args:
        directory: Directory the download was written to.
        stem: Sanitized file stem used in the output template.

    Returns:
        Path of the video file, or None if none was found.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return None

    candidates = []
    for entry in directory.iterdir():
        name = entry.name
        if not name.startswith(stem) or not entry.is_file():
            continue
        if name.endswith(SIDECAR_SUFFIX) or name.endswith(_TRANSIENT_SUFFIXES):
            continue
        # "<stem>.ext" only; a longer title sharing our prefix is not ours
        if name[len(stem):len(stem) + 1] != ".":
            continue
        candidates.append(entry)

    if not candidates:
        return None

    # Prefer the largest file when several formats were kept
    return max(candidates, key=lambda p: p.stat().st_size)


def remove_artifacts(*paths: Optional[str]) -> list[str]:
    """Delete local artifacts, logging instead of raising on errors.

    Args:
        *paths: File paths to remove; None and missing files are skipped.

    Returns:
        List of paths that were actually deleted.
    """
    removed = []
    for raw in paths:
        if not raw:
            continue
        path = Path(raw)
        try:
            if path.exists():
                path.unlink()
                removed.append(str(path))
                logger.info(f"Deleted local file: {path}")
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
    return removed
