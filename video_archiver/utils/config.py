"""Runtime configuration and the persisted settings store.

ArchiveConfig holds process-level tuning (timeouts, intervals, endpoints)
that is fixed for the lifetime of the service. SettingsStore holds the
user-editable key/value settings, persisted next to the queue so every
process sharing a working directory sees the same values.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, List, Mapping, Optional

from ..core.errors import ConfigurationError
from ..core.state import UploadTarget

logger = logging.getLogger("video_archiver.config")

# Setting keys
DOWNLOAD_DIRECTORY = "download_directory"
DELETE_AFTER_UPLOAD = "delete_after_upload"
AUTO_UPLOAD = "auto_upload"
UPLOAD_TARGET = "upload_target"
FILEMOON_API_KEY = "filemoon_api_key"
FILES_VC_API_KEY = "files_vc_api_key"

# Values accepted for the upload_target setting
UPLOAD_TARGET_CHOICES = ("filemoon", "files_vc", "both", "none")

# Environment variables that override stored values when set
ENV_OVERRIDES = {
    FILEMOON_API_KEY: "FILEMOON_API_KEY",
    FILES_VC_API_KEY: "FILES_VC_API_KEY",
}

SECRET_KEYS = frozenset({FILEMOON_API_KEY, FILES_VC_API_KEY})

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class ArchiveConfig:
    """Process-level configuration for the archive service.

    Attributes:
        workdir: Working directory holding the database, logs and default downloads.
        ytdlp_path: Name or path of the yt-dlp executable.
        download_timeout: Wall-clock limit for one download, in seconds.
        title_timeout: Limit for the title-only lookup, in seconds.
        progress_throttle: Minimum seconds between stored progress messages.
        cancel_check_interval: Seconds between checks of the stored status while downloading.
        queue_poll_interval: Seconds between idle checks for items queued by
            another process (the CLI `add` and `retry` commands).
        reconcile_interval: Seconds between encoding status polls.
        reconcile_initial_delay: Seconds before the first poll after start.
        transferring_timeout: Seconds an unseen transferring item may stay silent.
        encoding_timeout: Seconds an encoding item may go without an update.
        http_timeout: Timeout for small API requests, in seconds.
        upload_timeout: Read timeout for streaming uploads, in seconds.
        filemoon_api_base: Base URL of the Filemoon API.
        files_vc_api_base: Base URL of the Files.vc API.
        upload_workers: Number of background upload threads.
    """

    workdir: Path
    ytdlp_path: str = "yt-dlp"
    download_timeout: float = 30 * 60
    title_timeout: float = 30
    progress_throttle: float = 1.5
    cancel_check_interval: float = 2.0
    queue_poll_interval: float = 2.0
    reconcile_interval: float = 30.0
    reconcile_initial_delay: float = 5.0
    transferring_timeout: float = 30 * 60
    encoding_timeout: float = 60 * 60
    http_timeout: float = 30.0
    upload_timeout: float = 6 * 60 * 60
    filemoon_api_base: str = "https://filemoonapi.com/api"
    files_vc_api_base: str = "https://api.files.vc"
    upload_workers: int = 2

    def __post_init__(self) -> None:
        self.workdir = Path(self.workdir).expanduser()

    @classmethod
    def from_env(cls, workdir: Path, env: Optional[Mapping[str, str]] = None) -> ArchiveConfig:
        """Build a config, letting environment variables override endpoints and tools.

        Args:
            workdir: Working directory for the service.
            env: Environment mapping; defaults to os.environ.

        Returns:
            ArchiveConfig instance.
        """
        env = os.environ if env is None else env
        config = cls(workdir=workdir)
        config.ytdlp_path = env.get("YT_DLP_PATH", config.ytdlp_path)
        config.filemoon_api_base = env.get("FILEMOON_API_BASE", config.filemoon_api_base)
        config.files_vc_api_base = env.get("FILES_VC_API_BASE", config.files_vc_api_base)
        return config


class SettingsStore:
    """Key/value settings persisted in the service's SQLite database.

    Defaults are inserted the first time the table is created. API keys set
    in the environment (or a .env file) take precedence over stored values.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        db_path: Path,
        default_download_dir: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize the settings store.

        Args:
            db_path: Path to the SQLite database file (shared with the queue).
            default_download_dir: Download directory used when none is stored.
            env: Environment mapping for API key overrides; defaults to os.environ.
        """
        self.db_path = Path(db_path)
        self.default_download_dir = Path(default_download_dir)
        self._env = os.environ if env is None else env
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def defaults(self) -> dict[str, str]:
        return {
            DOWNLOAD_DIRECTORY: str(self.default_download_dir),
            DELETE_AFTER_UPLOAD: "false",
            AUTO_UPLOAD: "false",
            UPLOAD_TARGET: "filemoon",
        }

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create the settings table and insert missing defaults."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.executemany(
                "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                list(self.defaults.items()),
            )

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a setting.

        Args:
            key: Setting name.
            default: Value returned when the setting is unset or empty.

        Returns:
            The setting value as a string, or default.
        """
        env_name = ENV_OVERRIDES.get(key)
        if env_name and self._env.get(env_name):
            return self._env[env_name]

        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()

        if row is None or row["value"] in (None, ""):
            return default
        return row["value"]

    def set_setting(self, key: str, value: str) -> None:
        """Store a setting, validating keys with a fixed value set.

        Raises:
            ConfigurationError: If the value is not valid for the key.
        """
        if key == UPLOAD_TARGET and value not in UPLOAD_TARGET_CHOICES:
            raise ConfigurationError(
                f"Invalid upload target '{value}'. Choose one of: {', '.join(UPLOAD_TARGET_CHOICES)}"
            )
        if key == DOWNLOAD_DIRECTORY and not Path(value).expanduser().is_absolute():
            raise ConfigurationError(f"Download directory must be an absolute path: {value}")
        if key in (AUTO_UPLOAD, DELETE_AFTER_UPLOAD):
            value = "true" if value.strip().lower() in _TRUE_VALUES else "false"

        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def get_all(self) -> dict[str, Optional[str]]:
        """Return every stored setting, with environment overrides applied."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()

        settings: dict[str, Optional[str]] = {row["key"]: row["value"] for row in rows}
        for key, env_name in ENV_OVERRIDES.items():
            if self._env.get(env_name):
                settings[key] = self._env[env_name]
            else:
                settings.setdefault(key, None)
        return settings

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get_setting(key)
        if value is None:
            return default
        return value.strip().lower() in _TRUE_VALUES

    def download_directory(self) -> Path:
        """Return the configured download directory.

        Falls back to the default (with a warning) if the stored value is not
        an absolute path.
        """
        value = self.get_setting(DOWNLOAD_DIRECTORY)
        if value:
            path = Path(value).expanduser()
            if path.is_absolute():
                return path
            logger.warning(
                f"Download directory '{value}' is not absolute; using {self.default_download_dir}"
            )
        return self.default_download_dir

    def upload_targets(self) -> List[UploadTarget]:
        """Resolve the upload_target setting into an ordered list of targets.

        Filemoon always runs first in "both" mode so its encoding telemetry
        drives the item status.
        """
        value = (self.get_setting(UPLOAD_TARGET, "filemoon") or "filemoon").strip().lower()
        if value == "both":
            return [UploadTarget.FILEMOON, UploadTarget.FILES_VC]
        if value == "none":
            return []
        if value == "files_vc":
            return [UploadTarget.FILES_VC]
        if value != "filemoon":
            logger.warning(f"Unknown upload target '{value}'; defaulting to filemoon")
        return [UploadTarget.FILEMOON]

    def api_key(self, target: UploadTarget) -> Optional[str]:
        key = FILEMOON_API_KEY if target is UploadTarget.FILEMOON else FILES_VC_API_KEY
        value = self.get_setting(key)
        return value.strip() if value else None

    def __repr__(self) -> str:
        return f"SettingsStore(db_path={self.db_path!r})"
