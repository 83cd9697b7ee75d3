"""Logging configuration with rich console output and file logging.

One-shot CLI commands write a timestamped log file each (older ones are
pruned); the long-running service writes a single rotating log. Filemoon
and Files.vc take their API keys as query or form parameters, so every
handler masks ``key=`` style values before a record is written.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from rich.logging import RichHandler

LOGGER_NAME = "video_archiver"

SERVICE_LOG_NAME = "service.log"
SERVICE_LOG_MAX_BYTES = 10 * 1024 * 1024
SERVICE_LOG_BACKUPS = 5
MAX_COMMAND_LOGS = 20

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_SENSITIVE_PARAMS = re.compile(
    r"((?:api[_-]?key|key|token|secret|password)=)([^&\s\"']+)",
    re.IGNORECASE,
)


def mask_sensitive_data(value: str, visible_chars: int = 4) -> str:
    """Mask sensitive data, showing only the last few characters.

    Args:
        value: The sensitive string to mask (e.g., API key).
        visible_chars: Number of characters to show at the end.

    Returns:
        Masked string with asterisks and visible suffix.

    Examples:
        >>> mask_sensitive_data("sk-1234567890abcdef")
        '***************cdef'
        >>> mask_sensitive_data("")
        ''
    """
    if not value:
        return ""

    if len(value) <= visible_chars:
        # Always hide at least one character
        return "*" * (len(value) - 1) + value[-1:] if len(value) > 1 else "*"

    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


def mask_url_sensitive_parts(text: str) -> str:
    """Mask credential values in query strings (``?key=...&api_key=...``).

    Works on any text, so whole log lines that embed a URL can be passed in.
    """
    return _SENSITIVE_PARAMS.sub(
        lambda match: match.group(1) + mask_sensitive_data(match.group(2)),
        text,
    )


class SecretMaskingFilter(logging.Filter):
    """Rewrites records so API keys never reach a handler's output."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_url_sensitive_parts(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _prune_command_logs(logs_dir: Path, keep: int) -> List[Path]:
    """Delete all but the newest ``keep`` per-command log files."""
    logs = sorted(logs_dir.glob("cli_*.log"))
    stale = logs[: max(0, len(logs) - keep)]
    for path in stale:
        try:
            path.unlink()
        except OSError as e:
            logging.getLogger(LOGGER_NAME).debug(f"Could not remove old log {path}: {e}")
    return stale


def setup_logging(workdir: Path, verbose: bool = False, service: bool = False) -> logging.Logger:
    """Set up the ``video_archiver`` logger.

    Args:
        workdir: Working directory; logs go to ``<workdir>/logs``.
        verbose: Console shows DEBUG instead of INFO, and HTTP connection
            logs from urllib3 are written to the log file as well.
        service: Log to the rotating ``service.log`` instead of a new
            ``cli_YYYYMMDD_HHMMSS.log`` file.

    Returns:
        The configured package logger. Calling this again replaces its
        handlers rather than adding more.
    """
    logs_dir = Path(workdir) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    if service:
        log_file = logs_dir / SERVICE_LOG_NAME
        file_handler: logging.Handler = RotatingFileHandler(
            log_file,
            maxBytes=SERVICE_LOG_MAX_BYTES,
            backupCount=SERVICE_LOG_BACKUPS,
            encoding="utf-8",
        )
    else:
        _prune_command_logs(logs_dir, MAX_COMMAND_LOGS - 1)
        log_file = logs_dir / f"cli_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))

    console_handler = RichHandler(
        level=logging.DEBUG if verbose else logging.INFO,
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=verbose,
        # Titles and yt-dlp output may contain [brackets]
        markup=False,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))

    secrets = SecretMaskingFilter()
    for handler in (console_handler, file_handler):
        handler.addFilter(secrets)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    urllib3_logger = logging.getLogger("urllib3")
    for old in [h for h in urllib3_logger.handlers if getattr(h, "_video_archiver", False)]:
        urllib3_logger.removeHandler(old)
    if verbose:
        file_handler._video_archiver = True  # type: ignore[attr-defined]
        urllib3_logger.setLevel(logging.DEBUG)
        urllib3_logger.addHandler(file_handler)

    logger.debug(f"Logging initialized. Log file: {log_file}")
    return logger


class ItemLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[ITEM <id>]``.

    Usage:
        log = ItemLogAdapter(get_logger("scheduler"), item.id)
        log.info("Download starting")  # [ITEM 1714000000000abc] Download starting
    """

    def __init__(self, logger: logging.Logger, item_id: str) -> None:
        super().__init__(logger, {"item_id": item_id})
        self.item_id = item_id

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {}).setdefault("item_id", self.item_id)
        return f"[ITEM {self.item_id}] {msg}", kwargs


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger, or a named child of it.

    Child loggers propagate to the handlers installed by setup_logging.
    """
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)
