"""yt-dlp download orchestrator.

This module provides the YtDlpDownloader class, which runs the external
yt-dlp utility for one queue item: it looks up the title, downloads the
video plus its .info.json sidecar, reports throttled progress, honours
cancellation and a wall-clock timeout, and verifies the artifacts on disk.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Union

from ..core.errors import ExternalProcessError, StageTimeoutError
from ..core.registry import ProcessRegistry, terminate_process
from ..utils.logging import ItemLogAdapter, get_logger
from ..utils.paths import find_video_file, sanitize_filename, sidecar_path_for

DEFAULT_TIMEOUT_SECONDS = 30 * 60
DEFAULT_TITLE_TIMEOUT_SECONDS = 30
DEFAULT_PROGRESS_THROTTLE = 1.5
DEFAULT_CANCEL_CHECK_INTERVAL = 2.0

UNKNOWN_TITLE = "unknown_title"

PROGRESS_PATTERN = re.compile(r"\[download\]\s+(\d{1,3}(?:\.\d+)?)%")
ERROR_MARKER = "ERROR:"


class DownloadOutcome(Enum):
    """How a download attempt ended."""

    SUCCESS = "success"
    # Metadata sidecar written, video missing
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadResult:
    """Result of a yt-dlp download attempt.

    Attributes:
        outcome: How the attempt ended.
        message: User-facing status message.
        title: Title discovered during the attempt, if any.
        local_path: Downloaded video file (SUCCESS only).
        sidecar_path: Metadata sidecar, if it was written.
        thumbnail_url: Thumbnail reference read from the sidecar.
    """

    outcome: DownloadOutcome
    message: str
    title: Optional[str] = None
    local_path: Optional[Path] = None
    sidecar_path: Optional[Path] = None
    thumbnail_url: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (DownloadOutcome.SUCCESS, DownloadOutcome.PARTIAL)


class _ProgressThrottle:
    """Forwards the highest percentage seen, at most once per interval."""

    def __init__(
        self,
        callback: Optional[Callable[[int], None]],
        interval: float,
        clock: Callable[[], float],
        logger: logging.LoggerAdapter,
    ) -> None:
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._logger = logger
        self._lock = threading.Lock()
        self.latest = 0.0
        self._last_emit_at: Optional[float] = None
        self._last_emitted: Optional[int] = None

    def update(self, percent: float) -> None:
        with self._lock:
            self.latest = max(self.latest, min(percent, 100.0))
            now = self._clock()
            if self._last_emit_at is not None and now - self._last_emit_at < self._interval:
                return
            self._last_emit_at = now
            self._emit(int(self.latest))

    def finish(self) -> None:
        with self._lock:
            if self._last_emitted != 100:
                self.latest = 100.0
                self._emit(100)

    def _emit(self, percent: int) -> None:
        if self._callback is None or percent == self._last_emitted:
            return
        self._last_emitted = percent
        try:
            self._callback(percent)
        except Exception as e:
            self._logger.warning(f"Progress callback error: {e}")


def _format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds:g} seconds"


class YtDlpDownloader:
    """Runs yt-dlp for one queue item at a time.

    Only the scheduler calls download(), and it never runs two at once. The
    running process is registered with the ProcessRegistry so cancel can
    kill it.

    Attributes:
        command: Command prefix used to invoke yt-dlp.
        timeout: Wall-clock limit for one download, in seconds.
        title_timeout: Limit for the title lookup, in seconds.
    """

    def __init__(
        self,
        executable: Union[str, Sequence[str]] = "yt-dlp",
        registry: Optional[ProcessRegistry] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        title_timeout: float = DEFAULT_TITLE_TIMEOUT_SECONDS,
        progress_throttle: float = DEFAULT_PROGRESS_THROTTLE,
        cancel_check_interval: float = DEFAULT_CANCEL_CHECK_INTERVAL,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the downloader.

        Args:
            executable: yt-dlp executable name/path, or a full command prefix
                (e.g. ``[sys.executable, "-m", "yt_dlp"]``).
            registry: Process registry used for cancellation.
            timeout: Wall-clock limit for one download (default 30 minutes).
            title_timeout: Limit for the title-only lookup (default 30 seconds).
            progress_throttle: Minimum seconds between progress callbacks.
            cancel_check_interval: Seconds between should_cancel checks.
            logger: Optional logger instance. If None, uses default logger.
            clock: Monotonic clock, injectable for tests.
        """
        if isinstance(executable, str):
            self.command: List[str] = [executable]
        else:
            self.command = list(executable)
        self.registry = registry or ProcessRegistry()
        self.timeout = timeout
        self.title_timeout = title_timeout
        self.progress_throttle = progress_throttle
        self.cancel_check_interval = cancel_check_interval
        self._logger = logger or get_logger("downloaders.ytdlp")
        self._clock = clock

    @property
    def executable_name(self) -> str:
        return Path(self.command[-1] if len(self.command) > 1 else self.command[0]).name

    def version(self) -> Optional[str]:
        """Return the installed yt-dlp version, or None if it cannot be run."""
        try:
            result = subprocess.run(
                self.command + ["--version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as e:
            self._logger.warning(f"Could not run {self.executable_name}: {e}")
            return None

        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def verify_installation(self) -> bool:
        """Check if yt-dlp is available and runs.

        Returns:
            True if ``yt-dlp --version`` succeeds, False otherwise.
        """
        return self.version() is not None

    def fetch_title(self, item_id: str, url: str, output_dir: Path) -> Optional[str]:
        """Ask yt-dlp for just the video title.

        Failure is not fatal for the download, so every error is logged and
        turned into None.

        Args:
            item_id: Item identifier, used for the throwaway output template.
            url: Source URL.
            output_dir: Download directory.

        Returns:
            The title, or None if it could not be determined.
        """
        log = ItemLogAdapter(self._logger, item_id)
        template = Path(output_dir) / f"{item_id}_temp_title.%(ext)s"
        cmd = self.command + [url, "--get-title", "--output", str(template), "--encoding", "utf-8"]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.title_timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning(f"Title lookup timed out after {_format_duration(self.title_timeout)}")
            return None
        except OSError as e:
            log.warning(f"Title lookup could not start: {e}")
            return None

        if result.returncode != 0:
            stderr_tail = result.stderr.strip().splitlines()[-1:] if result.stderr else []
            log.warning(
                f"Title lookup failed (exit code {result.returncode})"
                + (f": {stderr_tail[0]}" if stderr_tail else "")
            )
            return None

        for line in result.stdout.splitlines():
            if line.strip():
                title = line.strip()
                log.info(f"Fetched title: {title}")
                return title
        return None

    def download(
        self,
        item_id: str,
        url: str,
        output_dir: Path,
        title: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> DownloadResult:
        """Download one URL with yt-dlp.

        Args:
            item_id: Queue item identifier (registry key and log prefix).
            url: Source URL.
            output_dir: Directory the video and sidecar are written to.
            title: Known title; looked up first when missing.
            on_progress: Called with the download percentage, throttled.
            should_cancel: Polled while the process runs; returning True kills
                the process and reports the attempt as cancelled.

        Returns:
            DownloadResult describing the outcome. Errors are reported in the
            result rather than raised.
        """
        log = ItemLogAdapter(self._logger, item_id)
        output_dir = Path(output_dir)

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return DownloadResult(
                outcome=DownloadOutcome.FAILED,
                message=f"Download directory is not usable: {output_dir} ({e})",
                title=title,
            )

        video_title = title if title and title != UNKNOWN_TITLE else None
        if video_title is None:
            video_title = self.fetch_title(item_id, url, output_dir)

        stem = sanitize_filename(video_title or UNKNOWN_TITLE)
        sidecar_path = sidecar_path_for(output_dir, stem)
        output_template = output_dir / f"{stem}.%(ext)s"

        cmd = self.command + [
            url,
            "--write-info-json",
            "--newline",
            "--output",
            str(output_template),
        ]
        log.info(f"Starting download: {url}")
        log.debug(f"Executing command: {' '.join(cmd)}")

        try:
            process = self._spawn(cmd)
        except ExternalProcessError as e:
            log.error(str(e))
            return DownloadResult(outcome=DownloadOutcome.FAILED, message=str(e), title=video_title)

        throttle = _ProgressThrottle(on_progress, self.progress_throttle, self._clock, log)
        timeout_error: Optional[StageTimeoutError] = None
        return_code: Optional[int] = None
        error_lines: List[str] = []

        self.registry.register(item_id, process)
        try:
            return_code, error_lines = self._run_to_completion(
                item_id, process, throttle, should_cancel, log
            )
        except StageTimeoutError as e:
            timeout_error = e
        finally:
            self.registry.unregister(item_id)

        if self.registry.consume_cancelled(item_id):
            log.info("Download cancelled")
            return DownloadResult(
                outcome=DownloadOutcome.CANCELLED,
                message="Download cancelled by user.",
                title=video_title,
            )

        if timeout_error is not None:
            log.error(str(timeout_error))
            return DownloadResult(
                outcome=DownloadOutcome.FAILED,
                message=str(timeout_error),
                title=video_title,
            )

        if return_code != 0:
            message = f"yt-dlp exited with error code {return_code}."
            if error_lines:
                message += f" {error_lines[-1]}"
            log.error(message)
            return DownloadResult(outcome=DownloadOutcome.FAILED, message=message, title=video_title)

        throttle.finish()
        return self._verify_artifacts(output_dir, stem, sidecar_path, video_title, log)

    def _spawn(self, cmd: List[str]) -> subprocess.Popen:
        """Start yt-dlp with line-buffered text pipes.

        Raises:
            ExternalProcessError: If the executable is missing or cannot start.
        """
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise ExternalProcessError(
                f"Could not find '{self.executable_name}'. "
                f"Ensure yt-dlp is installed and in PATH. ({e})"
            ) from e
        except OSError as e:
            raise ExternalProcessError(f"Failed to start {self.executable_name}: {e}") from e

    def _run_to_completion(
        self,
        item_id: str,
        process: subprocess.Popen,
        throttle: _ProgressThrottle,
        should_cancel: Optional[Callable[[], bool]],
        log: logging.LoggerAdapter,
    ) -> tuple[Optional[int], List[str]]:
        """Stream output and wait for exit, enforcing cancellation and timeout.

        Returns:
            Tuple of (return_code, error_lines).

        Raises:
            StageTimeoutError: If the process outlived the download timeout.
                It has been killed by then.
        """
        error_lines: List[str] = []
        recent_output: Deque[str] = deque(maxlen=20)

        def read_stdout() -> None:
            if process.stdout is None:
                return
            for line in iter(process.stdout.readline, ""):
                line = line.rstrip("\n\r")
                recent_output.append(line)
                match = PROGRESS_PATTERN.search(line)
                if match:
                    throttle.update(float(match.group(1)))

        def read_stderr() -> None:
            if process.stderr is None:
                return
            for line in iter(process.stderr.readline, ""):
                line = line.rstrip("\n\r")
                if not line:
                    continue
                log.debug(f"[yt-dlp] {line}")
                if ERROR_MARKER in line:
                    error_lines.append(line.strip())

        readers = [
            threading.Thread(target=read_stdout, daemon=True),
            threading.Thread(target=read_stderr, daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = self._clock() + self.timeout
        cancel_requested = False

        while True:
            remaining = deadline - self._clock()
            try:
                return_code = process.wait(timeout=max(0.05, min(self.cancel_check_interval, remaining)))
                break
            except subprocess.TimeoutExpired:
                pass

            if not cancel_requested and should_cancel is not None:
                try:
                    cancel_requested = bool(should_cancel())
                except Exception as e:
                    log.warning(f"Cancellation check failed: {e}")
                if cancel_requested:
                    log.info("Item was cancelled, stopping download")
                    self.registry.terminate(item_id)
                    continue

            if self._clock() >= deadline:
                log.warning(f"Process timed out after {self.timeout}s, terminating...")
                terminate_process(process, log)
                for reader in readers:
                    reader.join(timeout=5.0)
                raise StageTimeoutError(f"Download timed out after {_format_duration(self.timeout)}.")

        for reader in readers:
            reader.join(timeout=5.0)

        if return_code not in (0, None) and not error_lines and recent_output:
            log.debug("Last output:\n" + "\n".join(recent_output))

        return return_code, error_lines

    def _verify_artifacts(
        self,
        output_dir: Path,
        stem: str,
        sidecar_path: Path,
        video_title: Optional[str],
        log: logging.LoggerAdapter,
    ) -> DownloadResult:
        has_sidecar = sidecar_path.is_file()
        if not has_sidecar:
            log.warning(f"Could not find expected info.json file: {sidecar_path}")

        video_file = find_video_file(output_dir, stem)
        metadata = self._read_sidecar(sidecar_path, log) if has_sidecar else {}

        if video_title is None and isinstance(metadata.get("title"), str):
            video_title = metadata["title"]
        thumbnail = metadata.get("thumbnail") if isinstance(metadata.get("thumbnail"), str) else None

        if video_file is None and not has_sidecar:
            message = "Download finished, but no video or info.json file was found."
            log.error(message)
            return DownloadResult(outcome=DownloadOutcome.FAILED, message=message, title=video_title)

        if video_file is None:
            log.warning(f"Video file starting with '{stem}' not found, but info.json exists.")
            return DownloadResult(
                outcome=DownloadOutcome.PARTIAL,
                message="Metadata downloaded, video file missing/failed.",
                title=video_title,
                sidecar_path=sidecar_path,
                thumbnail_url=thumbnail,
            )

        log.info(f"Found video file: {video_file}")
        return DownloadResult(
            outcome=DownloadOutcome.SUCCESS,
            message=f"Download complete: {video_file.name}",
            title=video_title,
            local_path=video_file,
            sidecar_path=sidecar_path if has_sidecar else None,
            thumbnail_url=thumbnail,
        )

    @staticmethod
    def _read_sidecar(sidecar_path: Path, log: logging.LoggerAdapter) -> dict:
        try:
            with open(sidecar_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.debug(f"Could not read {sidecar_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def __repr__(self) -> str:
        return (
            f"YtDlpDownloader("
            f"command={self.command!r}, "
            f"timeout={self.timeout})"
        )
