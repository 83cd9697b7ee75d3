"""Download scheduler.

The scheduler drains the queue one item at a time on a background thread.
Only one download runs per scheduler, and the stored row is re-read before
every terminal write so a late result never overrides a cancellation.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from ..downloaders.ytdlp import DownloadOutcome, DownloadResult, YtDlpDownloader
from ..utils.config import AUTO_UPLOAD, SettingsStore
from ..utils.logging import ItemLogAdapter, get_logger
from .state import ItemStatus, QueueDB, QueueItem

INTERRUPTED_MESSAGE = "Interrupted: the service stopped during download. Retry to download again."


class Scheduler:
    """Serializes downloads and hands finished ones to the uploader.

    trigger() is cheap and safe to call from any thread: it starts the drain
    thread if none is running, otherwise it asks the running one to look at
    the queue again before it exits, so no wake-up is lost. Items enqueued
    by another process never call trigger() here; with a poll interval set,
    a watcher thread re-checks the store on that schedule.

    Attributes:
        db: Queue store.
        downloader: Download orchestrator.
        settings: Settings store (download directory, auto-upload).
    """

    def __init__(
        self,
        db: QueueDB,
        downloader: YtDlpDownloader,
        settings: SettingsStore,
        on_download_complete: Optional[Callable[[str], None]] = None,
        poll_interval: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Queue store.
            downloader: Download orchestrator.
            settings: Settings store.
            on_download_complete: Called with the item ID when a download
                finished and auto-upload is enabled.
            poll_interval: Seconds between idle checks of the store for
                items queued by other processes. None disables the watcher.
            logger: Optional logger instance.
        """
        self.db = db
        self.downloader = downloader
        self.settings = settings
        self.poll_interval = poll_interval
        self._on_download_complete = on_download_complete
        self._logger = logger or get_logger("scheduler")

        self._processing = threading.Lock()
        self._state_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._rearm = False
        self._stopping = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    @property
    def is_processing(self) -> bool:
        return self._processing.locked()

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    def start(self) -> None:
        """Allow processing again and drain whatever is already queued."""
        self._stopping.clear()
        self.trigger()

        if self.poll_interval and (self._watcher is None or not self._watcher.is_alive()):
            self._watcher = threading.Thread(
                target=self._watch,
                name="archive-scheduler-watch",
                daemon=True,
            )
            self._watcher.start()

    def request_stop(self) -> None:
        """Stop picking up new items without waiting for the drain thread.

        A download that fails after this point is recorded as interrupted.
        """
        self._stopping.set()

    def trigger(self) -> None:
        """Wake the scheduler after an enqueue, retry or finished item."""
        with self._state_lock:
            if self._stopping.is_set():
                return
            if self._worker is not None and self._worker.is_alive():
                self._rearm = True
                return
            self._rearm = False
            self._worker = threading.Thread(
                target=self._drain,
                name="archive-scheduler",
                daemon=True,
            )
            self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop picking up new items and wait for the drain thread.

        The running download (if any) is not killed here; the service
        terminates registered processes before joining.
        """
        self.request_stop()
        self.join(timeout)
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.join(timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the drain thread to exit.

        Returns:
            True if no drain thread is running afterwards.
        """
        with self._state_lock:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
            return not worker.is_alive()
        return True

    def _watch(self) -> None:
        while not self._stopping.wait(self.poll_interval):
            if not self.is_processing and self.db.count_by_status(ItemStatus.QUEUED):
                self.trigger()

    def _drain(self) -> None:
        while not self._stopping.is_set():
            if self.process_next():
                # Yield before looking at the queue again
                time.sleep(0)
                continue

            with self._state_lock:
                if self._rearm and not self._stopping.is_set():
                    self._rearm = False
                    continue
                self._worker = None
                return

        with self._state_lock:
            self._worker = None

    def process_next(self) -> bool:
        """Process the oldest queued item, if any, synchronously.

        Returns:
            True if an item was handled, False if the queue was empty or a
            download is already running.
        """
        if not self._processing.acquire(blocking=False):
            return False

        try:
            item = self.db.next_queued()
            if item is None:
                return False
            self._process_item(item)
            return True
        finally:
            self._processing.release()

    def _process_item(self, item: QueueItem) -> None:
        log = ItemLogAdapter(self._logger, item.id)

        claimed = self.db.update_status(
            item.id,
            ItemStatus.DOWNLOADING,
            "Starting download...",
            expected_status=ItemStatus.QUEUED,
        )
        if not claimed:
            log.info("Item left the queue before download started; skipping")
            return

        log.info(f"Processing {item.url}")
        try:
            result = self.downloader.download(
                item.id,
                item.url,
                self.settings.download_directory(),
                title=item.title,
                on_progress=lambda percent: self._report_progress(item.id, percent),
                should_cancel=lambda: self._is_cancelled(item.id),
            )
        except Exception as e:
            log.exception("Unexpected error during download")
            self.db.update_status(
                item.id,
                ItemStatus.FAILED,
                f"Processing error: {e}",
                expected_status=ItemStatus.DOWNLOADING,
            )
            return

        self._apply_result(item, result, log)

    def _report_progress(self, item_id: str, percent: int) -> None:
        self.db.update_message(
            item_id,
            f"Downloading: {percent}%",
            expected_status=ItemStatus.DOWNLOADING,
        )

    def _is_cancelled(self, item_id: str) -> bool:
        current = self.db.get_by_id(item_id)
        return current is None or current.status == ItemStatus.CANCELLED

    def _apply_result(self, item: QueueItem, result: DownloadResult, log: logging.LoggerAdapter) -> None:
        current = self.db.get_by_id(item.id)
        if current is None or current.status != ItemStatus.DOWNLOADING:
            state = current.status.value if current else "deleted"
            log.info(f"Item is now '{state}'; discarding {result.outcome.value} download result")
            return

        if result.outcome == DownloadOutcome.CANCELLED:
            self.db.update_status(
                item.id,
                ItemStatus.CANCELLED,
                "Cancelled by user during download.",
                title=result.title,
                expected_status=ItemStatus.DOWNLOADING,
            )
            return

        if result.outcome == DownloadOutcome.FAILED:
            message = INTERRUPTED_MESSAGE if self._stopping.is_set() else result.message
            self.db.update_status(
                item.id,
                ItemStatus.FAILED,
                message,
                title=result.title,
                expected_status=ItemStatus.DOWNLOADING,
            )
            return

        updated = self.db.update_status(
            item.id,
            ItemStatus.COMPLETED,
            result.message,
            title=result.title,
            local_path=str(result.local_path) if result.local_path else None,
            sidecar_path=str(result.sidecar_path) if result.sidecar_path else None,
            expected_status=ItemStatus.DOWNLOADING,
        )
        if not updated:
            log.info("Item changed state while finishing; download result discarded")
            return

        if result.thumbnail_url:
            self.db.set_thumbnail(item.id, result.thumbnail_url)

        log.info(result.message)

        if (
            result.local_path is not None
            and self._on_download_complete is not None
            and self.settings.get_bool(AUTO_UPLOAD)
            and self.settings.upload_targets()
        ):
            log.info("Auto-upload enabled; scheduling upload")
            self._on_download_complete(item.id)
