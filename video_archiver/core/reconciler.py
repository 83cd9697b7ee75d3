"""Encoding reconciler.

Filemoon acknowledges an upload before its encoding pipeline reports
anything, and never pushes status changes. The reconciler polls the
account's in-flight encoding list on a timer and maps what it sees onto
``transferring`` / ``encoding`` items, failing the ones that go silent for
too long.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from ..uploaders.filemoon import FilemoonClient
from ..uploaders.responses import EncodingEntry, RemoteEncodingState
from ..utils.config import ArchiveConfig, SettingsStore
from ..utils.logging import ItemLogAdapter, get_logger
from .errors import ArchiveError
from .state import RECONCILE_STATUSES, ItemStatus, QueueDB, QueueItem, UploadTarget

FilemoonClientFactory = Callable[[str], FilemoonClient]


@dataclass
class ReconcileReport:
    """Summary of one reconciliation tick.

    Attributes:
        checked: Local items that were compared against the remote list.
        updated: Rows written.
        encoded: Items that reached ``encoded``.
        failed: Items that were marked ``failed``.
        skipped_reason: Why the tick did nothing, if it did nothing.
    """

    checked: int = 0
    updated: int = 0
    encoded: int = 0
    failed: int = 0
    skipped_reason: Optional[str] = None


def _minutes(seconds: float) -> str:
    return f"{seconds / 60:g}"


class EncodingReconciler:
    """Periodically reconciles local items with Filemoon's encoding list.

    Only rows in ``transferring`` or ``encoding`` are read or written, so the
    reconciler never contends with the scheduler.

    Attributes:
        db: Queue store.
        settings: Settings store (Filemoon API key).
        config: Interval and timeout configuration.
    """

    def __init__(
        self,
        db: QueueDB,
        settings: SettingsStore,
        config: ArchiveConfig,
        client_factory: Optional[FilemoonClientFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.config = config
        self._client_factory = client_factory or self._default_client
        self._logger = logger or get_logger("reconciler")

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _default_client(self, api_key: str) -> FilemoonClient:
        return FilemoonClient(api_key, self.config.filemoon_api_base, timeout=self.config.http_timeout)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start polling on a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="encoding-reconciler", daemon=True)
        self._thread.start()
        self._logger.info(
            f"Encoding reconciler started (interval {self.config.reconcile_interval:g}s)"
        )

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop polling and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        if self._stop_event.wait(self.config.reconcile_initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # Keep the timer alive; the next tick re-reads everything
                self._logger.exception("Encoding poll failed unexpectedly")
            if self._stop_event.wait(self.config.reconcile_interval):
                return

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def tick(self) -> ReconcileReport:
        """Run one reconciliation pass.

        Overlapping calls are skipped rather than queued.

        Returns:
            ReconcileReport for the pass.
        """
        if not self._tick_lock.acquire(blocking=False):
            return ReconcileReport(skipped_reason="A poll is already running.")
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> ReconcileReport:
        report = ReconcileReport()

        items = [item for item in self.db.list_by_status(*RECONCILE_STATUSES) if item.filemoon_code]
        if not items:
            report.skipped_reason = "No items are waiting for encoding."
            return report

        api_key = self.settings.api_key(UploadTarget.FILEMOON)
        if not api_key:
            report.skipped_reason = "Filemoon API key is missing in settings."
            self._logger.error(f"Encoding poll skipped: {report.skipped_reason}")
            return report

        self._logger.debug(f"Fetching encoding list for {len(items)} item(s)...")
        try:
            entries = self._client_factory(api_key).list_encodings()
        except ArchiveError as e:
            # Fail closed: without a trustworthy list nothing is promoted or timed out
            report.skipped_reason = f"Encoding list unavailable: {e}"
            self._logger.warning(f"Encoding poll skipped: {e}")
            return report

        by_code: Dict[str, EncodingEntry] = {entry.file_code: entry for entry in entries}
        now = self.db.now()

        for item in items:
            report.checked += 1
            entry = by_code.get(item.filemoon_code)
            if entry is not None:
                self._apply_entry(item, entry, now, report)
            else:
                self._apply_missing(item, now, report)

        if report.updated:
            self._logger.info(
                f"Encoding poll: {report.checked} checked, {report.updated} updated, "
                f"{report.encoded} encoded, {report.failed} failed"
            )
        return report

    def _apply_entry(
        self,
        item: QueueItem,
        entry: EncodingEntry,
        now: datetime,
        report: ReconcileReport,
    ) -> None:
        log = ItemLogAdapter(self._logger, item.id)
        previous = item.encoding_progress if item.status == ItemStatus.ENCODING else None

        if entry.state == RemoteEncodingState.PENDING:
            status = ItemStatus.ENCODING
            progress = self._monotonic(previous, entry.progress if entry.progress is not None else 0)
            message = "Pending in encoding queue..."
        elif entry.state == RemoteEncodingState.ENCODING:
            status = ItemStatus.ENCODING
            progress = self._monotonic(previous, entry.progress)
            message = f"Encoding: {progress if progress is not None else 0}%"
        elif entry.state == RemoteEncodingState.COMPLETED:
            status = ItemStatus.ENCODED
            progress = 100
            message = "Encoding complete."
        elif entry.state == RemoteEncodingState.ERROR:
            status = ItemStatus.FAILED
            progress = None
            message = f"Encoding failed: {entry.error or 'Unknown error'}"
        else:
            status = item.status
            progress = item.encoding_progress
            message = (
                f"Unknown API status: {entry.raw_status}"
                if entry.raw_status
                else "Waiting for encoding status..."
            )

        if status != item.status or progress != item.encoding_progress:
            log.info(
                f"{item.status.value} ({item.encoding_progress}%) -> {status.value} ({progress}%) "
                f"[remote: {entry.raw_status}]"
            )
            self._write(item, status, progress, message, report)
            return

        if message != item.message and entry.state == RemoteEncodingState.UNKNOWN:
            log.warning(f"Unknown remote status '{entry.raw_status}'; keeping '{item.status.value}'")
            self.db.update_message(item.id, message, expected_status=item.status, touch=False)

        self._apply_stale_timeout(item, now, report)

    def _apply_missing(self, item: QueueItem, now: datetime, report: ReconcileReport) -> None:
        log = ItemLogAdapter(self._logger, item.id)

        if item.status == ItemStatus.ENCODING:
            log.info("Was encoding and is no longer in the remote list; assuming complete")
            self._write(
                item,
                ItemStatus.ENCODED,
                100,
                "Encoding presumed complete (not in API list).",
                report,
            )
            return

        age = (now - item.updated_at).total_seconds()
        if age > self.config.transferring_timeout:
            self._time_out(item, report)
        else:
            log.debug(f"Transferring but not yet in the encoding list (age: {age:.0f}s)")

    def _apply_stale_timeout(self, item: QueueItem, now: datetime, report: ReconcileReport) -> None:
        age = (now - item.updated_at).total_seconds()
        if item.status == ItemStatus.ENCODING and age > self.config.encoding_timeout:
            self._time_out(item, report)
        elif item.status == ItemStatus.TRANSFERRING and age > self.config.transferring_timeout:
            self._time_out(item, report)

    def _time_out(self, item: QueueItem, report: ReconcileReport) -> None:
        if item.status == ItemStatus.ENCODING:
            timeout = self.config.encoding_timeout
            progress = item.encoding_progress
        else:
            timeout = self.config.transferring_timeout
            progress = None

        message = f"Processing timed out (>{_minutes(timeout)}min in {item.status.value} state)."
        ItemLogAdapter(self._logger, item.id).warning(message)
        self._write(item, ItemStatus.FAILED, progress, message, report)

    def _write(
        self,
        item: QueueItem,
        status: ItemStatus,
        progress: Optional[int],
        message: str,
        report: ReconcileReport,
    ) -> None:
        written = self.db.update_encoding_state(
            item.id,
            status,
            progress,
            message,
            expected_status=item.status,
        )
        if not written:
            ItemLogAdapter(self._logger, item.id).debug("Item changed during poll; update skipped")
            return

        report.updated += 1
        if status == ItemStatus.ENCODED:
            report.encoded += 1
        elif status == ItemStatus.FAILED:
            report.failed += 1

    @staticmethod
    def _monotonic(previous: Optional[int], current: Optional[int]) -> Optional[int]:
        if previous is None:
            return current
        if current is None:
            return previous
        return max(previous, current)
