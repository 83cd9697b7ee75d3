"""Archive service facade.

ArchiveService wires the queue store, settings, process registry,
orchestrators, scheduler and reconciler together, and exposes the
operations callers use. Every operation returns an ApiResponse envelope;
expected failures are reported in it rather than raised.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..downloaders.ytdlp import YtDlpDownloader
from ..uploaders.filemoon import FilemoonClient
from ..utils.config import ArchiveConfig, SettingsStore
from ..utils.logging import ItemLogAdapter, get_logger
from ..utils.paths import WorkdirManager
from ..utils.url_detect import normalize_url, validate_url
from .errors import ArchiveError
from .reconciler import EncodingReconciler, FilemoonClientFactory
from .registry import ProcessRegistry
from .scheduler import Scheduler
from .state import ItemStatus, QueueDB, UploadTarget
from .uploader import ClientFactory, UploadOrchestrator, UploadResult

# Statuses from which a Filemoon encode can be restarted
RESTARTABLE_STATUSES = frozenset({ItemStatus.FAILED, ItemStatus.TRANSFERRING, ItemStatus.ENCODING})


@dataclass
class ApiResponse:
    """Uniform result envelope.

    Attributes:
        success: Whether the operation did what was asked.
        message: User-facing message.
        data: Optional payload (item dicts, counts, ...).
    """

    success: bool
    message: str
    data: Any = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


class ArchiveService:
    """Entry point for enqueueing, inspecting and steering archive items.

    A service can be used in two ways: short-lived (CLI commands that only
    read or edit rows) or long-running after start(), when the scheduler
    drains the queue and the reconciler polls encoding status.

    Attributes:
        config: Service configuration.
        db: Queue store.
        settings: Settings store.
        registry: Running download processes.
        downloader: Download orchestrator.
        uploader: Upload orchestrator.
        scheduler: Download scheduler.
        reconciler: Encoding reconciler.
    """

    def __init__(
        self,
        config: ArchiveConfig,
        downloader: Optional[YtDlpDownloader] = None,
        upload_client_factory: Optional[ClientFactory] = None,
        filemoon_client_factory: Optional[FilemoonClientFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the service and its database.

        Args:
            config: Service configuration.
            downloader: Optional downloader; built from config if None.
            upload_client_factory: Optional factory for upload clients.
            filemoon_client_factory: Optional factory for the Filemoon client
                used by the reconciler and encoding restarts.
            clock: Optional wall clock for timestamps (tests).
            env: Optional environment mapping for API key overrides.
            logger: Optional logger instance.
        """
        self.config = config
        self._logger = logger or get_logger("service")

        self.workdir = WorkdirManager(config.workdir)
        self.workdir.ensure_dirs()

        self.db = QueueDB(self.workdir.db_path, clock=clock)
        self.db.init_db()
        self.settings = SettingsStore(self.workdir.db_path, self.workdir.downloads_dir, env=env)
        self.settings.init_db()

        self.downloader = downloader or YtDlpDownloader(
            config.ytdlp_path,
            registry=ProcessRegistry(),
            timeout=config.download_timeout,
            title_timeout=config.title_timeout,
            progress_throttle=config.progress_throttle,
            cancel_check_interval=config.cancel_check_interval,
        )
        self.registry = self.downloader.registry

        self._filemoon_factory = filemoon_client_factory or self._default_filemoon_client
        self.uploader = UploadOrchestrator(
            self.db, self.settings, config, client_factory=upload_client_factory
        )
        self.scheduler = Scheduler(
            self.db,
            self.downloader,
            self.settings,
            on_download_complete=self.schedule_upload,
            poll_interval=config.queue_poll_interval,
        )
        self.reconciler = EncodingReconciler(
            self.db, self.settings, config, client_factory=self._filemoon_factory
        )

        self._upload_pool = ThreadPoolExecutor(
            max_workers=max(1, config.upload_workers),
            thread_name_prefix="archive-upload",
        )
        self._upload_futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._running = False

    def _default_filemoon_client(self, api_key: str) -> FilemoonClient:
        return FilemoonClient(api_key, self.config.filemoon_api_base, timeout=self.config.http_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, reconcile: bool = True) -> None:
        """Recover interrupted rows, then start the scheduler and reconciler."""
        recovered = self.db.recover_interrupted()
        if recovered:
            self._logger.warning(f"Marked {recovered} interrupted download(s) as failed")

        self._running = True
        self.scheduler.start()
        if reconcile:
            self.reconciler.start()
        self._logger.info("Archive service started")

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 30.0) -> None:
        """Stop background work.

        Args:
            wait: Wait for in-flight uploads to finish.
            timeout: Seconds to wait for the scheduler thread.
        """
        self._running = False
        self.scheduler.request_stop()
        killed = self.registry.terminate_all()
        if killed:
            self._logger.info(f"Terminated {killed} running download(s)")
        self.scheduler.stop(timeout)
        self.reconciler.stop()
        self._upload_pool.shutdown(wait=wait)
        self._logger.info("Archive service stopped")

    def wait_for_uploads(self, timeout: Optional[float] = None) -> None:
        with self._futures_lock:
            futures = list(self._upload_futures.values())
        for future in futures:
            future.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue_url(self, url: str, owner_id: Optional[str] = None) -> ApiResponse:
        """Add a URL to the queue.

        A URL that is already stored is not an error: the response is
        unsuccessful and its message describes the existing item's state.
        """
        url = normalize_url(url)
        is_valid, error = validate_url(url)
        if not is_valid:
            return ApiResponse(False, f"Invalid URL: {error}")

        result = self.db.enqueue(url, owner_id=owner_id)
        if result.created:
            self._logger.info(f"Enqueued {url} as {result.item.id}")
            if self._running:
                self.scheduler.trigger()
        else:
            self._logger.info(f"Not enqueued ({result.item.status.value}): {url}")

        return ApiResponse(result.created, result.message, result.item.to_dict())

    def enqueue_many(self, urls: Iterable[str], owner_id: Optional[str] = None) -> ApiResponse:
        """Enqueue several URLs; the response data lists one result per URL."""
        results: List[dict] = []
        added = 0
        for url in urls:
            response = self.enqueue_url(url, owner_id=owner_id)
            if response.success:
                added += 1
            results.append({"url": url, **response.to_dict()})

        skipped = len(results) - added
        return ApiResponse(
            added > 0 or not results,
            f"Added {added} URL(s), skipped {skipped}.",
            results,
        )

    def list_active(self) -> ApiResponse:
        items = self.db.list_active()
        return ApiResponse(True, f"{len(items)} active item(s).", [i.to_dict() for i in items])

    def list_encoded(self) -> ApiResponse:
        items = self.db.list_encoded()
        return ApiResponse(True, f"{len(items)} encoded item(s).", [i.to_dict() for i in items])

    def list_all(self) -> ApiResponse:
        items = self.db.list_all()
        return ApiResponse(True, f"{len(items)} item(s).", [i.to_dict() for i in items])

    def get_by_id(self, item_id: str) -> ApiResponse:
        item = self.db.get_by_id(item_id)
        if item is None:
            return ApiResponse(False, f"Item with ID {item_id} not found.")
        return ApiResponse(True, "Item found.", item.to_dict())

    def stats(self) -> ApiResponse:
        return ApiResponse(True, "Queue statistics.", self.db.get_stats())

    def cancel_by_id(self, item_id: str) -> ApiResponse:
        """Cancel a queued or downloading item.

        A queued item is deleted outright. A downloading item is marked
        ``cancelled`` first and its process killed second; the stored
        status is authoritative even if the kill fails or the process lives
        in another service instance.
        """
        item = self.db.get_by_id(item_id)
        if item is None:
            return ApiResponse(False, f"Cancel failed: Item with ID {item_id} not found.")

        log = ItemLogAdapter(self._logger, item_id)

        if item.status == ItemStatus.QUEUED:
            if self.db.delete_by_id(item_id, expected_status=ItemStatus.QUEUED):
                log.info("Cancelled (deleted) queued item")
                return ApiResponse(True, "Queued item cancelled.")
            # Picked up by the scheduler in the meantime
            item = self.db.get_by_id(item_id)
            if item is None:
                return ApiResponse(False, "Item not found or already removed.")

        if item.status == ItemStatus.DOWNLOADING:
            marked = self.db.update_status(
                item_id,
                ItemStatus.CANCELLED,
                "Cancelled by user during download.",
                expected_status=ItemStatus.DOWNLOADING,
            )
            if not self.registry.terminate(item_id):
                log.info("No local process handle; the running service will stop the download")

            if marked:
                log.info("Cancelled downloading item")
                return ApiResponse(True, "Downloading item cancelled.")

            item = self.db.get_by_id(item_id)
            if item is None:
                return ApiResponse(False, "Item not found or already removed.")
            if item.status == ItemStatus.CANCELLED:
                return ApiResponse(True, "Downloading item cancelled.")
            return ApiResponse(False, "Item not found or status changed.")

        log.info(f"Attempted to cancel item in non-cancellable state: {item.status.value}")
        return ApiResponse(False, f"Cannot cancel item in '{item.status.value}' state.")

    def retry_by_id(self, item_id: str) -> ApiResponse:
        """Re-queue a failed item that never obtained a remote reference."""
        item = self.db.get_by_id(item_id)
        if item is None:
            return ApiResponse(False, f"Retry failed: Item with ID {item_id} not found.")

        if item.status != ItemStatus.FAILED:
            return ApiResponse(
                False,
                f"Retry failed: only failed items can be retried (current status: '{item.status.value}').",
            )

        if item.has_remote_reference:
            return ApiResponse(
                False,
                "Retry rejected: item already has a remote file code; downloading it again would duplicate the upload.",
            )

        requeued = self.db.update_status(
            item_id,
            ItemStatus.QUEUED,
            None,
            encoding_progress=None,
            expected_status=ItemStatus.FAILED,
        )
        if not requeued:
            return ApiResponse(False, "Retry failed: item status changed.")

        ItemLogAdapter(self._logger, item_id).info("Re-queued for processing")
        if self._running:
            self.scheduler.trigger()
        return ApiResponse(True, "Item re-queued for processing.")

    def clear_by_status(self, group: str) -> ApiResponse:
        """Delete all rows in a clearable status group.

        Args:
            group: "completed", "failed" (failed + stuck uploading),
                "cancelled" or "finished" (completed + failed).
        """
        try:
            count = self.db.clear_by_status(group)
        except ValueError as e:
            return ApiResponse(False, str(e))

        self._logger.info(f"Cleared {count} {group} item(s)")
        return ApiResponse(True, f"Cleared {count} {group} items.", {"count": count})

    # ------------------------------------------------------------------
    # Uploads and encoding
    # ------------------------------------------------------------------

    def trigger_upload_by_id(
        self,
        item_id: str,
        targets: Optional[List[UploadTarget]] = None,
        wait: bool = False,
    ) -> ApiResponse:
        """Upload a completed item now.

        Args:
            item_id: Item to upload.
            targets: Targets to use; defaults to the upload_target setting.
            wait: Run the upload in the calling thread and report its result.
        """
        item = self.db.get_by_id(item_id)
        if item is None:
            return ApiResponse(False, f"Upload failed: Item with ID {item_id} not found.")

        if item.status != ItemStatus.COMPLETED or not item.local_path:
            return ApiResponse(
                False,
                f"Upload failed: Item {item_id} is not in 'completed' state or missing local file path.",
            )

        if wait:
            result = self._run_upload(item_id, targets)
            data = {target.value: code for target, code in result.references.items()}
            return ApiResponse(result.success, result.message, data or None)

        if not self.schedule_upload(item_id, targets):
            return ApiResponse(False, "An upload for this item is already in progress.")
        return ApiResponse(True, "Upload started.")

    def schedule_upload(self, item_id: str, targets: Optional[List[UploadTarget]] = None) -> bool:
        """Run an upload on the background upload pool.

        Returns:
            False if an upload for the item is already pending.
        """
        with self._futures_lock:
            existing = self._upload_futures.get(item_id)
            if existing is not None and not existing.done():
                return False
            future = self._upload_pool.submit(self._run_upload, item_id, targets)
            self._upload_futures[item_id] = future

        future.add_done_callback(lambda f: self._forget_upload(item_id, f))
        return True

    def _forget_upload(self, item_id: str, future: Future) -> None:
        with self._futures_lock:
            if self._upload_futures.get(item_id) is future:
                del self._upload_futures[item_id]

    def _run_upload(self, item_id: str, targets: Optional[List[UploadTarget]] = None) -> UploadResult:
        try:
            return self.uploader.upload(item_id, targets)
        except Exception as e:
            ItemLogAdapter(self._logger, item_id).exception("Unexpected error during upload")
            message = f"Processing error: {e}"
            self.db.update_status(
                item_id,
                ItemStatus.FAILED,
                message,
                expected_status=(ItemStatus.COMPLETED, ItemStatus.UPLOADING),
            )
            return UploadResult(False, message)

    def restart_encoding_by_id(self, item_id: str) -> ApiResponse:
        """Ask Filemoon to encode an item again and resume tracking it."""
        item = self.db.get_by_id(item_id)
        if item is None:
            return ApiResponse(False, f"Restart failed: Item with ID {item_id} not found.")

        if not item.filemoon_code:
            return ApiResponse(False, "Restart failed: item has no Filemoon file code.")

        if item.status not in RESTARTABLE_STATUSES:
            return ApiResponse(
                False, f"Cannot restart encoding for item in '{item.status.value}' state."
            )

        api_key = self.settings.api_key(UploadTarget.FILEMOON)
        if not api_key:
            return ApiResponse(False, "Restart failed: Filemoon API key is missing in settings.")

        try:
            self._filemoon_factory(api_key).restart_encoding(item.filemoon_code)
        except ArchiveError as e:
            ItemLogAdapter(self._logger, item_id).error(f"Encoding restart failed: {e}")
            return ApiResponse(False, f"Filemoon API error: {e}")

        updated = self.db.update_status(
            item_id,
            ItemStatus.TRANSFERRING,
            "Encoding restart requested. Waiting for transfer/encoding...",
            encoding_progress=None,
            expected_status=item.status,
        )
        if not updated:
            return ApiResponse(False, "Restart requested, but the item changed state meanwhile.")

        ItemLogAdapter(self._logger, item_id).info("Encoding restart requested")
        return ApiResponse(True, "Encoding restart requested.")

    def poll_encoding(self) -> ApiResponse:
        """Run one reconciliation pass immediately."""
        report = self.reconciler.tick()
        data = {
            "checked": report.checked,
            "updated": report.updated,
            "encoded": report.encoded,
            "failed": report.failed,
        }
        if report.skipped_reason:
            return ApiResponse(False, report.skipped_reason, data)
        return ApiResponse(True, f"Checked {report.checked} item(s), updated {report.updated}.", data)

    def __enter__(self) -> ArchiveService:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._running:
            self.shutdown()
        else:
            self._upload_pool.shutdown(wait=True)
