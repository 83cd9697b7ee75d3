"""Upload orchestration for completed downloads.

This module moves a completed item through ``uploading`` to one or more
hosting services, records the file code each service returns, and finally
leaves the item ``transferring`` (a host with encoding telemetry was used)
or ``uploaded`` (otherwise).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..uploaders.base import HostingClient
from ..uploaders.filemoon import FilemoonClient
from ..uploaders.filesvc import FilesVcClient
from ..utils.config import DELETE_AFTER_UPLOAD, ArchiveConfig, SettingsStore
from ..utils.logging import ItemLogAdapter, get_logger
from ..utils.paths import remove_artifacts
from .errors import ArchiveError, NetworkError
from .state import ItemStatus, QueueDB, UploadTarget

# Targets whose file codes are followed by the encoding reconciler
ENCODING_TARGETS = frozenset({UploadTarget.FILEMOON})

CHANGED_DURING_UPLOAD = "Item changed state during upload."

ClientFactory = Callable[[UploadTarget, str], HostingClient]


@dataclass
class UploadResult:
    """Result of an upload attempt.

    Attributes:
        success: Whether every requested target accepted the file.
        message: User-facing message.
        references: File codes obtained during this attempt, by target.
    """

    success: bool
    message: str
    references: Dict[UploadTarget, str] = field(default_factory=dict)


class UploadOrchestrator:
    """Uploads completed items to the configured hosting services.

    Uploads are not serialized: several may run at once on the service's
    upload workers, next to the single running download. A conditional
    ``completed -> uploading`` write makes sure only one upload claims a
    given item.
    """

    def __init__(
        self,
        db: QueueDB,
        settings: SettingsStore,
        config: ArchiveConfig,
        client_factory: Optional[ClientFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            db: Queue store.
            settings: Settings store (targets, API keys, delete policy).
            config: Service configuration (endpoints, timeouts).
            client_factory: Builds a client for a target and API key.
                Defaults to the real Filemoon / Files.vc clients.
            logger: Optional logger instance.
        """
        self.db = db
        self.settings = settings
        self.config = config
        self._client_factory = client_factory or self._default_client
        self._logger = logger or get_logger("uploader")

    def _default_client(self, target: UploadTarget, api_key: str) -> HostingClient:
        if target is UploadTarget.FILEMOON:
            return FilemoonClient(
                api_key,
                self.config.filemoon_api_base,
                timeout=self.config.http_timeout,
                upload_timeout=self.config.upload_timeout,
            )
        return FilesVcClient(
            api_key,
            self.config.files_vc_api_base,
            timeout=self.config.http_timeout,
            upload_timeout=self.config.upload_timeout,
        )

    def upload(self, item_id: str, targets: Optional[List[UploadTarget]] = None) -> UploadResult:
        """Upload a completed item.

        Args:
            item_id: Item to upload.
            targets: Targets to use, in order. Defaults to the upload_target setting.

        Returns:
            UploadResult describing the outcome. Failures after the item was
            accepted for upload are also written to the item as ``failed``.
        """
        log = ItemLogAdapter(self._logger, item_id)
        if targets is None:
            targets = self.settings.upload_targets()
        if not targets:
            return UploadResult(False, "Upload skipped: upload target is set to 'none'.")

        item = self.db.get_by_id(item_id)
        if item is None:
            return UploadResult(False, f"Upload failed: Item with ID {item_id} not found.")

        if item.status != ItemStatus.COMPLETED or not item.local_path:
            return UploadResult(
                False,
                f"Upload failed: Item {item_id} is not in 'completed' state or missing local file path.",
            )

        pending = [target for target in targets if not item.remote_reference(target)]
        if not pending:
            names = ", ".join(t.display_name for t in targets)
            return UploadResult(False, f"Upload rejected: item is already hosted on {names}.")

        api_keys: Dict[UploadTarget, str] = {}
        for target in pending:
            key = self.settings.api_key(target)
            if not key:
                message = f"Upload failed: {target.display_name} API key is missing in settings."
                log.error(message)
                self.db.update_status(item_id, ItemStatus.FAILED, message, expected_status=ItemStatus.COMPLETED)
                return UploadResult(False, message)
            api_keys[target] = key

        local_path = Path(item.local_path)
        if not local_path.is_file():
            message = f"Upload error: Local file not found at {local_path}"
            log.error(message)
            self.db.update_status(item_id, ItemStatus.FAILED, message, expected_status=ItemStatus.COMPLETED)
            return UploadResult(False, "Upload failed: Local file not found.")

        references: Dict[UploadTarget, str] = {}
        for index, target in enumerate(pending):
            claimed = self.db.update_status(
                item_id,
                ItemStatus.UPLOADING,
                f"Starting {target.display_name} upload...",
                expected_status=ItemStatus.COMPLETED,
            )
            if not claimed:
                return UploadResult(
                    False,
                    "Upload failed: item is no longer in 'completed' state.",
                    references,
                )

            log.info(f"Uploading {local_path.name} to {target.display_name}")
            try:
                client = self._client_factory(target, api_keys[target])
                file_code = client.upload_file(local_path)
            except NetworkError as e:
                return self._fail(item_id, f"{target.display_name} upload failed: {e}", references, log)
            except ArchiveError as e:
                return self._fail(item_id, f"{target.display_name} API error: {e}", references, log)
            except OSError as e:
                return self._fail(item_id, f"Upload error: {e}", references, log)

            references[target] = file_code
            try:
                if not self.db.set_remote_reference(item_id, target, file_code):
                    log.warning(f"{target.display_name} reference already set; keeping the existing one")
            except ValueError:
                log.warning(f"Item was removed during upload; {target.display_name} file {file_code} is orphaned")
                return UploadResult(False, CHANGED_DURING_UPLOAD, references)
            log.info(f"{target.display_name} upload successful. Filecode: {file_code}")

            if index < len(pending) - 1:
                # More targets to go: hand the item back as completed
                self.db.update_status(
                    item_id,
                    ItemStatus.COMPLETED,
                    f"{target.display_name} upload done. Continuing with the next target...",
                    expected_status=ItemStatus.UPLOADING,
                )

        item = self.db.get_by_id(item_id)
        tracks_encoding = item is not None and any(
            item.remote_reference(target) for target in ENCODING_TARGETS
        )
        if tracks_encoding:
            final_status = ItemStatus.TRANSFERRING
            message = "Upload successful. Waiting for transfer/encoding..."
        else:
            final_status = ItemStatus.UPLOADED
            codes = ", ".join(f"{t.display_name}: {code}" for t, code in references.items())
            message = f"Upload successful. {codes}"

        finished = self.db.update_status(
            item_id,
            final_status,
            message,
            encoding_progress=None,
            expected_status=ItemStatus.UPLOADING,
        )
        if not finished:
            log.warning("Item changed state during upload; keeping local files")
            return UploadResult(False, CHANGED_DURING_UPLOAD, references)

        if self.settings.get_bool(DELETE_AFTER_UPLOAD):
            log.info("Deleting local files after successful upload")
            remove_artifacts(item.local_path if item else str(local_path), item.sidecar_path if item else None)

        return UploadResult(True, message, references)

    def _fail(
        self,
        item_id: str,
        message: str,
        references: Dict[UploadTarget, str],
        log: logging.LoggerAdapter,
    ) -> UploadResult:
        log.error(message)
        self.db.update_status(item_id, ItemStatus.FAILED, message, expected_status=ItemStatus.UPLOADING)
        return UploadResult(False, message, references)
