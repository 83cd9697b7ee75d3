"""
video_archiver.core - Core functionality and business logic.

This module contains the orchestration logic for:
- The persistent download queue
- Download scheduling and cancellation
- Upload coordination and encoding reconciliation

Heavier modules (scheduler, uploader, reconciler, service) are imported
from their own modules to keep this package import-light.
"""

from video_archiver.core.errors import (
    ArchiveError,
    ConfigurationError,
    ExternalProcessError,
    MalformedResponseError,
    NetworkError,
    RemoteStateError,
    StageTimeoutError,
)
from video_archiver.core.state import (
    EnqueueResult,
    ItemStatus,
    QueueDB,
    QueueItem,
    UploadTarget,
)

__all__ = [
    "ArchiveError",
    "ConfigurationError",
    "ExternalProcessError",
    "MalformedResponseError",
    "NetworkError",
    "RemoteStateError",
    "StageTimeoutError",
    "EnqueueResult",
    "ItemStatus",
    "QueueDB",
    "QueueItem",
    "UploadTarget",
]
