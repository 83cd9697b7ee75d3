"""
video-archiver: download videos with yt-dlp and archive them on hosting services.

Queued URLs are downloaded one at a time, uploaded to:
- Filemoon (encoding progress is tracked until the file is playable)
- Files.vc

and their state is persisted in a local SQLite queue.
"""

from video_archiver.core.service import ApiResponse, ArchiveService
from video_archiver.core.state import ItemStatus, QueueDB, QueueItem, UploadTarget
from video_archiver.utils.config import ArchiveConfig

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ApiResponse",
    "ArchiveConfig",
    "ArchiveService",
    "ItemStatus",
    "QueueDB",
    "QueueItem",
    "UploadTarget",
]
