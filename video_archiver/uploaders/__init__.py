"""
video_archiver.uploaders - Hosting service API clients.

Each client implements upload_file() on top of a shared HostingClient,
and response bodies are parsed into typed values in responses.py.
"""

from video_archiver.uploaders.base import HostingClient, MultipartFileStream
from video_archiver.uploaders.filemoon import FilemoonClient
from video_archiver.uploaders.filesvc import FilesVcClient
from video_archiver.uploaders.responses import EncodingEntry, RemoteEncodingState

__all__ = [
    "HostingClient",
    "MultipartFileStream",
    "FilemoonClient",
    "FilesVcClient",
    "EncodingEntry",
    "RemoteEncodingState",
]
