"""Files.vc API client.

Files.vc has a single static upload endpoint and no encoding telemetry.
"""

from __future__ import annotations

from pathlib import Path

from .base import HostingClient
from .responses import parse_filesvc_upload

FILES_VC_API_BASE = "https://api.files.vc"


class FilesVcClient(HostingClient):
    """Client for the Files.vc upload endpoint."""

    display_name = "Files.vc"

    def upload_file(self, file_path: Path) -> str:
        """Upload a file and return its Files.vc file code.

        Raises:
            NetworkError: On transport failure.
            RemoteStateError: If Files.vc rejects the upload.
            MalformedResponseError: If the response does not have the documented shape.
        """
        payload = self._post_file(
            self._url("upload"),
            {"api_key": self.api_key},
            "file",
            file_path,
            "Files.vc upload",
        )
        return parse_filesvc_upload(payload)
