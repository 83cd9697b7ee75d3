"""Filemoon API client.

Filemoon assigns an ingest server per upload and exposes an encoding
queue, which the reconciler polls to follow an upload through transcoding.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from .base import HostingClient
from .responses import (
    EncodingEntry,
    parse_encoding_list,
    parse_filemoon_restart,
    parse_filemoon_server,
    parse_filemoon_upload,
)

FILEMOON_API_BASE = "https://filemoonapi.com/api"


class FilemoonClient(HostingClient):
    """Client for the Filemoon upload and encoding endpoints."""

    display_name = "Filemoon"

    def get_upload_server(self) -> str:
        """Request a dynamically-assigned ingest URL."""
        payload = self._get_json("upload/server", {"key": self.api_key}, "Filemoon upload server")
        server = parse_filemoon_server(payload)
        self._logger.debug(f"Received Filemoon upload server: {server}")
        return server

    def upload_file(self, file_path: Path) -> str:
        """Upload a file and return its Filemoon file code.

        Args:
            file_path: Local video to upload.

        Returns:
            The file code assigned by Filemoon.

        Raises:
            NetworkError: On transport failure.
            RemoteStateError: If Filemoon rejects the upload.
            MalformedResponseError: If a response does not have the documented shape.
        """
        server = self.get_upload_server()
        payload = self._post_file(
            server,
            {"key": self.api_key},
            "file",
            file_path,
            "Filemoon upload",
        )
        return parse_filemoon_upload(payload)

    def list_encodings(self) -> List[EncodingEntry]:
        """Fetch the account's in-flight encoding list."""
        payload = self._get_json("encoding/list", {"key": self.api_key}, "Filemoon encoding list")
        return parse_encoding_list(payload)

    def restart_encoding(self, file_code: str) -> None:
        """Ask Filemoon to re-run encoding for a file."""
        payload = self._get_json(
            "encoding/restart",
            {"key": self.api_key, "file_code": file_code},
            "Filemoon encoding restart",
        )
        parse_filemoon_restart(payload)
