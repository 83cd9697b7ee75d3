"""Shared HTTP plumbing for hosting service clients.

This module provides HostingClient, the requests-based base class for the
Filemoon and Files.vc clients (JSON GETs with retry and backoff, and
streaming multipart uploads), and MultipartFileStream, which lets requests
send a large video without loading it into memory.
"""

from __future__ import annotations

import io
import logging
import time
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional

import requests

from ..core.errors import MalformedResponseError, NetworkError, RemoteStateError
from ..utils.logging import get_logger

# Default configuration
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_UPLOAD_TIMEOUT = 6 * 60 * 60  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0

USER_AGENT = "video-archiver/1.0"


class MultipartFileStream:
    """A multipart/form-data body that streams its file part from disk.

    requests sends objects with ``read`` and ``__len__`` as a streamed body
    with a Content-Length header, so the upload never holds the whole video
    in memory.

    Attributes:
        content_type: Value for the Content-Type header, including the boundary.
    """

    def __init__(
        self,
        fields: Mapping[str, str],
        file_field: str,
        file_path: Path,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Build the multipart envelope around a file.

        Args:
            fields: Plain form fields sent before the file.
            file_field: Form field name of the file part.
            file_path: File to stream.
            chunk_size: Bytes per chunk when iterated.
        """
        self.file_path = Path(file_path)
        self.chunk_size = chunk_size
        self.boundary = uuid.uuid4().hex
        self.content_type = f"multipart/form-data; boundary={self.boundary}"

        head = io.BytesIO()
        for name, value in fields.items():
            head.write(f"--{self.boundary}\r\n".encode())
            head.write(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode())
            head.write(f"{value}\r\n".encode())

        filename = self.file_path.name.replace('"', "%22").replace("\r", "").replace("\n", "")
        head.write(f"--{self.boundary}\r\n".encode())
        head.write(
            f'Content-Disposition: form-data; name="{file_field}"; filename="{filename}"\r\n'.encode()
        )
        head.write(b"Content-Type: application/octet-stream\r\n\r\n")

        self._head = head.getvalue()
        self._tail = f"\r\n--{self.boundary}--\r\n".encode()
        self._file_size = self.file_path.stat().st_size
        self._segments: Optional[List[BinaryIO]] = None
        self._file: Optional[BinaryIO] = None

    def __len__(self) -> int:
        return len(self._head) + self._file_size + len(self._tail)

    def _open(self) -> List[BinaryIO]:
        if self._segments is None:
            self._file = open(self.file_path, "rb")
            self._segments = [io.BytesIO(self._head), self._file, io.BytesIO(self._tail)]
        return self._segments

    def read(self, size: int = -1) -> bytes:
        segments = self._open()
        if size is None or size < 0:
            return b"".join(segment.read() for segment in segments)

        parts: List[bytes] = []
        remaining = size
        for segment in segments:
            if remaining <= 0:
                break
            chunk = segment.read(remaining)
            parts.append(chunk)
            remaining -= len(chunk)
        return b"".join(parts)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> MultipartFileStream:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class HostingClient:
    """Base class for hosting service API clients.

    Attributes:
        display_name: Human-readable service name used in messages.
        base_url: API base URL.
        timeout: Timeout for small API requests, in seconds.
        upload_timeout: Read timeout for streaming uploads, in seconds.
        max_retries: Attempts for idempotent GET requests.
    """

    display_name = "Hosting service"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Service API key.
            base_url: API base URL (no trailing slash needed).
            timeout: Timeout for small API requests.
            upload_timeout: Read timeout for uploads.
            max_retries: Attempts for idempotent GET requests.
            session: Optional requests session to reuse.
            logger: Optional logger instance.
            sleep: Sleep function used between retries, injectable for tests.
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.max_retries = max(1, max_retries)
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)
        self._logger = logger or get_logger(f"uploaders.{type(self).__name__.lower()}")
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _calculate_backoff(self, attempt: int, retry_after: Optional[int] = None) -> float:
        """Calculate backoff time with exponential increase.

        Args:
            attempt: Current attempt number (0-indexed).
            retry_after: Optional Retry-After value from server.

        Returns:
            Seconds to wait before next retry.
        """
        if retry_after is not None:
            return float(retry_after)

        backoff = INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** attempt)
        return min(backoff, MAX_BACKOFF_SECONDS)

    def _decode_json(self, response: requests.Response, context: str) -> Any:
        try:
            return response.json()
        except ValueError:
            snippet = (response.text or "")[:200]
            raise MalformedResponseError(f"{context}: response is not valid JSON: {snippet!r}")

    def _handle_response_error(self, response: requests.Response, context: str) -> None:
        """Raise RemoteStateError for non-2xx responses.

        Args:
            response: The HTTP response to check.
            context: Description of the operation for error messages.
        """
        if response.ok:
            return

        try:
            error_data = response.json()
            error_message = (
                error_data.get("msg") or error_data.get("message") or response.text
                if isinstance(error_data, dict)
                else response.text
            )
        except ValueError:
            error_message = response.text or f"HTTP {response.status_code}"

        self._logger.error(f"HTTP {response.status_code} for {context}: {error_message}")
        raise RemoteStateError(f"{response.status_code} - {error_message}")

    def _get_json(self, path: str, params: Dict[str, str], context: str) -> Any:
        """GET a JSON endpoint, retrying transport errors, 429 and 5xx.

        Raises:
            NetworkError: If every attempt failed at the transport level.
            RemoteStateError: For non-retryable HTTP errors.
            MalformedResponseError: If the body is not JSON.
        """
        url = self._url(path)
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self._session.get(url, params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    backoff = self._calculate_backoff(attempt)
                    self._logger.warning(
                        f"{context} failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {backoff:.1f}s..."
                    )
                    self._sleep(backoff)
                continue

            if response.status_code == 429 or response.status_code >= 500:
                last_error = RemoteStateError(f"HTTP {response.status_code}")
                if attempt < self.max_retries - 1:
                    retry_after = None
                    if "Retry-After" in response.headers:
                        try:
                            retry_after = int(response.headers["Retry-After"])
                        except ValueError:
                            pass
                    backoff = self._calculate_backoff(attempt, retry_after)
                    self._logger.warning(
                        f"{context} returned HTTP {response.status_code}, waiting {backoff:.1f}s before retry..."
                    )
                    self._sleep(backoff)
                    continue
                self._handle_response_error(response, context)

            self._handle_response_error(response, context)
            return self._decode_json(response, context)

        error_msg = f"{context} failed after {self.max_retries} attempts: {last_error}"
        self._logger.error(error_msg)
        raise NetworkError(error_msg) from last_error

    def _post_file(
        self,
        url: str,
        fields: Mapping[str, str],
        file_field: str,
        file_path: Path,
        context: str,
    ) -> Any:
        """Stream a file as multipart form data. Never retried.

        Raises:
            NetworkError: On transport failure.
            RemoteStateError: For non-2xx responses.
            MalformedResponseError: If the body is not JSON.
        """
        size = Path(file_path).stat().st_size
        self._logger.info(f"{context}: sending {Path(file_path).name} ({size:,} bytes)")

        with MultipartFileStream(fields, file_field, file_path) as body:
            try:
                response = self._session.post(
                    url,
                    data=body,
                    headers={"Content-Type": body.content_type},
                    timeout=(self.timeout, self.upload_timeout),
                )
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"{context} request failed: {e}") from e

        self._handle_response_error(response, context)
        return self._decode_json(response, context)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"
