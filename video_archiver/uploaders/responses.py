"""Validation of hosting API response bodies.

The hosting services return loosely-typed JSON. Everything is checked here
and turned into small typed values before any status mapping happens, so a
malformed body raises MalformedResponseError instead of leaking half-parsed
data into the queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from ..core.errors import MalformedResponseError, RemoteStateError


class RemoteEncodingState(Enum):
    """Encoding state reported by the host, normalised."""

    PENDING = "pending"
    ENCODING = "encoding"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"


_STATE_ALIASES = {
    "PENDING": RemoteEncodingState.PENDING,
    "QUEUED": RemoteEncodingState.PENDING,
    "ENCODING": RemoteEncodingState.ENCODING,
    "PROCESSING": RemoteEncodingState.ENCODING,
    "COMPLETED": RemoteEncodingState.COMPLETED,
    "READY": RemoteEncodingState.COMPLETED,
    "ERROR": RemoteEncodingState.ERROR,
    "FAILED": RemoteEncodingState.ERROR,
}


@dataclass(frozen=True)
class EncodingEntry:
    """One row of the host's in-flight encoding list.

    Attributes:
        file_code: Remote reference the row belongs to.
        state: Normalised encoding state.
        raw_status: Status string exactly as the host sent it.
        progress: Encoding progress (0-100), if reported.
        error: Host-provided error text, if any.
    """

    file_code: str
    state: RemoteEncodingState
    raw_status: Optional[str]
    progress: Optional[int]
    error: Optional[str]


def _require_dict(payload: Any, context: str) -> dict:
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"{context}: expected a JSON object, got {type(payload).__name__}")
    return payload


def _api_status_ok(payload: dict) -> bool:
    return str(payload.get("status", "")).strip() == "200"


def _api_failure(payload: dict, context: str) -> RemoteStateError:
    msg = payload.get("msg") or payload.get("message") or "no message"
    return RemoteStateError(f"{context} failed. Status: {payload.get('status')}, Msg: {msg}")


def parse_progress(value: Any) -> Optional[int]:
    """Parse a progress value that may arrive as int, float or string.

    Returns:
        Integer percentage clamped to 0-100, or None if absent/unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        progress = int(float(str(value).strip().rstrip("%")))
    except ValueError:
        return None
    return max(0, min(progress, 100))


def parse_filemoon_server(payload: Any) -> str:
    """Extract the ingest URL from an ``upload/server`` response.

    Raises:
        RemoteStateError: If the API reported a non-200 status.
        MalformedResponseError: If the URL is missing.
    """
    data = _require_dict(payload, "Filemoon upload server")
    if not _api_status_ok(data):
        raise _api_failure(data, "Getting Filemoon upload server")

    result = data.get("result")
    if not isinstance(result, str) or not result.startswith(("http://", "https://")):
        raise MalformedResponseError(f"Filemoon upload server response has no usable URL: {result!r}")
    return result


def parse_filemoon_upload(payload: Any) -> str:
    """Extract the file code from a Filemoon upload response.

    Raises:
        RemoteStateError: If the API or the file entry reported failure.
        MalformedResponseError: If the files list or file code is missing.
    """
    data = _require_dict(payload, "Filemoon upload")
    if not _api_status_ok(data):
        raise _api_failure(data, "Filemoon upload")

    files = data.get("files")
    if not isinstance(files, list) or not files:
        raise MalformedResponseError("Filemoon upload response contains no files")

    uploaded = files[0]
    if not isinstance(uploaded, dict):
        raise MalformedResponseError("Filemoon upload response file entry is not an object")

    if str(uploaded.get("status", "")).upper() != "OK":
        raise RemoteStateError(
            f"Filemoon upload result indicates failure. File status: {uploaded.get('status')}"
        )

    filecode = uploaded.get("filecode")
    if not isinstance(filecode, str) or not filecode.strip():
        raise MalformedResponseError("Filemoon upload response is missing the filecode")
    return filecode.strip()


def parse_filesvc_upload(payload: Any) -> str:
    """Extract the file code from a Files.vc upload response.

    Raises:
        RemoteStateError: If success is not true.
        MalformedResponseError: If the file code is missing.
    """
    data = _require_dict(payload, "Files.vc upload")
    if data.get("success") is not True:
        msg = data.get("message") or data.get("error") or "no message"
        raise RemoteStateError(f"Files.vc upload failed: {msg}")

    inner = data.get("data")
    if not isinstance(inner, dict):
        raise MalformedResponseError("Files.vc upload response has no data object")

    file_code = inner.get("file_code")
    if not isinstance(file_code, str) or not file_code.strip():
        raise MalformedResponseError("Files.vc upload response is missing file_code")
    return file_code.strip()


def parse_encoding_list(payload: Any) -> List[EncodingEntry]:
    """Parse an ``encoding/list`` response into typed entries.

    Individual rows without a file code are skipped; a body that is not a
    200 response with a list result is rejected as a whole.

    Raises:
        RemoteStateError: If the API reported a non-200 status.
        MalformedResponseError: If result is not a list.
    """
    data = _require_dict(payload, "Filemoon encoding list")
    if not _api_status_ok(data):
        raise _api_failure(data, "Fetching Filemoon encoding list")

    result = data.get("result")
    if result is None:
        return []
    if not isinstance(result, list):
        raise MalformedResponseError(
            f"Filemoon encoding list result is not a list: {type(result).__name__}"
        )

    entries: List[EncodingEntry] = []
    for row in result:
        if not isinstance(row, dict):
            continue
        file_code = row.get("file_code")
        if not isinstance(file_code, str) or not file_code:
            continue

        raw_status = row.get("status")
        raw_status = str(raw_status) if raw_status is not None else None
        state = _STATE_ALIASES.get((raw_status or "").strip().upper(), RemoteEncodingState.UNKNOWN)
        error = row.get("error")

        entries.append(
            EncodingEntry(
                file_code=file_code,
                state=state,
                raw_status=raw_status,
                progress=parse_progress(row.get("progress")),
                error=str(error) if error else None,
            )
        )
    return entries


def parse_filemoon_restart(payload: Any) -> None:
    """Check an ``encoding/restart`` response.

    Raises:
        RemoteStateError: If the API reported a non-200 status.
    """
    data = _require_dict(payload, "Filemoon encoding restart")
    if not _api_status_ok(data):
        raise _api_failure(data, "Restarting Filemoon encoding")
