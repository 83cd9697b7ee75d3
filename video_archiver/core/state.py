"""SQLite-based queue store for archive items.

This module provides persistent state for queued videos using SQLite. Every
other component reads and writes queue items exclusively through QueueDB,
and every decision is re-derived from the stored row rather than from
in-memory state, so the service resumes cleanly after a restart.
"""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Generator, Iterable, Optional


class ItemStatus(Enum):
    """Enumeration of possible queue item states."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    UPLOADING = "uploading"
    # Hosted on a target without encoding telemetry (Files.vc only)
    UPLOADED = "uploaded"
    TRANSFERRING = "transferring"
    ENCODING = "encoding"
    ENCODED = "encoded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ItemStatus.ENCODED, ItemStatus.CANCELLED})

# Statuses hidden from the active queue view
INACTIVE_STATUSES = (ItemStatus.ENCODED, ItemStatus.FAILED, ItemStatus.CANCELLED)

# Statuses owned by the encoding reconciler
RECONCILE_STATUSES = (ItemStatus.TRANSFERRING, ItemStatus.ENCODING)

# Groups accepted by clear_by_status. "failed" also sweeps uploads that died
# mid-flight and were left in "uploading".
CLEAR_GROUPS: dict[str, tuple[ItemStatus, ...]] = {
    "completed": (ItemStatus.COMPLETED,),
    "failed": (ItemStatus.FAILED, ItemStatus.UPLOADING),
    "cancelled": (ItemStatus.CANCELLED,),
    "finished": (ItemStatus.COMPLETED, ItemStatus.FAILED),
}


class UploadTarget(Enum):
    """Remote hosting services an item can be uploaded to."""

    FILEMOON = "filemoon"
    FILES_VC = "files_vc"

    @property
    def column(self) -> str:
        """Name of the column holding this target's remote reference."""
        return _REFERENCE_COLUMNS[self]

    @property
    def display_name(self) -> str:
        return "Filemoon" if self is UploadTarget.FILEMOON else "Files.vc"


_REFERENCE_COLUMNS = {
    UploadTarget.FILEMOON: "filemoon_code",
    UploadTarget.FILES_VC: "filesvc_code",
}

# Columns added after the first release; created on old databases by init_db.
_MIGRATED_COLUMNS = {
    "sidecar_path": "TEXT",
    "filesvc_code": "TEXT",
    "encoding_progress": "INTEGER",
    "thumbnail_url": "TEXT",
    "owner_id": "TEXT",
}

_UNSET = object()


@dataclass
class QueueItem:
    """Represents one source URL on its way to the archive.

    Attributes:
        id: Opaque identifier, sortable by creation time.
        url: Source URL (unique across the store).
        status: Current item status.
        title: Human-readable title discovered by the fetch utility.
        message: Last status message shown to the user.
        local_path: Path of the downloaded video file.
        sidecar_path: Path of the .info.json metadata sidecar.
        filemoon_code: Filemoon file code, set once after upload.
        filesvc_code: Files.vc file code, set once after upload.
        encoding_progress: Remote encoding progress (0-100), if known.
        thumbnail_url: Thumbnail reference taken from the sidecar.
        created_at: Timestamp when the item was enqueued.
        updated_at: Timestamp of the last write; basis for timeouts.
        owner_id: Optional reference to the submitting user.
    """

    id: str
    url: str
    status: ItemStatus
    title: Optional[str] = None
    message: Optional[str] = None
    local_path: Optional[str] = None
    sidecar_path: Optional[str] = None
    filemoon_code: Optional[str] = None
    filesvc_code: Optional[str] = None
    encoding_progress: Optional[int] = None
    thumbnail_url: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    owner_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueItem:
        """Create a QueueItem instance from a database row.

        Args:
            row: SQLite row with item data.

        Returns:
            QueueItem instance populated from the row.
        """
        return cls(
            id=row["id"],
            url=row["url"],
            status=ItemStatus(row["status"]),
            title=row["title"],
            message=row["message"],
            local_path=row["local_path"],
            sidecar_path=row["sidecar_path"],
            filemoon_code=row["filemoon_code"],
            filesvc_code=row["filesvc_code"],
            encoding_progress=row["encoding_progress"],
            thumbnail_url=row["thumbnail_url"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            owner_id=row["owner_id"],
        )

    def remote_reference(self, target: UploadTarget) -> Optional[str]:
        return getattr(self, target.column)

    @property
    def has_remote_reference(self) -> bool:
        return any(self.remote_reference(target) for target in UploadTarget)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Convert item to dictionary representation.

        Returns:
            Dictionary with item data.
        """
        return {
            "id": self.id,
            "url": self.url,
            "status": self.status.value,
            "title": self.title,
            "message": self.message,
            "local_path": self.local_path,
            "sidecar_path": self.sidecar_path,
            "filemoon_code": self.filemoon_code,
            "filesvc_code": self.filesvc_code,
            "encoding_progress": self.encoding_progress,
            "thumbnail_url": self.thumbnail_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "owner_id": self.owner_id,
        }


@dataclass
class EnqueueResult:
    """Outcome of QueueDB.enqueue.

    Attributes:
        created: True if a new row was inserted.
        item: The new item, or the existing one on URL conflict.
        message: User-facing message describing the outcome.
    """

    created: bool
    item: QueueItem
    message: str


def conflict_message(status: ItemStatus) -> str:
    """Describe why a URL cannot be enqueued again, based on its current row."""
    messages = {
        ItemStatus.QUEUED: "This URL is already queued for download.",
        ItemStatus.DOWNLOADING: "This URL is currently being downloaded.",
        ItemStatus.COMPLETED: "This URL has already been downloaded and is awaiting upload.",
        ItemStatus.UPLOADING: "This URL is currently being uploaded.",
        ItemStatus.UPLOADED: "This URL has already been uploaded.",
        ItemStatus.TRANSFERRING: "This URL is currently processing on the host (transferring).",
        ItemStatus.ENCODING: "This URL is currently processing on the host (encoding).",
        ItemStatus.ENCODED: "This URL has already been archived.",
        ItemStatus.FAILED: "This URL previously failed. Use retry to try again.",
        ItemStatus.CANCELLED: "This URL was cancelled. Clear cancelled items to submit it again.",
    }
    return messages[status]


def _generate_item_id(now: datetime) -> str:
    # Millisecond timestamp first so ids sort by creation time
    millis = int(now.timestamp() * 1000)
    return f"{millis:013d}{uuid.uuid4().hex[:8]}"


class QueueDB:
    """SQLite-based queue store.

    Provides persistent storage for queue items with support for:
    - Idempotent enqueue keyed on URL
    - FIFO retrieval of queued items
    - Conditional status writes (used to avoid clobbering a cancellation)
    - Set-once remote references per upload target
    - Bulk clearing by terminal status

    Each call opens its own connection, so one instance can be shared by the
    scheduler thread, upload workers and the reconciler.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        db_path: Path,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the queue database.

        Args:
            db_path: Path to the SQLite database file.
            clock: Callable returning the current time. Defaults to
                datetime.now; tests pass a controllable clock.
        """
        self.db_path = Path(db_path)
        self._clock = clock or datetime.now
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory configured.

        Yields:
            Configured SQLite connection.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[tuple[sqlite3.Connection, sqlite3.Cursor], None, None]:
        """Get a connection with automatic transaction management.

        Yields:
            Tuple of (connection, cursor) with auto-commit on success.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield conn, cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def init_db(self) -> None:
        """Initialize the database schema.

        Creates the queue table if it doesn't exist and adds columns that
        older databases lack. Safe to call multiple times.
        """
        with self._transaction() as (conn, cursor):
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS queue (
                    id TEXT PRIMARY KEY,
                    url TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'queued',
                    title TEXT,
                    message TEXT,
                    local_path TEXT,
                    sidecar_path TEXT,
                    filemoon_code TEXT,
                    filesvc_code TEXT,
                    encoding_progress INTEGER,
                    thumbnail_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    owner_id TEXT
                )
            """)

            cursor.execute("PRAGMA table_info(queue)")
            existing = {row["name"] for row in cursor.fetchall()}
            for column, column_type in _MIGRATED_COLUMNS.items():
                if column not in existing:
                    cursor.execute(f"ALTER TABLE queue ADD COLUMN {column} {column_type}")

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_status
                ON queue(status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_created
                ON queue(created_at)
            """)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, item_id: str) -> Optional[QueueItem]:
        """Retrieve an item by its ID.

        Args:
            item_id: The unique item identifier.

        Returns:
            QueueItem instance if found, None otherwise.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM queue WHERE id = ?", (item_id,))
            row = cursor.fetchone()
            return QueueItem.from_row(row) if row else None

    def get_by_url(self, url: str) -> Optional[QueueItem]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM queue WHERE url = ?", (url,))
            row = cursor.fetchone()
            return QueueItem.from_row(row) if row else None

    def next_queued(self) -> Optional[QueueItem]:
        """Return the oldest queued item (FIFO by creation time), if any."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM queue WHERE status = ? ORDER BY created_at ASC, id ASC LIMIT 1",
                (ItemStatus.QUEUED.value,),
            )
            row = cursor.fetchone()
            return QueueItem.from_row(row) if row else None

    def list_by_status(self, *statuses: ItemStatus) -> list[QueueItem]:
        """Retrieve all items in any of the given statuses, oldest first.

        Args:
            *statuses: One or more statuses to filter by.

        Returns:
            List of matching QueueItem instances.
        """
        if not statuses:
            return []

        placeholders = ",".join("?" * len(statuses))
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM queue WHERE status IN ({placeholders}) ORDER BY created_at, id",
                [s.value for s in statuses],
            )
            return [QueueItem.from_row(row) for row in cursor.fetchall()]

    def list_active(self) -> list[QueueItem]:
        """Items still moving through the pipeline, newest first."""
        placeholders = ",".join("?" * len(INACTIVE_STATUSES))
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM queue WHERE status NOT IN ({placeholders}) "
                "ORDER BY created_at DESC, id DESC",
                [s.value for s in INACTIVE_STATUSES],
            )
            return [QueueItem.from_row(row) for row in cursor.fetchall()]

    def list_encoded(self) -> list[QueueItem]:
        """Successfully archived items, most recently finished first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM queue WHERE status = ? ORDER BY updated_at DESC",
                (ItemStatus.ENCODED.value,),
            )
            return [QueueItem.from_row(row) for row in cursor.fetchall()]

    def list_all(self) -> list[QueueItem]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM queue ORDER BY created_at DESC, id DESC")
            return [QueueItem.from_row(row) for row in cursor.fetchall()]

    def count_by_status(self, status: ItemStatus) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM queue WHERE status = ?", (status.value,))
            return cursor.fetchone()[0]

    def get_stats(self) -> dict[str, int]:
        """Get item statistics by status.

        Returns:
            Dictionary mapping status names to counts, plus "total".
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT status, COUNT(*) as count FROM queue GROUP BY status"
            )
            stats = {row["status"]: row["count"] for row in cursor.fetchall()}

        for status in ItemStatus:
            if status.value not in stats:
                stats[status.value] = 0

        stats["total"] = sum(stats.values())
        return stats

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def enqueue(self, url: str, owner_id: Optional[str] = None) -> EnqueueResult:
        """Add a URL to the queue.

        A URL collision is a normal outcome: no second row is created and the
        message is derived from the existing row's status.

        Args:
            url: Source URL to archive.
            owner_id: Optional reference to the submitting user.

        Returns:
            EnqueueResult describing whether a row was created.
        """
        now = self.now()
        item = QueueItem(
            id=_generate_item_id(now),
            url=url,
            status=ItemStatus.QUEUED,
            message="Waiting for download slot.",
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
        )

        try:
            with self._transaction() as (conn, cursor):
                cursor.execute(
                    """
                    INSERT INTO queue (id, url, status, message, created_at, updated_at, owner_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.url,
                        item.status.value,
                        item.message,
                        item.created_at.isoformat(),
                        item.updated_at.isoformat(),
                        item.owner_id,
                    ),
                )
        except sqlite3.IntegrityError:
            existing = self.get_by_url(url)
            if existing is None:
                raise
            return EnqueueResult(
                created=False,
                item=existing,
                message=conflict_message(existing.status),
            )

        return EnqueueResult(created=True, item=item, message="URL added to the queue.")

    def update_status(
        self,
        item_id: str,
        status: ItemStatus,
        message: Optional[str] = None,
        *,
        title: Optional[str] = None,
        local_path: Optional[str] = None,
        sidecar_path: Optional[str] = None,
        encoding_progress=_UNSET,
        expected_status: Optional[Iterable[ItemStatus] | ItemStatus] = None,
    ) -> bool:
        """Update an item's status and message.

        Title and paths are only written when given. The update timestamp is
        always refreshed.

        Args:
            item_id: The item ID to update.
            status: The new status.
            message: New status message (None clears it).
            title: Optional title to store.
            local_path: Optional local video path to store.
            sidecar_path: Optional sidecar path to store.
            encoding_progress: Optional progress to store; pass None to clear.
            expected_status: If given, the write only happens while the row is
                still in one of these statuses.

        Returns:
            True if the row was updated, False if expected_status did not match.

        Raises:
            ValueError: If item_id doesn't exist and no expected_status was given.
        """
        assignments = ["status = ?", "message = ?", "updated_at = ?"]
        params: list = [status.value, message, self.now().isoformat()]

        for column, value in (
            ("title", title),
            ("local_path", local_path),
            ("sidecar_path", sidecar_path),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)

        if encoding_progress is not _UNSET:
            assignments.append("encoding_progress = ?")
            params.append(encoding_progress)

        return self._conditional_update(item_id, assignments, params, expected_status)

    def update_message(
        self,
        item_id: str,
        message: str,
        expected_status: Optional[Iterable[ItemStatus] | ItemStatus] = None,
        touch: bool = True,
    ) -> bool:
        """Update only the status message (e.g. download progress).

        With touch=False the update timestamp is left alone, so a purely
        informational message does not reset timeout detection.
        """
        if touch:
            return self._conditional_update(
                item_id,
                ["message = ?", "updated_at = ?"],
                [message, self.now().isoformat()],
                expected_status,
            )
        return self._conditional_update(item_id, ["message = ?"], [message], expected_status)

    def update_encoding_state(
        self,
        item_id: str,
        status: ItemStatus,
        progress: Optional[int],
        message: Optional[str],
        expected_status: Optional[Iterable[ItemStatus] | ItemStatus] = None,
    ) -> bool:
        return self._conditional_update(
            item_id,
            ["status = ?", "encoding_progress = ?", "message = ?", "updated_at = ?"],
            [status.value, progress, message, self.now().isoformat()],
            expected_status,
        )

    def set_remote_reference(self, item_id: str, target: UploadTarget, value: str) -> bool:
        """Store a target's remote reference.

        A reference is written at most once and never cleared, so this is a
        no-op if the column already holds a value.

        Args:
            item_id: The item ID to update.
            target: Upload target the reference belongs to.
            value: File code returned by the host.

        Returns:
            True if the reference was written, False if one already existed.

        Raises:
            ValueError: If value is empty or item_id doesn't exist.
        """
        if not value:
            raise ValueError("Remote reference must not be empty")

        column = target.column
        with self._transaction() as (conn, cursor):
            cursor.execute(
                f"UPDATE queue SET {column} = ?, updated_at = ? WHERE id = ? AND {column} IS NULL",
                (value, self.now().isoformat(), item_id),
            )
            if cursor.rowcount:
                return True

            cursor.execute("SELECT 1 FROM queue WHERE id = ?", (item_id,))
            if cursor.fetchone() is None:
                raise ValueError(f"Item not found: {item_id}")
            return False

    def set_thumbnail(self, item_id: str, thumbnail_url: str) -> None:
        with self._transaction() as (conn, cursor):
            cursor.execute(
                "UPDATE queue SET thumbnail_url = ? WHERE id = ?",
                (thumbnail_url, item_id),
            )

    def delete_by_id(self, item_id: str, expected_status: Optional[ItemStatus] = None) -> bool:
        """Delete an item from the database.

        Args:
            item_id: The item ID to delete.
            expected_status: If given, only delete while the row is in this status.

        Returns:
            True if the item was deleted, False if not found (or status differed).
        """
        with self._transaction() as (conn, cursor):
            if expected_status is None:
                cursor.execute("DELETE FROM queue WHERE id = ?", (item_id,))
            else:
                cursor.execute(
                    "DELETE FROM queue WHERE id = ? AND status = ?",
                    (item_id, expected_status.value),
                )
            return cursor.rowcount > 0

    def clear_by_status(self, group: str) -> int:
        """Delete every row in a clearable status group.

        Args:
            group: One of "completed", "failed", "cancelled" or "finished".

        Returns:
            Number of rows actually deleted.

        Raises:
            ValueError: If group is not a clearable status group.
        """
        statuses = CLEAR_GROUPS.get(group)
        if statuses is None:
            allowed = ", ".join(CLEAR_GROUPS)
            raise ValueError(f"Cannot clear status '{group}'. Allowed: {allowed}")

        placeholders = ",".join("?" * len(statuses))
        with self._transaction() as (conn, cursor):
            cursor.execute(
                f"DELETE FROM queue WHERE status IN ({placeholders})",
                [s.value for s in statuses],
            )
            return cursor.rowcount

    def recover_interrupted(self) -> int:
        """Fail downloads left running by a process that no longer exists.

        Must only be called before the scheduler starts, when no download can
        legitimately be in progress.

        Returns:
            Number of rows recovered.
        """
        with self._transaction() as (conn, cursor):
            cursor.execute(
                "UPDATE queue SET status = ?, message = ?, updated_at = ? WHERE status = ?",
                (
                    ItemStatus.FAILED.value,
                    "Interrupted: the service stopped during download. Retry to download again.",
                    self.now().isoformat(),
                    ItemStatus.DOWNLOADING.value,
                ),
            )
            return cursor.rowcount

    def _conditional_update(
        self,
        item_id: str,
        assignments: list[str],
        params: list,
        expected_status: Optional[Iterable[ItemStatus] | ItemStatus],
    ) -> bool:
        sql = f"UPDATE queue SET {', '.join(assignments)} WHERE id = ?"
        params = params + [item_id]

        if expected_status is not None:
            if isinstance(expected_status, ItemStatus):
                expected_status = (expected_status,)
            expected = [s.value for s in expected_status]
            sql += f" AND status IN ({','.join('?' * len(expected))})"
            params.extend(expected)

        with self._transaction() as (conn, cursor):
            cursor.execute(sql, params)
            if cursor.rowcount == 0:
                if expected_status is None:
                    raise ValueError(f"Item not found: {item_id}")
                return False
            return True

    def __repr__(self) -> str:
        return f"QueueDB(db_path={self.db_path!r})"
