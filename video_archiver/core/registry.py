"""Registry of running download processes, used for cancellation.

Inserts happen only from the download orchestrator; removals come from its
own completion path and from cancel. Both are idempotent.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from typing import Dict, List, Optional, Set

from ..utils.logging import get_logger


def terminate_process(
    process: subprocess.Popen,
    logger: Optional[logging.Logger] = None,
    grace_period: float = 5.0,
) -> None:
    """Terminate a subprocess gracefully, then forcefully if needed.

    Args:
        process: The subprocess to terminate.
        logger: Logger for diagnostics.
        grace_period: Seconds to wait after SIGTERM before sending SIGKILL.
    """
    logger = logger or get_logger("registry")
    if process.poll() is not None:
        return

    try:
        process.terminate()
        try:
            process.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            logger.warning("Process did not terminate gracefully, forcing kill...")
            process.kill()
            process.wait(timeout=grace_period)
    except (OSError, subprocess.SubprocessError) as e:
        logger.error(f"Error terminating process: {e}")


class ProcessRegistry:
    """Maps item IDs to the handle of their running fetch process.

    Also remembers which items were cancelled through it, so the download
    orchestrator can tell a user kill apart from a crash once the process
    exits.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._processes: Dict[str, subprocess.Popen] = {}
        self._cancelled: Set[str] = set()
        self._lock = threading.Lock()
        self._logger = logger or get_logger("registry")

    def register(self, item_id: str, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes[item_id] = process
            self._cancelled.discard(item_id)

    def unregister(self, item_id: str) -> None:
        with self._lock:
            self._processes.pop(item_id, None)

    def get(self, item_id: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._processes.get(item_id)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._processes)

    def terminate(self, item_id: str) -> bool:
        """Best-effort kill of an item's running process.

        Args:
            item_id: Item whose download should stop.

        Only a registered process is marked cancelled. Items whose download
        runs in another service instance leave nothing behind here; that
        instance sees the stored status instead.

        Returns:
            True if a process handle was registered for the item.
        """
        with self._lock:
            process = self._processes.get(item_id)
            if process is not None:
                self._cancelled.add(item_id)

        if process is None:
            self._logger.debug(f"No running process registered for item {item_id}")
            return False

        self._logger.info(f"Terminating download process for item {item_id} (pid {process.pid})")
        terminate_process(process, self._logger)
        return True

    def consume_cancelled(self, item_id: str) -> bool:
        """Return True (once) if terminate() was called for the item."""
        with self._lock:
            if item_id in self._cancelled:
                self._cancelled.discard(item_id)
                return True
            return False

    def terminate_all(self) -> int:
        """Kill every registered process on shutdown.

        Unlike terminate(), this does not count as a user cancellation, so
        the interrupted items end up failed and can be retried.
        """
        with self._lock:
            processes = list(self._processes.values())

        for process in processes:
            terminate_process(process, self._logger)
        return len(processes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)
