"""Exception hierarchy for the archive pipeline.

Components catch these close to where they are raised and turn them into a
stored status plus message on the queue item. Only the CLI maps them to exit
codes.
"""

from __future__ import annotations


class ArchiveError(Exception):
    """Base exception for archive pipeline errors."""

    pass


class ConfigurationError(ArchiveError):
    """Missing credential or misconfigured directory / executable."""

    pass


class ExternalProcessError(ArchiveError):
    """The fetch utility could not be spawned or exited unsuccessfully."""

    pass


class NetworkError(ArchiveError):
    """An HTTP request to a hosting service failed at the transport level."""

    pass


class RemoteStateError(ArchiveError):
    """A hosting or encoding API reported an explicit error status."""

    pass


class MalformedResponseError(RemoteStateError):
    """A hosting API returned a body that does not match its documented shape."""

    pass


class StageTimeoutError(ArchiveError):
    """A pipeline stage exceeded its wall-clock window."""

    pass
