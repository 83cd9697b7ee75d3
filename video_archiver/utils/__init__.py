"""
video_archiver.utils - Utility functions and helpers.

This module contains shared utilities for:
- Logging configuration
- Path handling and download artifacts
- URL validation and links files
"""

from video_archiver.utils.logging import (
    setup_logging,
    get_logger,
    ItemLogAdapter,
    mask_sensitive_data,
    mask_url_sensitive_parts,
)
from video_archiver.utils.paths import (
    WorkdirManager,
    sanitize_filename,
    find_video_file,
    remove_artifacts,
)
from video_archiver.utils.url_detect import (
    normalize_url,
    parse_links_file,
    validate_url,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "ItemLogAdapter",
    "mask_sensitive_data",
    "mask_url_sensitive_parts",
    # Paths
    "WorkdirManager",
    "sanitize_filename",
    "find_video_file",
    "remove_artifacts",
    # URLs
    "normalize_url",
    "parse_links_file",
    "validate_url",
]
