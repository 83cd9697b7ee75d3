"""URL validation and links-file parsing.

The fetch utility supports hundreds of sites, so no per-host detection is
done here: a submission only has to be an absolute http(s) URL.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

ALLOWED_SCHEMES = ("http", "https")


def normalize_url(url: str) -> str:
    """Strip surrounding whitespace from a submitted URL.

    Args:
        url: URL as typed or pasted by the user.

    Returns:
        The trimmed URL. Query strings are kept as-is since they often carry
        the video identifier (e.g. ``watch?v=``).
    """
    return (url or "").strip()


def validate_url(url: str) -> tuple[bool, Optional[str]]:
    """Validate a URL and return validation result with error message.

    Args:
        url: URL to validate.

    Returns:
        Tuple of (is_valid, error_message). error_message is None if valid.

    Examples:
        >>> validate_url("https://example.com/watch?id=abc123")
        (True, None)
        >>> validate_url("ftp://example.com/file")
        (False, 'Unsupported URL scheme: ftp')
    """
    url = normalize_url(url)
    if not url:
        return False, "URL is empty"

    if any(ch.isspace() for ch in url):
        return False, f"URL must not contain whitespace: {url}"

    parsed = urlparse(url)
    if not parsed.scheme:
        return False, f"URL is missing a scheme (http/https): {url}"

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False, f"Unsupported URL scheme: {parsed.scheme}"

    if not parsed.netloc:
        return False, f"URL is missing a host: {url}"

    return True, None


def parse_links_file(filepath: Path) -> list[str]:
    """Parse a file containing URLs, one per line.

    Empty lines and lines starting with # are skipped. Duplicate lines are
    returned once, in first-seen order.

    Args:
        filepath: Path to the links file.

    Returns:
        List of URLs in file order.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        PermissionError: If the file can't be read.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Links file not found: {filepath}")

    results: list[str] = []
    seen: set[str] = set()

    with open(filepath, "r", encoding="utf-8") as f:
        for line in f:
            line = normalize_url(line)

            if not line or line.startswith("#"):
                continue

            if line in seen:
                continue

            seen.add(line)
            results.append(line)

    return results
