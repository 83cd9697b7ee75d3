"""
video_archiver.downloaders - Download implementations.

Downloads are delegated to the yt-dlp executable, run as a child process
so it can be cancelled and timed out.
"""

from video_archiver.downloaders.ytdlp import (
    DownloadOutcome,
    DownloadResult,
    YtDlpDownloader,
)

__all__ = [
    "DownloadOutcome",
    "DownloadResult",
    "YtDlpDownloader",
]
