"""
Progress reporting for download batches.
"""

import logging
import threading
import time
from typing import Optional, Protocol

from .local_files import format_file_size
from .models import DownloadProgress

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Receives a snapshot every time a download batch changes state."""

    def report(self, progress: DownloadProgress) -> None:
        ...


class NullProgressSink:
    """Discards progress."""

    def report(self, progress: DownloadProgress) -> None:
        pass


class LoggingProgressSink:
    """
    Log batch progress at INFO level.

    Snapshots arrive on every state change, so output is throttled to one
    line per ``interval`` seconds plus a final line when the batch finishes.
    """

    def __init__(self, interval: float = 5.0, log: Optional[logging.Logger] = None):
        self.interval = interval
        self.log = log or logger
        self._last_emit: Optional[float] = None
        self._lock = threading.Lock()

    def report(self, progress: DownloadProgress) -> None:
        finished = progress.completed_files + progress.failed_files >= progress.total_files
        now = time.monotonic()
        with self._lock:
            if not finished and self._last_emit is not None and now - self._last_emit < self.interval:
                return
            self._last_emit = now

        status = "Decompressing" if progress.is_decompressing else "Downloading"
        if finished:
            status = "Finished"
        self.log.info(
            f"{status}: {progress.completed_files}/{progress.total_files} files "
            f"({progress.progress_percent:.1f}%), "
            f"{format_file_size(progress.completed_bytes)} of {format_file_size(progress.total_bytes)}, "
            f"{progress.transfer_speed_mbps:.2f} MB/s, "
            f"{len(progress.active_downloads)} active, {progress.failed_files} failed"
        )
