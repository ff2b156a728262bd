"""
Bounded-concurrency downloader.

Features:
- Freshness check of remote entries against the local mirror
- Parallel downloads with a fixed worker limit
- Per-file retry with exponential backoff
- Transparent decompression with hash validation of the result
- Per-file outcomes collected into a report instead of a batch-wide failure
"""

import logging
import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .compression import CompressionCodec
from .exceptions import DownloadFailedError, HashMismatchError
from .hash_index import is_index_internal
from .local_files import compute_file_hash, local_path_for_key, set_modified_time
from .models import (
    DownloadProgress,
    DownloadReport,
    FileOutcome,
    FileProgress,
    OutcomeStatus,
    RemoteEntry,
)
from .progress import ProgressSink
from .retry import RetryConfig

logger = logging.getLogger(__name__)

MAX_CONCURRENT_DOWNLOADS = 8
MAX_DOWNLOAD_RETRIES = 3
# Filesystems differ in timestamp precision
MTIME_TOLERANCE_SECONDS = 1.0


def validate_file(path: Union[str, Path], expected_hash: Optional[str]) -> bool:
    """
    Check a file against an expected MD5.

    Returns:
        True if there is no hash to check or the hashes match; False on a
        mismatch or when the file cannot be read
    """
    if not expected_hash:
        return True
    try:
        return compute_file_hash(path) == expected_hash.lower()
    except OSError as e:
        logger.debug(f"Could not hash {path}: {e}")
        return False


def needs_download(remote: RemoteEntry, local_path: Union[str, Path], force: bool = False) -> bool:
    """
    Decide whether a remote entry must be transferred.

    Checked in order: forced; missing locally; original hash known (compare
    local MD5 to it); single-part ETag present (compare local MD5 to the
    unquoted ETag); otherwise size or modification time differ.
    """
    if force:
        return True

    local_path = Path(local_path)
    if not local_path.is_file():
        return True

    if remote.original_hash:
        return not validate_file(local_path, remote.original_hash)

    etag = remote.unquoted_etag
    # Multipart ETags ("<digest>-<parts>") are not content digests
    if etag and "-" not in etag:
        return not validate_file(local_path, etag)

    try:
        stat = local_path.stat()
    except OSError:
        return True
    mtime_delta = abs(stat.st_mtime - remote.last_modified.timestamp())
    return stat.st_size != remote.size_bytes or mtime_delta > MTIME_TOLERANCE_SECONDS


class _BatchTracker:
    """
    Shared counters of one download batch.

    Counters change under ``_lock``; the sink is called outside it. Per-chunk
    snapshots are dropped while another thread is inside the sink, and each
    published snapshot carries a sequence number so the sink never sees an
    older state after a newer one. ``flush`` publishes the final state.
    """

    def __init__(self, files: List[RemoteEntry], sink: Optional[ProgressSink]):
        self._sink = sink
        self._lock = threading.Lock()
        self._sink_lock = threading.Lock()
        self._sequence = 0
        self._published = -1
        self._latest: Tuple[int, Optional[DownloadProgress]] = (0, None)
        self._active: Dict[str, FileProgress] = {}
        self._progress = DownloadProgress(
            total_files=len(files),
            total_bytes=sum(f.size_bytes for f in files),
        )

    def start(self, entry: RemoteEntry) -> FileProgress:
        file_progress = FileProgress(file_name=entry.name, total_bytes=entry.size_bytes)
        with self._lock:
            self._active[entry.key] = file_progress
            snapshot = self._snapshot()
        self._publish(*snapshot)
        return file_progress

    def update(self, file_progress: FileProgress, completed_bytes: Optional[int] = None,
               is_decompressing: Optional[bool] = None) -> None:
        with self._lock:
            if completed_bytes is not None:
                file_progress.completed_bytes = completed_bytes
            if is_decompressing is not None:
                file_progress.is_decompressing = is_decompressing
            snapshot = self._snapshot()
        self._publish(*snapshot)

    def finish(self, entry: RemoteEntry, succeeded: bool) -> None:
        with self._lock:
            self._active.pop(entry.key, None)
            if succeeded:
                self._progress.completed_files += 1
                self._progress.completed_bytes += entry.size_bytes
            else:
                self._progress.failed_files += 1
            snapshot = self._snapshot()
        self._publish(*snapshot)

    def flush(self) -> None:
        """Publish the latest state if it was dropped, waiting for the sink if it is busy."""
        with self._lock:
            snapshot = self._latest
        self._publish(*snapshot, wait=True)

    def _snapshot(self) -> Tuple[int, Optional[DownloadProgress]]:
        if self._sink is None:
            return 0, None
        self._sequence += 1
        self._latest = (self._sequence, DownloadProgress(
            total_files=self._progress.total_files,
            completed_files=self._progress.completed_files,
            failed_files=self._progress.failed_files,
            total_bytes=self._progress.total_bytes,
            completed_bytes=self._progress.completed_bytes,
            active_downloads=[
                FileProgress(f.file_name, f.total_bytes, f.completed_bytes, f.is_decompressing)
                for f in self._active.values()
            ],
            start_time=self._progress.start_time,
        ))
        return self._latest

    def _publish(self, sequence: int, snapshot: Optional[DownloadProgress], wait: bool = False) -> None:
        if snapshot is None:
            return
        if not self._sink_lock.acquire(blocking=wait):
            return
        try:
            if sequence <= self._published:
                return
            self._published = sequence
            self._sink.report(snapshot)
        except Exception as e:
            logger.debug(f"Progress sink failed: {e}")
        finally:
            self._sink_lock.release()


class ConcurrentDownloader:
    """Computes stale files and downloads them in parallel."""

    def __init__(
        self,
        store,
        codec: Optional[CompressionCodec] = None,
        max_workers: int = MAX_CONCURRENT_DOWNLOADS,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize the downloader.

        Args:
            store: ObjectStoreClient used for listing and fetching
            codec: Codec used to decompress compressed objects
            max_workers: Upper bound on simultaneous transfers
            retry_config: Per-file retry policy (3 retries, 1s doubling by default)
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.store = store
        self.codec = codec or CompressionCodec()
        self.max_workers = max_workers
        self.retry_config = retry_config or RetryConfig(max_retries=MAX_DOWNLOAD_RETRIES, base_delay=1.0)

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def get_files_to_download(
        self,
        bucket: str,
        remote_prefix: str,
        local_base: Union[str, Path],
        force: bool = False,
    ) -> List[RemoteEntry]:
        """List everything under ``remote_prefix`` and return the stale files."""
        entries = self.store.list_objects(bucket, remote_prefix, delimiter="")
        return self.select_stale(entries, local_base, force)

    def select_stale(
        self,
        entries: List[RemoteEntry],
        local_base: Union[str, Path],
        force: bool = False,
    ) -> List[RemoteEntry]:
        """Filter listed entries down to files whose local copy is missing or out of date."""
        stale = []
        for entry in entries:
            if entry.is_directory or is_index_internal(entry.key):
                continue
            try:
                local_path = local_path_for_key(local_base, entry.key)
            except ValueError as e:
                logger.warning(f"Skipping {entry.key}: {e}")
                continue
            if needs_download(entry, local_path, force):
                stale.append(entry)
        logger.debug(f"{len(stale)} of {len(entries)} entries need downloading")
        return stale

    def validate_file(self, path: Union[str, Path], expected_hash: Optional[str]) -> bool:
        return validate_file(path, expected_hash)

    # ------------------------------------------------------------------
    # Downloading
    # ------------------------------------------------------------------

    def download_files(
        self,
        files: List[RemoteEntry],
        bucket: str,
        local_base: Union[str, Path],
        progress_sink: Optional[ProgressSink] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadReport:
        """
        Download files in parallel.

        Never raises for individual file failures; every file gets an outcome
        in the returned report, in the order of ``files``.

        Args:
            files: Remote entries to fetch
            bucket: Bucket name
            local_base: Root of the local mirror
            progress_sink: Receives progress snapshots; per-chunk ones are skipped while it is busy
            cancel_event: Checked before each attempt; set it to stop early

        Returns:
            DownloadReport with one FileOutcome per file
        """
        if not files:
            return DownloadReport()

        cancel_event = cancel_event or threading.Event()
        tracker = _BatchTracker(files, progress_sink)
        local_base = Path(local_base)

        logger.info(f"Downloading {len(files)} files from {bucket} with {self.max_workers} workers")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="download") as executor:
            futures = [
                executor.submit(self._download_with_retry, entry, bucket, local_base, tracker, cancel_event)
                for entry in files
            ]
            report = DownloadReport(outcomes=[f.result() for f in futures])
        tracker.flush()

        logger.info(
            f"Download batch for {bucket} finished: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {len(report.cancelled)} cancelled"
        )
        return report

    def _download_with_retry(
        self,
        entry: RemoteEntry,
        bucket: str,
        local_base: Path,
        tracker: _BatchTracker,
        cancel_event: threading.Event,
    ) -> FileOutcome:
        try:
            local_path = local_path_for_key(local_base, entry.key)
        except ValueError as e:
            logger.error(f"Cannot download {entry.key}: {e}")
            tracker.finish(entry, succeeded=False)
            return FileOutcome(
                entry.key,
                entry.name,
                OutcomeStatus.FAILED,
                attempts=0,
                error=DownloadFailedError(entry.name, 0, e),
            )

        file_progress = tracker.start(entry)
        last_error: Optional[BaseException] = None

        for attempt in range(self.retry_config.max_attempts):
            if cancel_event.is_set():
                tracker.finish(entry, succeeded=False)
                return FileOutcome(entry.key, entry.name, OutcomeStatus.CANCELLED, attempts=attempt)

            try:
                logger.debug(f"Downloading {bucket}/{entry.key} (attempt {attempt + 1})")
                self._download_file(entry, bucket, local_path, tracker, file_progress)
            except Exception as e:
                last_error = e
                logger.warning(f"Attempt {attempt + 1} to download {entry.key} failed: {e}")
                tracker.update(file_progress, completed_bytes=0, is_decompressing=False)
                if attempt < self.retry_config.max_retries:
                    # Waiting on the event lets cancellation cut the backoff short
                    cancel_event.wait(self.retry_config.calculate_delay(attempt))
                continue

            tracker.finish(entry, succeeded=True)
            return FileOutcome(
                entry.key,
                entry.name,
                OutcomeStatus.SUCCEEDED,
                attempts=attempt + 1,
                bytes_transferred=entry.size_bytes,
            )

        attempts = self.retry_config.max_attempts
        logger.error(f"Giving up on {entry.key} after {attempts} attempts: {last_error}")
        tracker.finish(entry, succeeded=False)
        return FileOutcome(
            entry.key,
            entry.name,
            OutcomeStatus.FAILED,
            attempts=attempts,
            error=DownloadFailedError(entry.name, attempts, last_error),
        )

    def _download_file(
        self,
        entry: RemoteEntry,
        bucket: str,
        local_path: Path,
        tracker: _BatchTracker,
        file_progress: FileProgress,
    ) -> None:
        local_path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = self.store.download_object(
            bucket,
            entry.key,
            progress_callback=lambda n: tracker.update(file_progress, completed_bytes=n),
        )
        try:
            if entry.is_compressed:
                tracker.update(file_progress, is_decompressing=True)
                self._decompress_into_place(temp_path, local_path, entry.original_hash)
            else:
                if local_path.exists():
                    local_path.unlink()
                shutil.move(str(temp_path), str(local_path))
            set_modified_time(local_path, entry.last_modified)
        finally:
            Path(temp_path).unlink(missing_ok=True)

    def _decompress_into_place(self, compressed_path: Path, local_path: Path, expected_hash: str) -> None:
        # Decompress next to the target so the final rename stays on one filesystem
        fd, staging_name = tempfile.mkstemp(prefix=f".{local_path.name}.", suffix=".part", dir=local_path.parent)
        os.close(fd)
        staging_path = Path(staging_name)
        try:
            self.codec.decompress_file(compressed_path, staging_path)
            actual_hash = compute_file_hash(staging_path)
            if actual_hash != expected_hash.lower():
                raise HashMismatchError(str(local_path), expected_hash, actual_hash)
            os.replace(staging_path, local_path)
        finally:
            staging_path.unlink(missing_ok=True)
