"""
Sync orchestration across the configured buckets.

Each bucket runs through strictly sequential stages:

    init index -> scan remote -> manifest filter -> diff local -> download -> persist index

Only the download stage is parallel. Buckets are processed one at a time, and
a failure in one bucket is reported without stopping the pass.
"""

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

from .downloader import ConcurrentDownloader
from .exceptions import ObjectNotFoundError, SyncCancelledError
from .hash_index import ContentHashIndex, is_index_internal
from .manifest import SyncManifest
from .models import BucketSyncResult, BucketSyncStatus, DownloadReport, RemoteEntry, SyncReport
from .progress import ProgressSink

if TYPE_CHECKING:
    from .config import SyncConfig

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Drives sync passes over the buckets of a :class:`SyncConfig`."""

    def __init__(
        self,
        config: "SyncConfig",
        client,
        hash_index: ContentHashIndex,
        downloader: ConcurrentDownloader,
        progress_sink: Optional[ProgressSink] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Bucket bindings and tunables
            client: ObjectStoreClient with the hash index attached
            hash_index: Index consulted for compressed objects
            downloader: Downloader used for the transfer stage
            progress_sink: Receives download progress snapshots
        """
        self.config = config
        self.client = client
        self.hash_index = hash_index
        self.downloader = downloader
        self.progress_sink = progress_sink

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError(f"Sync cancelled before {stage}")

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def get_files_to_download(
        self,
        bucket: str,
        local_path: Union[str, Path],
        manifest_key: Optional[str] = None,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RemoteEntry]:
        """
        Scan a bucket and return the files that need transferring.

        Args:
            bucket: Bucket name
            local_path: Local mirror root
            manifest_key: Optional manifest restricting the scan to its prefixes
            force: Treat every file as stale
            cancel_event: Checked between stages
        """
        logger.info(f"Scanning remote files in {bucket}")
        entries = self.client.list_objects(bucket, "", delimiter="")
        candidates = [e for e in entries if not e.is_directory and not is_index_internal(e.key)]
        logger.info(f"Found {len(candidates)} remote files to consider in {bucket}")

        self._check_cancelled(cancel_event, "manifest filtering")
        if manifest_key:
            candidates = self._apply_manifest(bucket, manifest_key, candidates)

        self._check_cancelled(cancel_event, "local diff")
        logger.info(f"Checking {len(candidates)} files for updates")
        return self.downloader.select_stale(candidates, local_path, force)

    def _apply_manifest(self, bucket: str, manifest_key: str, candidates: List[RemoteEntry]) -> List[RemoteEntry]:
        if not any(e.key == manifest_key for e in candidates):
            logger.warning(f"No manifest found ({manifest_key}) in {bucket}, downloading everything")
            return candidates

        try:
            manifest = SyncManifest.load(self.client, bucket, manifest_key)
        except ObjectNotFoundError:
            logger.warning(f"Manifest {manifest_key} disappeared from {bucket}, downloading everything")
            return candidates

        if manifest.is_empty:
            logger.warning(f"Manifest {manifest_key} lists no prefixes, not filtering {bucket}")
            return candidates

        filtered = manifest.filter(candidates)
        logger.info(f"Manifest {manifest_key} kept {len(filtered)} of {len(candidates)} files")
        return filtered

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_bucket(
        self,
        bucket: str,
        local_path: Union[str, Path],
        manifest_key: Optional[str] = None,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> BucketSyncResult:
        """
        Bring a local folder up to date with a bucket.

        Per-file download failures are reported in the result; anything else
        (listing errors, index save failures, cancellation) propagates.

        Returns:
            BucketSyncResult describing what happened
        """
        local_path = Path(local_path)
        logger.info(f"Syncing {bucket} to {local_path}")

        self._check_cancelled(cancel_event, "index initialization")
        self.hash_index.initialize_bucket(bucket)
        local_path.mkdir(parents=True, exist_ok=True)

        self._check_cancelled(cancel_event, "remote scan")
        stale = self.get_files_to_download(bucket, local_path, manifest_key, force, cancel_event)

        if not stale:
            logger.info(f"{bucket}: all files are up to date")
            result = BucketSyncResult(bucket, BucketSyncStatus.UP_TO_DATE, "All files are up to date!")
        else:
            self._check_cancelled(cancel_event, "download")
            logger.info(f"Found {len(stale)} files to download from {bucket}")
            report = self.downloader.download_files(
                stale, bucket, local_path, self.progress_sink, cancel_event
            )
            result = self._result_from_report(bucket, local_path, report)
            result.files_considered = len(stale)

        result.index_saved = self._persist_index(bucket)
        return result

    def _result_from_report(self, bucket: str, local_path: Path, report: DownloadReport) -> BucketSyncResult:
        downloaded = len(report.succeeded)
        failed = [o.key for o in report.failed]

        if report.cancelled:
            status = BucketSyncStatus.CANCELLED
            message = f"Cancelled after syncing {downloaded} files to {local_path}"
        elif not failed:
            status = BucketSyncStatus.SYNCED
            message = f"Synced {downloaded} files to {local_path}"
        elif downloaded:
            status = BucketSyncStatus.PARTIAL
            message = f"Synced {downloaded} files to {local_path}, {len(failed)} failed"
        else:
            status = BucketSyncStatus.FAILED
            message = f"All {len(failed)} downloads failed for {bucket}"

        for outcome in report.failed:
            logger.error(f"{bucket}: {outcome.error}")

        return BucketSyncResult(bucket, status, message, files_downloaded=downloaded, failed_files=failed)

    def _persist_index(self, bucket: str) -> bool:
        if not self.hash_index.is_dirty(bucket):
            return False
        self.hash_index.save_to_remote(bucket)
        return True

    def sync_all(self, force: bool = False, cancel_event: Optional[threading.Event] = None) -> SyncReport:
        """
        Sync every configured bucket in order.

        A bucket that fails is reported as FAILED and the pass moves on;
        cancellation marks the current bucket CANCELLED and ends the pass.
        """
        report = SyncReport()

        for binding in self.config.buckets:
            try:
                result = self.sync_bucket(
                    binding.bucket,
                    binding.local_path,
                    binding.manifest_key,
                    force,
                    cancel_event,
                )
            except SyncCancelledError as e:
                logger.warning(f"{binding.bucket}: {e}")
                report.results.append(BucketSyncResult(binding.bucket, BucketSyncStatus.CANCELLED, str(e)))
                break
            except Exception as e:
                logger.exception(f"Sync of {binding.bucket} failed")
                report.results.append(BucketSyncResult(
                    binding.bucket, BucketSyncStatus.FAILED, f"Error syncing {binding.bucket}: {e}"
                ))
                continue

            logger.info(f"{binding.bucket}: {result.message}")
            report.results.append(result)
            if result.status == BucketSyncStatus.CANCELLED:
                break

        logger.info(f"Sync pass finished: {report.files_downloaded} files downloaded across {len(report.results)} buckets")
        return report

    def rebuild_index(self, bucket: str) -> int:
        """Rebuild a bucket's hash index from object metadata."""
        return self.hash_index.rebuild_from_remote(bucket)
