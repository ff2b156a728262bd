"""
Publishing local content to the object store.

The upload side of the engine: plans which local files differ from the
bucket, compresses eligible files before upload and tags them with their
original hash, deletes remote folders, and saves the hash index once a batch
of changes has been applied.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Union

from .compression import CompressionCodec
from .hash_index import ContentHashIndex, is_index_internal
from .local_files import compute_file_hash, key_for_local_path, list_local_files
from .models import ChangeType, FileOutcome, OutcomeStatus, PendingChange
from .object_store import ORIGINAL_HASH_METADATA_KEY

logger = logging.getLogger(__name__)


def _default_workers() -> int:
    return max(1, (os.cpu_count() or 2) - 1)


class ContentPublisher:
    """Plans and applies uploads and deletes against a bucket."""

    def __init__(
        self,
        client,
        hash_index: ContentHashIndex,
        codec: Optional[CompressionCodec] = None,
        max_workers: Optional[int] = None,
    ):
        self.client = client
        self.hash_index = hash_index
        self.codec = codec or CompressionCodec()
        self.max_workers = max_workers or _default_workers()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_uploads(
        self,
        bucket: str,
        local_base: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[PendingChange]:
        """
        Compare a local folder with a bucket and plan the uploads needed.

        A file is planned when it is missing remotely, when the remote object
        has no original hash, or when the hashes differ.
        """
        local_base = Path(local_base)
        self.hash_index.initialize_bucket(bucket)

        remote_by_key = {
            e.key: e
            for e in self.client.list_objects(bucket, "", delimiter="")
            if not e.is_directory and not is_index_internal(e.key)
        }

        changes = []
        for local in list_local_files(local_base, recursive=True):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Upload planning cancelled")
                break
            if local.is_directory:
                continue

            key = key_for_local_path(local_base, local.full_path)
            remote = remote_by_key.get(key)
            if remote is not None and remote.original_hash:
                if compute_file_hash(local.full_path) == remote.original_hash:
                    continue

            change_type = (
                ChangeType.COMPRESS_AND_UPLOAD
                if self.codec.should_compress(local.name, local.size_bytes)
                else ChangeType.RAW_UPLOAD
            )
            changes.append(PendingChange(
                change_type=change_type,
                bucket=bucket,
                remote_key=key,
                local_path=local.full_path,
                size_bytes=local.size_bytes,
            ))

        logger.info(f"Planned {len(changes)} uploads for {bucket} from {local_base}")
        return changes

    @staticmethod
    def plan_delete(bucket: str, remote_key: str) -> PendingChange:
        return PendingChange(ChangeType.DELETE_REMOTE, bucket, remote_key)

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def publish_file(self, bucket: str, key: str, local_path: Union[str, Path]) -> str:
        """
        Compress a file and upload it tagged with its original hash.

        Returns:
            The original (pre-compression) hash
        """
        original_hash = compute_file_hash(local_path)
        compressed = self.codec.compress_file(local_path)
        try:
            self.client.upload_file(
                bucket,
                key,
                compressed,
                metadata={ORIGINAL_HASH_METADATA_KEY: original_hash},
            )
        finally:
            compressed.unlink(missing_ok=True)
        return original_hash

    def delete_remote(self, bucket: str, key: str) -> int:
        """
        Delete a remote file or folder.

        Keys ending in ``/`` are folders. Any other key is deleted itself and,
        if it also has children, as a folder too.

        Returns:
            Number of objects deleted
        """
        if key.endswith("/"):
            return self.client.delete_objects_recursive(bucket, key)

        deleted = 0
        children = [
            e for e in self.client.list_objects(bucket, f"{key}/")
            if not is_index_internal(e.key)
        ]
        if children:
            deleted += self.client.delete_objects_recursive(bucket, f"{key}/")

        self.client.delete_object(bucket, key)
        return deleted + 1

    def apply_change(self, change: PendingChange) -> None:
        if change.change_type == ChangeType.COMPRESS_AND_UPLOAD:
            self.publish_file(change.bucket, change.remote_key, change.local_path)
        elif change.change_type == ChangeType.RAW_UPLOAD:
            self.client.upload_file(change.bucket, change.remote_key, change.local_path, change.metadata)
        elif change.change_type == ChangeType.DELETE_REMOTE:
            self.delete_remote(change.bucket, change.remote_key)
        else:
            raise ValueError(f"Unknown change type: {change.change_type}")

    def apply_changes(
        self,
        changes: List[PendingChange],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FileOutcome]:
        """
        Apply planned changes in parallel, then save every dirty hash index.

        A failing change is logged and reported; it does not stop the others.

        Returns:
            One outcome per change, in input order
        """
        def run(change: PendingChange) -> FileOutcome:
            name = Path(change.remote_key).name
            if cancel_event is not None and cancel_event.is_set():
                return FileOutcome(change.remote_key, name, OutcomeStatus.CANCELLED)
            try:
                self.apply_change(change)
            except Exception as e:
                logger.error(f"Error processing {change.description}: {e}")
                return FileOutcome(change.remote_key, name, OutcomeStatus.FAILED, attempts=1, error=e)
            return FileOutcome(
                change.remote_key, name, OutcomeStatus.SUCCEEDED,
                attempts=1, bytes_transferred=change.size_bytes,
            )

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="publish") as executor:
            outcomes = list(executor.map(run, changes))

        for bucket in sorted({c.bucket for c in changes}):
            if self.hash_index.is_dirty(bucket):
                try:
                    self.hash_index.save_to_remote(bucket)
                except Exception as e:
                    logger.error(f"Error updating hash store for {bucket}: {e}")

        succeeded = sum(1 for o in outcomes if o.succeeded)
        logger.info(f"Applied {succeeded} of {len(changes)} changes")
        return outcomes
