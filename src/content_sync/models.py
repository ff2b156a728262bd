"""
Data model shared by the sync engine components.

Provides:
- Remote and local file entries
- Download progress snapshots pushed to progress sinks
- Per-file outcomes and batch/bucket/pass reports
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class OutcomeStatus(str, Enum):
    """Result of a single file transfer."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BucketSyncStatus(str, Enum):
    """Result of syncing one bucket."""
    UP_TO_DATE = "up_to_date"
    SYNCED = "synced"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeType(str, Enum):
    """Kind of pending change produced when planning uploads."""
    COMPRESS_AND_UPLOAD = "compress_and_upload"
    RAW_UPLOAD = "raw_upload"
    DELETE_REMOTE = "delete_remote"


# ============================================================================
# File entries
# ============================================================================

@dataclass
class RemoteEntry:
    """An object or synthesized directory in a remote bucket."""
    name: str
    key: str
    is_directory: bool = False
    size_bytes: int = 0
    last_modified: datetime = EPOCH
    etag: str = ""
    original_hash: Optional[str] = None

    @property
    def is_compressed(self) -> bool:
        """Objects uploaded through the compression path carry an original hash."""
        return bool(self.original_hash)

    @property
    def unquoted_etag(self) -> str:
        return self.etag.strip('"')

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "key": self.key,
            "is_directory": self.is_directory,
            "size_bytes": self.size_bytes,
            "last_modified": self.last_modified.isoformat(),
            "etag": self.etag,
            "original_hash": self.original_hash,
            "is_compressed": self.is_compressed,
        }


@dataclass
class LocalEntry:
    """A file or directory found on the local filesystem."""
    name: str
    full_path: Path
    size_bytes: int = 0
    last_modified: datetime = EPOCH
    is_directory: bool = False
    file_hash: Optional[str] = None


# ============================================================================
# Progress
# ============================================================================

@dataclass
class FileProgress:
    """Progress of one in-flight file transfer."""
    file_name: str
    total_bytes: int = 0
    completed_bytes: int = 0
    is_decompressing: bool = False


@dataclass
class DownloadProgress:
    """Snapshot of a download batch pushed to the progress sink."""
    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    total_bytes: int = 0
    completed_bytes: int = 0
    active_downloads: List[FileProgress] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_decompressing(self) -> bool:
        return any(f.is_decompressing for f in self.active_downloads)

    @property
    def progress_percent(self) -> float:
        """Get progress percentage."""
        if self.total_files == 0:
            return 0.0
        return (self.completed_files / self.total_files) * 100

    @property
    def bytes_percent(self) -> float:
        """Get bytes transferred percentage."""
        if self.total_bytes == 0:
            return 0.0
        return (self.completed_bytes / self.total_bytes) * 100

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    @property
    def transfer_speed_mbps(self) -> float:
        """Get transfer speed in MB/s."""
        elapsed = self.elapsed_seconds
        if elapsed > 0:
            return (self.completed_bytes / (1024 * 1024)) / elapsed
        return 0.0


# ============================================================================
# Outcomes and reports
# ============================================================================

@dataclass
class FileOutcome:
    """Outcome of downloading one remote file."""
    key: str
    file_name: str
    status: OutcomeStatus
    attempts: int = 0
    bytes_transferred: int = 0
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "file_name": self.file_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "bytes_transferred": self.bytes_transferred,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class DownloadReport:
    """Per-file outcomes of a download batch."""
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.SUCCEEDED]

    @property
    def failed(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def cancelled(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.CANCELLED]

    @property
    def all_succeeded(self) -> bool:
        return len(self.succeeded) == len(self.outcomes)

    @property
    def total_bytes(self) -> int:
        return sum(o.bytes_transferred for o in self.succeeded)


@dataclass
class BucketSyncResult:
    """Result of syncing a single bucket, reported as status text."""
    bucket: str
    status: BucketSyncStatus
    message: str
    files_considered: int = 0
    files_downloaded: int = 0
    failed_files: List[str] = field(default_factory=list)
    index_saved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "bucket": self.bucket,
            "status": self.status.value,
            "message": self.message,
            "files_considered": self.files_considered,
            "files_downloaded": self.files_downloaded,
            "failed_files": list(self.failed_files),
            "index_saved": self.index_saved,
        }


@dataclass
class SyncReport:
    """Results of a full pass over the configured buckets."""
    results: List[BucketSyncResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(
            r.status in (BucketSyncStatus.UP_TO_DATE, BucketSyncStatus.SYNCED)
            for r in self.results
        )

    @property
    def files_downloaded(self) -> int:
        return sum(r.files_downloaded for r in self.results)

    def for_bucket(self, bucket: str) -> Optional[BucketSyncResult]:
        for result in self.results:
            if result.bucket == bucket:
                return result
        return None


@dataclass
class PendingChange:
    """A local change waiting to be published to a bucket."""
    change_type: ChangeType
    bucket: str
    remote_key: str
    local_path: Optional[Path] = None
    size_bytes: int = 0
    metadata: Optional[Dict[str, str]] = None

    @property
    def description(self) -> str:
        return f"{self.change_type.value}: {self.bucket}/{self.remote_key}"
