"""
Content synchronization against an S3-compatible object store.

Provides:
- Object store client with a background upload retry queue
- Per-bucket content-hash index persisted alongside the content
- Zstandard compression of eligible files
- Bounded-concurrency downloader with hash validation
- Sync orchestration with manifest filtering, and the publishing side
- Configuration management and CLI utilities
"""

from .exceptions import (
    ContentSyncError,
    ObjectNotFoundError,
    TransientStoreError,
    PermanentUploadError,
    RetryQueueClosedError,
    HashMismatchError,
    DownloadFailedError,
    SyncCancelledError,
    ConfigurationError,
)
from .models import (
    RemoteEntry,
    LocalEntry,
    FileProgress,
    DownloadProgress,
    FileOutcome,
    DownloadReport,
    BucketSyncResult,
    SyncReport,
    PendingChange,
    OutcomeStatus,
    BucketSyncStatus,
    ChangeType,
)
from .retry import (
    RetryConfig,
    UploadRetryConfig,
    UploadRetryQueue,
    RetryItem,
    is_transient_error,
)
from .compression import CompressionCodec, COMPRESSIBLE_EXTENSIONS
from .object_store import ObjectStoreClient, HashLookup, HashRecorder
from .hash_index import ContentHashIndex, HASH_STORE_DIR, HASH_STORE_KEY
from .downloader import ConcurrentDownloader, needs_download, validate_file
from .manifest import SyncManifest, ActiveContentRegistry
from .progress import ProgressSink, LoggingProgressSink
from .sync_manager import SyncOrchestrator
from .publisher import ContentPublisher
from .config import (
    StoreConfig,
    BucketBinding,
    SyncConfig,
    ConfigManager,
    SyncEngineBuilder,
)

__all__ = [
    # Errors
    "ContentSyncError",
    "ObjectNotFoundError",
    "TransientStoreError",
    "PermanentUploadError",
    "RetryQueueClosedError",
    "HashMismatchError",
    "DownloadFailedError",
    "SyncCancelledError",
    "ConfigurationError",
    # Data classes
    "RemoteEntry",
    "LocalEntry",
    "FileProgress",
    "DownloadProgress",
    "FileOutcome",
    "DownloadReport",
    "BucketSyncResult",
    "SyncReport",
    "PendingChange",
    # Enums
    "OutcomeStatus",
    "BucketSyncStatus",
    "ChangeType",
    # Retry
    "RetryConfig",
    "UploadRetryConfig",
    "UploadRetryQueue",
    "RetryItem",
    "is_transient_error",
    # Engine components
    "CompressionCodec",
    "COMPRESSIBLE_EXTENSIONS",
    "ObjectStoreClient",
    "HashLookup",
    "HashRecorder",
    "ContentHashIndex",
    "HASH_STORE_DIR",
    "HASH_STORE_KEY",
    "ConcurrentDownloader",
    "needs_download",
    "validate_file",
    "SyncManifest",
    "ActiveContentRegistry",
    "ProgressSink",
    "LoggingProgressSink",
    "SyncOrchestrator",
    "ContentPublisher",
    # Configuration
    "StoreConfig",
    "BucketBinding",
    "SyncConfig",
    "ConfigManager",
    "SyncEngineBuilder",
]
