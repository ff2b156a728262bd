"""
Exception hierarchy for content synchronization errors.

Low-level object store calls raise these classified errors; retry loops
inspect them to decide between retrying and surfacing the failure, and the
orchestrator turns whatever escapes a bucket into a status report.
"""

from typing import Optional


class ContentSyncError(Exception):
    """Base exception for all content sync errors."""

    pass


class ObjectNotFoundError(ContentSyncError):
    """
    Raised when a remote object does not exist.

    This is an expected, recoverable condition for optional documents such
    as the hash store side-car or a bucket manifest.
    """

    def __init__(self, bucket: str, key: str):
        self.bucket = bucket
        self.key = key
        super().__init__(f"Object not found: {bucket}/{key}")


class TransientStoreError(ContentSyncError):
    """
    Raised for a failure that may succeed if retried later.

    Reasons may include:
    - Network timeout
    - Connection reset by the remote end
    - 5xx responses from the object store
    """

    pass


class PermanentUploadError(ContentSyncError):
    """Raised when a queued upload exhausts its retry attempts."""

    def __init__(self, bucket: str, key: str, attempts: int, last_error: Optional[BaseException]):
        self.bucket = bucket
        self.key = key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Upload of {bucket}/{key} failed after {attempts} attempts: {last_error}"
        )


class RetryQueueClosedError(ContentSyncError):
    """Raised for uploads still queued when the retry worker shuts down."""

    pass


class HashMismatchError(ContentSyncError):
    """
    Raised when decompressed content does not match its recorded hash.

    Validation failures are never downgraded to warnings.
    """

    def __init__(self, path: str, expected: str, actual: Optional[str] = None):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Hash validation failed for {path}: expected {expected}, got {actual}"
        )


class DownloadFailedError(ContentSyncError):
    """Raised when a file could not be downloaded after all attempts."""

    def __init__(self, file_name: str, attempts: int, last_error: Optional[BaseException]):
        self.file_name = file_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to download {file_name} after {attempts} attempts: {last_error}"
        )


class SyncCancelledError(ContentSyncError):
    """Raised when the caller's cancellation signal is observed."""

    pass


class ConfigurationError(ContentSyncError):
    """
    Raised when the sync engine is misconfigured.

    Reasons may include:
    - Missing endpoint or bucket bindings
    - Invalid numeric settings
    - Unreadable configuration file
    """

    pass
