"""
Retry logic for transient object store failures.

This module provides:
- Classification of exceptions into transient and non-transient failures
- Exponential backoff configuration used by per-file download retries
- A time-ordered upload retry queue drained by a single background worker,
  with each queued upload resolved through a future the caller waits on
"""

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from .exceptions import PermanentUploadError, RetryQueueClosedError, TransientStoreError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 500, 502, 503, 504})
TRANSIENT_ERROR_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "SlowDown",
    "ServiceUnavailable",
    "ThrottlingException",
})
NOT_FOUND_ERROR_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def client_error_status(exc: ClientError) -> Optional[int]:
    """Return the HTTP status code carried by a botocore ClientError."""
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_not_found_error(exc: BaseException) -> bool:
    """True for 404-style errors from the object store."""
    if not isinstance(exc, ClientError):
        return False
    return client_error_code(exc) in NOT_FOUND_ERROR_CODES or client_error_status(exc) == 404


def is_transient_error(exc: BaseException) -> bool:
    """
    Determine whether an exception is worth retrying later.

    Timeouts, connection resets and 5xx responses are transient; anything
    else (access denied, bad request, missing local file) is not.
    """
    if isinstance(exc, (TransientStoreError, BotoConnectionError, HTTPClientError, TimeoutError)):
        return True
    if isinstance(exc, ConnectionError):
        return True
    if isinstance(exc, ClientError):
        return (
            client_error_status(exc) in TRANSIENT_STATUS_CODES
            or client_error_code(exc) in TRANSIENT_ERROR_CODES
        )
    return False


class RetryConfig:
    """Configuration for per-operation retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
    ):
        """
        Initialize retry configuration.

        Args:
            max_retries: Maximum number of retry attempts (not including initial attempt).
            base_delay: Delay in seconds before the first retry.
            max_delay: Maximum delay cap in seconds.
            exponential_base: Base for exponential backoff calculation.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay after a failed attempt.

        Args:
            attempt: Zero-indexed attempt number that just failed.

        Returns:
            Delay in seconds.
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


# ============================================================================
# Upload retry queue
# ============================================================================

UploadPayload = Union[Path, bytes]


@dataclass
class UploadRetryConfig:
    """Timing of the background upload retry queue."""
    initial_delay: float = 30.0
    max_attempts: int = 5

    def delay_after(self, attempts: int) -> float:
        """
        Delay before the next attempt once ``attempts`` attempts have failed.

        The first retry waits ``initial_delay``; each later one doubles it.
        """
        return self.initial_delay * (2 ** max(attempts - 1, 0))


@dataclass
class RetryItem:
    """A failed upload waiting for its next attempt."""
    bucket: str
    key: str
    payload: UploadPayload
    metadata: Optional[Dict[str, str]] = None
    attempts: int = 1
    next_eligible: float = 0.0
    last_error: Optional[BaseException] = None
    future: Future = field(default_factory=Future)


class UploadRetryQueue:
    """
    Time-ordered queue of failed uploads with a single consumer thread.

    Callers enqueue an upload that failed transiently and block on the
    returned future. The worker sleeps until the earliest item becomes
    eligible, then drains every eligible item and retries each exactly once.
    Items that fail again are re-queued with a doubled delay; after
    ``max_attempts`` total attempts the future fails with
    :class:`PermanentUploadError`.
    """

    def __init__(
        self,
        upload: Callable[[RetryItem], None],
        config: Optional[UploadRetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            upload: Performs a single upload attempt for an item, raising on failure
            config: Retry timing
            clock: Monotonic time source
        """
        self._upload = upload
        self.config = config or UploadRetryConfig()
        self._clock = clock
        self._heap: List[Tuple[float, int, RetryItem]] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._in_flight = 0

    def __len__(self) -> int:
        return self.depth()

    def depth(self) -> int:
        """Number of uploads still waiting on the queue, including one being retried."""
        with self._condition:
            return len(self._heap) + self._in_flight

    def enqueue(
        self,
        bucket: str,
        key: str,
        payload: UploadPayload,
        metadata: Optional[Dict[str, str]] = None,
        error: Optional[BaseException] = None,
    ) -> Future:
        """
        Queue an upload whose first attempt failed transiently.

        Returns:
            Future resolved with None on success or failed with the final error
        """
        item = RetryItem(
            bucket=bucket,
            key=key,
            payload=payload,
            metadata=metadata,
            attempts=1,
            last_error=error,
        )
        item.next_eligible = self._clock() + self.config.delay_after(item.attempts)

        with self._condition:
            if self._closed:
                raise RetryQueueClosedError("Upload retry queue is closed")
            self._push(item)
            self._ensure_worker()
            self._condition.notify()

        logger.warning(
            f"Upload of {bucket}/{key} failed ({error}); "
            f"retrying in {self.config.delay_after(item.attempts):.0f}s"
        )
        return item.future

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker and fail any uploads still waiting."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
            pending = [entry[2] for entry in self._heap]
            self._heap.clear()
            self._condition.notify_all()
            worker = self._worker

        for item in pending:
            item.future.set_exception(
                RetryQueueClosedError(f"Retry queue closed before {item.bucket}/{item.key} was uploaded")
            )

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _push(self, item: RetryItem) -> None:
        heapq.heappush(self._heap, (item.next_eligible, next(self._sequence), item))

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._run, name="upload-retry-worker", daemon=True
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._closed:
                    if self._heap:
                        wait = self._heap[0][0] - self._clock()
                        if wait <= 0:
                            break
                        self._condition.wait(wait)
                    else:
                        self._condition.wait()
                if self._closed:
                    return
                due = self._take_due()

            self._sweep(due)

    def _take_due(self) -> List[RetryItem]:
        now = self._clock()
        due = []
        # Heap order means the first not-yet-eligible item ends the drain
        while self._heap and self._heap[0][0] <= now:
            due.append(heapq.heappop(self._heap)[2])
        self._in_flight = len(due)
        return due

    def _sweep(self, items: List[RetryItem]) -> None:
        logger.debug(f"Retrying {len(items)} queued upload(s)")
        for item in items:
            try:
                self._upload(item)
            except Exception as e:
                item.attempts += 1
                item.last_error = e
                if item.attempts >= self.config.max_attempts:
                    logger.error(
                        f"Upload of {item.bucket}/{item.key} failed permanently "
                        f"after {item.attempts} attempts: {e}"
                    )
                    self._finish(item, PermanentUploadError(item.bucket, item.key, item.attempts, e))
                else:
                    delay = self.config.delay_after(item.attempts)
                    item.next_eligible = self._clock() + delay
                    logger.warning(
                        f"Retry {item.attempts - 1} of {item.bucket}/{item.key} failed: {e}. "
                        f"Next attempt in {delay:.0f}s"
                    )
                    with self._condition:
                        self._in_flight -= 1
                        if self._closed:
                            item.future.set_exception(
                                RetryQueueClosedError(f"Retry queue closed before {item.bucket}/{item.key} was uploaded")
                            )
                        else:
                            self._push(item)
            else:
                logger.info(f"Queued upload of {item.bucket}/{item.key} succeeded on attempt {item.attempts + 1}")
                self._finish(item, None)

    def _finish(self, item: RetryItem, error: Optional[BaseException]) -> None:
        with self._condition:
            self._in_flight -= 1
        if error is None:
            item.future.set_result(None)
        else:
            item.future.set_exception(error)
