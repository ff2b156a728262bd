"""
Tests for transient error classification and the upload retry queue.
"""

import threading
import time

import pytest
from botocore.exceptions import EndpointConnectionError

from src.content_sync.exceptions import (
    PermanentUploadError,
    RetryQueueClosedError,
    TransientStoreError,
)
from src.content_sync.object_store import ObjectStoreClient
from src.content_sync.retry import (
    RetryConfig,
    UploadRetryConfig,
    UploadRetryQueue,
    is_not_found_error,
    is_transient_error,
)
from tests.fixtures.fake_s3 import make_client_error, service_unavailable


# ============================================================================
# Classification
# ============================================================================

class TestErrorClassification:
    """Transient versus permanent failures."""

    @pytest.mark.parametrize("error", [
        make_client_error("ServiceUnavailable", 503),
        make_client_error("InternalError", 500),
        make_client_error("SlowDown", 503),
        make_client_error("RequestTimeout", 400),
        make_client_error("Whatever", 502),
        EndpointConnectionError(endpoint_url="https://r2.example"),
        ConnectionResetError("reset by peer"),
        TimeoutError("timed out"),
        TransientStoreError("flaky"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [
        make_client_error("AccessDenied", 403),
        make_client_error("NoSuchBucket", 404),
        make_client_error("InvalidArgument", 400),
        FileNotFoundError("gone"),
        ValueError("bad"),
    ])
    def test_not_transient(self, error):
        assert not is_transient_error(error)

    def test_not_found(self):
        assert is_not_found_error(make_client_error("NoSuchKey", 404, "GetObject"))
        assert is_not_found_error(make_client_error("404", 404, "HeadObject"))
        assert not is_not_found_error(make_client_error("AccessDenied", 403))
        assert not is_not_found_error(KeyError("x"))


class TestRetryConfig:
    """Backoff arithmetic used by per-file download retries."""

    def test_exponential_delays(self):
        config = RetryConfig(max_retries=3, base_delay=1.0)
        assert [config.calculate_delay(a) for a in range(3)] == [1.0, 2.0, 4.0]
        assert config.max_attempts == 4

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=10.0, max_delay=15.0)
        assert config.calculate_delay(5) == 15.0

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)

    def test_upload_retry_schedule(self):
        config = UploadRetryConfig()
        assert [config.delay_after(n) for n in range(1, 5)] == [30.0, 60.0, 120.0, 240.0]


# ============================================================================
# Upload retry queue
# ============================================================================

class FlakyUpload:
    """Upload callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, error_factory=service_unavailable):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0
        self.threads = set()

    def __call__(self, item):
        self.calls += 1
        self.threads.add(threading.current_thread().name)
        if self.calls <= self.failures:
            raise self.error_factory()


class TestUploadRetryQueue:
    """Time-ordered queue drained by a single worker."""

    def test_resolves_after_retry_succeeds(self):
        upload = FlakyUpload(failures=0)
        queue = UploadRetryQueue(upload, UploadRetryConfig(initial_delay=0.01))
        try:
            future = queue.enqueue("b", "k", b"data", error=service_unavailable())
            assert future.result(timeout=5) is None
        finally:
            queue.close()
        assert upload.calls == 1
        assert upload.threads == {"upload-retry-worker"}

    def test_waits_until_eligible(self):
        upload = FlakyUpload(failures=0)
        queue = UploadRetryQueue(upload, UploadRetryConfig(initial_delay=0.2))
        try:
            started = time.monotonic()
            queue.enqueue("b", "k", b"data").result(timeout=5)
            assert time.monotonic() - started >= 0.19
        finally:
            queue.close()

    def test_permanent_failure_after_five_attempts(self):
        upload = FlakyUpload(failures=100)
        queue = UploadRetryQueue(upload, UploadRetryConfig(initial_delay=0.001))
        try:
            future = queue.enqueue("b", "k", b"data", error=service_unavailable())
            with pytest.raises(PermanentUploadError) as exc_info:
                future.result(timeout=5)
        finally:
            queue.close()

        # The first attempt happened before the item was queued
        assert upload.calls == 4
        assert exc_info.value.attempts == 5
        assert exc_info.value.key == "k"
        assert is_transient_error(exc_info.value.last_error)

    def test_depth_counts_waiting_items(self):
        gate = threading.Event()
        queue = UploadRetryQueue(lambda item: gate.wait(5), UploadRetryConfig(initial_delay=60))
        try:
            queue.enqueue("b", "k1", b"1")
            queue.enqueue("b", "k2", b"2")
            assert queue.depth() == 2
            assert len(queue) == 2
        finally:
            gate.set()
            queue.close()

    def test_close_fails_pending_items(self):
        queue = UploadRetryQueue(FlakyUpload(failures=0), UploadRetryConfig(initial_delay=60))
        future = queue.enqueue("b", "k", b"1")
        queue.close()

        with pytest.raises(RetryQueueClosedError):
            future.result(timeout=1)
        with pytest.raises(RetryQueueClosedError):
            queue.enqueue("b", "k2", b"2")

    def test_earliest_item_retried_first(self):
        order = []
        done = threading.Event()

        def upload(item):
            order.append(item.key)
            if len(order) == 2:
                done.set()

        queue = UploadRetryQueue(upload, UploadRetryConfig(initial_delay=0.5))
        try:
            queue.enqueue("b", "late", b"1")
            queue.config = UploadRetryConfig(initial_delay=0.001)
            queue.enqueue("b", "early", b"2")
            assert done.wait(5)
        finally:
            queue.close()
        assert order == ["early", "late"]


# ============================================================================
# Client integration
# ============================================================================

class TestClientRetryFlow:
    """Uploads that go through the queue end to end."""

    def test_four_transient_failures_then_success(self, fake_s3, client, hash_index):
        fake_s3.put_failures.extend(service_unavailable() for _ in range(4))

        client.upload_data("b", "body.kn5", b"payload", metadata={"original-hash": "abcd"})

        assert fake_s3.calls["put_object"] == 5
        assert fake_s3.get_data("b", "body.kn5") == b"payload"
        assert hash_index.get_original_hash("b", "body.kn5") == "abcd"
        assert client.get_retry_queue_depth() == 0

    def test_five_transient_failures_is_permanent(self, fake_s3, client, hash_index, temp_dir):
        fake_s3.put_failures.extend(service_unavailable() for _ in range(5))
        source = temp_dir / "skin.dds"
        source.write_bytes(b"dds")

        with pytest.raises(PermanentUploadError) as exc_info:
            client.upload_file("b", "skin.dds", source, metadata={"original-hash": "abcd"})

        assert exc_info.value.attempts == 5
        assert fake_s3.calls["put_object"] == 5
        assert "skin.dds" not in fake_s3.keys("b")
        assert hash_index.get_original_hash("b", "skin.dds") is None

    def test_non_transient_error_bypasses_queue(self, fake_s3, client):
        fake_s3.put_failures.append(make_client_error("AccessDenied", 403))

        with pytest.raises(Exception) as exc_info:
            client.upload_data("b", "x", b"1")

        assert not isinstance(exc_info.value, PermanentUploadError)
        assert fake_s3.calls["put_object"] == 1
        assert client.get_retry_queue_depth() == 0

    def test_closed_client_rejects_retries(self, fake_s3):
        store = ObjectStoreClient(s3_client=fake_s3, retry_config=UploadRetryConfig(initial_delay=0.01))
        store.close()
        fake_s3.put_failures.append(service_unavailable())

        with pytest.raises(RetryQueueClosedError):
            store.upload_data("b", "x", b"1")
