"""Shared fixtures for the content sync tests."""

import tempfile
from pathlib import Path

import pytest

from src.content_sync.compression import CompressionCodec
from src.content_sync.config import BucketBinding, StoreConfig, SyncConfig
from src.content_sync.downloader import ConcurrentDownloader
from src.content_sync.hash_index import ContentHashIndex
from src.content_sync.object_store import ObjectStoreClient
from src.content_sync.retry import RetryConfig, UploadRetryConfig
from src.content_sync.sync_manager import SyncOrchestrator
from tests.fixtures.fake_s3 import FakeS3Client


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def fast_upload_retry():
    """Upload retry timing short enough for tests."""
    return UploadRetryConfig(initial_delay=0.01, max_attempts=5)


@pytest.fixture
def client(fake_s3, fast_upload_retry):
    store = ObjectStoreClient(s3_client=fake_s3, retry_config=fast_upload_retry)
    yield store
    store.close()


@pytest.fixture
def hash_index(client):
    index = ContentHashIndex(client)
    client.attach_hash_index(index, index)
    return index


@pytest.fixture
def codec(temp_dir):
    scratch = temp_dir / "scratch"
    scratch.mkdir()
    return CompressionCodec(temp_dir=scratch)


@pytest.fixture
def downloader(client, hash_index, codec):
    return ConcurrentDownloader(
        client,
        codec=codec,
        retry_config=RetryConfig(max_retries=3, base_delay=0.0),
    )


@pytest.fixture
def sync_config(temp_dir):
    return SyncConfig(
        store=StoreConfig(),
        buckets=[
            BucketBinding("cars", temp_dir / "cars", "cars.yaml"),
            BucketBinding("fonts", temp_dir / "fonts"),
        ],
        download_retry_base_delay=0.0,
    )


@pytest.fixture
def orchestrator(sync_config, client, hash_index, downloader):
    return SyncOrchestrator(sync_config, client, hash_index, downloader)
