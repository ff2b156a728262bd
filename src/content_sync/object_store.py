"""
S3-compatible object store client.

Features:
- Paginated listing with delimiter grouping into synthesized directories
- Uploads of files or in-memory data, with multipart upload for large files
- Transient upload failures handed to a background retry queue
- Batched recursive deletes that keep the hash index in step
- Streaming downloads to a temp file or a caller-supplied stream
- Credential hot-swap without aborting in-flight requests
"""

import contextlib
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Protocol, Union

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .exceptions import ObjectNotFoundError
from .models import EPOCH, RemoteEntry
from .retry import (
    RetryItem,
    UploadPayload,
    UploadRetryConfig,
    UploadRetryQueue,
    is_not_found_error,
    is_transient_error,
)

logger = logging.getLogger(__name__)

ORIGINAL_HASH_METADATA_KEY = "original-hash"

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".dds": "image/vnd-ms.dds",
    ".ini": "text/plain",
    ".txt": "text/plain",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".json": "application/json",
    ".zip": "application/zip",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

ByteProgressCallback = Callable[[int], None]


class HashLookup(Protocol):
    """Read-only view of recorded pre-compression hashes."""

    def get_original_hash(self, bucket: str, key: str) -> Optional[str]:
        ...


class HashRecorder(Protocol):
    """Write side of the hash index, notified of uploads and deletes."""

    def set_original_hash(self, bucket: str, key: str, original_hash: str) -> None:
        ...

    def remove_hash(self, bucket: str, key: str) -> None:
        ...


def content_type_for(file_name: str) -> str:
    """Infer a content type from a file name's extension."""
    return CONTENT_TYPES.get(Path(file_name).suffix.lower(), DEFAULT_CONTENT_TYPE)


def _base_name(key: str) -> str:
    return key.rstrip("/").rsplit("/", 1)[-1]


class ObjectStoreClient:
    """Bucket operations against an S3-compatible store."""

    # 5 MB minimum part size for S3 multipart uploads
    DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    DOWNLOAD_BUFFER_SIZE = 64 * 1024
    # Per-request object limit of DeleteObjects
    DELETE_BATCH_SIZE = 1000
    LIST_PAGE_SIZE = 1000

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: Optional[str] = None,
        s3_client=None,
        hash_lookup: Optional[HashLookup] = None,
        hash_recorder: Optional[HashRecorder] = None,
        retry_config: Optional[UploadRetryConfig] = None,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        temp_dir: Optional[Path] = None,
    ):
        """
        Initialize the object store client.

        Args:
            endpoint_url: Service URL of the S3-compatible store
            access_key_id: Access key (anonymous access if omitted)
            secret_access_key: Secret key
            region: Region name, if the store needs one
            s3_client: Pre-built boto3 client; skips connection setup
            hash_lookup: Source of original hashes used to classify entries
            hash_recorder: Receives hash updates on upload and delete
            retry_config: Timing of the background upload retry queue
            multipart_threshold: Use multipart upload for files larger than this
            temp_dir: Directory for downloaded temp files (system default if None)
        """
        self.endpoint_url = endpoint_url
        self.region = region
        self.multipart_threshold = multipart_threshold
        self.temp_dir = temp_dir
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = s3_client
        self._client_lock = threading.Lock()
        self._hash_lookup = hash_lookup
        self._hash_recorder = hash_recorder
        self._retry_queue = UploadRetryQueue(self._retry_upload, retry_config)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _build_client(self, access_key_id: Optional[str], secret_access_key: Optional[str], endpoint_url: Optional[str]):
        if access_key_id and secret_access_key:
            session = boto3.Session(
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=self.region,
            )
        else:
            session = boto3.Session(region_name=self.region)

        config = Config(
            retries={"max_attempts": 3, "mode": "standard"},
            max_pool_connections=16,
            s3={"addressing_style": "path"},
        )
        return session.client("s3", endpoint_url=endpoint_url, config=config)

    def connect(self) -> None:
        """Create the underlying client from the configured credentials."""
        client = self._build_client(self._access_key_id, self._secret_access_key, self.endpoint_url)
        with self._client_lock:
            self._client = client
        logger.info(f"Connected to object store at {self.endpoint_url or 'default endpoint'}")

    @property
    def client(self):
        """Current boto3 client, created on first use."""
        with self._client_lock:
            client = self._client
        if client is None:
            self.connect()
            with self._client_lock:
                client = self._client
        return client

    def update_credentials(self, access_key_id: str, secret_access_key: str, endpoint_url: str) -> None:
        """
        Swap the underlying connection for one using new credentials.

        Requests already running on the old client are left to finish; the
        old client is not closed.
        """
        new_client = self._build_client(access_key_id, secret_access_key, endpoint_url)
        with self._client_lock:
            self._client = new_client
            self._access_key_id = access_key_id
            self._secret_access_key = secret_access_key
            self.endpoint_url = endpoint_url
        logger.info(f"Object store credentials updated for {endpoint_url}")

    def attach_hash_index(self, lookup: HashLookup, recorder: Optional[HashRecorder] = None) -> None:
        """Wire in the hash index after both objects exist."""
        self._hash_lookup = lookup
        self._hash_recorder = recorder

    def close(self) -> None:
        """Stop the retry worker, failing any uploads still queued."""
        self._retry_queue.close()

    def get_retry_queue_depth(self) -> int:
        return self._retry_queue.depth()

    def _lookup_hash(self, bucket: str, key: str) -> Optional[str]:
        if self._hash_lookup is None:
            return None
        return self._hash_lookup.get_original_hash(bucket, key)

    # ------------------------------------------------------------------
    # Listing and metadata
    # ------------------------------------------------------------------

    def list_objects(self, bucket: str, prefix: str = "", delimiter: str = "/") -> List[RemoteEntry]:
        """
        List objects under a prefix.

        Args:
            bucket: Bucket name
            prefix: Key prefix to list
            delimiter: Grouping delimiter; empty string lists recursively

        Returns:
            Directories first, then files, each group ordered by name
        """
        params = {
            "Bucket": bucket,
            "Prefix": prefix,
            "PaginationConfig": {"PageSize": self.LIST_PAGE_SIZE},
        }
        if delimiter:
            params["Delimiter"] = delimiter

        entries = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(**params):
            for common_prefix in page.get("CommonPrefixes") or []:
                dir_key = common_prefix["Prefix"]
                entries.append(RemoteEntry(name=_base_name(dir_key), key=dir_key, is_directory=True))

            for obj in page.get("Contents") or []:
                key = obj["Key"]
                if key.endswith("/"):
                    # Directory marker
                    continue
                entries.append(RemoteEntry(
                    name=_base_name(key),
                    key=key,
                    size_bytes=obj.get("Size", 0),
                    last_modified=obj.get("LastModified") or EPOCH,
                    etag=obj.get("ETag", ""),
                    original_hash=self._lookup_hash(bucket, key),
                ))

        logger.debug(f"Listed {len(entries)} entries in {bucket}/{prefix}")
        return sorted(entries, key=lambda e: (not e.is_directory, e.name, e.key))

    def _head_object(self, bucket: str, key: str) -> Optional[dict]:
        try:
            return self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if is_not_found_error(e):
                return None
            raise

    def get_object_metadata(self, bucket: str, key: str) -> Optional[RemoteEntry]:
        """Describe one object; None if it does not exist."""
        response = self._head_object(bucket, key)
        if response is None:
            return None

        return RemoteEntry(
            name=_base_name(key),
            key=key,
            size_bytes=response.get("ContentLength", 0),
            last_modified=response.get("LastModified") or EPOCH,
            etag=response.get("ETag", ""),
            original_hash=self._lookup_hash(bucket, key),
        )

    def get_original_hash_from_metadata(self, bucket: str, key: str) -> Optional[str]:
        """
        Read the ``original-hash`` user metadata straight from the store.

        Bypasses the hash index, so it can be used to rebuild it.
        """
        response = self._head_object(bucket, key)
        if response is None:
            return None
        return (response.get("Metadata") or {}).get(ORIGINAL_HASH_METADATA_KEY)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def upload_file(
        self,
        bucket: str,
        key: str,
        local_path: Union[str, Path],
        metadata: Optional[Dict[str, str]] = None,
        progress_callback: Optional[ByteProgressCallback] = None,
    ) -> None:
        """
        Upload a local file.

        A transient failure queues the upload for background retry and this
        call blocks until the queue resolves it.

        Raises:
            PermanentUploadError: If the queued retries are exhausted
        """
        self._upload_with_retry(bucket, key, Path(local_path), metadata, progress_callback)

    def upload_data(
        self,
        bucket: str,
        key: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Upload an in-memory payload, with the same retry behavior as :meth:`upload_file`."""
        self._upload_with_retry(bucket, key, bytes(data), metadata, None)

    def _upload_with_retry(
        self,
        bucket: str,
        key: str,
        payload: UploadPayload,
        metadata: Optional[Dict[str, str]],
        progress_callback: Optional[ByteProgressCallback],
    ) -> None:
        try:
            self._upload_once(bucket, key, payload, metadata, progress_callback)
        except Exception as e:
            if not is_transient_error(e):
                logger.error(f"Upload of {bucket}/{key} failed: {e}")
                raise
            future = self._retry_queue.enqueue(bucket, key, payload, metadata, e)
            future.result()

    def _retry_upload(self, item: RetryItem) -> None:
        self._upload_once(item.bucket, item.key, item.payload, item.metadata, None)

    def _upload_once(
        self,
        bucket: str,
        key: str,
        payload: UploadPayload,
        metadata: Optional[Dict[str, str]],
        progress_callback: Optional[ByteProgressCallback],
    ) -> None:
        if isinstance(payload, Path):
            size = payload.stat().st_size
            logger.info(f"Uploading {payload} to {bucket}/{key} ({size} bytes)")
            if size > self.multipart_threshold:
                self._multipart_upload(bucket, key, payload, metadata, progress_callback)
            else:
                with open(payload, "rb") as f:
                    self.client.put_object(**self._put_params(bucket, key, f, metadata))
                if progress_callback:
                    progress_callback(size)
        else:
            logger.info(f"Uploading {len(payload)} bytes to {bucket}/{key}")
            self.client.put_object(**self._put_params(bucket, key, payload, metadata))

        self._record_original_hash(bucket, key, metadata)

    def _put_params(self, bucket: str, key: str, body, metadata: Optional[Dict[str, str]]) -> dict:
        params = {
            "Bucket": bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type_for(key),
        }
        if metadata:
            params["Metadata"] = dict(metadata)
        return params

    def _multipart_upload(
        self,
        bucket: str,
        key: str,
        local_path: Path,
        metadata: Optional[Dict[str, str]],
        progress_callback: Optional[ByteProgressCallback],
    ) -> None:
        """Multipart upload for large files."""
        params = {"Bucket": bucket, "Key": key, "ContentType": content_type_for(key)}
        if metadata:
            params["Metadata"] = dict(metadata)
        upload_id = self.client.create_multipart_upload(**params)["UploadId"]

        logger.debug(f"Started multipart upload {upload_id} for {local_path}")

        parts = []
        uploaded = 0
        try:
            with open(local_path, "rb") as f:
                part_num = 1
                while True:
                    chunk = f.read(self.DEFAULT_CHUNK_SIZE)
                    if not chunk:
                        break

                    part_response = self.client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_num,
                        UploadId=upload_id,
                        Body=chunk,
                    )
                    parts.append({"ETag": part_response["ETag"], "PartNumber": part_num})

                    uploaded += len(chunk)
                    if progress_callback:
                        progress_callback(uploaded)
                    part_num += 1

            self.client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
            logger.info(f"Completed multipart upload {upload_id} ({len(parts)} parts)")
        except Exception:
            logger.error(f"Multipart upload failed, aborting {upload_id}")
            try:
                self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            except ClientError as abort_error:
                logger.warning(f"Could not abort multipart upload {upload_id}: {abort_error}")
            raise

    def _record_original_hash(self, bucket: str, key: str, metadata: Optional[Dict[str, str]]) -> None:
        if not metadata or self._hash_recorder is None:
            return
        original_hash = metadata.get(ORIGINAL_HASH_METADATA_KEY)
        if original_hash:
            self._hash_recorder.set_original_hash(bucket, key, original_hash)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete a single object and forget its hash."""
        self.client.delete_object(Bucket=bucket, Key=key)
        logger.info(f"Deleted {bucket}/{key}")
        if self._hash_recorder is not None:
            self._hash_recorder.remove_hash(bucket, key)

    def delete_objects_recursive(self, bucket: str, prefix: str) -> int:
        """
        Delete every object whose key starts with ``prefix``.

        Keys are deleted in batches of at most ``DELETE_BATCH_SIZE``; hash
        entries are purged after each batch.

        Returns:
            Number of objects deleted
        """
        keys = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents") or [])

        if not keys:
            logger.info(f"Nothing to delete under {bucket}/{prefix}")
            return 0

        deleted = 0
        for start in range(0, len(keys), self.DELETE_BATCH_SIZE):
            batch = keys[start:start + self.DELETE_BATCH_SIZE]
            response = self.client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )

            failed = {err.get("Key") for err in response.get("Errors") or []}
            for err in response.get("Errors") or []:
                logger.error(f"Failed to delete {bucket}/{err.get('Key')}: {err.get('Message')}")

            for key in batch:
                if key in failed:
                    continue
                deleted += 1
                if self._hash_recorder is not None:
                    self._hash_recorder.remove_hash(bucket, key)

        logger.info(f"Deleted {deleted} objects under {bucket}/{prefix}")
        return deleted

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def download_object(
        self,
        bucket: str,
        key: str,
        destination: Optional[BinaryIO] = None,
        progress_callback: Optional[ByteProgressCallback] = None,
    ) -> Path:
        """
        Download an object.

        Args:
            bucket: Bucket name
            key: Object key
            destination: Open binary stream to write into; a temp file is
                created when omitted
            progress_callback: Receives the cumulative byte count

        Returns:
            Path of the temp file, or the destination stream's name

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if is_not_found_error(e):
                raise ObjectNotFoundError(bucket, key) from e
            raise

        if destination is not None:
            with contextlib.closing(response["Body"]) as body:
                self._copy_stream(body, destination, progress_callback)
            destination.flush()
            return Path(getattr(destination, "name", ""))

        fd, temp_name = tempfile.mkstemp(prefix="content-sync-", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "wb") as temp_file, contextlib.closing(response["Body"]) as body:
                self._copy_stream(body, temp_file, progress_callback)
        except Exception:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return Path(temp_name)

    def _copy_stream(self, source, destination: BinaryIO, progress_callback: Optional[ByteProgressCallback]) -> int:
        total = 0
        while True:
            chunk = source.read(self.DOWNLOAD_BUFFER_SIZE)
            if not chunk:
                break
            destination.write(chunk)
            total += len(chunk)
            if progress_callback:
                progress_callback(total)
        return total
