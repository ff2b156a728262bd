"""
Per-bucket index of pre-compression content hashes.

Provides:
- In-memory map from object key to the MD5 of the object's original bytes
- Dirty tracking of unsaved mutations per bucket
- Persistence as a side-car YAML document stored in the bucket itself
- Disaster recovery by rebuilding the map from object metadata
"""

import io
import logging
import threading
from typing import Dict, Optional, Protocol

import yaml

from .models import RemoteEntry

logger = logging.getLogger(__name__)

HASH_STORE_DIR = ".zstd"
HASH_STORE_KEY = f"{HASH_STORE_DIR}/hash-store.yaml"


class DocumentStore(Protocol):
    """The part of the object store client the index relies on."""

    def download_object(self, bucket: str, key: str, destination=None, progress_callback=None):
        ...

    def upload_data(self, bucket: str, key: str, data: bytes, metadata=None) -> None:
        ...

    def list_objects(self, bucket: str, prefix: str = "", delimiter: str = "/") -> list:
        ...

    def get_original_hash_from_metadata(self, bucket: str, key: str) -> Optional[str]:
        ...


def is_index_internal(key: str) -> bool:
    """True for keys under the index's own marker directory."""
    return key == HASH_STORE_DIR or key.startswith(f"{HASH_STORE_DIR}/")


class ContentHashIndex:
    """
    Thread-safe map of ``(bucket, key) -> original hash``.

    Entries exist only for objects uploaded through the compression path;
    a missing entry means the object is uncompressed or its origin unknown.
    Each bucket's map is saved as a whole, overwriting the remote document.
    """

    def __init__(self, store: DocumentStore):
        """
        Args:
            store: Client used to fetch, save and rebuild the index document
        """
        self.store = store
        self._lock = threading.RLock()
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._dirty: Dict[str, bool] = {}
        # Bumped on every mutation so a save only clears changes it uploaded
        self._generation: Dict[str, int] = {}

    def initialize_bucket(self, bucket: str) -> None:
        """
        Load a bucket's index document if it has not been loaded yet.

        A missing, unreadable or malformed document leaves an empty map;
        this method never raises.
        """
        with self._lock:
            if bucket in self._hashes:
                return

        hashes = self._load_document(bucket)

        with self._lock:
            if bucket not in self._hashes:
                self._hashes[bucket] = hashes
                self._dirty[bucket] = False
                self._generation[bucket] = 0

    def _load_document(self, bucket: str) -> Dict[str, str]:
        buffer = io.BytesIO()
        try:
            self.store.download_object(bucket, HASH_STORE_KEY, buffer)
        except Exception as e:
            logger.warning(f"No hash index loaded for {bucket}, starting empty: {e}")
            return {}

        try:
            document = yaml.safe_load(buffer.getvalue().decode("utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            logger.warning(f"Hash index for {bucket} is corrupt, starting empty: {e}")
            return {}

        if document is None:
            return {}
        if not isinstance(document, dict):
            logger.warning(f"Hash index for {bucket} is not a mapping, starting empty")
            return {}

        hashes = {
            str(key): str(value).lower()
            for key, value in document.items()
            if key is not None and value
        }
        logger.info(f"Loaded {len(hashes)} hash entries for {bucket}")
        return hashes

    def _bucket_map(self, bucket: str) -> Dict[str, str]:
        if bucket not in self._hashes:
            self._hashes[bucket] = {}
            self._dirty[bucket] = False
            self._generation[bucket] = 0
        return self._hashes[bucket]

    def _touch(self, bucket: str) -> None:
        self._dirty[bucket] = True
        self._generation[bucket] += 1

    # ------------------------------------------------------------------
    # Lookups and mutations
    # ------------------------------------------------------------------

    def get_original_hash(self, bucket: str, key: str) -> Optional[str]:
        with self._lock:
            return self._hashes.get(bucket, {}).get(key)

    def set_original_hash(self, bucket: str, key: str, original_hash: str) -> None:
        """Record the pre-compression hash of an object and mark the bucket dirty."""
        with self._lock:
            self._bucket_map(bucket)[key] = original_hash.lower()
            self._touch(bucket)

    def remove_hash(self, bucket: str, key: str) -> None:
        """Forget an object's hash; the bucket becomes dirty only if an entry existed."""
        with self._lock:
            hashes = self._hashes.get(bucket)
            if hashes is not None and hashes.pop(key, None) is not None:
                self._touch(bucket)

    def entry_count(self, bucket: str) -> int:
        with self._lock:
            return len(self._hashes.get(bucket, {}))

    def is_dirty(self, bucket: str) -> bool:
        with self._lock:
            return self._dirty.get(bucket, False)

    def mark_clean(self, bucket: str) -> None:
        """Clear the dirty flag without uploading."""
        with self._lock:
            if bucket in self._dirty:
                self._dirty[bucket] = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_to_remote(self, bucket: str) -> None:
        """
        Upload the bucket's full map, overwriting the remote document.

        Raises:
            Whatever the upload raises; the bucket then stays dirty
        """
        with self._lock:
            snapshot = dict(sorted(self._bucket_map(bucket).items()))
            generation = self._generation[bucket]

        payload = yaml.safe_dump(snapshot, default_flow_style=False, sort_keys=True)
        self.store.upload_data(bucket, HASH_STORE_KEY, payload.encode("utf-8"))

        with self._lock:
            if self._generation[bucket] == generation:
                self._dirty[bucket] = False
        logger.info(f"Saved {len(snapshot)} hash entries for {bucket}")

    def rebuild_from_remote(self, bucket: str) -> int:
        """
        Reconstruct the bucket's map from object metadata and save it.

        Every object is queried directly; metadata failures for single objects
        are logged and skipped.

        Returns:
            Number of hash entries recovered
        """
        logger.info(f"Rebuilding hash index for {bucket} from object metadata")
        entries = self.store.list_objects(bucket, "", delimiter="")

        rebuilt = {}
        for entry in entries:
            if not self._is_content(entry):
                continue
            try:
                original_hash = self.store.get_original_hash_from_metadata(bucket, entry.key)
            except Exception as e:
                logger.warning(f"Could not read metadata for {bucket}/{entry.key}: {e}")
                continue
            if original_hash:
                rebuilt[entry.key] = original_hash.lower()

        with self._lock:
            self._hashes[bucket] = rebuilt
            self._generation.setdefault(bucket, 0)
            self._touch(bucket)

        self.save_to_remote(bucket)
        logger.info(f"Rebuilt hash index for {bucket}: {len(rebuilt)} of {len(entries)} objects compressed")
        return len(rebuilt)

    @staticmethod
    def _is_content(entry: RemoteEntry) -> bool:
        return not entry.is_directory and not is_index_internal(entry.key)
