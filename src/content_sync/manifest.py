"""
Bucket manifests: YAML allow-lists of key prefixes.

A manifest restricts a sync pass to the listed prefixes. The same document
doubles as the list of active content that operators toggle and publish.
"""

import io
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import yaml

from .exceptions import ObjectNotFoundError
from .models import RemoteEntry

logger = logging.getLogger(__name__)


def _parse_prefix_list(content: bytes) -> List[str]:
    document = yaml.safe_load(content.decode("utf-8"))
    if document is None:
        return []
    if not isinstance(document, list):
        raise ValueError(f"Manifest must be a YAML list, got {type(document).__name__}")
    return [str(item) for item in document if item is not None and str(item)]


def _fetch_document(store, bucket: str, key: str) -> bytes:
    buffer = io.BytesIO()
    store.download_object(bucket, key, buffer)
    return buffer.getvalue()


@dataclass
class SyncManifest:
    """Ordered list of key prefixes; an empty manifest filters nothing."""
    prefixes: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.prefixes

    def matches(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self.prefixes)

    def filter(self, entries: Iterable[RemoteEntry]) -> List[RemoteEntry]:
        """Keep entries whose key starts with one of the prefixes."""
        entries = list(entries)
        if self.is_empty:
            return entries
        return [e for e in entries if self.matches(e.key)]

    @classmethod
    def parse(cls, content: bytes) -> "SyncManifest":
        return cls(prefixes=_parse_prefix_list(content))

    @classmethod
    def load(cls, store, bucket: str, key: str) -> "SyncManifest":
        """
        Download and parse a manifest.

        An unreadable or malformed manifest yields an empty manifest, which
        disables filtering.

        Raises:
            ObjectNotFoundError: If the manifest object does not exist
        """
        logger.info(f"Downloading manifest {bucket}/{key}")
        try:
            content = _fetch_document(store, bucket, key)
        except ObjectNotFoundError:
            raise
        except Exception as e:
            logger.warning(f"Error reading manifest {bucket}/{key}: {e}")
            return cls()

        try:
            manifest = cls.parse(content)
        except (yaml.YAMLError, UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Error parsing manifest {bucket}/{key}: {e}")
            return cls()

        logger.info(f"Loaded {len(manifest.prefixes)} allowed prefixes from {key}")
        return manifest


class ActiveContentRegistry:
    """
    Case-insensitive set of active content names per bucket.

    Only buckets that have a manifest key take part; for any other bucket
    :meth:`is_active` returns None.
    """

    def __init__(self, store, manifest_keys: Dict[str, str]):
        """
        Args:
            store: Object store client used to fetch and publish manifests
            manifest_keys: Bucket name -> manifest object key
        """
        self.store = store
        self.manifest_keys = dict(manifest_keys)
        self._active: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def initialize(self) -> None:
        for bucket in self.manifest_keys:
            self.load(bucket)

    def load(self, bucket: str) -> None:
        """Load a bucket's manifest; a missing or broken one starts an empty set."""
        key = self._manifest_key(bucket)
        try:
            names = _parse_prefix_list(_fetch_document(self.store, bucket, key))
        except Exception as e:
            logger.warning(f"Could not load {key} from {bucket}: {e}")
            names = []

        with self._lock:
            self._active[bucket] = {name.lower(): name for name in names}

    def _manifest_key(self, bucket: str) -> str:
        try:
            return self.manifest_keys[bucket]
        except KeyError:
            raise ValueError(f"Bucket {bucket} does not support active/inactive content management")

    def is_active(self, bucket: str, name: str) -> Optional[bool]:
        with self._lock:
            if bucket not in self.manifest_keys or bucket not in self._active:
                return None
            return name.lower() in self._active[bucket]

    def set_active(self, bucket: str, name: str, active: bool) -> bool:
        """
        Toggle a content name.

        Returns:
            True if the set changed
        """
        self._manifest_key(bucket)
        with self._lock:
            names = self._active.setdefault(bucket, {})
            folded = name.lower()
            if active and folded not in names:
                names[folded] = name
                return True
            if not active and folded in names:
                del names[folded]
                return True
            return False

    def get_active(self, bucket: str) -> List[str]:
        with self._lock:
            return list(self._active.get(bucket, {}).values())

    def generate_yaml(self, bucket: str) -> bytes:
        """Render the active set as a YAML list sorted case-insensitively."""
        names = sorted(self.get_active(bucket), key=str.lower)
        return yaml.safe_dump(names, default_flow_style=False).encode("utf-8")

    def publish(self, bucket: str) -> None:
        """Upload the active set as the bucket's manifest."""
        key = self._manifest_key(bucket)
        self.store.upload_data(bucket, key, self.generate_yaml(bucket))
        logger.info(f"Published {len(self.get_active(bucket))} active entries to {bucket}/{key}")
