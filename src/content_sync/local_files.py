"""
Local filesystem helpers: enumeration, hashing and key/path translation.
"""

import hashlib
import logging
import math
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from .models import LocalEntry

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024
_SIZE_SUFFIXES = ("B", "KB", "MB", "GB", "TB")
_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def compute_file_hash(file_path: Union[str, Path]) -> str:
    """Compute the lowercase hex MD5 digest of a file."""
    hash_md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            hash_md5.update(chunk)
    return hash_md5.hexdigest()


def compute_data_hash(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def normalize_key(key: str) -> str:
    """Convert a path to object-key form: forward slashes, no duplicates."""
    return _DUPLICATE_SLASHES.sub("/", key.replace("\\", "/"))


def local_path_for_key(local_base: Union[str, Path], key: str) -> Path:
    """Map an object key onto the local mirror under ``local_base``."""
    parts = [p for p in normalize_key(key).split("/") if p]
    if any(p == ".." for p in parts):
        raise ValueError(f"Refusing to map key outside the local base: {key}")
    return Path(local_base).joinpath(*parts)


def key_for_local_path(local_base: Union[str, Path], path: Union[str, Path]) -> str:
    """Inverse of :func:`local_path_for_key`."""
    return Path(path).relative_to(local_base).as_posix()


def format_file_size(size_bytes: int) -> str:
    """Render a byte count as e.g. ``1.5 MB``."""
    if size_bytes <= 0:
        return "0 B"
    index = min(int(math.floor(math.log(size_bytes, 1024))), len(_SIZE_SUFFIXES) - 1)
    return f"{size_bytes / (1024 ** index):.1f} {_SIZE_SUFFIXES[index]}"


def _entry_for(path: Path, name: str, with_hash: bool = False) -> LocalEntry:
    stat = path.stat()
    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    if path.is_dir():
        return LocalEntry(name=name, full_path=path, last_modified=modified, is_directory=True)
    return LocalEntry(
        name=name,
        full_path=path,
        size_bytes=stat.st_size,
        last_modified=modified,
        file_hash=compute_file_hash(path) if with_hash else None,
    )


def list_local_files(directory: Union[str, Path], recursive: bool = False) -> List[LocalEntry]:
    """
    Enumerate a directory.

    Args:
        directory: Directory to scan
        recursive: Walk subdirectories; names are then relative paths using '/'

    Returns:
        Entries ordered directories first, then by name. Entries that cannot
        be read are skipped; a missing directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    candidates = directory.rglob("*") if recursive else directory.iterdir()
    entries = []
    for path in candidates:
        name = path.relative_to(directory).as_posix() if recursive else path.name
        try:
            entries.append(_entry_for(path, name))
        except PermissionError:
            continue
        except OSError as e:
            logger.error(f"Error processing entry {path}: {e}")

    return sorted(entries, key=lambda e: (not e.is_directory, e.name))


def get_file_info(path: Union[str, Path]) -> Optional[LocalEntry]:
    """Describe a single path, hashing it if it is a file. None if it does not exist."""
    path = Path(path)
    try:
        if not path.exists():
            return None
        return _entry_for(path, path.name, with_hash=path.is_file())
    except OSError as e:
        logger.error(f"Error getting file info for {path}: {e}")
        return None


def set_modified_time(path: Union[str, Path], modified: datetime) -> None:
    timestamp = modified.timestamp()
    os.utime(path, (timestamp, timestamp))
