"""
Zstandard compression for stored content.

Files are compressed before upload when their extension is on a fixed
allow-list, and decompressed after download when the remote object carries
an original hash. All transforms stream between files, so memory use does not
grow with file size.
"""

import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

import zstandard

logger = logging.getLogger(__name__)

COMPRESSIBLE_EXTENSIONS = frozenset({
    ".dds", ".png", ".jpg", ".jpeg", ".bmp", ".tga",
    ".ini", ".txt", ".cfg", ".json", ".xml", ".yaml", ".yml", ".lut", ".csv", ".2dlut",
    ".fx", ".mp3", ".wav", ".exe", ".dll",
    ".fbx", ".obj", ".lua", ".ttf", ".bank", ".ai", ".bin", ".py", ".pyc", ".pyd", ".ahk",
    ".acd", ".knh", ".kn5", ".ksanim", ".vao-patch", ".log",
})

# Balanced ratio/speed
COMPRESSION_LEVEL = 3

ProgressCallback = Callable[[int], None]


class CompressionCodec:
    """Extension-gated streaming zstd compression."""

    def __init__(self, level: int = COMPRESSION_LEVEL, temp_dir: Optional[Path] = None):
        self.level = level
        self.temp_dir = temp_dir

    def should_compress(self, file_name: str, size: int = 0) -> bool:
        """
        Decide whether a file should be stored compressed.

        Only the extension matters; ``size`` does not gate compression.
        """
        return Path(file_name).suffix.lower() in COMPRESSIBLE_EXTENSIONS

    def compress_file(
        self,
        input_path: Union[str, Path],
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Compress a file into a new temporary file.

        Args:
            input_path: File to compress
            progress: Optional callback receiving 0 and 100

        Returns:
            Path to the compressed temp file; the caller removes it
        """
        output_path = self._temp_path()
        _report(progress, 0)
        try:
            with open(input_path, "rb") as src, open(output_path, "wb") as dst:
                zstandard.ZstdCompressor(level=self.level).copy_stream(src, dst)
        except Exception:
            output_path.unlink(missing_ok=True)
            raise
        _report(progress, 100)

        logger.debug(
            f"Compressed {input_path} ({os.path.getsize(input_path)} -> "
            f"{output_path.stat().st_size} bytes)"
        )
        return output_path

    def compress_data(self, data: bytes, progress: Optional[ProgressCallback] = None) -> Path:
        """Compress an in-memory payload into a new temporary file."""
        output_path = self._temp_path()
        _report(progress, 0)
        try:
            with open(output_path, "wb") as dst:
                zstandard.ZstdCompressor(level=self.level).copy_stream(io.BytesIO(data), dst)
        except Exception:
            output_path.unlink(missing_ok=True)
            raise
        _report(progress, 100)
        return output_path

    def decompress_file(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Decompress ``input_path`` into ``output_path``, replacing any existing file."""
        output_path = Path(output_path)
        _report(progress, 0)
        with open(input_path, "rb") as src, open(output_path, "wb") as dst:
            zstandard.ZstdDecompressor().copy_stream(src, dst)
        _report(progress, 100)
        return output_path

    def _temp_path(self) -> Path:
        fd, name = tempfile.mkstemp(suffix=".zst", dir=self.temp_dir)
        os.close(fd)
        return Path(name)


def _report(progress: Optional[ProgressCallback], percent: int) -> None:
    if progress:
        progress(percent)
