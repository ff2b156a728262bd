"""
Tests for the zstd compression codec.
"""

import hashlib
import os

import pytest
import zstandard

from src.content_sync.compression import COMPRESSIBLE_EXTENSIONS, CompressionCodec


# ============================================================================
# should_compress
# ============================================================================

class TestShouldCompress:
    """Extension allow-list decisions."""

    @pytest.mark.parametrize("name", ["car.kn5", "skin.DDS", "data.ini", "ui.json", "lut.2dlut", "sound.bank"])
    def test_allow_listed_extensions(self, name):
        assert CompressionCodec().should_compress(name, 10)

    @pytest.mark.parametrize("name", ["archive.zip", "README", "movie.mp4", "installer.msi"])
    def test_other_extensions(self, name):
        assert not CompressionCodec().should_compress(name, 10_000_000)

    def test_size_does_not_gate(self):
        codec = CompressionCodec()
        assert codec.should_compress("tiny.txt", 1)
        assert codec.should_compress("empty.txt", 0)

    def test_extensions_are_lowercase(self):
        assert all(ext == ext.lower() and ext.startswith(".") for ext in COMPRESSIBLE_EXTENSIONS)


# ============================================================================
# Compress / decompress
# ============================================================================

class TestCompressionRoundTrip:
    """Streaming compression and decompression."""

    def test_compress_file_then_decompress(self, codec, temp_dir):
        source = temp_dir / "model.kn5"
        payload = b"vertex data " * 5000 + os.urandom(2048)
        source.write_bytes(payload)

        compressed = codec.compress_file(source)
        try:
            assert compressed.exists()
            assert compressed.stat().st_size < len(payload)

            restored = codec.decompress_file(compressed, temp_dir / "restored.kn5")
            assert restored.read_bytes() == payload
            assert hashlib.md5(restored.read_bytes()).hexdigest() == hashlib.md5(payload).hexdigest()
        finally:
            compressed.unlink(missing_ok=True)

    def test_compress_data(self, codec, temp_dir):
        payload = b"[HEADER]\nVERSION=1\n" * 100
        compressed = codec.compress_data(payload)
        try:
            assert zstandard.ZstdDecompressor().decompressobj().decompress(compressed.read_bytes()) == payload
        finally:
            compressed.unlink(missing_ok=True)

    def test_empty_payload(self, codec, temp_dir):
        compressed = codec.compress_data(b"")
        try:
            restored = codec.decompress_file(compressed, temp_dir / "empty.txt")
            assert restored.read_bytes() == b""
        finally:
            compressed.unlink(missing_ok=True)

    def test_decompress_replaces_existing_file(self, codec, temp_dir):
        target = temp_dir / "existing.ini"
        target.write_bytes(b"stale content that is longer than the new content")
        compressed = codec.compress_data(b"fresh")
        try:
            codec.decompress_file(compressed, target)
        finally:
            compressed.unlink(missing_ok=True)
        assert target.read_bytes() == b"fresh"

    def test_progress_reports_start_and_end_only(self, codec, temp_dir):
        source = temp_dir / "track.ini"
        source.write_bytes(b"x" * 10_000)
        reported = []

        compressed = codec.compress_file(source, progress=reported.append)
        try:
            codec.decompress_file(compressed, temp_dir / "out.ini", progress=reported.append)
        finally:
            compressed.unlink(missing_ok=True)

        assert reported == [0, 100, 0, 100]

    def test_corrupt_input_raises(self, codec, temp_dir):
        garbage = temp_dir / "garbage.zst"
        garbage.write_bytes(b"definitely not zstd")
        with pytest.raises(zstandard.ZstdError):
            codec.decompress_file(garbage, temp_dir / "out.bin")

    def test_missing_input_leaves_no_temp_file(self, codec, temp_dir):
        before = set(codec.temp_dir.iterdir())
        with pytest.raises(FileNotFoundError):
            codec.compress_file(temp_dir / "missing.kn5")
        assert set(codec.temp_dir.iterdir()) == before
