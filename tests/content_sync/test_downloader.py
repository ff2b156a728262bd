"""
Tests for freshness checks and the bounded-concurrency downloader.
"""

import hashlib
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import zstandard

from src.content_sync.downloader import (
    ConcurrentDownloader,
    needs_download,
    validate_file,
)
from src.content_sync.exceptions import DownloadFailedError, HashMismatchError
from src.content_sync.hash_index import HASH_STORE_KEY
from src.content_sync.models import OutcomeStatus, RemoteEntry
from src.content_sync.retry import RetryConfig
from tests.fixtures.fake_s3 import FakeS3Client, make_client_error, service_unavailable


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def zstd(data: bytes) -> bytes:
    return zstandard.ZstdCompressor(level=3).compress(data)


class RecordingSink:
    def __init__(self):
        self.snapshots = []
        self.lock = threading.Lock()

    def report(self, progress):
        with self.lock:
            self.snapshots.append(progress)


# ============================================================================
# Freshness
# ============================================================================

class TestNeedsDownload:
    """Decision table for stale local files."""

    @pytest.fixture
    def local_file(self, temp_dir):
        path = temp_dir / "file.ini"
        path.write_bytes(b"local content")
        return path

    def test_forced(self, local_file):
        entry = RemoteEntry("file.ini", "file.ini", original_hash=md5(b"local content"))
        assert needs_download(entry, local_file, force=True)

    def test_missing_locally(self, temp_dir):
        entry = RemoteEntry("file.ini", "file.ini", original_hash="abc")
        assert needs_download(entry, temp_dir / "missing.ini")

    def test_original_hash_matches(self, local_file):
        entry = RemoteEntry("file.ini", "file.ini", original_hash=md5(b"local content"))
        assert not needs_download(entry, local_file)

    def test_original_hash_differs(self, local_file):
        entry = RemoteEntry("file.ini", "file.ini", original_hash=md5(b"remote content"))
        assert needs_download(entry, local_file)

    def test_original_hash_wins_over_etag(self, local_file):
        entry = RemoteEntry(
            "file.ini", "file.ini",
            etag=f'"{md5(b"local content")}"',
            original_hash=md5(b"something else"),
        )
        assert needs_download(entry, local_file)

    def test_etag_matches_local_checksum(self, local_file):
        entry = RemoteEntry("file.ini", "file.ini", etag=f'"{md5(b"local content")}"')
        assert not needs_download(entry, local_file)

    def test_etag_differs(self, local_file):
        entry = RemoteEntry("file.ini", "file.ini", etag='"deadbeef"')
        assert needs_download(entry, local_file)

    def test_multipart_etag_falls_back_to_size_and_time(self, local_file):
        mtime = datetime.fromtimestamp(local_file.stat().st_mtime, tz=timezone.utc)
        entry = RemoteEntry(
            "file.ini", "file.ini",
            size_bytes=len(b"local content"),
            last_modified=mtime,
            etag='"0123456789abcdef-3"',
        )
        assert not needs_download(entry, local_file)

    def test_no_etag_size_differs(self, local_file):
        mtime = datetime.fromtimestamp(local_file.stat().st_mtime, tz=timezone.utc)
        entry = RemoteEntry("file.ini", "file.ini", size_bytes=999, last_modified=mtime)
        assert needs_download(entry, local_file)

    def test_no_etag_time_differs(self, local_file):
        mtime = datetime.fromtimestamp(local_file.stat().st_mtime, tz=timezone.utc)
        entry = RemoteEntry(
            "file.ini", "file.ini",
            size_bytes=len(b"local content"),
            last_modified=mtime + timedelta(minutes=5),
        )
        assert needs_download(entry, local_file)


class TestValidateFile:
    """Hash validation never raises."""

    def test_no_expected_hash(self, temp_dir):
        assert validate_file(temp_dir / "whatever", None)
        assert validate_file(temp_dir / "whatever", "")

    def test_match_is_case_insensitive(self, temp_dir):
        path = temp_dir / "a.bin"
        path.write_bytes(b"abc")
        assert validate_file(path, md5(b"abc").upper())

    def test_mismatch(self, temp_dir):
        path = temp_dir / "a.bin"
        path.write_bytes(b"abc")
        assert not validate_file(path, md5(b"xyz"))

    def test_unreadable_file(self, temp_dir):
        assert not validate_file(temp_dir / "missing.bin", md5(b"abc"))


# ============================================================================
# Diffing
# ============================================================================

class TestGetFilesToDownload:
    """Remote listing filtered against the local mirror."""

    def test_skips_directories_index_and_fresh_files(self, fake_s3, downloader, temp_dir):
        fake_s3.add_object("cars", "a/fresh.ini", b"same")
        fake_s3.add_object("cars", "a/stale.ini", b"new")
        fake_s3.add_object("cars", "b/missing.ini", b"x")
        fake_s3.add_object("cars", HASH_STORE_KEY, b"{}\n")
        (temp_dir / "a").mkdir()
        (temp_dir / "a" / "fresh.ini").write_bytes(b"same")
        (temp_dir / "a" / "stale.ini").write_bytes(b"old")

        stale = downloader.get_files_to_download("cars", "", temp_dir)

        # Listing order is by base name, then key
        assert [e.key for e in stale] == ["b/missing.ini", "a/stale.ini"]

    def test_prefix_limits_scan(self, fake_s3, downloader, temp_dir):
        fake_s3.add_object("cars", "a/x", b"1")
        fake_s3.add_object("cars", "b/y", b"2")

        stale = downloader.get_files_to_download("cars", "b/", temp_dir)

        assert [e.key for e in stale] == ["b/y"]

    def test_skips_keys_outside_local_base(self, fake_s3, downloader, temp_dir):
        fake_s3.add_object("fonts", "good.ttf", b"font")
        fake_s3.add_object("fonts", "x/../../escape.ttf", b"bad")

        stale = downloader.get_files_to_download("fonts", "", temp_dir)

        assert [e.key for e in stale] == ["good.ttf"]

    def test_force_includes_fresh_files(self, fake_s3, downloader, temp_dir):
        fake_s3.add_object("cars", "fresh.ini", b"same")
        (temp_dir / "fresh.ini").write_bytes(b"same")

        assert [e.key for e in downloader.get_files_to_download("cars", "", temp_dir, force=True)] == ["fresh.ini"]


# ============================================================================
# Downloading
# ============================================================================

class TestDownloadFiles:
    """Parallel downloads with per-file outcomes."""

    def test_downloads_raw_file_and_sets_mtime(self, fake_s3, client, downloader, temp_dir):
        modified = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        fake_s3.add_object("cars", "a/data.ini", b"[DATA]", last_modified=modified)
        entries = client.list_objects("cars", "", delimiter="")

        report = downloader.download_files(entries, "cars", temp_dir)

        target = temp_dir / "a" / "data.ini"
        assert report.all_succeeded
        assert target.read_bytes() == b"[DATA]"
        assert target.stat().st_mtime == pytest.approx(modified.timestamp())
        assert report.outcomes[0].attempts == 1
        assert report.total_bytes == len(b"[DATA]")

    def test_replaces_existing_file(self, fake_s3, client, downloader, temp_dir):
        fake_s3.add_object("cars", "data.ini", b"new")
        (temp_dir / "data.ini").write_bytes(b"old and longer")

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir)

        assert report.all_succeeded
        assert (temp_dir / "data.ini").read_bytes() == b"new"

    def test_decompresses_and_validates(self, fake_s3, client, hash_index, downloader, temp_dir):
        original = b"kn5 mesh data " * 1000
        fake_s3.add_object("cars", "a/body.kn5", zstd(original), metadata={"original-hash": md5(original)})
        hash_index.set_original_hash("cars", "a/body.kn5", md5(original))

        entries = client.list_objects("cars", "", delimiter="")
        assert entries[0].is_compressed
        report = downloader.download_files(entries, "cars", temp_dir)

        assert report.all_succeeded
        assert (temp_dir / "a" / "body.kn5").read_bytes() == original
        assert not needs_download(entries[0], temp_dir / "a" / "body.kn5")

    def test_hash_mismatch_is_a_hard_failure(self, fake_s3, client, hash_index, downloader, temp_dir):
        fake_s3.add_object("cars", "body.kn5", zstd(b"actual bytes"))
        hash_index.set_original_hash("cars", "body.kn5", md5(b"expected bytes"))
        (temp_dir / "body.kn5").write_bytes(b"previous good copy")

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir)

        [outcome] = report.outcomes
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.attempts == 4
        assert isinstance(outcome.error, DownloadFailedError)
        assert isinstance(outcome.error.last_error, HashMismatchError)
        assert (temp_dir / "body.kn5").read_bytes() == b"previous good copy"
        assert not list(temp_dir.glob("*.part"))

    def test_transient_failure_is_retried(self, fake_s3, client, downloader, temp_dir):
        fake_s3.add_object("cars", "x.ini", b"ok")
        fake_s3.get_failures["x.ini"].extend([service_unavailable("GetObject"), ConnectionResetError()])

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir)

        assert report.all_succeeded
        assert report.outcomes[0].attempts == 3
        assert (temp_dir / "x.ini").read_bytes() == b"ok"

    def test_failed_file_does_not_affect_others(self, fake_s3, client, downloader, temp_dir):
        for name in ["a.ini", "b.ini", "c.ini"]:
            fake_s3.add_object("cars", name, name.encode())
        fake_s3.get_failures["b.ini"].extend(
            make_client_error("AccessDenied", 403, "GetObject") for _ in range(4)
        )

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir)

        assert [o.status for o in report.outcomes] == [
            OutcomeStatus.SUCCEEDED,
            OutcomeStatus.FAILED,
            OutcomeStatus.SUCCEEDED,
        ]
        assert report.failed[0].error.file_name == "b.ini"
        assert report.failed[0].error.attempts == 4
        assert (temp_dir / "a.ini").exists()
        assert (temp_dir / "c.ini").exists()
        assert not (temp_dir / "b.ini").exists()

    def test_key_outside_local_base_fails_alone(self, downloader, temp_dir, fake_s3, client):
        fake_s3.add_object("fonts", "good.ttf", b"font")
        entries = [RemoteEntry("escape.ttf", "x/../../escape.ttf", size_bytes=3)] + client.list_objects("fonts")

        report = downloader.download_files(entries, "fonts", temp_dir)

        assert [o.status for o in report.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.SUCCEEDED]
        assert isinstance(report.failed[0].error, DownloadFailedError)
        assert isinstance(report.failed[0].error.last_error, ValueError)
        assert (temp_dir / "good.ttf").read_bytes() == b"font"
        assert not (temp_dir.parent / "escape.ttf").exists()

    def test_slow_sink_does_not_stall_other_files(self, fake_s3, client, downloader, temp_dir):
        for i in range(6):
            fake_s3.add_object("cars", f"f{i}.ini", b"x")
        release = threading.Event()
        entered = threading.Event()

        class BlockingSink:
            def report(self, progress):
                if not entered.is_set():
                    entered.set()
                    release.wait(5)

        entries = client.list_objects("cars")
        worker = threading.Thread(
            target=downloader.download_files,
            args=(entries, "cars", temp_dir),
            kwargs={"progress_sink": BlockingSink()},
        )
        worker.start()
        try:
            assert entered.wait(5)
            deadline = time.monotonic() + 5
            # The thread stuck in the sink holds one file back; the rest must finish
            while time.monotonic() < deadline:
                if sum((temp_dir / f"f{i}.ini").exists() for i in range(6)) >= 5:
                    break
                time.sleep(0.01)
            assert sum((temp_dir / f"f{i}.ini").exists() for i in range(6)) >= 5
        finally:
            release.set()
            worker.join(5)

        assert all((temp_dir / f"f{i}.ini").exists() for i in range(6))

    def test_concurrency_never_exceeds_limit(self, client, temp_dir):
        slow = FakeS3Client(get_delay=0.02)
        for i in range(40):
            slow.add_object("cars", f"f{i:02d}.ini", b"x")
        client._client = slow
        downloader = ConcurrentDownloader(client, retry_config=RetryConfig(max_retries=0))

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir)

        assert len(report.succeeded) == 40
        assert 1 < slow.max_active_gets <= 8

    def test_progress_counters_are_monotonic(self, fake_s3, client, downloader, temp_dir):
        for i in range(12):
            fake_s3.add_object("cars", f"f{i:02d}.ini", os.urandom(100))
        sink = RecordingSink()

        downloader.download_files(client.list_objects("cars"), "cars", temp_dir, progress_sink=sink)

        completed = [s.completed_files for s in sink.snapshots]
        assert completed == sorted(completed)
        assert sink.snapshots[-1].completed_files == 12
        assert sink.snapshots[-1].completed_bytes == 1200
        assert sink.snapshots[-1].total_bytes == 1200
        assert sink.snapshots[-1].active_downloads == []
        assert max(len(s.active_downloads) for s in sink.snapshots) <= 8

    def test_decompression_flag_reported(self, fake_s3, client, hash_index, downloader, temp_dir):
        fake_s3.add_object("cars", "skin.dds", zstd(b"dds"))
        hash_index.set_original_hash("cars", "skin.dds", md5(b"dds"))
        sink = RecordingSink()

        downloader.download_files(client.list_objects("cars"), "cars", temp_dir, progress_sink=sink)

        assert any(s.is_decompressing for s in sink.snapshots)

    def test_cancelled_before_start(self, fake_s3, client, downloader, temp_dir):
        fake_s3.add_object("cars", "a.ini", b"1")
        cancel = threading.Event()
        cancel.set()

        report = downloader.download_files(client.list_objects("cars"), "cars", temp_dir, cancel_event=cancel)

        assert report.outcomes[0].status == OutcomeStatus.CANCELLED
        assert fake_s3.calls["get_object"] == 0

    def test_empty_batch(self, downloader, temp_dir):
        report = downloader.download_files([], "cars", temp_dir)
        assert report.outcomes == []
        assert report.all_succeeded

    def test_invalid_worker_count(self, client):
        with pytest.raises(ValueError):
            ConcurrentDownloader(client, max_workers=0)
