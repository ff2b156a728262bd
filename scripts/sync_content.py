#!/usr/bin/env python3
"""
CLI utility for content synchronization.

Usage:
    python scripts/sync_content.py sync
    python scripts/sync_content.py --config config/content_sync.yaml sync --force
    python scripts/sync_content.py rebuild-index ejra-cars
    python scripts/sync_content.py publish ejra-tracks --dry-run
    python scripts/sync_content.py status

Without --config, settings come from CONTENT_SYNC_* environment variables
(a .env file is honored).
"""

import argparse
import sys
from pathlib import Path

from src.content_sync.config import SyncEngineBuilder
from src.content_sync.local_files import format_file_size
from src.content_sync.progress import LoggingProgressSink
from src.content_sync.publisher import ContentPublisher
from src.content_sync.utils.logging import configure_logging, get_logger, mask_secret

logger = get_logger("src.content_sync.cli")


def build_engine(args):
    if args.config:
        return SyncEngineBuilder.from_config_file(args.config)
    return SyncEngineBuilder.from_env()


def sync_command(args) -> int:
    """Execute sync command."""
    engine = build_engine(args)
    engine.progress_sink = LoggingProgressSink()

    try:
        report = engine.sync_all(force=args.force)
    finally:
        engine.client.close()

    print("\nSync Results:")
    for result in report.results:
        print(f"  {result.bucket}: {result.status.value} - {result.message}")
        for key in result.failed_files:
            print(f"    failed: {key}")
    print(f"\nDownloaded {report.files_downloaded} files")

    return 0 if report.ok else 1


def rebuild_index_command(args) -> int:
    """Execute rebuild-index command."""
    engine = build_engine(args)
    try:
        recovered = engine.rebuild_index(args.bucket)
    finally:
        engine.client.close()

    print(f"\nRebuilt hash index for {args.bucket}: {recovered} compressed objects")
    return 0


def publish_command(args) -> int:
    """Execute publish command."""
    engine = build_engine(args)
    binding = engine.config.binding_for(args.bucket)
    publisher = ContentPublisher(engine.client, engine.hash_index)

    try:
        changes = publisher.plan_uploads(args.bucket, binding.local_path)
        print(f"\n{len(changes)} pending changes for {args.bucket}:")
        for change in changes:
            print(f"  {change.description} ({format_file_size(change.size_bytes)})")

        if args.dry_run or not changes:
            return 0

        outcomes = publisher.apply_changes(changes)
    finally:
        engine.client.close()

    failed = [o for o in outcomes if not o.succeeded]
    print(f"\nApplied {len(outcomes) - len(failed)} changes, {len(failed)} failed")
    return 1 if failed else 0


def status_command(args) -> int:
    """Execute status command."""
    engine = build_engine(args)
    config = engine.config

    print("\nContent Sync Status:")
    print(f"  Endpoint: {config.store.endpoint_url or 'default'}")
    print(f"  Access key: {mask_secret(config.store.access_key_id)}")
    print(f"  Max concurrent downloads: {config.max_concurrent_downloads}")
    print(f"  Pending upload retries: {engine.client.get_retry_queue_depth()}")

    try:
        for binding in config.buckets:
            engine.hash_index.initialize_bucket(binding.bucket)
            print(f"\n  {binding.bucket}")
            print(f"    Local path: {binding.local_path}")
            print(f"    Manifest: {binding.manifest_key or '-'}")
            print(f"    Indexed hashes: {engine.hash_index.entry_count(binding.bucket)}")
            if args.check:
                stale = engine.get_files_to_download(binding.bucket, binding.local_path, binding.manifest_key)
                print(f"    Files to download: {len(stale)}")
    finally:
        engine.client.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Content synchronization utility"
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: environment variables)",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Write logs to a rotating file as well",
    )

    subparsers = parser.add_subparsers(dest="command", help="Sync command")

    sync = subparsers.add_parser("sync", help="Download new and changed content for every bucket")
    sync.add_argument("--force", action="store_true", help="Download every file regardless of local state")
    sync.set_defaults(func=sync_command)

    rebuild = subparsers.add_parser("rebuild-index", help="Rebuild a bucket's hash index from object metadata")
    rebuild.add_argument("bucket", help="Bucket name")
    rebuild.set_defaults(func=rebuild_index_command)

    publish = subparsers.add_parser("publish", help="Upload local changes to a bucket")
    publish.add_argument("bucket", help="Bucket name")
    publish.add_argument("--dry-run", action="store_true", help="Only list the planned changes")
    publish.set_defaults(func=publish_command)

    status = subparsers.add_parser("status", help="Show configuration and index status")
    status.add_argument("--check", action="store_true", help="Also count files that need downloading")
    status.set_defaults(func=status_command)

    args = parser.parse_args()

    configure_logging(debug=args.verbose, log_file=args.log_file)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
