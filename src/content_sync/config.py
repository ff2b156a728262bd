"""
Configuration system for the content sync engine.

Provides:
- Object store connection settings
- Bucket to local folder bindings
- YAML configuration files with environment variable substitution
- A builder that wires the client, hash index and orchestrator together
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .compression import CompressionCodec
from .downloader import ConcurrentDownloader
from .exceptions import ConfigurationError
from .hash_index import ContentHashIndex
from .object_store import ObjectStoreClient
from .retry import RetryConfig, UploadRetryConfig
from .sync_manager import SyncOrchestrator

logger = logging.getLogger(__name__)

CARS_BUCKET = "ejra-cars"
TRACKS_BUCKET = "ejra-tracks"
FONTS_BUCKET = "ejra-fonts"
APPS_BUCKET = "ejra-apps"
CARS_MANIFEST = "cars.yaml"
TRACKS_MANIFEST = "tracks.yaml"

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass
class StoreConfig:
    """Connection settings for the S3-compatible object store."""
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (secrets omitted)."""
        return {
            "endpoint_url": self.endpoint_url,
            "region": self.region,
            "has_credentials": bool(self.access_key_id and self.secret_access_key),
        }


@dataclass
class BucketBinding:
    """Maps a remote bucket onto a local folder, optionally filtered by a manifest."""
    bucket: str
    local_path: Path
    manifest_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket": self.bucket,
            "local_path": str(self.local_path),
            "manifest_key": self.manifest_key,
        }


@dataclass
class SyncConfig:
    """Configuration for a sync pass."""
    store: StoreConfig
    buckets: List[BucketBinding] = field(default_factory=list)
    max_concurrent_downloads: int = 8
    download_retries: int = 3
    download_retry_base_delay: float = 1.0
    upload_retry: UploadRetryConfig = field(default_factory=UploadRetryConfig)

    def __post_init__(self):
        if self.max_concurrent_downloads < 1:
            raise ConfigurationError("max_concurrent_downloads must be >= 1")
        if self.download_retries < 0:
            raise ConfigurationError("download_retries must be >= 0")
        seen = set()
        for binding in self.buckets:
            if binding.bucket in seen:
                raise ConfigurationError(f"Bucket {binding.bucket} is bound more than once")
            seen.add(binding.bucket)

    def binding_for(self, bucket: str) -> BucketBinding:
        for binding in self.buckets:
            if binding.bucket == bucket:
                return binding
        raise ConfigurationError(f"No binding configured for bucket {bucket}")

    @property
    def manifest_keys(self) -> Dict[str, str]:
        return {b.bucket: b.manifest_key for b in self.buckets if b.manifest_key}

    @classmethod
    def for_content_root(cls, root: Union[str, Path], store: Optional[StoreConfig] = None, **kwargs) -> "SyncConfig":
        """
        Standard bindings for a game installation rooted at ``root``.

        Cars and tracks are filtered by their manifests; fonts and apps are
        mirrored in full.
        """
        root = Path(root)
        buckets = [
            BucketBinding(CARS_BUCKET, root / "content" / "cars", CARS_MANIFEST),
            BucketBinding(TRACKS_BUCKET, root / "content" / "tracks", TRACKS_MANIFEST),
            BucketBinding(FONTS_BUCKET, root / "content" / "fonts"),
            BucketBinding(APPS_BUCKET, root / "apps"),
        ]
        return cls(store=store or StoreConfig(), buckets=buckets, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "store": self.store.to_dict(),
            "buckets": [b.to_dict() for b in self.buckets],
            "max_concurrent_downloads": self.max_concurrent_downloads,
            "download_retries": self.download_retries,
            "download_retry_base_delay": self.download_retry_base_delay,
            "upload_retry": {
                "initial_delay": self.upload_retry.initial_delay,
                "max_attempts": self.upload_retry.max_attempts,
            },
        }


class ConfigManager:
    """Manages configuration loading and storage."""

    @staticmethod
    def load_yaml(config_path: Path) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Raises:
            ConfigurationError: If the file is missing, unreadable or not a mapping
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        logger.info(f"Loaded configuration from {config_path}")
        return config

    @staticmethod
    def save_yaml(config: Dict[str, Any], config_path: Path) -> None:
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False)

        logger.info(f"Saved configuration to {config_path}")

    @staticmethod
    def create_store_config(config_dict: Dict[str, Any]) -> StoreConfig:
        config_dict = ConfigManager._substitute_env_vars(config_dict or {})
        return StoreConfig(
            endpoint_url=config_dict.get("endpoint_url") or None,
            access_key_id=config_dict.get("access_key_id") or None,
            secret_access_key=config_dict.get("secret_access_key") or None,
            region=config_dict.get("region") or None,
        )

    @staticmethod
    def create_sync_config(config_dict: Dict[str, Any]) -> SyncConfig:
        """
        Create SyncConfig from dictionary.

        Either ``content_root`` (standard bindings) or an explicit ``buckets``
        list must be given.

        Raises:
            ConfigurationError: If required fields are missing or invalid
        """
        config_dict = ConfigManager._substitute_env_vars(config_dict)
        store = ConfigManager.create_store_config(config_dict.get("store", {}))

        try:
            tunables = {
                "max_concurrent_downloads": int(config_dict.get("max_concurrent_downloads", 8)),
                "download_retries": int(config_dict.get("download_retries", 3)),
                "download_retry_base_delay": float(config_dict.get("download_retry_base_delay", 1.0)),
            }
            retry_dict = config_dict.get("upload_retry") or {}
            tunables["upload_retry"] = UploadRetryConfig(
                initial_delay=float(retry_dict.get("initial_delay", 30.0)),
                max_attempts=int(retry_dict.get("max_attempts", 5)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        if config_dict.get("buckets"):
            buckets = []
            for item in config_dict["buckets"]:
                if not item.get("bucket") or not item.get("local_path"):
                    raise ConfigurationError("Each bucket binding needs 'bucket' and 'local_path'")
                buckets.append(BucketBinding(
                    bucket=item["bucket"],
                    local_path=Path(item["local_path"]),
                    manifest_key=item.get("manifest_key") or None,
                ))
            return SyncConfig(store=store, buckets=buckets, **tunables)

        if config_dict.get("content_root"):
            return SyncConfig.for_content_root(config_dict["content_root"], store=store, **tunables)

        raise ConfigurationError("Either 'content_root' or 'buckets' is required")

    @staticmethod
    def _substitute_env_vars(config: Any) -> Any:
        """
        Recursively substitute environment variables in config.

        Format: ${VAR_NAME} or ${VAR_NAME:default_value}
        """
        if isinstance(config, dict):
            return {k: ConfigManager._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [ConfigManager._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            def replacer(match):
                var_spec = match.group(1)
                if ":" in var_spec:
                    var_name, default = var_spec.split(":", 1)
                    return os.getenv(var_name.strip(), default.strip())
                return os.getenv(var_spec, match.group(0))

            return _ENV_PATTERN.sub(replacer, config)
        else:
            return config


class SyncEngineBuilder:
    """Builder for fully wired sync orchestrators."""

    @staticmethod
    def from_config_file(config_path: Path, s3_client=None):
        config_dict = ConfigManager.load_yaml(config_path)
        return SyncEngineBuilder.from_config_dict(config_dict, s3_client=s3_client)

    @staticmethod
    def from_config_dict(config_dict: Dict[str, Any], s3_client=None):
        return SyncEngineBuilder.build(ConfigManager.create_sync_config(config_dict), s3_client=s3_client)

    @staticmethod
    def build(config: SyncConfig, s3_client=None):
        """
        Wire the engine components for a configuration.

        The client and the hash index depend on each other; the index is
        attached to the client once both exist.

        Args:
            config: Sync configuration
            s3_client: Pre-built boto3 client (mainly for tests)

        Returns:
            Configured SyncOrchestrator
        """
        client = ObjectStoreClient(
            endpoint_url=config.store.endpoint_url,
            access_key_id=config.store.access_key_id,
            secret_access_key=config.store.secret_access_key,
            region=config.store.region,
            s3_client=s3_client,
            retry_config=config.upload_retry,
        )
        hash_index = ContentHashIndex(client)
        client.attach_hash_index(hash_index, hash_index)

        downloader = ConcurrentDownloader(
            client,
            codec=CompressionCodec(),
            max_workers=config.max_concurrent_downloads,
            retry_config=RetryConfig(
                max_retries=config.download_retries,
                base_delay=config.download_retry_base_delay,
            ),
        )

        logger.info(
            f"Created sync engine for {len(config.buckets)} buckets at "
            f"{config.store.endpoint_url or 'default endpoint'}"
        )
        return SyncOrchestrator(config, client, hash_index, downloader)

    @staticmethod
    def from_env(env_file: Optional[Path] = None, s3_client=None):
        """
        Create an orchestrator from environment variables.

        A ``.env`` file is loaded first when present. Expected variables:
        - CONTENT_SYNC_ENDPOINT_URL: object store endpoint
        - CONTENT_SYNC_ACCESS_KEY_ID / CONTENT_SYNC_SECRET_ACCESS_KEY: credentials
        - CONTENT_SYNC_REGION: region, if the store needs one
        - CONTENT_SYNC_ROOT: installation root holding content/ and apps/
        - CONTENT_SYNC_MAX_WORKERS: concurrent downloads (default 8)
        """
        load_dotenv(env_file)

        root = os.getenv("CONTENT_SYNC_ROOT")
        if not root:
            raise ConfigurationError("CONTENT_SYNC_ROOT environment variable is required")

        config_dict = {
            "store": {
                "endpoint_url": os.getenv("CONTENT_SYNC_ENDPOINT_URL"),
                "access_key_id": os.getenv("CONTENT_SYNC_ACCESS_KEY_ID"),
                "secret_access_key": os.getenv("CONTENT_SYNC_SECRET_ACCESS_KEY"),
                "region": os.getenv("CONTENT_SYNC_REGION"),
            },
            "content_root": root,
            "max_concurrent_downloads": os.getenv("CONTENT_SYNC_MAX_WORKERS", "8"),
        }
        return SyncEngineBuilder.from_config_dict(config_dict, s3_client=s3_client)
