"""
Configuration management for the etcd backup agent's snapshot store.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation. The
environment is read only by the from_env() constructors; everything
downstream receives these dataclasses.

Every variable can be namespaced for dual-direction setups (copying
snapshots from a source store to a destination store): with
is_source=True each name is looked up with a SOURCE_ prefix, e.g.
SOURCE_SNAPSTORE_CONTAINER or SOURCE_AZURE_APPLICATION_CREDENTIALS.

Invariants:
    - All settings have sensible defaults for local development
    - Malformed integers, floats or booleans are ConfigurationError, never
      silently defaulted
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep ConfigurationError a ValueError so callers catching ValueError keep working
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .snapstore.base import ConfigurationError
from .snapstore.credentials import (
    ABS_CREDENTIAL_DIRECTORY,
    ABS_CREDENTIAL_JSON_FILE,
    ABS_EMULATOR_ENABLED,
    ABS_EMULATOR_ENDPOINT,
    parse_bool,
)

logger = logging.getLogger(__name__)

SOURCE_ENV_PREFIX = "SOURCE_"


class StorageProvider(Enum):
    """Supported snapshot store backends."""

    ABS = "abs"
    S3 = "s3"
    MEMORY = "memory"


def get_env_prefix(is_source: bool) -> str:
    """Namespace prefix for source or destination settings."""
    return SOURCE_ENV_PREFIX if is_source else ""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"invalid value for {name}: {raw!r}, expected an integer")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"invalid value for {name}: {raw!r}, expected a number")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return parse_bool(raw, name)


@dataclass(frozen=True)
class AbsConfig:
    """Azure Blob Storage credential and endpoint configuration.

    Attributes:
        credential_json_file: Path of a JSON credential file
        credential_directory: Directory holding a JSON credential file or
            the discrete storageAccount/storageKey files
        emulator_enabled: Raw emulator flag, parsed when the endpoint is built
        emulator_endpoint: Base URL of the Azurite emulator
        env_prefix: Namespace the values were read from (for messages)
    """

    credential_json_file: str | None = None
    credential_directory: str | None = None
    emulator_enabled: str | None = None
    emulator_endpoint: str | None = None
    env_prefix: str = ""

    @classmethod
    def from_env(cls, is_source: bool = False) -> AbsConfig:
        """Load configuration from environment variables."""
        prefix = get_env_prefix(is_source)
        return cls(
            credential_json_file=os.getenv(prefix + ABS_CREDENTIAL_JSON_FILE),
            credential_directory=os.getenv(prefix + ABS_CREDENTIAL_DIRECTORY),
            emulator_enabled=os.getenv(prefix + ABS_EMULATOR_ENABLED),
            emulator_endpoint=os.getenv(prefix + ABS_EMULATOR_ENDPOINT),
            env_prefix=prefix,
        )


@dataclass(frozen=True)
class S3Config:
    """S3 connection configuration. The bucket is SnapstoreConfig.container.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO or LocalStack)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls, is_source: bool = False) -> S3Config:
        """Load configuration from environment variables."""
        prefix = get_env_prefix(is_source)
        return cls(
            region=os.getenv(
                prefix + "S3_REGION", os.getenv(prefix + "AWS_REGION", "us-east-1")
            ),
            endpoint_url=os.getenv(prefix + "S3_ENDPOINT"),
            access_key_id=os.getenv(prefix + "AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv(prefix + "AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class SnapstoreConfig:
    """Snapshot store configuration.

    Attributes:
        provider: Which backend to use
        container: Container (ABS) or bucket (S3) name
        prefix: Base prefix; the current naming-version tag is appended
        temp_dir: Directory for locally staged snapshots (None = system temp)
        max_parallel_chunk_uploads: Worker tasks per upload
        min_chunk_size: Chunk size in bytes
        max_chunk_attempts: Attempts per chunk before the upload fails
        retry_base_delay: Backoff base in seconds (delay doubles per attempt)
        chunk_upload_timeout: Deadline of one stage or commit call (seconds)
        download_timeout: Deadline of one list page, download or delete call
        provider_connection_timeout: Deadline of the container existence check
        verify_chunk_md5: Send per-chunk MD5 digests for backend verification
        is_source: Whether this is the source side of a copy
        abs: ABS settings
        s3: S3 settings
    """

    provider: StorageProvider = StorageProvider.ABS
    container: str = ""
    prefix: str = ""
    temp_dir: str | None = None
    max_parallel_chunk_uploads: int = 5
    min_chunk_size: int = 5 * 1024 * 1024  # 5MB
    max_chunk_attempts: int = 5
    retry_base_delay: float = 1.0
    chunk_upload_timeout: float = 180.0
    download_timeout: float = 300.0
    provider_connection_timeout: float = 30.0
    verify_chunk_md5: bool = True
    is_source: bool = False
    abs: AbsConfig = field(default_factory=AbsConfig)
    s3: S3Config = field(default_factory=S3Config)

    @classmethod
    def from_env(cls, is_source: bool = False) -> SnapstoreConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If a value is malformed or the result is invalid
        """
        prefix = get_env_prefix(is_source)

        provider_str = os.getenv(prefix + "SNAPSTORE_PROVIDER", "abs").lower()
        try:
            provider = StorageProvider(provider_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid {prefix}SNAPSTORE_PROVIDER '{provider_str}'. Must be one of: abs, s3, memory"
            )

        config = cls(
            provider=provider,
            container=os.getenv(prefix + "SNAPSTORE_CONTAINER", ""),
            prefix=os.getenv(prefix + "SNAPSTORE_PREFIX", ""),
            temp_dir=os.getenv(prefix + "SNAPSTORE_TEMP_DIR"),
            max_parallel_chunk_uploads=_env_int(prefix + "SNAPSTORE_MAX_PARALLEL_CHUNK_UPLOADS", 5),
            min_chunk_size=_env_int(prefix + "SNAPSTORE_MIN_CHUNK_SIZE", 5 * 1024 * 1024),
            max_chunk_attempts=_env_int(prefix + "SNAPSTORE_MAX_CHUNK_ATTEMPTS", 5),
            retry_base_delay=_env_float(prefix + "SNAPSTORE_RETRY_BASE_DELAY", 1.0),
            chunk_upload_timeout=_env_float(prefix + "SNAPSTORE_CHUNK_UPLOAD_TIMEOUT", 180.0),
            download_timeout=_env_float(prefix + "SNAPSTORE_DOWNLOAD_TIMEOUT", 300.0),
            provider_connection_timeout=_env_float(prefix + "SNAPSTORE_CONNECTION_TIMEOUT", 30.0),
            verify_chunk_md5=_env_bool(prefix + "SNAPSTORE_VERIFY_CHUNK_MD5", True),
            is_source=is_source,
            abs=AbsConfig.from_env(is_source),
            s3=S3Config.from_env(is_source),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        prefix = get_env_prefix(self.is_source)
        if not self.container:
            raise ConfigurationError(f"{prefix}SNAPSTORE_CONTAINER is required")
        if self.max_parallel_chunk_uploads < 1:
            raise ConfigurationError(
                f"{prefix}SNAPSTORE_MAX_PARALLEL_CHUNK_UPLOADS must be at least 1"
            )
        if self.min_chunk_size < 1:
            raise ConfigurationError(f"{prefix}SNAPSTORE_MIN_CHUNK_SIZE must be positive")
        if self.max_chunk_attempts < 1:
            raise ConfigurationError(f"{prefix}SNAPSTORE_MAX_CHUNK_ATTEMPTS must be at least 1")
        for name in ("chunk_upload_timeout", "download_timeout", "provider_connection_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        if self.temp_dir and not os.path.isdir(self.temp_dir):
            logger.warning(
                f"Snapshot temp directory does not exist: {self.temp_dir}. "
                "Saving snapshots will fail until it is created."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Snapstore configuration loaded",
            extra={
                "provider": self.provider.value,
                "container": self.container,
                "prefix": self.prefix,
                "temp_dir": self.temp_dir,
                "max_parallel_chunk_uploads": self.max_parallel_chunk_uploads,
                "min_chunk_size": self.min_chunk_size,
                "max_chunk_attempts": self.max_chunk_attempts,
                "is_source": self.is_source,
                "abs_credential_source": "json_file"
                if self.abs.credential_json_file
                else "directory"
                if self.abs.credential_directory
                else None,
                "abs_emulator_enabled": self.abs.emulator_enabled,
                "s3_endpoint": self.s3.endpoint_url if self.provider == StorageProvider.S3 else None,
                "s3_static_keys": bool(self.s3.access_key_id),
            },
        )
