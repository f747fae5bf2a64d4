"""
Snapshot store abstraction for the etcd backup agent.

This module provides a pluggable object-storage interface supporting:
- Azure Blob Storage (block blobs)
- S3-compatible storage (multipart uploads)
- In-memory (for testing)

Backends are created through create_snapstore(); the ABS and S3 bindings
are imported lazily so their SDKs load only when selected.

Invariants:
    - save() is all-or-nothing per snapshot object
    - list() is sorted and skips malformed names
    - fetch() and delete() report missing objects as ObjectNotFoundError

How to change safely:
    - New backends must implement the ContainerClient protocol
    - Keep both naming-version tags parseable
"""

from .base import (
    ChunkUploadError,
    ConfigurationError,
    ContainerClient,
    ContainerNotFoundError,
    CredentialsUnavailableError,
    InvalidSnapshotNameError,
    ListPager,
    ObjectClient,
    ObjectNotFoundError,
    SnapshotStream,
    SnapstoreError,
    SnapstoreTimeoutError,
)
from .chunked import Chunk, ChunkedUploader, ChunkUploadResult, block_id, chunk_count
from .credentials import (
    AbsCredentials,
    construct_abs_uri,
    get_abs_credentials_last_modified,
    resolve_abs_credentials,
)
from .memory import InMemoryContainerClient, MemorySnapshotStream
from .naming import (
    NAMING_VERSION_CURRENT,
    NAMING_VERSION_LEGACY,
    SnapList,
    Snapshot,
    SnapshotKind,
    compare_snapshots,
    parse_snapshot,
    snapshot_path,
)
from .store import ChunkedSnapStore, create_snapstore

__all__ = [
    # Protocols and types
    "ContainerClient",
    "ObjectClient",
    "ListPager",
    "SnapshotStream",
    "Snapshot",
    "SnapshotKind",
    "SnapList",
    "Chunk",
    "ChunkUploadResult",
    "AbsCredentials",
    # Errors
    "SnapstoreError",
    "ConfigurationError",
    "CredentialsUnavailableError",
    "ContainerNotFoundError",
    "InvalidSnapshotNameError",
    "ObjectNotFoundError",
    "ChunkUploadError",
    "SnapstoreTimeoutError",
    # Naming
    "NAMING_VERSION_CURRENT",
    "NAMING_VERSION_LEGACY",
    "snapshot_path",
    "parse_snapshot",
    "compare_snapshots",
    # Upload engine
    "ChunkedUploader",
    "block_id",
    "chunk_count",
    # Credentials
    "resolve_abs_credentials",
    "get_abs_credentials_last_modified",
    "construct_abs_uri",
    # Store
    "ChunkedSnapStore",
    "create_snapstore",
    # Implementations
    "InMemoryContainerClient",
    "MemorySnapshotStream",
]
