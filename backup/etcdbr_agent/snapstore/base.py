"""
Base protocols and errors for the snapshot store abstraction.

This module defines the capability protocols that every object-storage
backend must implement, the byte stream protocol exchanged with callers,
and the error taxonomy shared by the whole snapstore package.

A backend exposes two separable capabilities:
    - ContainerClient: paginated listing under a prefix, plus a factory
      for object-scoped clients
    - ObjectClient: download, delete, stage a chunk, commit a chunk list

Invariants:
    - commit() is the only publish point; staged chunks are invisible
      until committed, and a partial chunk set never becomes the object
    - commit() assembles chunks in the exact order of the identifier list
    - Staging the same chunk identifier twice overwrites the first bytes
    - ListPager fetches exactly one page per next_page() call

How to change safely:
    - Protocol changes require updating every backend (abs, s3, memory)
    - Add new operations as optional with default implementations
    - Keep SDK exception types out of this module; translate them in the
      backend bindings
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .chunked import Chunk


class SnapstoreError(Exception):
    """Base exception for snapshot store operations."""
    pass


class ConfigurationError(SnapstoreError, ValueError):
    """Missing or malformed configuration (env var, boolean flag, limits)."""
    pass


class CredentialsUnavailableError(SnapstoreError):
    """No credential source resolved, or the resolved source is unusable."""
    pass


class ContainerNotFoundError(SnapstoreError):
    """The configured container/bucket does not exist."""

    def __init__(self, container: str) -> None:
        super().__init__(f"container {container} does not exist")
        self.container = container


class InvalidSnapshotNameError(SnapstoreError):
    """An object path does not follow the snapshot naming scheme."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"invalid snapshot name {name!r}: {reason}")
        self.name = name
        self.reason = reason


class ObjectNotFoundError(SnapstoreError):
    """The addressed object does not exist in the container."""

    def __init__(self, name: str) -> None:
        super().__init__(f"object {name} not found")
        self.name = name


class SnapstoreTimeoutError(SnapstoreError):
    """A backend operation exceeded its deadline."""
    pass


class ChunkUploadError(SnapstoreError):
    """A chunk failed to stage on its final attempt.

    Attributes:
        chunk: The chunk that failed (index, offset, attempt)
        cause: The underlying error from the backend
    """

    def __init__(self, chunk: "Chunk", cause: BaseException) -> None:
        super().__init__(
            f"failed uploading chunk, id: {chunk.index}, offset: {chunk.offset}, "
            f"attempt: {chunk.attempt}, error: {cause}"
        )
        self.chunk = chunk
        self.cause = cause


@runtime_checkable
class SnapshotStream(Protocol):
    """Asynchronous byte stream handed to Save and returned by Fetch.

    The owner of a stream must close it. Save closes the stream it is
    given; the caller of Fetch closes the stream it receives.
    """

    async def read(self, size: int = -1) -> bytes:
        """Read up to size bytes; an empty result means end of stream."""
        ...

    async def close(self) -> None:
        """Release the underlying resources."""
        ...


@runtime_checkable
class ListPager(Protocol):
    """Lazy, sequential pager over object names under a prefix.

    Each next_page() performs one round trip. Pages are never prefetched,
    since every page depends on the continuation token of the previous one.
    """

    def more(self) -> bool:
        """Whether another page can be fetched."""
        ...

    async def next_page(self) -> list[str]:
        """Fetch the next page of object names.

        Raises:
            SnapstoreError: If the listing call fails
        """
        ...


@runtime_checkable
class ObjectClient(Protocol):
    """Object-scoped client for a single named object."""

    @property
    def name(self) -> str:
        """Full object name within the container."""
        ...

    @abstractmethod
    async def download_stream(self) -> SnapshotStream:
        """Open a download stream for the object.

        Raises:
            ObjectNotFoundError: If the object does not exist
            SnapstoreError: For other download failures
        """
        ...

    @abstractmethod
    async def delete(self) -> None:
        """Delete the object.

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        ...

    @abstractmethod
    async def stage_chunk(
        self,
        chunk_id: str,
        data: bytes,
        content_md5: bytes | None = None,
    ) -> None:
        """Upload one chunk to the backend's staging area.

        Args:
            chunk_id: Fixed-width, order-preserving chunk identifier
            data: Chunk bytes
            content_md5: Optional MD5 digest the backend should verify
        """
        ...

    @abstractmethod
    async def commit(self, chunk_ids: list[str]) -> None:
        """Assemble previously staged chunks, in list order, into the object.

        An empty list publishes an empty object.
        """
        ...


@runtime_checkable
class ContainerClient(Protocol):
    """Container-level capability of a backend."""

    @abstractmethod
    def new_list_pager(self, prefix: str) -> ListPager:
        """Create a pager over object names starting with prefix."""
        ...

    @abstractmethod
    def new_object_client(self, name: str) -> ObjectClient:
        """Return an object-scoped client for name."""
        ...

    @abstractmethod
    async def check_exists(self) -> None:
        """Verify that the container exists.

        Raises:
            ContainerNotFoundError: If it does not
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release client resources."""
        ...

