"""
Snapshot store facade over a backend ContainerClient.

ChunkedSnapStore composes the naming scheme, the chunked uploader and a
backend into the four snapshot operations:

    save(snap, stream)  stage locally -> chunked upload -> commit
    fetch(snap)         open a download stream for snap.path
    list()              page through the parent prefix, parse, sort
    delete(snap)        delete snap.path

Invariants:
    - save() closes the caller's stream on every path
    - save() removes its temporary file on every path
    - save() is all-or-nothing: nothing is committed if any chunk failed
    - list() skips, and logs, names that do not parse
    - list() returns snapshots sorted by compare_snapshots()
    - delete() of a missing object raises ObjectNotFoundError

How to change safely:
    - Backends must not be referenced here except through ContainerClient
    - Keep every network call bounded by a timeout
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import os
import tempfile
from typing import TYPE_CHECKING, Any, Awaitable

from .base import (
    ConfigurationError,
    ContainerClient,
    InvalidSnapshotNameError,
    SnapshotStream,
    SnapstoreError,
    SnapstoreTimeoutError,
)
from .chunked import DEFAULT_CHUNK_UPLOAD_TIMEOUT, DEFAULT_MAX_CHUNK_ATTEMPTS, ChunkedUploader
from .naming import (
    NAMING_VERSION_CURRENT,
    SnapList,
    Snapshot,
    adapt_prefix,
    has_naming_version,
    listing_prefix,
    parse_snapshot,
    snapshot_path,
)

if TYPE_CHECKING:
    from ..config import SnapstoreConfig

logger = logging.getLogger(__name__)

TMP_BACKUP_FILE_PREFIX = "backup-"
COPY_BUFFER_SIZE = 1024 * 1024
DEFAULT_MIN_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_DOWNLOAD_TIMEOUT = 300.0
DEFAULT_PROVIDER_CONNECTION_TIMEOUT = 30.0


class ChunkedSnapStore:
    """Snapshot store backed by any ContainerClient.

    Attributes:
        container: Backend container client
        prefix: Store prefix, ending in the current naming-version tag
        temp_dir: Directory for the local staged copy (None = system default)
        max_parallel_chunk_uploads: Worker tasks per save()
        min_chunk_size: Chunk size used for uploads

    Example:
        >>> store = ChunkedSnapStore(InMemoryContainerClient(), "etcd-main/v2")
        >>> await store.save(snap, MemorySnapshotStream(data))
        >>> snaps = await store.list()
    """

    def __init__(
        self,
        container: ContainerClient,
        prefix: str,
        temp_dir: str | None = None,
        max_parallel_chunk_uploads: int = 5,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
        max_chunk_attempts: int = DEFAULT_MAX_CHUNK_ATTEMPTS,
        retry_base_delay: float = 1.0,
        chunk_upload_timeout: float = DEFAULT_CHUNK_UPLOAD_TIMEOUT,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        verify_chunk_md5: bool = True,
    ) -> None:
        self.container = container
        self.prefix = prefix
        self.temp_dir = temp_dir
        self.max_parallel_chunk_uploads = max_parallel_chunk_uploads
        self.min_chunk_size = min_chunk_size
        self.max_chunk_attempts = max_chunk_attempts
        self.retry_base_delay = retry_base_delay
        self.chunk_upload_timeout = chunk_upload_timeout
        self.download_timeout = download_timeout
        self.verify_chunk_md5 = verify_chunk_md5

    @classmethod
    def from_config(cls, container: ContainerClient, config: SnapstoreConfig) -> ChunkedSnapStore:
        """Create a store whose prefix is the configured prefix plus the current tag."""
        return cls(
            container,
            prefix=snapshot_path(config.prefix, "", NAMING_VERSION_CURRENT),
            temp_dir=config.temp_dir,
            max_parallel_chunk_uploads=config.max_parallel_chunk_uploads,
            min_chunk_size=config.min_chunk_size,
            max_chunk_attempts=config.max_chunk_attempts,
            retry_base_delay=config.retry_base_delay,
            chunk_upload_timeout=config.chunk_upload_timeout,
            download_timeout=config.download_timeout,
            verify_chunk_md5=config.verify_chunk_md5,
        )

    async def __aenter__(self) -> ChunkedSnapStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the backend container client."""
        await self.container.close()

    async def fetch(self, snap: Snapshot) -> SnapshotStream:
        """Open a download stream for a snapshot.

        The caller owns the returned stream and must close it.

        Raises:
            ObjectNotFoundError: If the snapshot object does not exist
            SnapstoreTimeoutError: If opening the stream timed out
            SnapstoreError: For other download failures
        """
        name = snap.path
        client = self.container.new_object_client(name)
        return await self._call("download", name, client.download_stream(), self.download_timeout)

    async def list(self) -> SnapList:
        """List every snapshot under the store's parent prefix, sorted.

        Objects written under the legacy naming-version tag are included.
        Only whole prefix segments match, so a sibling namespace such as
        "etcd-main-2" is never listed as part of "etcd-main".

        Raises:
            SnapstoreError: If a listing page could not be fetched
        """
        prefix = listing_prefix(self.prefix)
        if prefix:
            prefix += "/"
        pager = self.container.new_list_pager(prefix)

        snap_list = SnapList()
        seen: set[str] = set()
        pages = 0
        while pager.more():
            names = await self._call("list", prefix, pager.next_page(), self.download_timeout)
            pages += 1
            for name in names:
                if name in seen or not has_naming_version(name):
                    continue
                seen.add(name)
                try:
                    snap_list.append(parse_snapshot(name))
                except InvalidSnapshotNameError as e:
                    logger.warning(
                        "Invalid snapshot found, ignoring it",
                        extra={"object": name, "reason": e.reason},
                    )

        logger.debug(
            "Listed snapshots",
            extra={"prefix": prefix, "pages": pages, "snapshots": len(snap_list)},
        )
        return snap_list.sort_snapshots()

    async def save(self, snap: Snapshot, stream: SnapshotStream) -> None:
        """Store a snapshot read from stream.

        The stream is copied to a temporary file, uploaded in parallel
        chunks and committed only if every chunk succeeded. The stream is
        closed and the temporary file removed on every path.

        Raises:
            ChunkUploadError: If a chunk could not be uploaded
            SnapstoreTimeoutError: If the commit timed out
            SnapstoreError: If staging locally or committing failed
        """
        loop = asyncio.get_event_loop()
        try:
            fd, tmp_path = await loop.run_in_executor(
                None,
                functools.partial(tempfile.mkstemp, prefix=TMP_BACKUP_FILE_PREFIX, dir=self.temp_dir),
            )
        except OSError as e:
            await stream.close()
            raise SnapstoreError(f"failed to create snapshot tempfile: {e}") from e

        try:
            try:
                size = await self._stage_locally(stream, fd)
            finally:
                await stream.close()

            object_name = snapshot_path(adapt_prefix(snap, self.prefix), snap.snap_dir, snap.snap_name)
            uploader = ChunkedUploader(
                self.container.new_object_client(object_name),
                tmp_path,
                size,
                self.min_chunk_size,
                self.max_parallel_chunk_uploads,
                max_attempts=self.max_chunk_attempts,
                retry_base_delay=self.retry_base_delay,
                chunk_upload_timeout=self.chunk_upload_timeout,
                verify_md5=self.verify_chunk_md5,
            )
            try:
                await uploader.upload()
            except SnapstoreError:
                raise
            except Exception as e:
                raise SnapstoreError(f"failed uploading snapshot {object_name}: {e}") from e

            logger.info("Snapshot saved", extra={"object": object_name, "size": size})
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp_path)

    async def delete(self, snap: Snapshot) -> None:
        """Delete a snapshot object.

        Raises:
            ObjectNotFoundError: If the snapshot object does not exist
            SnapstoreError: For other delete failures
        """
        name = snap.path
        client = self.container.new_object_client(name)
        await self._call("delete", name, client.delete(), self.download_timeout)
        logger.info("Snapshot deleted", extra={"object": name})

    async def _stage_locally(self, stream: SnapshotStream, fd: int) -> int:
        loop = asyncio.get_event_loop()
        size = 0
        with os.fdopen(fd, "wb") as f:
            while True:
                try:
                    data = await stream.read(COPY_BUFFER_SIZE)
                except Exception as e:
                    raise SnapstoreError(f"failed to save snapshot to tmpfile: {e}") from e
                if not data:
                    break
                await loop.run_in_executor(None, f.write, data)
                size += len(data)
        return size

    async def _call(self, operation: str, name: str, call: Awaitable, timeout: float) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SnapstoreTimeoutError(f"{operation} of {name} timed out after {timeout}s") from e
        except SnapstoreError:
            raise
        except Exception as e:
            raise SnapstoreError(f"failed to {operation} {name}: {e}") from e


async def create_snapstore(config: SnapstoreConfig) -> ChunkedSnapStore:
    """Factory function to create a snapshot store from configuration.

    Builds the backend container client for the configured provider,
    verifies the container exists and wraps it in a ChunkedSnapStore.

    Args:
        config: Snapstore configuration

    Returns:
        A ready ChunkedSnapStore

    Raises:
        ConfigurationError: If the provider or its settings are invalid
        CredentialsUnavailableError: If ABS credentials cannot be resolved
        ContainerNotFoundError: If the container does not exist
    """
    from ..config import StorageProvider

    config.validate()

    if config.provider == StorageProvider.ABS:
        from .abs import new_abs_container_client

        container: ContainerClient = new_abs_container_client(config)
    elif config.provider == StorageProvider.S3:
        from .s3 import new_s3_container_client

        container = await new_s3_container_client(config)
    elif config.provider == StorageProvider.MEMORY:
        from .memory import InMemoryContainerClient

        container = InMemoryContainerClient(container=config.container)
    else:
        raise ConfigurationError(f"Unsupported snapstore provider: {config.provider}")

    try:
        await asyncio.wait_for(container.check_exists(), timeout=config.provider_connection_timeout)
    except asyncio.TimeoutError as e:
        await container.close()
        raise SnapstoreTimeoutError(
            f"checking container {config.container} timed out "
            f"after {config.provider_connection_timeout}s"
        ) from e
    except BaseException:
        await container.close()
        raise

    logger.info(
        "Snapstore ready",
        extra={"provider": config.provider.value, "container": config.container},
    )
    return ChunkedSnapStore.from_config(container, config)
