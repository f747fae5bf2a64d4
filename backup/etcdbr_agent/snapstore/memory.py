"""
In-memory snapstore backend for testing.

This module provides an in-memory ContainerClient for:
- Unit tests
- Integration tests of the snapshot store facade
- Local development without cloud credentials

Objects are a mapping from name to bytes. Every object client has its
own staging area keyed by chunk identifier; commit() assembles the object
strictly in the order of the identifier list it receives.

Invariants:
    - All data is lost on process exit
    - Staged chunks are invisible until commit()
    - Object clients are cached per name for the container's lifetime
    - Same error semantics as the production backends (ObjectNotFoundError
      on missing objects, ContainerNotFoundError on a missing container)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ContainerClient protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import threading

from .base import ContainerNotFoundError, ObjectNotFoundError, SnapstoreError
from .chunked import part_number_from_block_id

logger = logging.getLogger(__name__)


class MemorySnapshotStream:
    """SnapshotStream over an in-memory buffer."""

    def __init__(self, data: bytes = b"") -> None:
        self._buffer = io.BytesIO(data)
        self.closed = False

    async def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed stream")
        return self._buffer.read(size)

    async def close(self) -> None:
        self.closed = True


class InMemoryListPager:
    """Pager over a fixed listing, page_size names per page."""

    def __init__(self, container: InMemoryContainerClient, names: list[str], page_size: int) -> None:
        self._container = container
        self._names = names
        self._page_size = page_size
        self._index = 0

    def more(self) -> bool:
        return self._index < len(self._names)

    async def next_page(self) -> list[str]:
        self._container.list_page_calls += 1
        if self._container.list_failure is not None:
            raise self._container.list_failure
        page = self._names[self._index : self._index + self._page_size]
        self._index += self._page_size
        return page


class InMemoryObjectClient:
    """Object-scoped client of InMemoryContainerClient."""

    def __init__(self, name: str, container: InMemoryContainerClient) -> None:
        self._name = name
        self._container = container
        self._staged: dict[str, bytes] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def staged_chunk_ids(self) -> list[str]:
        return sorted(self._staged)

    async def download_stream(self) -> MemorySnapshotStream:
        data = self._container.objects.get(self._name)
        if data is None:
            raise ObjectNotFoundError(self._name)
        return MemorySnapshotStream(data)

    async def delete(self) -> None:
        if self._name not in self._container.objects:
            raise ObjectNotFoundError(self._name)
        del self._container.objects[self._name]

    async def stage_chunk(
        self,
        chunk_id: str,
        data: bytes,
        content_md5: bytes | None = None,
    ) -> None:
        container = self._container
        part_number = part_number_from_block_id(chunk_id)

        container.stage_calls += 1
        container.in_flight += 1
        container.max_in_flight = max(container.max_in_flight, container.in_flight)
        try:
            if container.stage_delay:
                await asyncio.sleep(container.stage_delay)

            failure = container._take_stage_failure(part_number)
            if failure is not None:
                raise failure

            if content_md5 is not None and hashlib.md5(data).digest() != content_md5:
                raise SnapstoreError(f"content MD5 mismatch for chunk {chunk_id} of {self._name}")

            self._staged[chunk_id] = bytes(data)
        finally:
            container.in_flight -= 1

    async def commit(self, chunk_ids: list[str]) -> None:
        container = self._container
        container.commit_calls.append((self._name, list(chunk_ids)))
        if container.commit_failure is not None:
            raise container.commit_failure

        missing = [c for c in chunk_ids if c not in self._staged]
        if missing:
            raise SnapstoreError(f"chunks {missing} of {self._name} were not staged")

        container.objects[self._name] = b"".join(self._staged[c] for c in chunk_ids)
        self._staged.clear()
        logger.debug(
            "Object committed to in-memory container",
            extra={"object": self._name, "chunks": len(chunk_ids)},
        )


class InMemoryContainerClient:
    """In-memory implementation of ContainerClient.

    Attributes:
        container: Container name used in error messages
        page_size: Names returned per listing page
        objects: Committed objects by name

    Example:
        >>> container = InMemoryContainerClient(page_size=2)
        >>> store = ChunkedSnapStore(container, "etcd-main/v2")
        >>> await store.save(snap, MemorySnapshotStream(b"data"))
        >>> container.objects[snap.path]
        b'data'
    """

    def __init__(self, container: str = "memory", page_size: int = 1, exists: bool = True) -> None:
        self.container = container
        self.page_size = page_size
        self.exists = exists
        self.objects: dict[str, bytes] = {}
        self._clients: dict[str, InMemoryObjectClient] = {}
        self._lock = threading.Lock()

        # Counters and injected failures for tests
        self.list_page_calls = 0
        self.stage_calls = 0
        self.commit_calls: list[tuple[str, list[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.stage_delay = 0.0
        self.list_failure: Exception | None = None
        self.commit_failure: Exception | None = None
        self._stage_failures: dict[int, tuple[Exception, int | None]] = {}

    def new_list_pager(self, prefix: str) -> InMemoryListPager:
        names = sorted(n for n in self.objects if n.startswith(prefix))
        return InMemoryListPager(self, names, self.page_size)

    def new_object_client(self, name: str) -> InMemoryObjectClient:
        with self._lock:
            client = self._clients.get(name)
            if client is None:
                client = InMemoryObjectClient(name, self)
                self._clients[name] = client
            return client

    async def check_exists(self) -> None:
        if not self.exists:
            raise ContainerNotFoundError(self.container)

    async def close(self) -> None:
        logger.debug("InMemoryContainerClient closed")

    # Testing helpers

    def put_object(self, name: str, data: bytes = b"") -> None:
        """Store an object directly, bypassing staging."""
        self.objects[name] = data

    def inject_stage_failure(
        self,
        part_number: int,
        error: Exception | None = None,
        times: int | None = None,
    ) -> None:
        """Make staging of a part fail.

        Args:
            part_number: 1-based part number to fail
            error: Exception to raise (a SnapstoreError by default)
            times: Number of failures before succeeding (None = always)
        """
        self._stage_failures[part_number] = (
            error or SnapstoreError(f"injected failure for part {part_number}"),
            times,
        )

    def _take_stage_failure(self, part_number: int) -> Exception | None:
        entry = self._stage_failures.get(part_number)
        if entry is None:
            return None
        error, times = entry
        if times is not None:
            if times <= 0:
                return None
            self._stage_failures[part_number] = (error, times - 1)
        return error
