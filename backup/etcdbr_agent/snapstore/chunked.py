"""
Parallel chunked upload of a staged snapshot file.

The uploader splits a local file into fixed-size chunks and fans them out
to a bounded pool of worker tasks:

    work queue (N) ──▶ P workers ──stage_chunk()──▶ result queue (N) ──▶ collector

The collector counts successful results. A failed chunk is re-queued
with exponential backoff until it reaches max_attempts; the first chunk
to fail on its last attempt stops the upload. On stop, the shared event
is set so idle workers quit, in-flight stages run to completion, and
their results are drained. Only when all N chunks succeeded is the
ordered chunk list committed.

Invariants:
    - At most P chunks are being staged at any time
    - Exactly one result is produced per stage attempt
    - Commit receives identifiers in ascending part order, never in
      completion order
    - No commit happens after any chunk has exhausted its attempts
    - A zero-byte file stages nothing and commits an empty list
    - No worker task or retry timer outlives upload()

How to change safely:
    - Chunk identifiers must stay fixed-width so lexical order equals
      part order on every backend
    - Queue capacities rely on each chunk having at most one pending
      result or retry at a time
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from dataclasses import dataclass, replace

from .base import ChunkUploadError, ObjectClient, SnapstoreTimeoutError

logger = logging.getLogger(__name__)

CHUNK_ID_WIDTH = 10
DEFAULT_MAX_CHUNK_ATTEMPTS = 5
DEFAULT_CHUNK_UPLOAD_TIMEOUT = 180.0


def block_id(part_number: int) -> str:
    """Encode a 1-based part number as a fixed-width base64 chunk identifier."""
    return base64.b64encode(f"{part_number:0{CHUNK_ID_WIDTH}d}".encode("ascii")).decode("ascii")


def part_number_from_block_id(chunk_id: str) -> int:
    """Decode a chunk identifier produced by block_id().

    Raises:
        ValueError: If chunk_id is not a valid identifier
    """
    try:
        digits = base64.b64decode(chunk_id.encode("ascii"), validate=True).decode("ascii")
    except (ValueError, UnicodeError) as e:
        raise ValueError(f"invalid chunk identifier {chunk_id!r}") from e
    if len(digits) != CHUNK_ID_WIDTH or not digits.isdigit():
        raise ValueError(f"invalid chunk identifier {chunk_id!r}")
    return int(digits)


def chunk_count(size: int, chunk_size: int) -> int:
    """Number of chunks needed for size bytes, ceil(size / chunk_size)."""
    if chunk_size <= 0:
        raise ValueError(f"chunk size must be positive, got {chunk_size}")
    if size <= 0:
        return 0
    return (size + chunk_size - 1) // chunk_size


@dataclass(frozen=True)
class Chunk:
    """A contiguous byte range of the staged file.

    Attributes:
        offset: Byte offset in the file
        size: Number of bytes (the last chunk may be short)
        index: 1-based part number
        attempt: 1-based attempt counter
    """

    offset: int
    size: int
    index: int
    attempt: int = 1

    @property
    def chunk_id(self) -> str:
        return block_id(self.index)


@dataclass(frozen=True)
class ChunkUploadResult:
    """Outcome of one stage attempt."""

    chunk: Chunk
    error: BaseException | None = None


def split_chunks(size: int, chunk_size: int) -> list[Chunk]:
    """Enumerate the chunks of a file by offset."""
    chunks = []
    for index, offset in enumerate(range(0, size, chunk_size), start=1):
        chunks.append(Chunk(offset=offset, size=min(chunk_size, size - offset), index=index))
    return chunks


def _read_range(path: str, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


class ChunkedUploader:
    """Uploads one local file to one object through staged chunks.

    Attributes:
        object_client: Object-scoped client of the target object
        file_path: Path of the local staged copy
        size: Size of the local file in bytes
        chunk_size: Fixed chunk size
        max_parallel: Number of worker tasks (P)

    Example:
        >>> uploader = ChunkedUploader(client, "/tmp/snap", size, 5 * 1024 * 1024, 5)
        >>> await uploader.upload()
    """

    def __init__(
        self,
        object_client: ObjectClient,
        file_path: str,
        size: int,
        chunk_size: int,
        max_parallel: int,
        max_attempts: int = DEFAULT_MAX_CHUNK_ATTEMPTS,
        retry_base_delay: float = 1.0,
        chunk_upload_timeout: float = DEFAULT_CHUNK_UPLOAD_TIMEOUT,
        verify_md5: bool = True,
    ) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        self.object_client = object_client
        self.file_path = file_path
        self.size = size
        self.chunk_size = chunk_size
        self.max_parallel = max_parallel
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.chunk_upload_timeout = chunk_upload_timeout
        self.verify_md5 = verify_md5
        self.num_chunks = chunk_count(size, chunk_size)

    async def upload(self) -> None:
        """Stage every chunk, then commit the ordered chunk list.

        Raises:
            ChunkUploadError: If a chunk failed on its last attempt
            SnapstoreTimeoutError: If the commit timed out
            SnapstoreError: If the commit failed
        """
        logger.info(
            "Uploading snapshot",
            extra={
                "object": self.object_client.name,
                "size": self.size,
                "chunk_size": self.chunk_size,
                "chunks": self.num_chunks,
            },
        )

        failed = await self._stage_all()
        if failed is not None:
            raise ChunkUploadError(failed.chunk, failed.error) from failed.error

        logger.info("All chunks uploaded successfully, committing chunk list")
        chunk_ids = [block_id(i) for i in range(1, self.num_chunks + 1)]
        try:
            await asyncio.wait_for(
                self.object_client.commit(chunk_ids),
                timeout=self.chunk_upload_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SnapstoreTimeoutError(
                f"committing chunk list of {self.object_client.name} timed out "
                f"after {self.chunk_upload_timeout}s"
            ) from e
        logger.info("Chunk list committed", extra={"object": self.object_client.name})

    async def _stage_all(self) -> ChunkUploadResult | None:
        if self.num_chunks == 0:
            return None

        work: asyncio.Queue = asyncio.Queue(maxsize=self.num_chunks)
        results: asyncio.Queue = asyncio.Queue(maxsize=self.num_chunks)
        stop = asyncio.Event()
        retries: list[asyncio.TimerHandle] = []

        for chunk in split_chunks(self.size, self.chunk_size):
            work.put_nowait(chunk)

        workers = [
            asyncio.create_task(self._worker(stop, work, results))
            for _ in range(self.max_parallel)
        ]
        logger.info("Triggered chunk upload for all chunks", extra={"chunks": self.num_chunks})

        try:
            return await self._collect(work, results, stop, retries)
        finally:
            stop.set()
            for handle in retries:
                handle.cancel()
            await asyncio.gather(*workers)
            while not results.empty():
                leftover = results.get_nowait()
                logger.debug(
                    "Drained chunk result after stop",
                    extra={"chunk": leftover.chunk.index, "failed": leftover.error is not None},
                )

    async def _collect(
        self,
        work: asyncio.Queue,
        results: asyncio.Queue,
        stop: asyncio.Event,
        retries: list[asyncio.TimerHandle],
    ) -> ChunkUploadResult | None:
        loop = asyncio.get_event_loop()
        remaining = self.num_chunks

        while remaining > 0:
            result = await results.get()
            chunk = result.chunk
            if result.error is None:
                remaining -= 1
                continue

            if chunk.attempt >= self.max_attempts:
                logger.error(
                    "Chunk upload failed on its last attempt, stopping all workers",
                    extra={
                        "chunk": chunk.index,
                        "offset": chunk.offset,
                        "attempt": chunk.attempt,
                        "error": str(result.error),
                    },
                )
                stop.set()
                return result

            delay = self.retry_base_delay * (2 ** (chunk.attempt - 1))
            logger.warning(
                "Chunk upload failed, retrying",
                extra={
                    "chunk": chunk.index,
                    "offset": chunk.offset,
                    "attempt": chunk.attempt,
                    "delay_seconds": delay,
                    "error": str(result.error),
                },
            )
            retries.append(
                loop.call_later(delay, work.put_nowait, replace(chunk, attempt=chunk.attempt + 1))
            )

        return None

    async def _worker(
        self,
        stop: asyncio.Event,
        work: asyncio.Queue,
        results: asyncio.Queue,
    ) -> None:
        while not stop.is_set():
            chunk = await self._next_chunk(stop, work)
            if chunk is None:
                return

            logger.debug(
                "Uploading chunk",
                extra={"chunk": chunk.index, "offset": chunk.offset, "attempt": chunk.attempt},
            )
            try:
                await self._stage(chunk)
                error = None
            except Exception as e:
                error = e
            await results.put(ChunkUploadResult(chunk=chunk, error=error))

    async def _next_chunk(self, stop: asyncio.Event, work: asyncio.Queue) -> Chunk | None:
        if not work.empty():
            return work.get_nowait()

        getter = asyncio.ensure_future(work.get())
        stopper = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (getter, stopper):
                if not task.done():
                    task.cancel()
            await asyncio.gather(getter, stopper, return_exceptions=True)

        if getter in done and not stop.is_set():
            return getter.result()
        return None

    async def _stage(self, chunk: Chunk) -> None:
        data = await asyncio.get_event_loop().run_in_executor(
            None, _read_range, self.file_path, chunk.offset, chunk.size
        )
        content_md5 = hashlib.md5(data).digest() if self.verify_md5 else None

        try:
            await asyncio.wait_for(
                self.object_client.stage_chunk(chunk.chunk_id, data, content_md5),
                timeout=self.chunk_upload_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SnapstoreTimeoutError(
                f"staging chunk offset: {chunk.offset} of {self.object_client.name} "
                f"timed out after {self.chunk_upload_timeout}s"
            ) from e
