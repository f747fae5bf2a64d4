"""
Unit tests for the snapshot store facade.

Uses the in-memory backend to test:
- Save, fetch, list and delete
- Listing across both naming generations and across pages
- All-or-nothing saves and cleanup on every path
- Store creation from configuration
"""

import logging
from datetime import datetime, timezone
from functools import cmp_to_key

import pytest

from backup.etcdbr_agent.config import SnapstoreConfig, StorageProvider
from backup.etcdbr_agent.snapstore import memory
from backup.etcdbr_agent.snapstore.base import (
    ChunkUploadError,
    ContainerNotFoundError,
    ObjectNotFoundError,
    SnapstoreError,
)
from backup.etcdbr_agent.snapstore.chunked import block_id
from backup.etcdbr_agent.snapstore.memory import (
    InMemoryContainerClient,
    InMemoryListPager,
    MemorySnapshotStream,
)
from backup.etcdbr_agent.snapstore.naming import Snapshot, SnapshotKind, compare_snapshots
from backup.etcdbr_agent.snapstore.store import ChunkedSnapStore, create_snapstore

PREFIX = "shoot/etcd-main/v2"
T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
TS0 = int(T0.timestamp())


class FailingStream:
    """Stream that fails after its first read."""

    def __init__(self):
        self.reads = 0
        self.closed = False

    async def read(self, size=-1):
        self.reads += 1
        if self.reads > 1:
            raise OSError("connection reset")
        return b"partial"

    async def close(self):
        self.closed = True


class DuplicatingContainerClient(InMemoryContainerClient):
    """Container whose listing repeats every name."""

    def new_list_pager(self, prefix):
        names = sorted(n for n in self.objects if n.startswith(prefix))
        return InMemoryListPager(self, names + names, self.page_size)


class ReversedListingContainerClient(InMemoryContainerClient):
    """Container whose listing comes back in reverse name order."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.listed_prefixes = []

    def new_list_pager(self, prefix):
        self.listed_prefixes.append(prefix)
        names = sorted((n for n in self.objects if n.startswith(prefix)), reverse=True)
        return InMemoryListPager(self, names, self.page_size)


@pytest.fixture
def container():
    """Create an in-memory container."""
    return InMemoryContainerClient()


@pytest.fixture
def store(container, tmp_path):
    """Create a store with small chunks and no retries."""
    return ChunkedSnapStore(
        container,
        PREFIX,
        temp_dir=str(tmp_path),
        max_parallel_chunk_uploads=3,
        min_chunk_size=4,
        max_chunk_attempts=1,
        retry_base_delay=0,
    )


def full(start=0, last=10, offset=0, prefix=PREFIX):
    """Helper to create a full snapshot."""
    created = datetime.fromtimestamp(TS0 + offset, tz=timezone.utc)
    return Snapshot.create(SnapshotKind.FULL, start, last, created_on=created, prefix=prefix)


def delta(start, last, offset=0, prefix=PREFIX):
    """Helper to create a delta snapshot without a directory."""
    created = datetime.fromtimestamp(TS0 + offset, tz=timezone.utc)
    return Snapshot.create(
        SnapshotKind.DELTA, start, last, created_on=created, prefix=prefix, with_dir=False
    )


class TestSaveAndFetch:
    """Tests for save() and fetch()."""

    @pytest.mark.asyncio
    async def test_save_then_fetch(self, store, container):
        """Fetched bytes equal saved bytes."""
        snap = full()
        stream = MemorySnapshotStream(b"etcd snapshot payload")

        await store.save(snap, stream)

        assert stream.closed
        assert container.objects[snap.path] == b"etcd snapshot payload"

        fetched = await store.fetch(snap)
        try:
            assert await fetched.read() == b"etcd snapshot payload"
        finally:
            await fetched.close()

    @pytest.mark.asyncio
    async def test_save_commits_ordered_chunks(self, store, container):
        """Ten bytes with four-byte chunks commit three ordered ids."""
        snap = full()

        await store.save(snap, MemorySnapshotStream(b"0123456789"))

        assert container.commit_calls == [(snap.path, [block_id(1), block_id(2), block_id(3)])]

    @pytest.mark.asyncio
    async def test_save_empty_snapshot(self, store, container):
        """An empty stream creates an empty object."""
        snap = delta(11, 11)

        await store.save(snap, MemorySnapshotStream(b""))

        assert container.objects[snap.path] == b""
        assert container.stage_calls == 0

    @pytest.mark.asyncio
    async def test_save_legacy_snapshot_under_legacy_prefix(self, store, container):
        """A snapshot of the legacy generation keeps the legacy tag."""
        snap = full(prefix="shoot/etcd-main/v1")

        await store.save(snap, MemorySnapshotStream(b"old"))

        assert container.objects == {snap.path: b"old"}
        assert snap.path.startswith("shoot/etcd-main/v1/Backup-")

    @pytest.mark.asyncio
    async def test_save_removes_temp_file(self, store, tmp_path):
        """No staged file is left behind after success."""
        await store.save(full(), MemorySnapshotStream(b"data"))
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_fetch_missing(self, store):
        """Fetching an absent snapshot raises ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            await store.fetch(full())


class TestSaveFailures:
    """Tests for failure paths of save()."""

    @pytest.mark.asyncio
    async def test_chunk_failure_is_all_or_nothing(self, store, container, tmp_path):
        """A failed chunk leaves no object and no temp file."""
        container.inject_stage_failure(2)
        snap = full()
        stream = MemorySnapshotStream(b"0123456789abcdef")

        with pytest.raises(ChunkUploadError):
            await store.save(snap, stream)

        assert snap.path not in container.objects
        assert container.commit_calls == []
        assert stream.closed
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_save_keeps_previous_object(self, store, container):
        """Overwriting fails without touching the existing object."""
        snap = full()
        container.put_object(snap.path, b"previous")
        container.inject_stage_failure(1)

        with pytest.raises(ChunkUploadError):
            await store.save(snap, MemorySnapshotStream(b"replacement"))

        assert container.objects[snap.path] == b"previous"

    @pytest.mark.asyncio
    async def test_commit_failure(self, store, container, tmp_path):
        """A failed commit surfaces as SnapstoreError and cleans up."""
        container.commit_failure = SnapstoreError("commit rejected")
        snap = full()

        with pytest.raises(SnapstoreError, match="commit rejected"):
            await store.save(snap, MemorySnapshotStream(b"data"))

        assert snap.path not in container.objects
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_stream_read_failure(self, store, container, tmp_path):
        """A failing source stream is closed and nothing is uploaded."""
        stream = FailingStream()

        with pytest.raises(SnapstoreError, match="tmpfile"):
            await store.save(full(), stream)

        assert stream.closed
        assert container.stage_calls == 0
        assert container.commit_calls == []
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_temp_dir_missing(self, container, tmp_path):
        """A missing temp directory fails before reading the stream."""
        store = ChunkedSnapStore(container, PREFIX, temp_dir=str(tmp_path / "missing"))
        stream = MemorySnapshotStream(b"data")

        with pytest.raises(SnapstoreError, match="tempfile"):
            await store.save(full(), stream)

        assert stream.closed
        assert container.objects == {}


class TestList:
    """Tests for list()."""

    @pytest.mark.asyncio
    async def test_empty_store(self, store, container):
        """An empty container lists nothing without fetching a page."""
        assert await store.list() == []
        assert container.list_page_calls == 0

    @pytest.mark.asyncio
    async def test_lists_both_generations_sorted(self, store, container):
        """Legacy and current objects are listed together in order."""
        legacy = full(0, 10, offset=0, prefix="shoot/etcd-main/v1")
        current_full = full(0, 20, offset=100)
        current_delta = delta(21, 30, offset=200)
        for snap in (current_delta, legacy, current_full):
            container.put_object(snap.path, b"x")

        snaps = await store.list()

        assert snaps == [legacy, current_full, current_delta]

    @pytest.mark.asyncio
    async def test_one_fetch_per_page(self, store, container):
        """k pages are fetched with k calls."""
        container.page_size = 2
        for i in range(5):
            container.put_object(delta(i + 1, i + 1, offset=i).path, b"x")

        snaps = await store.list()

        assert len(snaps) == 5
        assert container.list_page_calls == 3

    @pytest.mark.asyncio
    async def test_duplicates_across_pages_collapse(self, tmp_path):
        """A name returned twice is listed once."""
        container = DuplicatingContainerClient(page_size=1)
        store = ChunkedSnapStore(container, PREFIX, temp_dir=str(tmp_path))
        snap = full()
        container.put_object(snap.path, b"x")

        assert await store.list() == [snap]
        assert container.list_page_calls == 2

    @pytest.mark.asyncio
    async def test_invalid_names_skipped(self, store, container, caplog):
        """Unparsable names are logged and skipped."""
        snap = full()
        container.put_object(snap.path, b"x")
        container.put_object(f"{PREFIX}/Backup-{TS0}/garbage", b"x")
        container.put_object(f"{PREFIX}/Full-00000009-00000001-{TS0}", b"x")
        container.put_object("shoot/etcd-main/member-lease", b"x")

        with caplog.at_level(logging.WARNING):
            snaps = await store.list()

        assert snaps == [snap]
        skipped = [r for r in caplog.records if r.getMessage() == "Invalid snapshot found, ignoring it"]
        assert len(skipped) == 2
        assert {r.object for r in skipped} == {
            f"{PREFIX}/Backup-{TS0}/garbage",
            f"{PREFIX}/Full-00000009-00000001-{TS0}",
        }

    @pytest.mark.asyncio
    async def test_other_prefixes_ignored(self, store, container):
        """Objects of another member are not listed."""
        container.put_object(full(prefix="shoot/etcd-events/v2").path, b"x")
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_sibling_namespace_ignored(self, store, container):
        """A prefix sharing a leading substring is a different namespace."""
        own = full(0, 10)
        container.put_object(own.path, b"x")
        container.put_object(full(0, 99, prefix="shoot/etcd-main-2/v2").path, b"x")
        container.put_object(delta(100, 120, offset=5, prefix="shoot/etcd-main-2/v1").path, b"x")

        assert await store.list() == [own]

    @pytest.mark.asyncio
    async def test_unordered_listing_sorted(self, tmp_path):
        """Results follow creation time then revision range, whatever the backend order."""
        container = ReversedListingContainerClient(page_size=2)
        store = ChunkedSnapStore(container, PREFIX, temp_dir=str(tmp_path))
        current_full = full(0, 10, offset=0)
        legacy_full = full(0, 20, offset=50, prefix="shoot/etcd-main/v1")
        d_early = delta(11, 20, offset=100)
        d_wide = delta(11, 25, offset=100)
        d_late = delta(21, 30, offset=100)
        snaps = [current_full, legacy_full, d_early, d_wide, d_late]
        for snap in snaps:
            container.put_object(snap.path, b"x")

        first = await store.list()
        second = await store.list()

        assert first == sorted(snaps, key=cmp_to_key(compare_snapshots))
        assert first == [current_full, legacy_full, d_early, d_wide, d_late]
        assert second == first
        assert container.listed_prefixes == ["shoot/etcd-main/", "shoot/etcd-main/"]

    @pytest.mark.asyncio
    async def test_list_failure(self, store, container):
        """A backend error while paging surfaces as SnapstoreError."""
        container.put_object(full().path, b"x")
        container.list_failure = RuntimeError("throttled")

        with pytest.raises(SnapstoreError, match="throttled"):
            await store.list()

    @pytest.mark.asyncio
    async def test_latest_chain_after_save(self, store):
        """Saved snapshots form the restore chain."""
        base = full(0, 10, offset=0)
        d1 = delta(11, 20, offset=10)
        d2 = delta(21, 30, offset=20)
        for snap in (d2, base, d1):
            await store.save(snap, MemorySnapshotStream(b"data"))

        latest, deltas = (await store.list()).latest_full_and_deltas()

        assert latest == base
        assert deltas == [d1, d2]


class TestDelete:
    """Tests for delete()."""

    @pytest.mark.asyncio
    async def test_delete(self, store, container):
        """A deleted snapshot is no longer listed."""
        snap = full()
        await store.save(snap, MemorySnapshotStream(b"data"))

        await store.delete(snap)

        assert snap.path not in container.objects
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        """Deleting an absent snapshot raises ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            await store.delete(full())


class TestCreateSnapstore:
    """Tests for create_snapstore()."""

    @pytest.mark.asyncio
    async def test_memory_provider(self, tmp_path):
        """The memory provider yields a working store."""
        config = SnapstoreConfig(
            provider=StorageProvider.MEMORY,
            container="backups",
            prefix="shoot/etcd-main",
            temp_dir=str(tmp_path),
        )

        async with await create_snapstore(config) as store:
            assert store.prefix == "shoot/etcd-main/v2"
            assert store.container.container == "backups"

            snap = full(prefix=store.prefix)
            await store.save(snap, MemorySnapshotStream(b"data"))
            assert await store.list() == [snap]

    @pytest.mark.asyncio
    async def test_missing_container(self, monkeypatch):
        """A missing container is reported before the store is returned."""
        monkeypatch.setattr(
            memory,
            "InMemoryContainerClient",
            lambda container: InMemoryContainerClient(container=container, exists=False),
        )
        config = SnapstoreConfig(provider=StorageProvider.MEMORY, container="gone")

        with pytest.raises(ContainerNotFoundError, match="gone"):
            await create_snapstore(config)

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        """Configuration is validated first."""
        with pytest.raises(ValueError):
            await create_snapstore(SnapstoreConfig(provider=StorageProvider.MEMORY))
