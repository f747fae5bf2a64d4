"""
Unit tests for the Azure Blob Storage backend.

The SDK clients are replaced by small fakes that raise the SDK's own
exception types, so translation and paging can be tested offline.
"""

import json

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from backup.etcdbr_agent.config import AbsConfig, SnapstoreConfig
from backup.etcdbr_agent.snapstore.abs import AzureContainerClient, new_abs_container_client
from backup.etcdbr_agent.snapstore.base import (
    ConfigurationError,
    ContainerNotFoundError,
    CredentialsUnavailableError,
    ObjectNotFoundError,
    SnapstoreError,
)
from backup.etcdbr_agent.snapstore.chunked import block_id

BLOB = "shoot/etcd-main/v2/Backup-1/Full-00000000-00000001-1"


class FakeDownloader:
    """StorageStreamDownloader double."""

    def __init__(self, data):
        self._data = data
        self._pos = 0

    async def read(self, size=-1):
        if size is None or size < 0:
            size = len(self._data) - self._pos
        chunk = self._data[self._pos : self._pos + size]
        self._pos += len(chunk)
        return chunk


class FakeBlobClient:
    """Async BlobClient double backed by the fake container's dict."""

    def __init__(self, container, name):
        self.container = container
        self.blob_name = name
        self.blocks = {}
        self.stage_kwargs = []

    async def download_blob(self):
        if self.blob_name not in self.container.blobs:
            raise ResourceNotFoundError("The specified blob does not exist.")
        return FakeDownloader(self.container.blobs[self.blob_name])

    async def delete_blob(self):
        if self.blob_name not in self.container.blobs:
            raise ResourceNotFoundError("The specified blob does not exist.")
        del self.container.blobs[self.blob_name]

    async def stage_block(self, block_id, data, length=None, **kwargs):
        if self.container.stage_error is not None:
            raise self.container.stage_error
        self.stage_kwargs.append(dict(kwargs, length=length))
        self.blocks[block_id] = data

    async def commit_block_list(self, block_list, **kwargs):
        if self.container.commit_error is not None:
            raise self.container.commit_error
        self.container.committed.append([b.id for b in block_list])
        self.container.blobs[self.blob_name] = b"".join(self.blocks[b.id] for b in block_list)


class FakePage:
    """One page of blob items."""

    def __init__(self, names):
        self._names = names

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for name in self._names:
            yield type("BlobProperties", (), {"name": name})()


class FakePageIterator:
    """Result of list_blobs().by_page()."""

    def __init__(self, pages, token):
        self._pages = pages
        self._index = int(token or 0)
        self.continuation_token = None

    async def __anext__(self):
        if self._index >= len(self._pages):
            raise StopAsyncIteration
        page = FakePage(self._pages[self._index])
        self._index += 1
        self.continuation_token = str(self._index) if self._index < len(self._pages) else None
        return page


class FakeBlobContainerClient:
    """Async ContainerClient double."""

    container_name = "backups"

    def __init__(self):
        self.blobs = {}
        self.pages = []
        self.committed = []
        self.list_calls = []
        self.stage_error = None
        self.commit_error = None
        self.properties_error = None
        self.closed = False

    def get_blob_client(self, name):
        return FakeBlobClient(self, name)

    def list_blobs(self, name_starts_with=None):
        container = self

        class _Listing:
            def by_page(self, continuation_token=None):
                container.list_calls.append((name_starts_with, continuation_token))
                return FakePageIterator(container.pages, continuation_token)

        return _Listing()

    async def get_container_properties(self):
        if self.properties_error is not None:
            raise self.properties_error
        return {}

    async def close(self):
        self.closed = True


@pytest.fixture
def sdk():
    """Create the fake SDK container client."""
    return FakeBlobContainerClient()


@pytest.fixture
def container(sdk):
    """Create the backend container client over the fake."""
    return AzureContainerClient(sdk)


class TestBlockBlob:
    """Tests for AzureBlockBlobClient."""

    @pytest.mark.asyncio
    async def test_stage_and_commit(self, sdk, container):
        """Blocks are committed in list order."""
        client = container.new_object_client(BLOB)
        await client.stage_chunk(block_id(2), b"world", b"digest")
        await client.stage_chunk(block_id(1), b"hello ", b"digest")

        await client.commit([block_id(1), block_id(2)])

        assert sdk.blobs[BLOB] == b"hello world"
        assert sdk.committed == [[block_id(1), block_id(2)]]

    @pytest.mark.asyncio
    async def test_validate_content_follows_digest(self, container):
        """Content validation is requested only with a digest."""
        client = container.new_object_client(BLOB)
        await client.stage_chunk(block_id(1), b"abc", b"digest")
        await client.stage_chunk(block_id(2), b"de")

        assert client._blob.stage_kwargs == [
            {"validate_content": True, "length": 3},
            {"validate_content": False, "length": 2},
        ]

    @pytest.mark.asyncio
    async def test_stage_error_translated(self, sdk, container):
        sdk.stage_error = HttpResponseError("server busy")
        with pytest.raises(SnapstoreError, match="stage block"):
            await container.new_object_client(BLOB).stage_chunk(block_id(1), b"x")

    @pytest.mark.asyncio
    async def test_commit_error_translated(self, sdk, container):
        sdk.commit_error = HttpResponseError("InvalidBlockList")
        with pytest.raises(SnapstoreError, match="blocklist"):
            await container.new_object_client(BLOB).commit([])
        assert BLOB not in sdk.blobs

    @pytest.mark.asyncio
    async def test_download(self, sdk, container):
        sdk.blobs[BLOB] = b"payload"

        stream = await container.new_object_client(BLOB).download_stream()

        assert await stream.read(3) == b"pay"
        assert await stream.read() == b"load"
        await stream.close()

    @pytest.mark.asyncio
    async def test_download_missing(self, container):
        with pytest.raises(ObjectNotFoundError):
            await container.new_object_client(BLOB).download_stream()

    @pytest.mark.asyncio
    async def test_delete(self, sdk, container):
        sdk.blobs[BLOB] = b"x"
        await container.new_object_client(BLOB).delete()
        assert sdk.blobs == {}

    @pytest.mark.asyncio
    async def test_delete_missing(self, container):
        with pytest.raises(ObjectNotFoundError):
            await container.new_object_client(BLOB).delete()

    def test_name(self, container):
        assert container.new_object_client(BLOB).name == BLOB


class TestListing:
    """Tests for AzureListPager."""

    @pytest.mark.asyncio
    async def test_pages_follow_continuation(self, sdk, container):
        """One SDK page per next_page(), resumed by token."""
        sdk.pages = [["p/v2/a", "p/v2/b"], ["p/v2/c"], ["p/v1/d"]]
        pager = container.new_list_pager("p")

        pages = []
        while pager.more():
            pages.append(await pager.next_page())

        assert pages == [["p/v2/a", "p/v2/b"], ["p/v2/c"], ["p/v1/d"]]
        assert sdk.list_calls == [("p", None), ("p", "1"), ("p", "2")]

    @pytest.mark.asyncio
    async def test_empty_prefix_lists_everything(self, sdk, container):
        sdk.pages = [[]]
        pager = container.new_list_pager("")

        assert await pager.next_page() == []
        assert not pager.more()
        assert sdk.list_calls == [(None, None)]


class TestContainer:
    """Tests for AzureContainerClient."""

    def test_object_clients_cached(self, container):
        assert container.new_object_client(BLOB) is container.new_object_client(BLOB)

    @pytest.mark.asyncio
    async def test_check_exists(self, container):
        await container.check_exists()

    @pytest.mark.asyncio
    async def test_missing_container(self, sdk, container):
        sdk.properties_error = ResourceNotFoundError("ContainerNotFound")
        with pytest.raises(ContainerNotFoundError, match="backups"):
            await container.check_exists()

    @pytest.mark.asyncio
    async def test_container_check_failure(self, sdk, container):
        sdk.properties_error = HttpResponseError("AuthorizationFailure")
        with pytest.raises(SnapstoreError) as exc_info:
            await container.check_exists()
        assert not isinstance(exc_info.value, ContainerNotFoundError)

    @pytest.mark.asyncio
    async def test_close(self, sdk, container):
        await container.close()
        assert sdk.closed


class TestNewAbsContainerClient:
    """Tests for new_abs_container_client()."""

    @pytest.mark.asyncio
    async def test_emulator_client(self, tmp_path):
        """Credentials and emulator endpoint produce a client for the container."""
        creds = tmp_path / "creds.json"
        creds.write_text(json.dumps({"storageAccount": "devstoreaccount1", "storageKey": "ZmFrZWtleQ=="}))
        config = SnapstoreConfig(
            container="backups",
            abs=AbsConfig(
                credential_json_file=str(creds),
                emulator_enabled="true",
                emulator_endpoint="http://127.0.0.1:10000",
            ),
        )

        client = new_abs_container_client(config)
        try:
            assert client.container_name == "backups"
        finally:
            await client.close()

    def test_no_credentials(self):
        config = SnapstoreConfig(container="backups", abs=AbsConfig())
        with pytest.raises(CredentialsUnavailableError):
            new_abs_container_client(config)

    def test_emulator_without_endpoint(self, tmp_path):
        creds = tmp_path / "creds.json"
        creds.write_text(json.dumps({"storageAccount": "acct", "storageKey": "ZmFrZWtleQ=="}))
        config = SnapstoreConfig(
            container="backups",
            abs=AbsConfig(credential_json_file=str(creds), emulator_enabled="true"),
        )
        with pytest.raises(ConfigurationError):
            new_abs_container_client(config)
