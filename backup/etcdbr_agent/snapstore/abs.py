"""
Azure Blob Storage backend for the snapshot store.

Binds the ContainerClient/ObjectClient protocols to the async
azure-storage-blob SDK using block blobs:

    stage_chunk()  -> BlobClient.stage_block()
    commit()       -> BlobClient.commit_block_list()
    listing        -> ContainerClient.list_blobs().by_page()

Credentials come from the credential resolver. The endpoint is the public
blob host unless the Azurite emulator is enabled.

Invariants:
    - SDK exceptions never escape this module untranslated
    - One listing page is fetched per next_page() call
    - Block blob clients are cached per blob name

How to change safely:
    - Test against Azurite before deploying to Azure
    - Block ids must keep equal length within a blob (Azure requirement)
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobBlock
from azure.storage.blob.aio import BlobClient
from azure.storage.blob.aio import ContainerClient as BlobContainerClient

from .base import (
    ConfigurationError,
    ContainerNotFoundError,
    ObjectNotFoundError,
    SnapstoreError,
)
from .credentials import construct_abs_uri, resolve_abs_credentials

if TYPE_CHECKING:
    from ..config import SnapstoreConfig

logger = logging.getLogger(__name__)


class AzureDownloadStream:
    """SnapshotStream over a StorageStreamDownloader."""

    def __init__(self, downloader, name: str) -> None:
        self._downloader = downloader
        self._name = name
        self.closed = False

    async def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed stream")
        try:
            return await self._downloader.read(size)
        except AzureError as e:
            raise SnapstoreError(f"failed to read the blob {self._name} with error: {e}") from e

    async def close(self) -> None:
        self.closed = True


class AzureBlockBlobClient:
    """ObjectClient over an async BlobClient."""

    def __init__(self, blob_client: BlobClient) -> None:
        self._blob = blob_client

    @property
    def name(self) -> str:
        return self._blob.blob_name

    async def download_stream(self) -> AzureDownloadStream:
        try:
            downloader = await self._blob.download_blob()
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(self.name) from e
        except AzureError as e:
            raise SnapstoreError(f"failed to download the blob {self.name} with error: {e}") from e
        return AzureDownloadStream(downloader, self.name)

    async def delete(self) -> None:
        try:
            await self._blob.delete_blob()
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(self.name) from e
        except AzureError as e:
            raise SnapstoreError(f"failed to delete blob {self.name} with error: {e}") from e

    async def stage_chunk(
        self,
        chunk_id: str,
        data: bytes,
        content_md5: bytes | None = None,
    ) -> None:
        # The SDK computes and sends the MD5 itself when validate_content is set
        try:
            await self._blob.stage_block(
                chunk_id,
                data,
                length=len(data),
                validate_content=content_md5 is not None,
            )
        except AzureError as e:
            raise SnapstoreError(
                f"failed to stage block {chunk_id} of blob {self.name} with error: {e}"
            ) from e

    async def commit(self, chunk_ids: list[str]) -> None:
        try:
            await self._blob.commit_block_list([BlobBlock(block_id=i) for i in chunk_ids])
        except AzureError as e:
            raise SnapstoreError(
                f"failed uploading blocklist for blob {self.name} with error: {e}"
            ) from e


class AzureListPager:
    """ListPager driven by list_blobs() continuation tokens."""

    def __init__(self, container: BlobContainerClient, prefix: str) -> None:
        self._container = container
        self._prefix = prefix
        self._token: str | None = None
        self._done = False

    def more(self) -> bool:
        return not self._done

    async def next_page(self) -> list[str]:
        try:
            pages = self._container.list_blobs(name_starts_with=self._prefix or None).by_page(
                continuation_token=self._token
            )
            try:
                page = await pages.__anext__()
            except StopAsyncIteration:
                self._done = True
                return []
            names = [blob.name async for blob in page]
        except AzureError as e:
            raise SnapstoreError(f"failed to list the blobs, error: {e}") from e

        self._token = pages.continuation_token
        self._done = not self._token
        return names


class AzureContainerClient:
    """ContainerClient over an async azure ContainerClient."""

    def __init__(self, client: BlobContainerClient) -> None:
        self._client = client
        self._blob_clients: dict[str, AzureBlockBlobClient] = {}
        self._lock = threading.Lock()

    @property
    def container_name(self) -> str:
        return self._client.container_name

    def new_list_pager(self, prefix: str) -> AzureListPager:
        return AzureListPager(self._client, prefix)

    def new_object_client(self, name: str) -> AzureBlockBlobClient:
        with self._lock:
            client = self._blob_clients.get(name)
            if client is None:
                client = AzureBlockBlobClient(self._client.get_blob_client(name))
                self._blob_clients[name] = client
            return client

    async def check_exists(self) -> None:
        try:
            await self._client.get_container_properties()
        except ResourceNotFoundError as e:
            raise ContainerNotFoundError(self.container_name) from e
        except AzureError as e:
            raise SnapstoreError(
                f"failed to get properties of the container {self.container_name} with error: {e}"
            ) from e

    async def close(self) -> None:
        await self._client.close()


def new_abs_container_client(config: SnapstoreConfig) -> AzureContainerClient:
    """Create the ABS container client for a snapstore configuration.

    Raises:
        CredentialsUnavailableError: If credentials cannot be resolved
        ConfigurationError: If the emulator settings or endpoint are invalid
    """
    credentials = resolve_abs_credentials(config.abs)
    account_url = construct_abs_uri(credentials.storage_account, config.abs)

    try:
        client = BlobContainerClient(
            account_url=account_url,
            container_name=config.container,
            credential={
                "account_name": credentials.storage_account,
                "account_key": credentials.storage_key,
            },
            read_timeout=int(config.download_timeout),
        )
    except ValueError as e:
        raise ConfigurationError(f"failed to create ABS client for {account_url}: {e}") from e

    logger.info(
        "Created ABS container client",
        extra={"account_url": account_url, "container": config.container},
    )
    return AzureContainerClient(client)
