"""
S3-compatible backend for the snapshot store.

Binds the ContainerClient/ObjectClient protocols to aiobotocore. Each
object client drives one multipart upload:

    first stage_chunk()  -> create_multipart_upload()
    stage_chunk()        -> upload_part(PartNumber = decoded chunk id)
    commit([...])        -> complete_multipart_upload(parts in list order)
    commit([])           -> put_object(Body=b"")

Works with AWS S3 and S3-compatible stores (MinIO, LocalStack) through
S3_ENDPOINT.

Invariants:
    - The object becomes visible only at complete_multipart_upload()
    - A failed commit aborts the multipart upload
    - new_object_client() returns a fresh client, so a save never reuses
      the upload id or part ETags of an earlier, failed save
    - delete() of a missing key raises ObjectNotFoundError (S3 itself
      would silently succeed)
    - botocore exceptions never escape this module untranslated

How to change safely:
    - Parts other than the last must be at least 5 MiB on AWS
    - Test with LocalStack or MinIO before deploying to AWS
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .base import ContainerNotFoundError, ObjectNotFoundError, SnapstoreError
from .chunked import part_number_from_block_id

if TYPE_CHECKING:
    from ..config import SnapstoreConfig

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3DownloadStream:
    """SnapshotStream over an aiobotocore StreamingBody."""

    def __init__(self, body: Any, name: str) -> None:
        self._body = body
        self._name = name
        self.closed = False

    async def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed stream")
        try:
            if size is None or size < 0:
                return await self._body.read()
            return await self._body.read(size)
        except (BotoCoreError, ClientError) as e:
            raise SnapstoreError(f"failed to read object {self._name}: {e}") from e

    async def close(self) -> None:
        if not self.closed:
            self._body.close()
            self.closed = True


class S3ObjectClient:
    """ObjectClient for one key, staging chunks as multipart upload parts."""

    def __init__(self, client: Any, bucket: str, key: str) -> None:
        self._client = client
        self._bucket = bucket
        self._key = key
        self._upload_id: str | None = None
        self._etags: dict[int, str] = {}
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._key

    async def download_stream(self) -> S3DownloadStream:
        try:
            response = await self._client.get_object(Bucket=self._bucket, Key=self._key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(self._key) from e
            raise SnapstoreError(f"failed to download object {self._key}: {e}") from e
        except BotoCoreError as e:
            raise SnapstoreError(f"failed to download object {self._key}: {e}") from e
        return S3DownloadStream(response["Body"], self._key)

    async def delete(self) -> None:
        try:
            await self._client.head_object(Bucket=self._bucket, Key=self._key)
            await self._client.delete_object(Bucket=self._bucket, Key=self._key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(self._key) from e
            raise SnapstoreError(f"failed to delete object {self._key}: {e}") from e
        except BotoCoreError as e:
            raise SnapstoreError(f"failed to delete object {self._key}: {e}") from e

    async def stage_chunk(
        self,
        chunk_id: str,
        data: bytes,
        content_md5: bytes | None = None,
    ) -> None:
        part_number = part_number_from_block_id(chunk_id)
        upload_id = await self._ensure_upload()

        kwargs: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": self._key,
            "PartNumber": part_number,
            "UploadId": upload_id,
            "Body": data,
        }
        if content_md5 is not None:
            kwargs["ContentMD5"] = base64.b64encode(content_md5).decode("ascii")

        try:
            response = await self._client.upload_part(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise SnapstoreError(
                f"failed to upload part {part_number} of {self._key}: {e}"
            ) from e
        self._etags[part_number] = response["ETag"]

    async def commit(self, chunk_ids: list[str]) -> None:
        part_numbers = [part_number_from_block_id(c) for c in chunk_ids]

        async with self._lock:
            try:
                if not part_numbers:
                    await self._client.put_object(Bucket=self._bucket, Key=self._key, Body=b"")
                    await self._abort_locked()
                    return

                missing = [p for p in part_numbers if p not in self._etags]
                if missing or self._upload_id is None:
                    raise SnapstoreError(f"parts {missing} of {self._key} were not staged")

                await self._client.complete_multipart_upload(
                    Bucket=self._bucket,
                    Key=self._key,
                    UploadId=self._upload_id,
                    MultipartUpload={
                        "Parts": [
                            {"ETag": self._etags[p], "PartNumber": p} for p in part_numbers
                        ]
                    },
                )
                self._upload_id = None
                self._etags.clear()
            except (BotoCoreError, ClientError) as e:
                await self._abort_locked()
                raise SnapstoreError(f"failed to complete upload of {self._key}: {e}") from e
            except SnapstoreError:
                await self._abort_locked()
                raise

    async def _ensure_upload(self) -> str:
        async with self._lock:
            if self._upload_id is None:
                try:
                    response = await self._client.create_multipart_upload(
                        Bucket=self._bucket, Key=self._key
                    )
                except (BotoCoreError, ClientError) as e:
                    raise SnapstoreError(
                        f"failed to start multipart upload of {self._key}: {e}"
                    ) from e
                self._upload_id = response["UploadId"]
                self._etags.clear()
            return self._upload_id

    async def _abort_locked(self) -> None:
        if self._upload_id is None:
            return
        upload_id, self._upload_id = self._upload_id, None
        self._etags.clear()
        try:
            await self._client.abort_multipart_upload(
                Bucket=self._bucket, Key=self._key, UploadId=upload_id
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(
                "Failed to abort multipart upload",
                extra={"object": self._key, "upload_id": upload_id, "error": str(e)},
            )


class S3ListPager:
    """ListPager over list_objects_v2 continuation tokens."""

    def __init__(self, client: Any, bucket: str, prefix: str) -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix
        self._token: str | None = None
        self._done = False

    def more(self) -> bool:
        return not self._done

    async def next_page(self) -> list[str]:
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": self._prefix}
        if self._token:
            kwargs["ContinuationToken"] = self._token
        try:
            response = await self._client.list_objects_v2(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise SnapstoreError(f"failed to list objects under {self._prefix!r}: {e}") from e

        self._token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        self._done = not self._token
        return [obj["Key"] for obj in response.get("Contents", [])]


class S3ContainerClient:
    """ContainerClient for one bucket.

    Attributes:
        bucket: Bucket name
    """

    def __init__(self, client: Any, bucket: str, client_ctx: Any = None) -> None:
        self._client = client
        self._client_ctx = client_ctx
        self.bucket = bucket

    def new_list_pager(self, prefix: str) -> S3ListPager:
        return S3ListPager(self._client, self.bucket, prefix)

    def new_object_client(self, name: str) -> S3ObjectClient:
        # One client per upload; multipart state lives on the client
        return S3ObjectClient(self._client, self.bucket, name)

    async def check_exists(self) -> None:
        try:
            await self._client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ContainerNotFoundError(self.bucket) from e
            raise SnapstoreError(f"failed to check bucket {self.bucket}: {e}") from e
        except BotoCoreError as e:
            raise SnapstoreError(f"failed to check bucket {self.bucket}: {e}") from e

    async def close(self) -> None:
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
            self._client_ctx = None


async def new_s3_container_client(config: SnapstoreConfig) -> S3ContainerClient:
    """Create the S3 container client for a snapstore configuration."""
    session = get_session()

    client_kwargs: dict[str, Any] = {"region_name": config.s3.region}
    if config.s3.endpoint_url:
        client_kwargs["endpoint_url"] = config.s3.endpoint_url
    if config.s3.access_key_id:
        client_kwargs["aws_access_key_id"] = config.s3.access_key_id
        client_kwargs["aws_secret_access_key"] = config.s3.secret_access_key

    client_ctx = session.create_client("s3", **client_kwargs)
    client = await client_ctx.__aenter__()
    logger.info(
        "Created S3 client",
        extra={
            "bucket": config.container,
            "region": config.s3.region,
            "endpoint": config.s3.endpoint_url or "AWS",
        },
    )
    return S3ContainerClient(client, config.container, client_ctx=client_ctx)
