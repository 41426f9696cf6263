import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import AsyncIterator, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from sounds_proxy.configs import settings
from sounds_proxy.const import AAC_CONTENT_TYPE

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
MULTIPART_CHUNK_SIZE = 5 * 1024 * 1024


class BlobNotFound(Exception):
    pass


class BlobStore(Protocol):
    """Object storage for finished episodes. Objects are either complete or absent."""

    async def exists(self, key: str) -> bool: ...

    def open(self, key: str) -> AsyncIterator[bytes]: ...

    async def put(self, key: str, chunks: AsyncIterator[bytes], content_type: str = AAC_CONTENT_TYPE) -> int: ...

    def public_url(self, key: str) -> Optional[str]: ...


@dataclass
class CacheEntry:
    """Represents a cache entry with metadata."""

    data: bytes
    expires_at: float
    created_at: float = 0.0
    content_type: str = AAC_CONTENT_TYPE
    size: int = 0


class MemoryBlobStore:
    """In-process LRU store with per-entry expiry, bounded by total size."""

    def __init__(self, maxsize: int, ttl: int):
        self.maxsize = maxsize
        self.ttl = ttl
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._current_size = 0

    def _get(self, key: str) -> Optional[CacheEntry]:
        if key in self._cache:
            entry = self._cache.pop(key)  # Remove and re-insert for LRU
            if time.time() < entry.expires_at:
                self._cache[key] = entry
                return entry
            # Remove expired entry
            self._current_size -= entry.size
        return None

    def _set(self, key: str, entry: CacheEntry) -> None:
        if key in self._cache:
            self._current_size -= self._cache.pop(key).size

        # Check if we need to make space
        while self._current_size + entry.size > self.maxsize and self._cache:
            evicted_key, removed_entry = self._cache.popitem(last=False)
            self._current_size -= removed_entry.size
            logger.debug(f"Evicted {evicted_key} from memory store")

        self._cache[key] = entry
        self._current_size += entry.size

    async def exists(self, key: str) -> bool:
        return self._get(key) is not None

    async def open(self, key: str) -> AsyncIterator[bytes]:
        entry = self._get(key)
        if entry is None:
            raise BlobNotFound(key)
        for offset in range(0, entry.size, READ_CHUNK_SIZE):
            yield entry.data[offset : offset + READ_CHUNK_SIZE]

    async def put(self, key: str, chunks: AsyncIterator[bytes], content_type: str = AAC_CONTENT_TYPE) -> int:
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
        now = time.time()
        self._set(
            key,
            CacheEntry(
                data=bytes(buffer),
                expires_at=now + self.ttl,
                created_at=now,
                content_type=content_type,
                size=len(buffer),
            ),
        )
        return len(buffer)

    def public_url(self, key: str) -> Optional[str]:
        return None


class S3BlobStore:
    """
    Episode store in an S3 bucket.

    Uploads use multipart uploads so an object only becomes visible once the
    whole episode has been written; any failure aborts the upload. boto3 is
    blocking, so every call runs in the default executor.
    """

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        base_url: Optional[str] = None,
        cache_control: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.base_url = base_url
        self.cache_control = cache_control or f"public, max-age={settings.cache_ttl}"
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    async def _call(self, method, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(method, **kwargs))

    async def exists(self, key: str) -> bool:
        try:
            await self._call(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    async def open(self, key: str) -> AsyncIterator[bytes]:
        try:
            response = await self._call(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                raise BlobNotFound(key) from e
            raise
        body = response["Body"]
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, body.read, READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def put(self, key: str, chunks: AsyncIterator[bytes], content_type: str = AAC_CONTENT_TYPE) -> int:
        upload = await self._call(
            self.client.create_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            CacheControl=self.cache_control,
            ACL="public-read",
        )
        upload_id = upload["UploadId"]
        parts = []
        buffer = bytearray()
        size = 0

        async def upload_part(data: bytes) -> None:
            part_number = len(parts) + 1
            response = await self._call(
                self.client.upload_part,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
            parts.append({"ETag": response["ETag"], "PartNumber": part_number})
            logger.debug(f"Uploaded part {part_number} of {key} ({len(data)} bytes)")

        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                size += len(chunk)
                if len(buffer) >= MULTIPART_CHUNK_SIZE:
                    await upload_part(bytes(buffer))
                    buffer.clear()
            if buffer or not parts:
                await upload_part(bytes(buffer))
            await self._call(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            logger.warning(f"Aborting upload of {key} after {len(parts)} parts")
            try:
                await asyncio.shield(
                    self._call(self.client.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id)
                )
            except ClientError as e:
                logger.error(f"Could not abort upload {upload_id} of {key}: {e}")
            raise

        logger.info(f"Uploaded {key} to s3://{self.bucket} ({size} bytes, {len(parts)} parts)")
        return size

    def public_url(self, key: str) -> Optional[str]:
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def create_blob_store() -> Optional[BlobStore]:
    """Build the configured episode store, or None when caching is disabled."""
    backend = settings.cache_backend or ("s3" if settings.s3_bucket else None)
    if backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("cache_backend 's3' requires s3_bucket")
        logger.info(f"Caching episodes in s3://{settings.s3_bucket}")
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            base_url=settings.s3_base_url,
        )
    if backend == "memory":
        logger.info(f"Caching episodes in memory (up to {settings.memory_cache_max_size} bytes)")
        return MemoryBlobStore(maxsize=settings.memory_cache_max_size, ttl=settings.cache_ttl)
    return None
