import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from media_factory import aiter_bytes
from sounds_proxy.configs import settings
from sounds_proxy.utils import blob_store
from sounds_proxy.utils.blob_store import (
    MULTIPART_CHUNK_SIZE,
    BlobNotFound,
    MemoryBlobStore,
    S3BlobStore,
    create_blob_store,
)

MiB = 1024 * 1024


async def read_all(chunks):
    return b"".join([chunk async for chunk in chunks])


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    client.upload_part.side_effect = lambda **kwargs: {"ETag": f"etag-{kwargs['PartNumber']}"}
    return client


@pytest.mark.asyncio
async def test_memory_store_round_trip():
    store = MemoryBlobStore(maxsize=1024, ttl=60)

    assert not await store.exists("a.aac")
    assert await store.put("a.aac", aiter_bytes([b"abc", b"def"])) == 6
    assert await store.exists("a.aac")
    assert await read_all(store.open("a.aac")) == b"abcdef"


@pytest.mark.asyncio
async def test_memory_store_missing_blob():
    store = MemoryBlobStore(maxsize=1024, ttl=60)
    with pytest.raises(BlobNotFound):
        await read_all(store.open("missing.aac"))


@pytest.mark.asyncio
async def test_memory_store_failed_put_leaves_nothing():
    async def failing():
        yield b"partial"
        raise ConnectionError("source went away")

    store = MemoryBlobStore(maxsize=1024, ttl=60)
    with pytest.raises(ConnectionError):
        await store.put("a.aac", failing())

    assert not await store.exists("a.aac")


@pytest.mark.asyncio
async def test_memory_store_entries_expire():
    store = MemoryBlobStore(maxsize=1024, ttl=0)
    await store.put("a.aac", aiter_bytes([b"x" * 10]))

    assert not await store.exists("a.aac")
    assert store._current_size == 0


@pytest.mark.asyncio
async def test_memory_store_evicts_least_recently_used():
    store = MemoryBlobStore(maxsize=250, ttl=60)
    await store.put("a.aac", aiter_bytes([b"a" * 100]))
    await store.put("b.aac", aiter_bytes([b"b" * 100]))
    assert await store.exists("a.aac")

    await store.put("c.aac", aiter_bytes([b"c" * 100]))

    assert await store.exists("a.aac")
    assert not await store.exists("b.aac")
    assert await store.exists("c.aac")
    assert store._current_size == 200


@pytest.mark.asyncio
async def test_s3_put_uses_a_public_multipart_upload(s3_client):
    store = S3BlobStore("episodes", region="eu-west-2", cache_control="public, max-age=60", client=s3_client)
    chunks = [b"a" * (3 * MiB), b"b" * (3 * MiB), b"c" * 1024]

    size = await store.put("p0bzn8f1.aac", aiter_bytes(chunks))

    assert size == 6 * MiB + 1024
    s3_client.create_multipart_upload.assert_called_once_with(
        Bucket="episodes",
        Key="p0bzn8f1.aac",
        ContentType="audio/aac",
        CacheControl="public, max-age=60",
        ACL="public-read",
    )
    part_sizes = [len(call.kwargs["Body"]) for call in s3_client.upload_part.call_args_list]
    assert part_sizes == [6 * MiB, 1024]
    assert all(size >= MULTIPART_CHUNK_SIZE for size in part_sizes[:-1])
    s3_client.complete_multipart_upload.assert_called_once_with(
        Bucket="episodes",
        Key="p0bzn8f1.aac",
        UploadId="upload-1",
        MultipartUpload={"Parts": [{"ETag": "etag-1", "PartNumber": 1}, {"ETag": "etag-2", "PartNumber": 2}]},
    )
    s3_client.abort_multipart_upload.assert_not_called()


@pytest.mark.asyncio
async def test_s3_put_of_an_empty_stream_uploads_one_part(s3_client):
    store = S3BlobStore("episodes", client=s3_client)

    assert await store.put("empty.aac", aiter_bytes([])) == 0
    assert s3_client.upload_part.call_count == 1
    s3_client.complete_multipart_upload.assert_called_once()


@pytest.mark.asyncio
async def test_s3_put_aborts_on_failure(s3_client):
    async def failing():
        yield b"a" * (6 * MiB)
        raise ConnectionError("source went away")

    store = S3BlobStore("episodes", client=s3_client)
    with pytest.raises(ConnectionError):
        await store.put("p0bzn8f1.aac", failing())

    s3_client.abort_multipart_upload.assert_called_once_with(
        Bucket="episodes", Key="p0bzn8f1.aac", UploadId="upload-1"
    )
    s3_client.complete_multipart_upload.assert_not_called()


@pytest.mark.asyncio
async def test_s3_abort_failure_keeps_the_original_error(s3_client):
    async def failing():
        yield b"data"
        raise ConnectionError("source went away")

    s3_client.abort_multipart_upload.side_effect = client_error("NoSuchUpload", "AbortMultipartUpload")
    store = S3BlobStore("episodes", client=s3_client)

    with pytest.raises(ConnectionError):
        await store.put("p0bzn8f1.aac", failing())


@pytest.mark.asyncio
async def test_s3_exists(s3_client):
    store = S3BlobStore("episodes", client=s3_client)
    assert await store.exists("p0bzn8f1.aac")

    s3_client.head_object.side_effect = client_error("404")
    assert not await store.exists("p0bzn8f1.aac")

    s3_client.head_object.side_effect = client_error("403")
    with pytest.raises(ClientError):
        await store.exists("p0bzn8f1.aac")


@pytest.mark.asyncio
async def test_s3_open_streams_the_body(s3_client):
    body = b"x" * (blob_store.READ_CHUNK_SIZE + 10)
    s3_client.get_object.return_value = {"Body": io.BytesIO(body)}
    store = S3BlobStore("episodes", client=s3_client)

    chunks = [chunk async for chunk in store.open("p0bzn8f1.aac")]

    assert b"".join(chunks) == body
    assert len(chunks) == 2


@pytest.mark.asyncio
async def test_s3_open_missing_object(s3_client):
    s3_client.get_object.side_effect = client_error("NoSuchKey", "GetObject")
    store = S3BlobStore("episodes", client=s3_client)

    with pytest.raises(BlobNotFound):
        await read_all(store.open("missing.aac"))


@pytest.mark.parametrize(
    "region, base_url, expected",
    [
        (None, None, "https://episodes.s3.amazonaws.com/p0bzn8f1.aac"),
        ("eu-west-2", None, "https://episodes.s3.eu-west-2.amazonaws.com/p0bzn8f1.aac"),
        ("eu-west-2", "https://cdn.example.com/", "https://cdn.example.com/p0bzn8f1.aac"),
    ],
)
def test_s3_public_url(region, base_url, expected):
    store = S3BlobStore("episodes", region=region, base_url=base_url, client=MagicMock())
    assert store.public_url("p0bzn8f1.aac") == expected


def test_create_blob_store_is_disabled_by_default(monkeypatch):
    monkeypatch.setattr(settings, "cache_backend", None)
    monkeypatch.setattr(settings, "s3_bucket", None)
    assert create_blob_store() is None


def test_create_blob_store_memory(monkeypatch):
    monkeypatch.setattr(settings, "cache_backend", "memory")
    monkeypatch.setattr(settings, "memory_cache_max_size", 4096)
    store = create_blob_store()
    assert isinstance(store, MemoryBlobStore)
    assert store.maxsize == 4096


def test_create_blob_store_s3_from_bucket(monkeypatch):
    monkeypatch.setattr(blob_store.boto3, "client", MagicMock())
    monkeypatch.setattr(settings, "cache_backend", None)
    monkeypatch.setattr(settings, "s3_bucket", "episodes")
    monkeypatch.setattr(settings, "s3_region", "eu-west-2")
    store = create_blob_store()
    assert isinstance(store, S3BlobStore)
    assert store.bucket == "episodes"
    blob_store.boto3.client.assert_called_once_with("s3", region_name="eu-west-2", endpoint_url=settings.s3_endpoint_url)


def test_create_blob_store_s3_requires_a_bucket(monkeypatch):
    monkeypatch.setattr(settings, "cache_backend", "s3")
    monkeypatch.setattr(settings, "s3_bucket", None)
    with pytest.raises(ValueError):
        create_blob_store()
