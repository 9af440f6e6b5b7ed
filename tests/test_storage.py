"""
Tests for blob storage and the output downloader.
"""

import aiohttp
import pytest

from genbroker.errors import StorageError
from genbroker.storage import (
    BlobStorage,
    Downloader,
    HttpDownloader,
    InMemoryBlobStorage,
    LocalBlobStorage,
    storage_key,
)

PNG = b"\x89PNG\r\n\x1a\n fake image"


class TestStorageKey:
    def test_content_addressed(self):
        assert storage_key(PNG, "image/png") == storage_key(PNG, "image/png")
        assert storage_key(PNG, "image/png") != storage_key(PNG + b"!", "image/png")

    def test_extension_and_prefix(self):
        key = storage_key(PNG, "image/png", prefix="stories")

        assert key.startswith("stories/")
        assert key.endswith(".png")
        assert len(key.split("/")[1]) == 32 + len(".png")

    def test_unknown_type(self):
        assert storage_key(PNG, "application/x-genbroker-unknown").endswith(".bin")


class TestLocalBlobStorage:
    async def test_put_writes_file(self, tmp_path):
        storage = LocalBlobStorage(tmp_path, base_url="https://cdn.example.com/files/")

        blob = await storage.put(PNG, "image/png")

        assert isinstance(storage, BlobStorage)
        assert (tmp_path / blob.key).read_bytes() == PNG
        assert blob.url == f"https://cdn.example.com/files/{blob.key}"
        assert blob.size == len(PNG)
        assert blob.content_type == "image/png"

    async def test_write_failure_is_storage_error(self, tmp_path):
        storage = LocalBlobStorage(tmp_path)
        storage.directory = tmp_path / "does-not-exist"

        with pytest.raises(StorageError, match="Failed to write"):
            await storage.put(PNG, "image/png")


class TestInMemoryBlobStorage:
    async def test_put(self):
        storage = InMemoryBlobStorage()

        blob = await storage.put(PNG, "image/png")

        assert storage.blobs[blob.key] == PNG
        assert blob.url.startswith("memory://blobs/generated/")


class _FakeGetResponse:
    def __init__(self, status, body, content_type):
        self.status = status
        self._body = body
        self.content_type = content_type

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttpSession:
    closed = False

    def __init__(self, status=200, body=PNG, content_type="image/png", error=None):
        self.response = _FakeGetResponse(status, body, content_type)
        self.error = error
        self.urls = []

    def get(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


class TestHttpDownloader:
    async def test_fetch(self):
        session = FakeHttpSession()
        downloader = HttpDownloader(session=session)

        body, content_type = await downloader.fetch("https://replicate.delivery/out.png")

        assert isinstance(downloader, Downloader)
        assert (body, content_type) == (PNG, "image/png")
        assert session.urls == ["https://replicate.delivery/out.png"]

    async def test_missing_content_type_defaults_to_png(self):
        downloader = HttpDownloader(session=FakeHttpSession(content_type=""))

        _, content_type = await downloader.fetch("https://example.com/x")

        assert content_type == "image/png"

    async def test_error_status(self):
        downloader = HttpDownloader(session=FakeHttpSession(status=403))

        with pytest.raises(StorageError, match="403"):
            await downloader.fetch("https://example.com/expired")

    async def test_network_error(self):
        downloader = HttpDownloader(session=FakeHttpSession(error=aiohttp.ClientConnectionError("reset")))

        with pytest.raises(StorageError) as exc_info:
            await downloader.fetch("https://example.com/x")
        assert exc_info.value.context.extra["url"] == "https://example.com/x"
