"""
Blob storage for generated output.

The broker only needs "upload bytes, get a URL back". Keys are content
addressed with blake3 so re-uploading the same image is harmless.
"""

from __future__ import annotations

import asyncio
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles
import aiohttp
from blake3 import blake3

from .errors import ErrorContext, StorageError


@dataclass(frozen=True)
class StoredBlob:
    url: str
    size: int
    key: str
    content_type: str


@runtime_checkable
class BlobStorage(Protocol):
    async def put(self, data: bytes, content_type: str) -> StoredBlob:
        """
        Persist bytes and return where they can be fetched.

        Raises:
            StorageError: The write failed
        """
        ...


@runtime_checkable
class Downloader(Protocol):
    async def fetch(self, url: str) -> tuple[bytes, str]:
        ...


def storage_key(data: bytes, content_type: str, prefix: str = "generated") -> str:
    extension = mimetypes.guess_extension(content_type) or ".bin"
    return f"{prefix}/{blake3(data).hexdigest()[:32]}{extension}"


class LocalBlobStorage:
    """Files on local disk, served from ``base_url``."""

    def __init__(self, directory: str | Path, base_url: str = "/files", *, prefix: str = "generated"):
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")
        self.prefix = prefix
        (self.directory / prefix).mkdir(parents=True, exist_ok=True)

    async def put(self, data: bytes, content_type: str) -> StoredBlob:
        key = storage_key(data, content_type, self.prefix)
        path = self.directory / key
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}", context=ErrorContext(operation="storage.put"), cause=e) from e
        return StoredBlob(url=f"{self.base_url}/{key}", size=len(data), key=key, content_type=content_type)


class InMemoryBlobStorage:
    """Blobs kept in a dict. For tests and single-process runs."""

    def __init__(self, base_url: str = "memory://blobs"):
        self.base_url = base_url.rstrip("/")
        self.blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes, content_type: str) -> StoredBlob:
        key = storage_key(data, content_type)
        async with self._lock:
            self.blobs[key] = data
        return StoredBlob(url=f"{self.base_url}/{key}", size=len(data), key=key, content_type=content_type)


class HttpDownloader:
    """Fetches provider-hosted output before it expires."""

    def __init__(self, *, timeout: float = 60.0, session: aiohttp.ClientSession | None = None):
        self.timeout = timeout
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def fetch(self, url: str) -> tuple[bytes, str]:
        """
        Download a URL.

        Returns:
            The body and its content type

        Raises:
            StorageError: Non-2xx answer or network failure
        """
        session = await self._get_session()
        context = ErrorContext(operation="download", extra={"url": url})
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise StorageError(f"Failed to download image: {response.status}", context=context)
                body = await response.read()
                return body, response.content_type or "image/png"
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StorageError(f"Failed to download image: {e}", context=context, cause=e) from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


__all__ = [
    "StoredBlob",
    "BlobStorage",
    "Downloader",
    "LocalBlobStorage",
    "InMemoryBlobStorage",
    "HttpDownloader",
    "storage_key",
]
