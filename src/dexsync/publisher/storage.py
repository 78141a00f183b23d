"""
Object store backends used by the publisher.

Keys are CDN-relative paths such as ``v20250101-120000/species/index.json``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Protocol

import aiofiles
import aiofiles.os
import aiohttp
import structlog

from dexsync.errors import NetworkError
from dexsync.utils.atomic import atomic_write_bytes_async

logger = structlog.get_logger(__name__)


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, *, content_type: str, cache_control: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def get(self, key: str) -> Optional[bytes]: ...

    async def delete(self, key: str) -> None: ...


class LocalObjectStore:
    """Filesystem-backed store; every put is an atomic replace."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes store root: {key}")
        return path

    async def put(self, key: str, data: bytes, *, content_type: str, cache_control: str) -> None:
        await atomic_write_bytes_async(self._path(key), data)

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(key))

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not await aiofiles.os.path.isfile(path):
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if await aiofiles.os.path.isfile(path):
            await aiofiles.os.remove(path)


class HttpObjectStore:
    """Bucket-style HTTP store: PUT to upload, HEAD to check, GET to read."""

    def __init__(self, base_url: str, session: aiohttp.ClientSession, *, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key.lstrip('/')}"

    async def put(self, key: str, data: bytes, *, content_type: str, cache_control: str) -> None:
        url = self.url_for(key)
        headers = {"Content-Type": content_type, "Cache-Control": cache_control}
        try:
            async with self.session.put(url, data=data, headers=headers, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise NetworkError(f"Upload failed with HTTP {response.status}", url=url, status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Upload failed: {e}", url=url) from e

    async def exists(self, key: str) -> bool:
        url = self.url_for(key)
        try:
            async with self.session.head(url, timeout=self.timeout) as response:
                return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("HEAD failed", url=url, error=str(e))
            return False

    async def get(self, key: str) -> Optional[bytes]:
        url = self.url_for(key)
        try:
            async with self.session.get(url, timeout=self.timeout) as response:
                if response.status == 404:
                    return None
                if response.status >= 300:
                    raise NetworkError(f"GET failed with HTTP {response.status}", url=url, status=response.status)
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"GET failed: {e}", url=url) from e

    async def delete(self, key: str) -> None:
        url = self.url_for(key)
        try:
            async with self.session.delete(url, timeout=self.timeout) as response:
                if response.status >= 300 and response.status != 404:
                    raise NetworkError(f"DELETE failed with HTTP {response.status}", url=url, status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"DELETE failed: {e}", url=url) from e
