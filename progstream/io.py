import asyncio
import json
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx


class Fetcher(Protocol):
    async def fetch_json(self, url: str) -> Any: ...
    async def fetch_bytes(self, url: str) -> bytes: ...
    async def aclose(self) -> None: ...


class HttpFetcher:
    """Fetch JSON and raw bytes over HTTP with a shared httpx.AsyncClient.

    No timeout is applied unless one is passed; a stalled transfer stalls the caller.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None, **client_kwargs):
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(timeout=timeout, **client_kwargs)

    async def fetch_json(self, url: str) -> Any:
        resp = await self.client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def fetch_bytes(self, url: str) -> bytes:
        resp = await self.client.get(url)
        resp.raise_for_status()
        return resp.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class LocalFetcher:
    """Read files from disk; `url` is a path or a file:// URL."""

    @staticmethod
    def _path(url: str) -> Path:
        if url.startswith("file://"):
            url = url[len("file://"):]
        return Path(url)

    async def fetch_json(self, url: str) -> Any:
        text = await asyncio.to_thread(self._path(url).read_text)
        return json.loads(text)

    async def fetch_bytes(self, url: str) -> bytes:
        return await asyncio.to_thread(self._path(url).read_bytes)

    async def aclose(self) -> None:
        pass


def join_url(base: str, name: str) -> str:
    return base.rstrip("/") + "/" + name


def fetcher_for(url: str) -> Fetcher:
    if url.startswith(("http://", "https://")):
        return HttpFetcher()
    return LocalFetcher()
