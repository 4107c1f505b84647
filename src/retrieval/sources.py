"""Artifact sources for the retrieval manager.

The manager only ever asks a source for "the JSON at this artifact
path".  Two implementations cover the deployments we have:

  - ``HttpArtifactSource``: artifacts served as static files by the
    site host.  Uses ``httpx.AsyncClient``.
  - ``FileArtifactSource``: artifacts read straight from the build
    output directory (CLI, tests, server-side callers).  Blocking reads
    run in a worker thread.

Both raise ``ArtifactNotFoundError`` for anything that prevents getting
bytes back and ``ArtifactMalformedError`` when the bytes are not JSON.
Deadlines are applied by the manager, not here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from config import settings
from src.retrieval.errors import ArtifactMalformedError, ArtifactNotFoundError

logger = logging.getLogger(__name__)


class ArtifactSource(Protocol):
    async def fetch_json(self, path: str) -> Any:
        ...


class HttpArtifactSource:
    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _url_for(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.artifact_fetch_timeout)
        return self._client

    async def fetch_json(self, path: str) -> Any:
        url = self._url_for(path)
        try:
            response = await self._get_client().get(url)
        except httpx.HTTPError as exc:
            raise ArtifactNotFoundError(path, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise ArtifactNotFoundError(path, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise ArtifactMalformedError(path, f"invalid JSON: {exc}") from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class FileArtifactSource:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    async def fetch_json(self, path: str) -> Any:
        file_path = self._root / path.lstrip("/")
        try:
            text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except OSError as exc:
            raise ArtifactNotFoundError(path, f"{type(exc).__name__}: {exc}") from exc
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ArtifactMalformedError(path, f"invalid JSON: {exc}") from exc

    async def aclose(self) -> None:
        return None


def source_for(base: str | None = None) -> HttpArtifactSource | FileArtifactSource:
    """Pick a source for *base*: http(s) URLs are fetched, anything else is a directory."""
    location = base or settings.artifact_base
    if location.startswith(("http://", "https://")):
        logger.debug("artifact source: http %s", location)
        return HttpArtifactSource(location)
    logger.debug("artifact source: directory %s", location)
    return FileArtifactSource(location)
