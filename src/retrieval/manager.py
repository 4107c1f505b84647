"""RetrievalManager: runtime side of the index artifacts.

Loads per-post artifacts lazily (only the post being read, unless no post
can be identified) and answers queries against whatever is loaded.

Owns:
  - The manifest, cached after the first successful fetch.
  - Loaded lunr indexes keyed by post slug (or ``LEGACY_KEY``).
  - The chunk map keyed by chunk id.
  - Coordination of concurrent loads.

Does NOT own:
  - Fetching bytes (``sources.py``).
  - Query normalization and the match cascade (``search.py``).

Concurrency: every mutation of the loaded state happens after the fetch
it depends on has completed.  Concurrent ``load_index`` callers share a
single in-flight task; waiters re-raise its failure and then re-check
whether their own post is covered.  Concurrent loads of the same post
share one fetch.  Failures are never cached; the next call retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable, TypeVar

from lunr.exceptions import BaseLunrException
from lunr.index import Index
from pydantic import BaseModel, ValidationError

from config import settings
from src.indexing.artifacts import Chunk, IndexArtifact, Manifest
from src.indexing.search_index import load_search_index
from src.retrieval.errors import (
    ArtifactMalformedError,
    ArtifactNotFoundError,
    IndexLoadError,
    RetrievalError,
)
from src.retrieval.models import ChunkResult
from src.retrieval.search import match_cascade, normalize_query, ranked_lexical_hits
from src.retrieval.sources import ArtifactSource, source_for
from src.retrieval.urls import normalize_url, slug_from_url

logger = logging.getLogger(__name__)

LEGACY_KEY = "__legacy__"
SECTION_MATCH_SCORE = 1.0

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def _retrieve_outcome(task: asyncio.Task) -> None:
    # Shielded load tasks outlive cancelled awaiters; mark their failure as seen
    # so it is not reported as never retrieved.
    if not task.cancelled():
        task.exception()


class RetrievalManager:
    def __init__(self, source: ArtifactSource, *, fetch_timeout: float | None = None) -> None:
        self._source = source
        self._fetch_timeout = (
            settings.artifact_fetch_timeout if fetch_timeout is None else fetch_timeout
        )
        self._manifest: Manifest | None = None
        self._indexes: dict[str, Index] = {}
        self._chunks: dict[str, Chunk] = {}
        self._load_task: asyncio.Task[None] | None = None
        self._post_loads: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_settings(cls, artifact_base: str | None = None) -> "RetrievalManager":
        return cls(source_for(artifact_base))

    async def aclose(self) -> None:
        close = getattr(self._source, "aclose", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "RetrievalManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── State ────────────────────────────────────────────────────────

    @property
    def manifest(self) -> Manifest | None:
        return self._manifest

    @property
    def is_loaded(self) -> bool:
        return bool(self._indexes)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def loaded_slugs(self) -> frozenset[str]:
        """Slugs with their own per-post index loaded (the legacy index is not a slug)."""
        return frozenset(key for key in self._indexes if key != LEGACY_KEY)

    @property
    def using_legacy(self) -> bool:
        return LEGACY_KEY in self._indexes

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        return self._chunks.get(chunk_id)

    def get_chunks_by_ids(self, chunk_ids: Iterable[str]) -> list[Chunk]:
        """Loaded chunks for *chunk_ids* in the given order; unknown ids are skipped."""
        return [self._chunks[chunk_id] for chunk_id in chunk_ids if chunk_id in self._chunks]

    def _covers(self, slug: str | None) -> bool:
        if self.using_legacy:
            return True
        if slug is not None:
            return slug in self._indexes
        if self._manifest is None:
            return False
        return all(loaded in self._indexes for loaded in self._manifest.slugs())

    def _chunks_for(self, slug: str) -> list[Chunk]:
        return [chunk for chunk in self._chunks.values() if chunk.metadata.post_slug == slug]

    def _indexes_for(self, slug: str) -> list[Index]:
        return [self._indexes[key] for key in (slug, LEGACY_KEY) if key in self._indexes]

    # ── Fetching ─────────────────────────────────────────────────────

    async def _fetch_model(self, path: str, model: type[_ModelT]) -> _ModelT:
        try:
            payload = await asyncio.wait_for(
                self._source.fetch_json(path), timeout=self._fetch_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ArtifactNotFoundError(
                path, f"timed out after {self._fetch_timeout:g}s"
            ) from exc
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ArtifactMalformedError(
                path, f"{exc.error_count()} schema error(s): {exc.errors()[0]['msg']}"
            ) from exc

    async def _fetch_artifact(self, path: str) -> tuple[IndexArtifact, Index]:
        artifact = await self._fetch_model(path, IndexArtifact)
        try:
            index = load_search_index(artifact.index)
        except (BaseLunrException, KeyError, TypeError, ValueError) as exc:
            raise ArtifactMalformedError(path, f"unreadable search index: {exc!r}") from exc
        return artifact, index

    def _store(self, key: str, artifact: IndexArtifact, index: Index) -> None:
        self._indexes[key] = index
        for chunk in artifact.chunks:
            self._chunks[chunk.metadata.chunk_id] = chunk

    def _post_path(self, slug: str) -> str:
        if self._manifest is not None:
            for post in self._manifest.posts:
                if post.slug == slug:
                    return post.index_file
        return settings.post_index_path_template.format(slug=slug)

    async def _load_manifest(self) -> Manifest:
        if self._manifest is None:
            manifest = await self._fetch_model(settings.manifest_path, Manifest)
            self._manifest = manifest
            logger.info("manifest loaded: %d posts", len(manifest.posts))
        return self._manifest

    async def _load_legacy(self) -> None:
        artifact, index = await self._fetch_artifact(settings.legacy_index_path)
        self._store(LEGACY_KEY, artifact, index)

    async def load_post_index(self, slug: str) -> None:
        """Load one post's artifact.  No-op when already loaded; failures propagate."""
        if slug in self._indexes:
            return
        task = self._post_loads.get(slug)
        if task is None:
            task = asyncio.create_task(self._run_post_load(slug))
            task.add_done_callback(_retrieve_outcome)
            self._post_loads[slug] = task
        await asyncio.shield(task)

    async def _run_post_load(self, slug: str) -> None:
        try:
            artifact, index = await self._fetch_artifact(self._post_path(slug))
            self._store(slug, artifact, index)
            logger.info("loaded index for %s: %d chunks", slug, len(artifact.chunks))
        finally:
            self._post_loads.pop(slug, None)

    async def load_additional_posts(self, slugs: Iterable[str]) -> None:
        """Best-effort loading of extra posts for cross-post search."""
        for slug in slugs:
            try:
                await self.load_post_index(slug)
            except RetrievalError as exc:
                logger.warning("failed to load index for %s: %s", slug, exc)

    # ── Index loading ────────────────────────────────────────────────

    async def load_index(self, current_url: str | None = None) -> None:
        """Make sure the indexes needed for *current_url* are loaded.

        With a resolvable post slug only that post is loaded; otherwise
        every post in the manifest.  If the manifest is unavailable the
        legacy merged artifact is loaded instead.  Raises
        ``IndexLoadError`` when both paths fail, and propagates per-post
        load failures.
        """
        slug = slug_from_url(current_url)
        while True:
            if self._covers(slug):
                return
            task = self._load_task
            if task is None:
                break
            logger.debug("waiting for in-flight index load")
            await asyncio.shield(task)

        task = asyncio.create_task(self._run_load(slug))
        task.add_done_callback(_retrieve_outcome)
        self._load_task = task
        await asyncio.shield(task)

    async def _run_load(self, slug: str | None) -> None:
        started = time.perf_counter()
        try:
            await self._load(slug)
        finally:
            self._load_task = None
        logger.info(
            "index ready: %d chunks in %.2fms",
            len(self._chunks),
            (time.perf_counter() - started) * 1000,
        )

    async def _load(self, slug: str | None) -> None:
        try:
            manifest = await self._load_manifest()
        except RetrievalError as exc:
            logger.warning("manifest unavailable (%s); falling back to legacy index", exc)
            try:
                await self._load_legacy()
            except RetrievalError as legacy_exc:
                raise IndexLoadError(
                    f"Could not load manifest or legacy index: {legacy_exc}"
                ) from legacy_exc
            return

        if slug is not None:
            await self.load_post_index(slug)
            return
        logger.warning(
            "no post slug in current URL; loading all %d posts", len(manifest.posts)
        )
        for post_slug in manifest.slugs():
            await self.load_post_index(post_slug)

    async def _ensure_post(self, slug: str) -> bool:
        """True when chunks for *slug* can be searched; load failures are logged."""
        if slug in self._indexes:
            return True
        if self.using_legacy and self._chunks_for(slug):
            return True
        try:
            await self.load_post_index(slug)
        except RetrievalError as exc:
            logger.warning("failed to load current post index (%s): %s", slug, exc)
            return False
        return True

    async def _ensure_any(self, current_url: str | None) -> bool:
        if self._indexes:
            return True
        try:
            await self.load_index(current_url)
        except RetrievalError as exc:
            logger.warning("no index available for search: %s", exc)
            return False
        return bool(self._indexes)

    # ── Search ───────────────────────────────────────────────────────

    async def search_chunks_smart(
        self,
        query: str,
        current_url: str | None = None,
        limit: int | None = None,
        section_id: str | None = None,
    ) -> list[ChunkResult]:
        """Ranked retrieval, narrowest scope first.

        Tiers: the given section of the current post, then the whole
        current post, then every loaded post.  The first tier with any
        result wins.  Never raises for load failures or bad query syntax.
        """
        limit = settings.retrieval_default_limit if limit is None else limit
        if not normalize_query(query):
            return []

        slug = slug_from_url(current_url)
        if slug is not None and await self._ensure_post(slug):
            post_chunks = self._chunks_for(slug)
            post_indexes = self._indexes_for(slug)
            if section_id:
                section_chunks = [
                    chunk for chunk in post_chunks if chunk.metadata.section_id == section_id
                ]
                results = match_cascade(query, section_chunks, post_indexes, limit)
                if results:
                    logger.debug("%d results in section %s", len(results), section_id)
                    return results
            results = match_cascade(query, post_chunks, post_indexes, limit)
            if results:
                return results

        if not await self._ensure_any(current_url):
            return []
        return match_cascade(query, self._chunks.values(), self._indexes.values(), limit)

    async def search_chunks(
        self,
        query: str,
        current_url: str | None = None,
        limit: int | None = None,
        filter_current_post: bool = False,
        section_id: str | None = None,
    ) -> list[ChunkResult]:
        """Lexical search over every loaded index, merged by score.

        Loads the index for *current_url* when nothing is loaded yet.
        Only the top ``limit * 2`` hits are considered for the filters.
        """
        limit = settings.retrieval_default_limit if limit is None else limit
        if not query.strip() or not await self._ensure_any(current_url):
            return []

        started = time.perf_counter()
        current_path = normalize_url(current_url) if current_url else None
        results: list[ChunkResult] = []
        for chunk_id, score in ranked_lexical_hits(query, self._indexes.values())[: limit * 2]:
            chunk = self._chunks.get(chunk_id)
            if chunk is None:
                logger.warning("chunk not found: %s", chunk_id)
                continue
            if (
                filter_current_post
                and current_path is not None
                and normalize_url(chunk.metadata.post_url) != current_path
            ):
                continue
            if section_id and chunk.metadata.section_id != section_id:
                continue
            results.append(ChunkResult.from_chunk(chunk, score))
            if len(results) >= limit:
                break

        logger.debug(
            "search completed in %.2fms: %d results",
            (time.perf_counter() - started) * 1000,
            len(results),
        )
        return results

    async def search_chunks_by_section(
        self, section_id: str, current_url: str | None = None, limit: int | None = None
    ) -> list[ChunkResult]:
        """Chunks of the current post under heading *section_id*, in document order."""
        limit = settings.section_search_limit if limit is None else limit
        slug = slug_from_url(current_url)
        if slug is None:
            logger.warning("could not derive a post slug from %r for section search", current_url)
            return []
        if not await self._ensure_post(slug):
            return []

        matching = sorted(
            (chunk for chunk in self._chunks_for(slug) if chunk.metadata.section_id == section_id),
            key=lambda chunk: chunk.metadata.chunk_index,
        )
        return [ChunkResult.from_chunk(chunk, SECTION_MATCH_SCORE) for chunk in matching[:limit]]
