"""Tests for RetrievalManager.

Artifacts are built from the synthetic posts in conftest.py and served
from memory; no network or filesystem access beyond tmp_path.
"""

from __future__ import annotations

import asyncio
import gc

import pytest

from config import settings
from src.indexing.indexer import post_index_path
from src.retrieval.errors import (
    ArtifactMalformedError,
    ArtifactNotFoundError,
    IndexLoadError,
)
from src.retrieval.manager import LEGACY_KEY, RetrievalManager
from src.retrieval.search import EXACT_HEADING_SCORE, PARTIAL_HEADING_SCORE
from conftest import CACHING_SLUG, CACHING_URL, RUST_SLUG, RUST_URL


CACHING_PATH = post_index_path(CACHING_SLUG)
RUST_PATH = post_index_path(RUST_SLUG)


@pytest.fixture
def manager(memory_source) -> RetrievalManager:
    return RetrievalManager(memory_source)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadIndex:
    @pytest.mark.asyncio
    async def test_loads_only_current_post(self, manager, memory_source):
        await manager.load_index(CACHING_URL)

        assert manager.loaded_slugs == {CACHING_SLUG}
        assert manager.manifest is not None
        assert manager.manifest.slugs() == [CACHING_SLUG, RUST_SLUG]
        assert memory_source.calls[RUST_PATH] == 0
        assert manager.is_loaded
        assert manager.chunk_count == manager.manifest.posts[0].chunk_count

    @pytest.mark.asyncio
    async def test_unresolvable_url_loads_every_post(self, manager):
        await manager.load_index("https://blog.example.com/about/")
        assert manager.loaded_slugs == {CACHING_SLUG, RUST_SLUG}

    @pytest.mark.asyncio
    async def test_repeated_calls_are_idempotent(self, manager, memory_source):
        await manager.load_index(CACHING_URL)
        await manager.load_index(CACHING_URL)
        await manager.load_post_index(CACHING_SLUG)

        assert memory_source.calls[settings.manifest_path] == 1
        assert memory_source.calls[CACHING_PATH] == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_manifest_fetch(self, manager, memory_source):
        memory_source.delay = 0.01
        await asyncio.gather(*(manager.load_index(CACHING_URL) for _ in range(5)))

        assert memory_source.calls[settings.manifest_path] == 1
        assert memory_source.calls[CACHING_PATH] == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_for_different_posts(self, manager, memory_source):
        memory_source.delay = 0.01
        await asyncio.gather(
            manager.load_index(CACHING_URL),
            manager.load_index(RUST_URL),
            manager.load_index(CACHING_URL),
        )

        assert memory_source.calls[settings.manifest_path] == 1
        assert manager.loaded_slugs == {CACHING_SLUG, RUST_SLUG}

    @pytest.mark.asyncio
    async def test_concurrent_post_loads_share_one_fetch(self, manager, memory_source):
        memory_source.delay = 0.01
        await asyncio.gather(*(manager.load_post_index(RUST_SLUG) for _ in range(4)))
        assert memory_source.calls[RUST_PATH] == 1

    @pytest.mark.asyncio
    async def test_failed_load_after_cancelled_waiter_is_not_reported(self, manager, memory_source):
        memory_source.delay = 0.01
        memory_source.missing.add(CACHING_PATH)
        reported: list[dict] = []
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            waiter = asyncio.create_task(manager.load_post_index(CACHING_SLUG))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            # the shielded fetch keeps running and fails on its own
            await asyncio.sleep(0.05)
            del waiter
            gc.collect()
        finally:
            loop.set_exception_handler(previous)

        assert memory_source.calls[CACHING_PATH] == 1
        assert CACHING_SLUG not in manager.loaded_slugs
        assert reported == []

    @pytest.mark.asyncio
    async def test_legacy_fallback_when_manifest_missing(self, manager, memory_source):
        memory_source.missing.add(settings.manifest_path)
        await manager.load_index(CACHING_URL)

        assert manager.using_legacy
        assert manager.loaded_slugs == frozenset()
        assert manager.manifest is None
        assert manager.chunk_count == len(
            memory_source.payloads[settings.legacy_index_path]["chunks"]
        )
        assert memory_source.calls[CACHING_PATH] == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_retried(self, manager, memory_source):
        memory_source.delay = 0.01
        memory_source.missing.update({settings.manifest_path, settings.legacy_index_path})

        outcomes = await asyncio.gather(
            *(manager.load_index(CACHING_URL) for _ in range(3)), return_exceptions=True
        )
        assert all(isinstance(outcome, IndexLoadError) for outcome in outcomes)
        assert isinstance(outcomes[0].__cause__, ArtifactNotFoundError)
        assert memory_source.calls[settings.manifest_path] == 1
        assert not manager.is_loaded

        memory_source.missing.clear()
        await manager.load_index(CACHING_URL)
        assert manager.loaded_slugs == {CACHING_SLUG}
        assert memory_source.calls[settings.manifest_path] == 2

    @pytest.mark.asyncio
    async def test_missing_post_propagates(self, manager, memory_source):
        memory_source.missing.add(CACHING_PATH)
        with pytest.raises(ArtifactNotFoundError):
            await manager.load_index(CACHING_URL)
        # the manifest stays cached; only the post is retried
        memory_source.missing.clear()
        await manager.load_index(CACHING_URL)
        assert memory_source.calls[settings.manifest_path] == 1
        assert memory_source.calls[CACHING_PATH] == 2

    @pytest.mark.asyncio
    async def test_malformed_artifacts_rejected(self, manager, memory_source):
        memory_source.payloads[CACHING_PATH] = {"chunks": [], "version": "2.0.0"}
        with pytest.raises(ArtifactMalformedError):
            await manager.load_post_index(CACHING_SLUG)

        memory_source.payloads[RUST_PATH] = {
            **memory_source.payloads[RUST_PATH],
            "index": {"version": "2.3.9"},
        }
        with pytest.raises(ArtifactMalformedError):
            await manager.load_post_index(RUST_SLUG)

        assert not manager.is_loaded
        assert manager.chunk_count == 0

    @pytest.mark.asyncio
    async def test_fetch_deadline(self, memory_source):
        manager = RetrievalManager(memory_source, fetch_timeout=0.05)
        memory_source.hang.add(CACHING_PATH)

        with pytest.raises(ArtifactNotFoundError, match="timed out"):
            await manager.load_post_index(CACHING_SLUG)

    @pytest.mark.asyncio
    async def test_load_additional_posts_skips_failures(self, manager, memory_source):
        memory_source.missing.add(CACHING_PATH)
        await manager.load_additional_posts([CACHING_SLUG, RUST_SLUG, "no-such-post"])
        assert manager.loaded_slugs == {RUST_SLUG}


# ---------------------------------------------------------------------------
# Smart search tiers
# ---------------------------------------------------------------------------

class TestSearchChunksSmart:
    @pytest.mark.asyncio
    async def test_exact_heading_title_ranks_first(self, manager):
        results = await manager.search_chunks_smart("Eviction policies", CACHING_URL, 5)

        assert results
        assert results[0].score == EXACT_HEADING_SCORE
        assert {r.section_id for r in results} == {"eviction-policies"}
        assert [r.chunk_index for r in results] == sorted(r.chunk_index for r in results)

    @pytest.mark.asyncio
    async def test_colon_query_matches_heading(self, manager):
        results = await manager.search_chunks_smart("Note: caching", CACHING_URL, 5)

        assert results[0].score == EXACT_HEADING_SCORE
        assert results[0].section_id == "note-caching"
        assert results[0].section_title == "Note: caching"

    @pytest.mark.asyncio
    async def test_colon_query_without_heading_does_not_raise(self, manager):
        results = await manager.search_chunks_smart("Q&A: lorem ipsum", CACHING_URL, 5)
        assert isinstance(results, list)
        assert len(results) <= 5

    @pytest.mark.asyncio
    async def test_partial_heading_match(self, manager):
        results = await manager.search_chunks_smart("eviction", CACHING_URL, 5)
        assert results
        assert {r.score for r in results} == {PARTIAL_HEADING_SCORE}

    @pytest.mark.asyncio
    async def test_section_tier_restricts_scope(self, manager):
        results = await manager.search_chunks_smart(
            "lorem ipsum", CACHING_URL, 5, section_id="eviction-policies"
        )
        assert results
        assert {r.section_id for r in results} == {"eviction-policies"}

    @pytest.mark.asyncio
    async def test_section_tier_falls_through_to_post(self, manager):
        results = await manager.search_chunks_smart(
            "wrapup", CACHING_URL, 5, section_id="eviction-policies"
        )
        assert results
        assert all("wrapup" in r.text for r in results)
        assert all(r.post_slug == CACHING_SLUG for r in results)

    @pytest.mark.asyncio
    async def test_cross_post_only_searches_loaded_posts(self, manager, memory_source):
        assert await manager.search_chunks_smart("borrowchecker", CACHING_URL, 5) == []
        assert memory_source.calls[RUST_PATH] == 0

        await manager.load_additional_posts([RUST_SLUG])
        results = await manager.search_chunks_smart("borrowchecker", CACHING_URL, 5)

        assert [r.chunk_id for r in results] == [f"{RUST_SLUG}-chunk-0"]
        assert results[0].post_title == "Rust Notes"

    @pytest.mark.asyncio
    async def test_unresolvable_url_goes_straight_to_cross_post(self, manager):
        results = await manager.search_chunks_smart("borrowchecker", "/about/", 5)
        assert [r.post_slug for r in results] == [RUST_SLUG]

    @pytest.mark.asyncio
    async def test_current_post_failure_degrades(self, manager, memory_source):
        await manager.load_additional_posts([RUST_SLUG])
        memory_source.missing.add(CACHING_PATH)

        results = await manager.search_chunks_smart("borrowchecker", CACHING_URL, 5)
        assert [r.post_slug for r in results] == [RUST_SLUG]

    @pytest.mark.asyncio
    async def test_nothing_loadable_returns_empty(self, manager, memory_source):
        memory_source.missing.update(
            {settings.manifest_path, settings.legacy_index_path, CACHING_PATH, RUST_PATH}
        )
        assert await manager.search_chunks_smart("anything", CACHING_URL, 5) == []

    @pytest.mark.asyncio
    async def test_legacy_mode_serves_all_tiers(self, manager, memory_source):
        memory_source.missing.add(settings.manifest_path)
        await manager.load_index(CACHING_URL)

        heading = await manager.search_chunks_smart("Note: caching", CACHING_URL, 5)
        assert heading[0].score == EXACT_HEADING_SCORE

        cross = await manager.search_chunks_smart("borrowchecker", CACHING_URL, 5)
        assert [r.post_slug for r in cross] == [RUST_SLUG]
        assert LEGACY_KEY not in manager.loaded_slugs

    @pytest.mark.asyncio
    async def test_blank_query(self, manager):
        assert await manager.search_chunks_smart("   ", CACHING_URL, 5) == []

    @pytest.mark.asyncio
    async def test_limit_respected(self, manager):
        results = await manager.search_chunks_smart("lorem", CACHING_URL, 2)
        assert len(results) == 2
        assert results[0].score >= results[1].score


# ---------------------------------------------------------------------------
# Section listing, filtered search, accessors
# ---------------------------------------------------------------------------

class TestSectionAndAccessors:
    @pytest.mark.asyncio
    async def test_search_chunks_by_section(self, manager):
        results = await manager.search_chunks_by_section("eviction-policies", CACHING_URL, 10)

        assert results
        assert {r.section_id for r in results} == {"eviction-policies"}
        assert [r.chunk_index for r in results] == sorted(r.chunk_index for r in results)
        assert {r.score for r in results} == {1.0}

        limited = await manager.search_chunks_by_section("eviction-policies", CACHING_URL, 1)
        assert [r.chunk_id for r in limited] == [results[0].chunk_id]

    @pytest.mark.asyncio
    async def test_search_chunks_by_section_without_post(self, manager, memory_source):
        assert await manager.search_chunks_by_section("eviction-policies", "/about/") == []
        memory_source.missing.add(CACHING_PATH)
        assert await manager.search_chunks_by_section("eviction-policies", CACHING_URL) == []

    @pytest.mark.asyncio
    async def test_search_chunks_filters(self, manager):
        await manager.load_index("/about/")

        everything = await manager.search_chunks("lorem", limit=3)
        assert 0 < len(everything) <= 3

        current_only = await manager.search_chunks(
            "lorem borrowchecker", current_url=CACHING_URL, limit=5, filter_current_post=True
        )
        assert current_only
        assert {r.post_slug for r in current_only} == {CACHING_SLUG}

        section_only = await manager.search_chunks(
            "lorem", limit=5, section_id="closing-thoughts"
        )
        assert section_only
        assert {r.section_id for r in section_only} == {"closing-thoughts"}

    @pytest.mark.asyncio
    async def test_search_chunks_loads_on_demand(self, manager):
        results = await manager.search_chunks("borrowchecker", current_url="/about/")
        assert [r.post_slug for r in results] == [RUST_SLUG]
        assert await manager.search_chunks("  ") == []

    @pytest.mark.asyncio
    async def test_chunk_accessors(self, manager):
        assert manager.get_chunk(f"{CACHING_SLUG}-chunk-0") is None
        await manager.load_index(CACHING_URL)

        first = manager.get_chunk(f"{CACHING_SLUG}-chunk-0")
        assert first is not None
        assert first.metadata.post_slug == CACHING_SLUG

        found = manager.get_chunks_by_ids(
            ["missing", f"{CACHING_SLUG}-chunk-1", f"{CACHING_SLUG}-chunk-0"]
        )
        assert [c.metadata.chunk_index for c in found] == [1, 0]

    @pytest.mark.asyncio
    async def test_anchor_url(self, manager):
        results = await manager.search_chunks_by_section("note-caching", CACHING_URL)
        assert results[0].anchor_url == f"{CACHING_URL}#note-caching"

        rust = await manager.search_chunks_by_section("ownership", RUST_URL)
        assert rust[0].anchor_url == f"{RUST_URL}#ownership"
        assert rust[0].model_copy(update={"section_id": None}).anchor_url == RUST_URL
