from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from config import settings
from src.content.loader import post_url
from src.indexing.indexer import post_index_path, write_artifacts
from src.indexing.models import Document
from src.retrieval.errors import ArtifactNotFoundError


SITE_URL = "https://blog.example.com"
CACHING_SLUG = "caching-guide"
RUST_SLUG = "rust-notes"
CACHING_URL = f"{SITE_URL}/blog/{CACHING_SLUG}/"
RUST_URL = f"{SITE_URL}/blog/{RUST_SLUG}/"


# ---------------------------------------------------------------------------
# Synthetic posts
# ---------------------------------------------------------------------------

_FILLER = (
    "Lorem ipsum dolor sit amet, consectetur adipiscing elit. "
    "Sed do eiusmod tempor incididunt ut labore et dolore magna aliqua. "
)


def make_paragraph(topic: str, number: int) -> str:
    # ~100 estimated tokens, well under the per-unit budget.
    return f"Point {number} on {topic} comes first here. " + (_FILLER * 3).strip()


def make_section(title: str, topic: str, paragraphs: int = 5) -> str:
    body = "\n\n".join(make_paragraph(topic, number) for number in range(paragraphs))
    return f"## {title}\n\n{body}"


def make_document(slug: str, title: str, body: str, tags: tuple[str, ...] = ()) -> Document:
    return Document(
        slug=slug,
        title=title,
        url=post_url(slug, SITE_URL),
        date=datetime(2024, 3, 5, tzinfo=timezone.utc),
        tags=tags,
        body=body,
    )


@pytest.fixture
def caching_document() -> Document:
    body = "\n\n".join(
        [
            make_section("Note: caching", "cachelayer"),
            make_section("Eviction policies", "evictor"),
            make_section("Closing thoughts", "wrapup"),
        ]
    )
    return make_document(CACHING_SLUG, "Caching Guide", body, ("performance", "web"))


@pytest.fixture
def rust_document() -> Document:
    body = (
        "## Ownership\n\n"
        "The borrowchecker keeps references honest. Lifetimes describe how long they live."
    )
    return make_document(RUST_SLUG, "Rust Notes", body, ("rust",))


@pytest.fixture
def sample_documents(caching_document: Document, rust_document: Document) -> list[Document]:
    return [caching_document, rust_document]


# ---------------------------------------------------------------------------
# Built artifacts
# ---------------------------------------------------------------------------

@pytest.fixture
def artifact_dir(tmp_path: Path, sample_documents: list[Document]) -> Path:
    output_dir = tmp_path / "public"
    write_artifacts(sample_documents, output_dir)
    return output_dir


@pytest.fixture
def artifact_payloads(artifact_dir: Path) -> dict[str, Any]:
    paths = [
        settings.manifest_path,
        settings.legacy_index_path,
        post_index_path(CACHING_SLUG),
        post_index_path(RUST_SLUG),
    ]
    return {
        path: json.loads((artifact_dir / path.lstrip("/")).read_text(encoding="utf-8"))
        for path in paths
    }


class MemoryArtifactSource:
    """In-memory artifact source that counts fetches per path.

    ``missing`` paths answer like a 404, ``hang`` paths never answer,
    ``delay`` adds latency to every fetch so concurrent callers overlap.
    """

    def __init__(self, payloads: dict[str, Any], *, delay: float = 0.0) -> None:
        self.payloads = dict(payloads)
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self.missing: set[str] = set()
        self.hang: set[str] = set()

    async def fetch_json(self, path: str) -> Any:
        self.calls[path] += 1
        if path in self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if path in self.missing or path not in self.payloads:
            raise ArtifactNotFoundError(path, "HTTP 404")
        # fresh copy, as if decoded off the wire
        return json.loads(json.dumps(self.payloads[path]))


@pytest.fixture
def memory_source(artifact_payloads: dict[str, Any]) -> MemoryArtifactSource:
    return MemoryArtifactSource(artifact_payloads)
