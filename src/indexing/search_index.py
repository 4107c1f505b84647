from __future__ import annotations

"""Lexical search index over chunks.

Thin wrapper around lunr (the Python port, serialization-compatible with
lunr.js) so the field list and boosts live in one place and both the
indexer and the retrieval manager agree on them.

Indexed fields, highest weight first: chunk text, section title, post
title, post tags.
"""

from typing import Any, Iterable

from lunr import lunr
from lunr.index import Index

from config import settings
from src.indexing.artifacts import Chunk

REF_FIELD = "chunkId"


def _fields() -> list[dict[str, Any]]:
    return [
        {"field_name": "text", "boost": settings.boost_text},
        {"field_name": "sectionTitle", "boost": settings.boost_section_title},
        {"field_name": "postTitle", "boost": settings.boost_post_title},
        {"field_name": "postTags", "boost": settings.boost_post_tags},
    ]


def _index_document(chunk: Chunk) -> dict[str, str]:
    metadata = chunk.metadata
    return {
        REF_FIELD: metadata.chunk_id,
        "text": chunk.text,
        "sectionTitle": metadata.section_title or "",
        "postTitle": metadata.post_title,
        "postTags": " ".join(metadata.post_tags),
    }


def build_search_index(chunks: Iterable[Chunk]) -> Index:
    documents = [_index_document(chunk) for chunk in chunks]
    if not documents:
        # lunr cannot average field lengths over an empty corpus.
        raise ValueError("Cannot build a search index without chunks.")
    return lunr(ref=REF_FIELD, fields=_fields(), documents=documents)


def serialize_search_index(index: Index) -> dict[str, Any]:
    return index.serialize()


def load_search_index(serialized: dict[str, Any]) -> Index:
    """Rebuild a searchable index from its serialized JSON form."""
    return Index.load(serialized)
