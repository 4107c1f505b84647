from __future__ import annotations

"""Query handling shared by every retrieval scope.

A query is answered by a two-step cascade over whatever set of chunks
the caller has scoped it to (one section, one post, everything loaded):

1. Heading match: compare the normalized query with each chunk's section
   title.  Exact equality scores 10.0, containment in either direction
   scores 8.0.  Colons are ignored in a second comparison so "Note:
   caching" finds the heading "Note caching" and vice versa.  Any hit here
   ends the cascade.
2. Lexical search: run the query through the lunr index after removing
   characters the lunr query language treats as operators.  A query that
   still fails to parse is retried once with all punctuation removed, and
   after that yields no results rather than an error.
"""

import logging
import re
from typing import Iterable

from lunr.exceptions import QueryParseError
from lunr.index import Index

from src.indexing.artifacts import Chunk
from src.retrieval.models import ChunkResult

logger = logging.getLogger(__name__)

EXACT_HEADING_SCORE = 10.0
PARTIAL_HEADING_SCORE = 8.0

_WHITESPACE_RE = re.compile(r"\s+")
# field separator, presence, wildcard, fuzziness, boost, phrase
_LUNR_OPERATOR_RE = re.compile(r'[:+*~^"]')
_NON_WORD_RE = re.compile(r"[^\w\s]")


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_query(text: str) -> str:
    return _collapse(text.lower())


def _without_colons(normalized: str) -> str:
    return _collapse(normalized.replace(":", ""))


def sanitize_query(query: str) -> str:
    return _collapse(_LUNR_OPERATOR_RE.sub(" ", query))


def strip_punctuation(query: str) -> str:
    return _collapse(_NON_WORD_RE.sub(" ", query))


def _contains_either(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a in b or b in a


def heading_matches(query: str, chunks: Iterable[Chunk]) -> list[ChunkResult]:
    """Chunks whose section title matches *query*, best first."""
    normalized = normalize_query(query)
    if not normalized:
        return []
    normalized_no_colon = _without_colons(normalized)

    best: dict[str, ChunkResult] = {}
    for chunk in chunks:
        if not chunk.metadata.section_title:
            continue
        title = normalize_query(chunk.metadata.section_title)
        if not title:
            continue
        title_no_colon = _without_colons(title)

        if title == normalized or (title_no_colon and title_no_colon == normalized_no_colon):
            score = EXACT_HEADING_SCORE
        elif _contains_either(title, normalized) or _contains_either(
            title_no_colon, normalized_no_colon
        ):
            score = PARTIAL_HEADING_SCORE
        else:
            continue

        chunk_id = chunk.metadata.chunk_id
        if chunk_id not in best or best[chunk_id].score < score:
            best[chunk_id] = ChunkResult.from_chunk(chunk, score)

    return sorted(best.values(), key=lambda result: (-result.score, result.chunk_index))


def _search_index(index: Index, query: str) -> list[tuple[str, float]]:
    return [(hit["ref"], float(hit["score"])) for hit in index.search(query)]


def lexical_search(index: Index, query: str) -> list[tuple[str, float]]:
    """(chunk_id, score) pairs from *index*, in lunr's relevance order.

    Never raises on bad query syntax; an unparseable query gives [].
    """
    sanitized = sanitize_query(query)
    if not sanitized:
        return []
    try:
        return _search_index(index, sanitized)
    except QueryParseError as exc:
        logger.warning("lunr rejected query %r (%s); retrying without punctuation", query, exc)

    simplified = strip_punctuation(query)
    if not simplified:
        return []
    try:
        return _search_index(index, simplified)
    except QueryParseError as exc:
        logger.warning("lunr rejected simplified query %r (%s)", simplified, exc)
        return []


def ranked_lexical_hits(
    query: str, indexes: Iterable[Index], allowed_ids: Iterable[str] | None = None
) -> list[tuple[str, float]]:
    """Merge hits from several indexes, keeping each chunk's best score."""
    allowed = set(allowed_ids) if allowed_ids is not None else None
    best: dict[str, float] = {}
    for index in indexes:
        for chunk_id, score in lexical_search(index, query):
            if allowed is not None and chunk_id not in allowed:
                continue
            if chunk_id not in best or best[chunk_id] < score:
                best[chunk_id] = score
    return sorted(best.items(), key=lambda item: item[1], reverse=True)


def match_cascade(
    query: str, chunks: Iterable[Chunk], indexes: Iterable[Index], limit: int
) -> list[ChunkResult]:
    """Heading matches if there are any, otherwise lexical results, within *chunks*."""
    scope = {chunk.metadata.chunk_id: chunk for chunk in chunks}
    if not scope or limit <= 0:
        return []

    headings = heading_matches(query, scope.values())
    if headings:
        return headings[:limit]

    results: list[ChunkResult] = []
    for chunk_id, score in ranked_lexical_hits(query, indexes, scope.keys()):
        results.append(ChunkResult.from_chunk(scope[chunk_id], score))
        if len(results) >= limit:
            break
    return results
