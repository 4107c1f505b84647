# build_chunks() with private helpers

from __future__ import annotations

"""Chunk construction for blog posts.

Core responsibilities:
- Find heading anchors in the raw post body (markdown and inline HTML).
- Strip markdown syntax and split the cleaned text into overlapping,
  token-budgeted chunks.
- Associate every chunk with the nearest heading that precedes it, so the
  retrieval layer can answer "what does the section X say" questions.

Heading association is best-effort: cleaning shifts every offset, so
headings are re-located in the cleaned text by fuzzy string matching.
"""

import logging
import math
import re
from bisect import bisect_left
from typing import Callable

from bs4 import BeautifulSoup

from config import settings
from src.indexing.artifacts import Chunk, ChunkMetadata, iso_timestamp
from src.indexing.models import Document, Heading, TextChunk

logger = logging.getLogger(__name__)

_TOKEN_COUNTER: Callable[[str], int] | None = None

# tokenization - "chars" is the ceil(len / chars_per_token) estimate the chunk budget is defined in;
# tiktoken is loaded lazily on first call and cached in _TOKEN_COUNTER

def _build_token_counter() -> Callable[[str], int]:
    if settings.chunk_tokenizer_kind == "chars":
        return lambda text: math.ceil(len(text) / settings.chars_per_token)

    if settings.chunk_tokenizer_kind == "tiktoken":
        import tiktoken
        encoding = tiktoken.get_encoding(settings.chunk_tokenizer_name)
        return lambda text: len(encoding.encode(text))

    raise ValueError(
        f"Unsupported tokenizer kind: {settings.chunk_tokenizer_kind}. "
        "Expected 'chars' or 'tiktoken'."
    )


def _token_count(text: str) -> int:
    global _TOKEN_COUNTER
    if _TOKEN_COUNTER is None:
        _TOKEN_COUNTER = _build_token_counter()
    return _TOKEN_COUNTER(text)


# Heading extraction (extract_headings, slugify)
# runs over the RAW body: ## / ### lines with optional {#explicit-id}, then <h2>/<h3> tags
# embedded in MDX. Ids match what the site renderer puts on the page anchors.

_MARKDOWN_HEADING_RE = re.compile(
    r"^[ \t]*(#{2,3})[ \t]+(.+?)(?:[ \t]*\{#([^}]+)\})?[ \t]*$", re.MULTILINE
)
_HTML_HEADING_RE = re.compile(r"<(h[23])\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")


def slugify(text: str) -> str:
    slug = text.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip()


def _html_heading(fragment: str, tag_name: str) -> tuple[str | None, str]:
    soup = BeautifulSoup(fragment, "html.parser")
    tag = soup.find(tag_name.lower())
    if tag is None:
        return None, " ".join(_TAG_RE.sub(" ", fragment).split())
    return tag.get("id") or None, " ".join(tag.get_text().split())


def _is_duplicate(headings: list[Heading], candidate: Heading) -> bool:
    tolerance = settings.heading_dedup_tolerance
    return any(
        existing.id == candidate.id and abs(existing.position - candidate.position) < tolerance
        for existing in headings
    )


def extract_headings(body: str) -> list[Heading]:
    """Return the post's h2/h3 headings ordered by offset in *body*."""
    headings: list[Heading] = []
    # Blank out fenced code (offsets preserved) so "## comment" lines in
    # code samples are not taken for headings.
    body = _CODE_FENCE_RE.sub(lambda match: re.sub(r"[^\n]", " ", match.group(0)), body)

    for match in _MARKDOWN_HEADING_RE.finditer(body):
        title = match.group(2).strip()
        if not title:
            continue
        heading = Heading(
            id=match.group(3) or slugify(title),
            title=title,
            position=match.start(),
        )
        if not _is_duplicate(headings, heading):
            headings.append(heading)

    for match in _HTML_HEADING_RE.finditer(body):
        explicit_id, title = _html_heading(match.group(0), match.group(1))
        if not title:
            continue
        heading = Heading(
            id=explicit_id or slugify(title),
            title=title,
            position=match.start(),
        )
        if not _is_duplicate(headings, heading):
            headings.append(heading)

    headings.sort(key=lambda heading: heading.position)
    return headings


# Cleaning (clean_markdown) - removes code, resolves links and images to their text, drops emphasis
# markers. Every original offset is invalid afterwards.

_CODE_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_EMPHASIS_RE = re.compile(r"[#*_~]")
_EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")


def clean_markdown(text: str) -> str:
    cleaned = _CODE_FENCE_RE.sub("", text)
    cleaned = _INLINE_CODE_RE.sub("", cleaned)
    cleaned = _IMAGE_RE.sub(r"\1", cleaned)
    cleaned = _LINK_RE.sub(r"\1", cleaned)
    cleaned = _EMPHASIS_RE.sub("", cleaned)
    cleaned = _EXTRA_NEWLINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


# Heading re-location (_locate_headings) - three escalating strategies against the cleaned text:
#   1. exact substring of the lowercased, cleaned heading title
#   2. same, with non-word characters stripped from both sides (positions mapped back)
#   3. the first 1-3 significant (len > 3) words of the title as a phrase
# Each search starts at the previous heading's location so an earlier passing mention of
# the title in body text does not steal the anchor; if that fails the whole text is tried.

_NON_WORD_RE = re.compile(r"[^\w\s-]")
_WORD_CHAR_RE = re.compile(r"[\w\s-]")


def _match_title(heading: Heading) -> str:
    return clean_markdown(_TAG_RE.sub("", heading.title)).strip().lower()


def _normalized_with_offsets(text: str) -> tuple[str, list[int]]:
    kept: list[str] = []
    offsets: list[int] = []
    for index, char in enumerate(text):
        if _WORD_CHAR_RE.match(char):
            kept.append(char)
            offsets.append(index)
    return "".join(kept), offsets


def _find_heading(
    title: str,
    cleaned_lower: str,
    normalized: str,
    offsets: list[int],
    start: int,
) -> int:
    if not title:
        return -1

    pos = cleaned_lower.find(title, start)
    if pos >= 0:
        return pos

    normalized_title = _NON_WORD_RE.sub("", title).strip()
    if normalized_title:
        norm_pos = normalized.find(normalized_title, bisect_left(offsets, start))
        if norm_pos >= 0:
            return offsets[norm_pos]

    words = [word for word in title.split() if len(word) > 3]
    if words:
        return cleaned_lower.find(" ".join(words[:3]), start)
    return -1


def _locate_headings(headings: list[Heading], cleaned: str) -> list[tuple[int, Heading]]:
    cleaned_lower = cleaned.lower()
    normalized, offsets = _normalized_with_offsets(cleaned_lower)

    # Keyed by position: two headings resolving to the same spot keep the later one.
    positions: dict[int, Heading] = {}
    search_from = 0
    for heading in headings:
        title = _match_title(heading)
        pos = _find_heading(title, cleaned_lower, normalized, offsets, search_from)
        if pos < 0 and search_from > 0:
            pos = _find_heading(title, cleaned_lower, normalized, offsets, 0)
        if pos < 0:
            logger.debug("heading %r not found in cleaned text; dropped from tracking", heading.id)
            continue
        positions[pos] = heading
        search_from = max(search_from, pos)

    return sorted(positions.items(), key=lambda item: item[0])


# Paragraph walking (_paragraph_blocks, _SectionTracker)
# _paragraph_blocks splits on blank lines and returns each paragraph with its offsets in the cleaned text.
# _SectionTracker answers "which section is this paragraph in": a paragraph that IS a heading's
# text switches to that heading, otherwise passing a located heading's offset does.

def _paragraph_blocks(text: str) -> list[tuple[str, int, int]]:
    if not text.strip():
        return []

    pieces = re.split(r"\n\s*\n+", text)
    blocks: list[tuple[str, int, int]] = []
    search_pos = 0

    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        start = text.find(piece, search_pos)
        if start == -1:
            continue
        end = start + len(piece)
        blocks.append((piece, start, end))
        search_pos = end

    return blocks


def _is_heading_paragraph(paragraph_lower: str, title: str) -> bool:
    if not title:
        return False
    return (
        paragraph_lower == title
        or paragraph_lower.startswith(title + "\n")
        or paragraph_lower.startswith(title + " ")
        or f"\n{title}\n" in paragraph_lower
        or paragraph_lower.endswith("\n" + title)
    )


class _SectionTracker:
    def __init__(self, headings: list[Heading], located: list[tuple[int, Heading]]) -> None:
        self._titles = [(heading, _match_title(heading)) for heading in headings]
        self._located = located
        self._located_positions = [pos for pos, _heading in located]
        self._location_of = {id(heading): pos for pos, heading in located}
        self._passed = -1
        self.current: Heading | None = None

    def advance(self, paragraph: str, start: int) -> Heading | None:
        nearest = bisect_left(self._located_positions, start + 1) - 1
        if nearest >= 0 and self._located_positions[nearest] > self._passed:
            self._passed = self._located_positions[nearest]
            self.current = self._located[nearest][1]

        paragraph_lower = paragraph.lower().strip()
        matches = [
            heading for heading, title in self._titles if _is_heading_paragraph(paragraph_lower, title)
        ]
        # Headings located behind the last passed one are ignored so a
        # paragraph that merely starts with an earlier title cannot move
        # the section backwards.
        eligible = [
            heading
            for heading in matches
            if self._location_of.get(id(heading), -1) < 0
            or self._location_of[id(heading)] >= self._passed
        ]
        if eligible:
            self.current = min(
                eligible,
                key=lambda heading: abs(self._location_of.get(id(heading), start) - start),
            )
        return self.current


# Text splitting (_recursive_token_split, _greedy_word_split, _split_keep_separator)
# fallback chain for paragraphs too long to fit a chunk on their own. Tries \n, then sentence ends,
# then spaces. Keeping every unit under (max - min) tokens is what guarantees the accumulator
# below never has to accept an oversized chunk.

def _split_keep_separator(text: str, separator: str) -> list[str]:
    if separator not in text:
        return [text]

    parts = text.split(separator)
    return [part + separator for part in parts[:-1]] + [parts[-1]]


def _greedy_word_split(text: str, max_tokens: int) -> list[str]:
    pieces: list[str] = []
    current: list[str] = []

    for word in text.split(" "):
        candidate = " ".join(current + [word]).strip()
        if candidate and _token_count(candidate) <= max_tokens:
            current.append(word)
            continue
        if current:
            pieces.append(" ".join(current).strip())
            current = [word]
        else:
            # A single word longer than the budget is kept whole.
            pieces.append(word.strip())

    if current:
        pieces.append(" ".join(current).strip())

    return [piece for piece in pieces if piece]


def _recursive_token_split(text: str, max_tokens: int) -> list[str]:
    separators = ["\n", ". ", " "]

    def _split_inner(value: str, level: int) -> list[str]:
        if _token_count(value) <= max_tokens:
            return [value]
        if level >= len(separators):
            return _greedy_word_split(value, max_tokens)

        pieces = _split_keep_separator(value, separators[level])
        if len(pieces) == 1:
            return _split_inner(value, level + 1)

        # Re-pack neighbouring pieces so a long paragraph becomes a few
        # large units rather than one unit per sentence.
        packed: list[str] = []
        for piece in pieces:
            piece = piece.strip()
            if not piece:
                continue
            if packed and _token_count(f"{packed[-1]} {piece}") <= max_tokens:
                packed[-1] = f"{packed[-1]} {piece}"
                continue
            packed.append(piece)

        out: list[str] = []
        for piece in packed:
            out.extend(_split_inner(piece, level + 1))
        return out

    return [piece for piece in _split_inner(text, 0) if piece.strip()]


# Overlap (_overlap_text) - the next chunk starts with the tail of the previous one.
# The cut is the first sentence end or line break inside the first half of the overlap window,
# then the first whitespace there, then a hard cut. Strings are sliced by code point, so a
# hard cut never splits a multi-byte character.

_SENTENCE_BOUNDARY_RE = re.compile(r"[.!?](?=\s)|\n")
_WHITESPACE_RE = re.compile(r"\s")


def _overlap_text(text: str, overlap_tokens: int) -> str:
    overlap_chars = overlap_tokens * settings.chars_per_token
    if overlap_chars <= 0:
        return ""
    if len(text) <= overlap_chars:
        return text.strip()

    start = len(text) - overlap_chars
    window_end = start + max(1, overlap_chars // 2)

    boundary = _SENTENCE_BOUNDARY_RE.search(text, start, window_end)
    if boundary is None:
        boundary = _WHITESPACE_RE.search(text, start, window_end)
    if boundary is not None:
        return text[boundary.end():].strip()
    return text[start:].strip()


# Accumulation (chunk_text)
# walks paragraph units in order and closes a chunk as soon as its estimate lands inside
# [min, max]; the next chunk is seeded with the overlap. If adding a unit would overflow max
# while the buffer is still under min, the unit is appended anyway (oversized beats undersized).

def _unit_stream(
    cleaned: str, tracker: _SectionTracker
) -> list[tuple[str, Heading | None]]:
    unit_budget = max(1, settings.chunk_max_tokens - settings.chunk_min_tokens - 1)
    units: list[tuple[str, Heading | None]] = []
    for paragraph, start, _end in _paragraph_blocks(cleaned):
        section = tracker.advance(paragraph, start)
        for unit in _recursive_token_split(paragraph, unit_budget):
            units.append((unit, section))
    return units


def _make_text_chunk(text: str, section: Heading | None) -> TextChunk:
    text = text.strip()
    return TextChunk(
        text=text,
        section_id=section.id if section else None,
        section_title=section.title if section else None,
        tokens=_token_count(text),
    )


def chunk_text(body: str) -> list[TextChunk]:
    """Split one raw post body into section-tagged, overlapping chunks."""
    body = body.replace("\r\n", "\n")
    headings = extract_headings(body)
    cleaned = clean_markdown(body)
    if not cleaned:
        return []

    tracker = _SectionTracker(headings, _locate_headings(headings, cleaned))
    min_tokens = settings.chunk_min_tokens
    max_tokens = settings.chunk_max_tokens
    overlap_tokens = settings.chunk_overlap_tokens

    chunks: list[TextChunk] = []
    buffer = ""
    seed = ""
    buffer_section: Heading | None = None

    for unit, section in _unit_stream(cleaned, tracker):
        candidate = f"{buffer}\n\n{unit}" if buffer else unit
        if buffer and _token_count(candidate) > max_tokens and _token_count(buffer) >= min_tokens:
            chunks.append(_make_text_chunk(buffer, buffer_section))
            seed = _overlap_text(chunks[-1].text, overlap_tokens)
            candidate = f"{seed}\n\n{unit}" if seed else unit

        buffer = candidate
        buffer_section = section

        if min_tokens <= _token_count(buffer) <= max_tokens:
            chunks.append(_make_text_chunk(buffer, buffer_section))
            seed = _overlap_text(chunks[-1].text, overlap_tokens)
            buffer = seed

    if not chunks:
        # Nothing reached the minimum: the whole post is one chunk.
        return [_make_text_chunk(cleaned, buffer_section)]

    tail = buffer[len(seed):] if seed and buffer.startswith(seed) else buffer
    if tail.strip():
        if _token_count(buffer) >= min_tokens:
            chunks.append(_make_text_chunk(buffer, buffer_section))
        else:
            # A short remainder is folded into the last chunk instead of
            # becoming a near-empty chunk; the seed is already there.
            last = chunks[-1]
            merged = f"{last.text}\n\n{tail.strip()}"
            chunks[-1] = TextChunk(
                text=merged,
                section_id=last.section_id,
                section_title=last.section_title,
                tokens=_token_count(merged),
            )

    return chunks


# build_chunks()
# the entry point used by the indexer: chunks one Document and attaches the denormalized
# post metadata each chunk carries on disk.

def build_chunks(document: Document) -> list[Chunk]:
    """Chunk *document* and return wire-ready chunks numbered from 0."""
    text_chunks = chunk_text(document.body)
    post_date = iso_timestamp(document.date)
    total = len(text_chunks)

    return [
        Chunk(
            text=text_chunk.text,
            metadata=ChunkMetadata(
                chunk_id=f"{document.slug}-chunk-{index}",
                post_url=document.url,
                post_title=document.title,
                post_slug=document.slug,
                post_date=post_date,
                post_tags=list(document.tags),
                chunk_index=index,
                total_chunks=total,
                section_id=text_chunk.section_id,
                section_title=text_chunk.section_title,
            ),
        )
        for index, text_chunk in enumerate(text_chunks)
    ]
