# models.py defines the in-memory shapes the indexing layer passes around while building
# does not touch the filesystem or serialization - wire shapes live in artifacts.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


# one published article as handed over by the content loader
# immutable once loaded; drafts and hidden posts never become a Document
@dataclass(frozen=True)
class Document:
    slug: str
    title: str
    url: str
    date: datetime
    tags: tuple[str, ...] = ()
    body: str = ""


# heading found in the raw body; position is a character offset into the raw body,
# not the cleaned text (chunker re-locates headings after cleaning)
@dataclass(frozen=True)
class Heading:
    id: str
    title: str
    position: int


# chunker output before metadata is attached - text plus the section it belongs to
@dataclass
class TextChunk:
    text: str
    section_id: str | None = None
    section_title: str | None = None
    tokens: int = 0
