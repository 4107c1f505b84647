from __future__ import annotations

"""Wire schema for the artifacts shared between the build and the runtime.

Everything the indexer writes and the retrieval manager reads goes through
these models, so a malformed artifact is rejected at the deserialization
boundary instead of surfacing later as a missing key.  Field names are
snake_case in Python and camelCase on disk.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ArtifactModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ChunkMetadata(_ArtifactModel):
    chunk_id: str
    post_url: str
    post_title: str
    post_slug: str
    post_date: str
    post_tags: list[str] = Field(default_factory=list)
    chunk_index: int
    total_chunks: int
    # Heading anchor + text of the nearest preceding heading, if any.
    section_id: str | None = None
    section_title: str | None = None


class Chunk(_ArtifactModel):
    text: str
    metadata: ChunkMetadata


class IndexArtifact(_ArtifactModel):
    """One per-document artifact, or the merged legacy artifact."""

    chunks: list[Chunk]
    # Serialized lunr index (lunr.js-compatible JSON object).
    index: dict[str, Any]
    version: str
    generated_at: str


class ManifestEntry(_ArtifactModel):
    slug: str
    title: str
    url: str
    date: str
    tags: list[str] = Field(default_factory=list)
    chunk_count: int
    index_file: str


class Manifest(_ArtifactModel):
    version: str
    generated_at: str
    posts: list[ManifestEntry] = Field(default_factory=list)

    def slugs(self) -> list[str]:
        return [post.slug for post in self.posts]


def iso_timestamp(value: datetime | None = None) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
