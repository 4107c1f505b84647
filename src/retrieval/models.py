from __future__ import annotations

from pydantic import BaseModel

from src.indexing.artifacts import Chunk


class ChunkResult(BaseModel):
    """A scored passage returned by retrieval, with enough to build a citation."""

    # Identity
    chunk_id: str
    post_slug: str
    post_url: str
    post_title: str
    post_date: str
    post_tags: list[str]

    text: str
    chunk_index: int
    section_id: str | None = None
    section_title: str | None = None

    # 10.0 / 8.0 for heading matches, 1.0 for section listings,
    # otherwise the lexical engine's relevance score.
    score: float

    @property
    def anchor_url(self) -> str:
        """Post URL pointing at the chunk's section when it has one."""
        if not self.section_id:
            return self.post_url
        return f"{self.post_url}#{self.section_id}"

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float) -> "ChunkResult":
        metadata = chunk.metadata
        return cls(
            chunk_id=metadata.chunk_id,
            post_slug=metadata.post_slug,
            post_url=metadata.post_url,
            post_title=metadata.post_title,
            post_date=metadata.post_date,
            post_tags=list(metadata.post_tags),
            text=chunk.text,
            chunk_index=metadata.chunk_index,
            section_id=metadata.section_id,
            section_title=metadata.section_title,
            score=score,
        )
