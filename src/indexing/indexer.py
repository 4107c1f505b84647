from __future__ import annotations

# ────────────────────────────────────────────────────────────────
# indexer.py — Entry point for the build-time indexing layer
#
# Public interface:
#   build_post_artifact(doc)            — chunks + lexical index for one post
#   build_legacy_artifact(artifacts)    — merged index over every post
#   write_artifacts(docs, output_dir)   — full build, returns the Manifest
#
# Output layout (relative to output_dir, mirrors the artifact paths
# the retrieval manager reads from settings):
#   rag-index/{slug}.json      one IndexArtifact per post
#   rag-index/manifest.json    Manifest listing every post
#   rag-index.json             legacy merged IndexArtifact
#
# Every build regenerates all three wholesale; nothing is patched in
# place.  Files are written to a temp name and renamed so a reader
# never observes a half-written artifact.
#
# Failure handling:
#   A post whose cleaned body is empty yields no chunks and is left
#   out of the manifest with a warning.  Any other error (bad index
#   build, unwritable directory) propagates and aborts the build.
# ────────────────────────────────────────────────────────────────

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from config import settings
from src.indexing.artifacts import IndexArtifact, Manifest, ManifestEntry, iso_timestamp
from src.indexing.chunker import build_chunks
from src.indexing.models import Document
from src.indexing.search_index import build_search_index, serialize_search_index

logger = logging.getLogger(__name__)


class EmptyPostError(ValueError):
    """The post body has no text left after markdown cleaning."""


def _artifact_file(output_dir: Path, artifact_path: str) -> Path:
    return output_dir / artifact_path.lstrip("/")


def post_index_path(slug: str) -> str:
    return settings.post_index_path_template.format(slug=slug)


def _write_json(path: Path, payload: dict[str, Any]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)
    tmp.replace(path)
    return path.stat().st_size


def build_post_artifact(document: Document) -> IndexArtifact:
    chunks = build_chunks(document)
    if not chunks:
        raise EmptyPostError(f"Post {document.slug!r} has no indexable text.")
    index = build_search_index(chunks)
    return IndexArtifact(
        chunks=chunks,
        index=serialize_search_index(index),
        version=settings.post_index_version,
        generated_at=iso_timestamp(),
    )


def build_legacy_artifact(artifacts: Iterable[IndexArtifact]) -> IndexArtifact:
    """Union every post's chunks into one artifact with one index."""
    all_chunks = [chunk for artifact in artifacts for chunk in artifact.chunks]
    index = build_search_index(all_chunks)
    return IndexArtifact(
        chunks=all_chunks,
        index=serialize_search_index(index),
        version=settings.legacy_index_version,
        generated_at=iso_timestamp(),
    )


def _manifest_entry(document: Document, artifact: IndexArtifact) -> ManifestEntry:
    return ManifestEntry(
        slug=document.slug,
        title=document.title,
        url=document.url,
        date=iso_timestamp(document.date),
        tags=list(document.tags),
        chunk_count=len(artifact.chunks),
        index_file=post_index_path(document.slug),
    )


def write_artifacts(documents: Iterable[Document], output_dir: str | Path) -> Manifest:
    """Build and write every artifact for *documents* under *output_dir*."""
    root = Path(output_dir)
    manifest = Manifest(version=settings.manifest_version, generated_at=iso_timestamp())
    artifacts: list[IndexArtifact] = []
    total_size = 0

    for document in documents:
        try:
            artifact = build_post_artifact(document)
        except EmptyPostError:
            logger.warning("skipping %s: body has no indexable text", document.slug)
            continue

        size = _write_json(
            _artifact_file(root, post_index_path(document.slug)), artifact.to_json_dict()
        )
        total_size += size
        artifacts.append(artifact)
        manifest.posts.append(_manifest_entry(document, artifact))
        logger.info(
            "indexed %s: %d chunks (%.2f KB)", document.title, len(artifact.chunks), size / 1024
        )

    manifest_file = _artifact_file(root, settings.manifest_path)
    _write_json(manifest_file, manifest.to_json_dict())
    logger.info(
        "generated %d post indexes, %d chunks, %.2f MB; manifest at %s",
        len(manifest.posts),
        sum(post.chunk_count for post in manifest.posts),
        total_size / (1024 * 1024),
        manifest_file,
    )

    if artifacts:
        legacy = build_legacy_artifact(artifacts)
        legacy_size = _write_json(
            _artifact_file(root, settings.legacy_index_path), legacy.to_json_dict()
        )
        logger.info(
            "legacy index: %d chunks (%.2f MB)", len(legacy.chunks), legacy_size / (1024 * 1024)
        )
    else:
        logger.warning("no posts indexed; legacy index not written")

    return manifest
