from __future__ import annotations

from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterator

import yaml
from pydantic import BaseModel, Field, ValidationError

from config import settings
from src.indexing.models import Document

POST_SUFFIXES = {".md", ".mdx"}


class ContentError(ValueError):
    """A post file could not be turned into a Document."""


# only the frontmatter keys the index needs; everything else the site uses is ignored
class PostFrontmatter(BaseModel):
    title: str
    date: datetime
    tags: list[str] = Field(default_factory=list)
    slug: str | None = None
    draft: bool = False
    hide: bool = False


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    if not text.startswith("---"):
        return {}, text
    lines = text.splitlines(keepends=True)
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            data = yaml.safe_load(raw) or {}
            if not isinstance(data, dict):
                raise ContentError("frontmatter must be a mapping")
            return data, body
    raise ContentError("unterminated frontmatter block")


# yaml gives bare dates back as datetime.date; posts are dated at midnight UTC
def _as_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return value


def _iter_post_files(content_dir: Path) -> Iterator[Path]:
    for path in sorted(content_dir.rglob("*")):
        if path.is_file() and path.suffix.lower() in POST_SUFFIXES:
            yield path


def post_url(slug: str, site_url: str | None = None) -> str:
    base = (site_url or settings.site_url).rstrip("/")
    return f"{base}/blog/{slug}/"


def parse_document(path: Path, content_dir: Path, site_url: str | None = None) -> Document | None:
    """Parse one post file; returns None for drafts and hidden posts."""
    try:
        data, body = split_frontmatter(path.read_text(encoding="utf-8"))
        if "date" in data:
            data["date"] = _as_datetime(data["date"])
        frontmatter = PostFrontmatter.model_validate(data)
    except (yaml.YAMLError, ValidationError, ContentError) as exc:
        raise ContentError(f"{path}: {exc}") from exc

    if frontmatter.draft or frontmatter.hide:
        return None

    slug = frontmatter.slug or path.relative_to(content_dir).with_suffix("").as_posix()
    return Document(
        slug=slug,
        title=frontmatter.title,
        url=post_url(slug, site_url),
        date=_as_datetime(frontmatter.date),
        tags=tuple(frontmatter.tags),
        body=body,
    )


def load_documents(content_dir: str | Path | None = None, site_url: str | None = None) -> list[Document]:
    """Load every published post under *content_dir*, ordered by file path."""
    root = Path(content_dir or settings.content_dir)
    if not root.is_dir():
        raise ContentError(f"content directory not found: {root}")

    documents: list[Document] = []
    for path in _iter_post_files(root):
        document = parse_document(path, root, site_url)
        if document is not None:
            documents.append(document)
    return documents
