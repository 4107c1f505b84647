"""Command line entry point.

Commands::

    python -m src.cli build  [--content-dir D] [--output-dir O] [--site-url U]
    python -m src.cli query  "text" [--url U] [--section S] [--limit N] [--artifacts BASE]
    python -m src.cli inspect path/to/post.md

Every command prints one JSON object on stdout (``"ok": true`` plus the
result, or ``"ok": false`` plus the error) and exits 0 or 1.  Logs go to
stderr so stdout stays machine-readable.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from config import settings
from src.content.loader import load_documents, split_frontmatter
from src.indexing.chunker import chunk_text
from src.indexing.indexer import write_artifacts
from src.retrieval.manager import RetrievalManager

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Route all logging to stderr.

    The guard prevents duplicate handlers when ``main()`` is called
    more than once (e.g. in tests).
    """
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(handler)


def _emit(obj: Any, as_json: bool) -> None:
    print(json.dumps(obj, ensure_ascii=False) if as_json else json.dumps(obj, indent=2, ensure_ascii=False))


def cmd_build(args: argparse.Namespace) -> int:
    output_dir = Path(args.output_dir or settings.artifact_output_dir)
    try:
        documents = load_documents(args.content_dir, args.site_url)
        manifest = write_artifacts(documents, output_dir)
    except Exception as exc:
        logger.exception("build failed")
        _emit({"ok": False, "action": "build", "error": str(exc)}, args.as_json)
        return 1

    _emit(
        {
            "ok": True,
            "action": "build",
            "output_dir": str(output_dir),
            "result": {
                "documents": len(documents),
                "posts": len(manifest.posts),
                "chunks": sum(post.chunk_count for post in manifest.posts),
            },
        },
        args.as_json,
    )
    return 0


async def _run_query(args: argparse.Namespace) -> list[dict[str, Any]]:
    async with RetrievalManager.from_settings(args.artifacts) as manager:
        await manager.load_index(args.url)
        results = await manager.search_chunks_smart(
            args.query, current_url=args.url, limit=args.limit, section_id=args.section
        )
    return [
        {
            "chunk_id": result.chunk_id,
            "score": result.score,
            "post_title": result.post_title,
            "url": result.anchor_url,
            "section_title": result.section_title,
            "text": result.text,
        }
        for result in results
    ]


def cmd_query(args: argparse.Namespace) -> int:
    try:
        results = asyncio.run(_run_query(args))
    except Exception as exc:
        logger.exception("query failed")
        _emit({"ok": False, "action": "query", "error": str(exc)}, args.as_json)
        return 1
    _emit({"ok": True, "action": "query", "results": results}, args.as_json)
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    try:
        _frontmatter, body = split_frontmatter(Path(args.path).read_text(encoding="utf-8"))
        chunks = chunk_text(body)
    except Exception as exc:
        logger.exception("inspect failed")
        _emit({"ok": False, "action": "inspect", "error": str(exc)}, args.as_json)
        return 1

    _emit(
        {
            "ok": True,
            "action": "inspect",
            "chunks": [
                {
                    "index": index,
                    "tokens": chunk.tokens,
                    "section_id": chunk.section_id,
                    "section_title": chunk.section_title,
                    "preview": chunk.text[:120],
                }
                for index, chunk in enumerate(chunks)
            ],
        },
        args.as_json,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blog-rag", description="Blog RAG index tools")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Compact JSON output")
    sub = parser.add_subparsers(dest="cmd", required=True)

    build = sub.add_parser("build", help="Build index artifacts from the post directory")
    build.add_argument("--content-dir", default=None, help="Post directory (default: CONTENT_DIR)")
    build.add_argument(
        "--output-dir", default=None, help="Artifact output directory (default: ARTIFACT_OUTPUT_DIR)"
    )
    build.add_argument("--site-url", default=None, help="Site base URL (default: SITE_URL)")
    build.set_defaults(func=cmd_build)

    query = sub.add_parser("query", help="Query built artifacts")
    query.add_argument("query", help="Search text")
    query.add_argument("--url", default=None, help="Page URL the question is asked from")
    query.add_argument("--section", default=None, help="Heading id to search first")
    query.add_argument("--limit", type=int, default=None, help="Maximum number of results")
    query.add_argument(
        "--artifacts", default=None, help="Artifact directory or base URL (default: ARTIFACT_BASE)"
    )
    query.set_defaults(func=cmd_query)

    inspect = sub.add_parser("inspect", help="Show how one markdown file is chunked")
    inspect.add_argument("path", help="Markdown file")
    inspect.set_defaults(func=cmd_inspect)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
