from __future__ import annotations

import re
from urllib.parse import urldefrag, urlparse

_BLOG_SLUG_RE = re.compile(r"/blog/([^/?#]+)")


def slug_from_url(url: str | None) -> str | None:
    """Derive the post slug from a page URL, or None if it is not a post.

    Accepts absolute URLs and bare paths, with or without a trailing
    slash, query string or fragment: ``https://site/blog/foo/?x=1#h`` and
    ``/blog/foo`` both give ``foo``.
    """
    if not url:
        return None
    path = url
    if "://" in url:
        try:
            path = urlparse(url).path
        except ValueError:
            path = url
    match = _BLOG_SLUG_RE.search(path)
    return match.group(1) if match else None


def normalize_url(url: str) -> str:
    """Path-only form used to compare a chunk's post URL with the page URL."""
    without_fragment = urldefrag(url).url
    if without_fragment.startswith(("http://", "https://")):
        without_fragment = urlparse(without_fragment).path
    return without_fragment.split("?", 1)[0].rstrip("/")
