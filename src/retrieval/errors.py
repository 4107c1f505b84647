"""
Retrieval Errors

Failure taxonomy for artifact loading.

- ArtifactNotFoundError: the artifact is absent, the host answered with a
  non-success status, the transport failed, or the fetch deadline expired.
- ArtifactMalformedError: the payload is not JSON, or it is JSON that does
  not match the artifact schema (missing chunks / index, wrong types).
- IndexLoadError: neither the manifest path nor the legacy artifact could
  be loaded; chained to the last underlying failure.

Search-syntax errors never leave the search layer and unresolvable
documents are not errors at all (the slug is simply None), so neither has
a class here.
"""

from __future__ import annotations


class RetrievalError(RuntimeError):
    """Base error for retrieval-layer failures."""


class ArtifactNotFoundError(RetrievalError):
    """Raised when an artifact cannot be fetched."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to load {path}: {reason}")
        self.path = path
        self.reason = reason


class ArtifactMalformedError(RetrievalError):
    """Raised when an artifact is fetched but does not match its schema."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid artifact {path}: {reason}")
        self.path = path
        self.reason = reason


class IndexLoadError(RetrievalError):
    """Raised when no index could be loaded at all."""
