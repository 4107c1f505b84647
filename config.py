from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to this file's directory (the project root),
# not the working directory, so build scripts launched from elsewhere
# still pick it up.
_ENV_FILE = Path(__file__).resolve().parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE), case_sensitive=False, extra="ignore"
    )

    # Site / content source
    site_url: str = Field(default="https://www.example.com", validation_alias="SITE_URL")
    content_dir: str = Field(default="src/content/blog", validation_alias="CONTENT_DIR")
    artifact_output_dir: str = Field(default="public", validation_alias="ARTIFACT_OUTPUT_DIR")

    # ── Chunking ──────────────────────────────────────────────────
    chunk_min_tokens: int = Field(default=300, validation_alias="CHUNK_MIN_TOKENS")
    chunk_max_tokens: int = Field(default=600, validation_alias="CHUNK_MAX_TOKENS")
    chunk_overlap_tokens: int = Field(default=100, validation_alias="CHUNK_OVERLAP_TOKENS")
    chars_per_token: int = Field(default=4, validation_alias="CHARS_PER_TOKEN")
    # "chars" estimates ceil(len / chars_per_token).  "tiktoken" counts real
    # BPE tokens and needs the optional tiktoken extra installed.
    chunk_tokenizer_kind: str = Field(default="chars", validation_alias="CHUNK_TOKENIZER_KIND")
    chunk_tokenizer_name: str = Field(
        default="cl100k_base", validation_alias="CHUNK_TOKENIZER_NAME"
    )
    # Markdown and inline-HTML passes can both report the same heading;
    # entries with the same id closer than this many characters collapse.
    heading_dedup_tolerance: int = Field(default=50, validation_alias="HEADING_DEDUP_TOLERANCE")

    # ── Lexical index field boosts ────────────────────────────────
    boost_text: int = Field(default=10, validation_alias="BOOST_TEXT")
    boost_section_title: int = Field(default=5, validation_alias="BOOST_SECTION_TITLE")
    boost_post_title: int = Field(default=2, validation_alias="BOOST_POST_TITLE")
    boost_post_tags: int = Field(default=1, validation_alias="BOOST_POST_TAGS")

    # ── Artifact contract ─────────────────────────────────────────
    # Paths are relative to artifact_base, which is either an http(s) URL
    # (static host) or a local directory (build output).
    artifact_base: str = Field(default="public", validation_alias="ARTIFACT_BASE")
    manifest_path: str = Field(
        default="/rag-index/manifest.json", validation_alias="MANIFEST_PATH"
    )
    post_index_path_template: str = Field(
        default="/rag-index/{slug}.json", validation_alias="POST_INDEX_PATH_TEMPLATE"
    )
    legacy_index_path: str = Field(default="/rag-index.json", validation_alias="LEGACY_INDEX_PATH")
    post_index_version: str = "2.0.0"
    manifest_version: str = "2.0.0"
    legacy_index_version: str = "1.0.0"

    # ── Retrieval runtime ─────────────────────────────────────────
    # Deadline for a single artifact read; expiry counts as a load failure.
    artifact_fetch_timeout: float = Field(default=10.0, validation_alias="ARTIFACT_FETCH_TIMEOUT")
    retrieval_default_limit: int = Field(default=5, validation_alias="RETRIEVAL_DEFAULT_LIMIT")
    section_search_limit: int = Field(default=10, validation_alias="SECTION_SEARCH_LIMIT")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @model_validator(mode="after")
    def _check_chunk_budget(self) -> "Settings":
        if self.chunk_min_tokens > self.chunk_max_tokens:
            raise ValueError("CHUNK_MIN_TOKENS must not exceed CHUNK_MAX_TOKENS.")
        if self.chunk_overlap_tokens >= self.chunk_min_tokens:
            raise ValueError("CHUNK_OVERLAP_TOKENS must be smaller than CHUNK_MIN_TOKENS.")
        if self.chars_per_token < 1:
            raise ValueError("CHARS_PER_TOKEN must be at least 1.")
        return self


settings = Settings()
