from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to this file's directory (the project root),
# not the working directory, so workers launched from elsewhere still
# pick it up.
_ENV_FILE = Path(__file__).resolve().parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), case_sensitive=False)

    # ── Fetch / Firecrawl ─────────────────────────────────────────
    firecrawl_api_key: str | None = Field(default=None, validation_alias="FIRECRAWL_API_KEY")
    firecrawl_default_scrape_options: dict[str, Any] = Field(
        default_factory=lambda: {
            "formats": [{"type": "markdown"}, {"type": "html"}, {"type": "links"}],
            "only_main_content": True,
            "timeout": 30000,
            "block_ads": True,
            "remove_base64_images": True,
            "proxy": "auto",
        }
    )
    # Caller-side ceiling for a single page fetch, in seconds.
    fetch_timeout_seconds: float = Field(default=30.0, validation_alias="FETCH_TIMEOUT_SECONDS")

    # ── Crawl orchestration ───────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    # Shared per-process crawl keys expire after this long so abandoned
    # crawls do not leak state.
    crawl_state_ttl_seconds: int = Field(default=86400, validation_alias="CRAWL_STATE_TTL_SECONDS")
    crawl_default_depth: int = Field(default=1, validation_alias="CRAWL_DEFAULT_DEPTH")
    # Processes still "processing" after this many minutes are marked failed.
    crawl_timeout_minutes: int = Field(default=120, validation_alias="CRAWL_TIMEOUT_MINUTES")
    crawl_skipped_extensions: list[str] = Field(
        default_factory=lambda: [
            ".txt", ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        ],
        validation_alias="CRAWL_SKIPPED_EXTENSIONS",
    )
    # Enqueue a vector sync for every stored page.
    crawl_auto_sync: bool = Field(default=True, validation_alias="CRAWL_AUTO_SYNC")

    # ── Chunking (sizes are words after markdown stripping) ──────
    chunk_max_words: int = Field(default=350, validation_alias="CHUNK_MAX_WORDS")
    chunk_min_words: int = Field(default=250, validation_alias="CHUNK_MIN_WORDS")
    chunk_overlap_words: int = Field(default=40, validation_alias="CHUNK_OVERLAP_WORDS")

    # ── PDF extraction ────────────────────────────────────────────
    pdf_default_driver: str = Field(default="pymupdf", validation_alias="PDF_DEFAULT_DRIVER")
    pdf_fallback_driver: str | None = Field(
        default="pdftotext", validation_alias="PDF_FALLBACK_DRIVER"
    )
    pdf_timeout_seconds: float = Field(default=60.0, validation_alias="PDF_TIMEOUT_SECONDS")
    pdf_max_file_size_mb: int = Field(default=50, validation_alias="PDF_MAX_FILE_SIZE_MB")
    pdf_storage_dir: str = Field(
        default=str(Path(__file__).resolve().parent / "storage"),
        validation_alias="PDF_STORAGE_DIR",
    )
    pdftotext_binary: str = Field(default="pdftotext", validation_alias="PDFTOTEXT_BINARY")
    pdftotext_options: list[str] = Field(
        default_factory=lambda: ["-layout", "-enc", "UTF-8"],
        validation_alias="PDFTOTEXT_OPTIONS",
    )
    pdfinfo_binary: str = Field(default="pdfinfo", validation_alias="PDFINFO_BINARY")
    # One of "default", "structured", "academic".
    pdf_markdown_style: str = Field(default="default", validation_alias="PDF_MARKDOWN_STYLE")

    # ── Embeddings ────────────────────────────────────────────────
    embedding_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="EMBEDDING_BASE_URL"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small", validation_alias="EMBEDDING_MODEL"
    )
    embedding_api_key: str | None = Field(default=None, validation_alias="EMBEDDING_API_KEY")
    embedding_dimensions: int = Field(default=1536, validation_alias="EMBEDDING_DIMENSIONS")
    embedding_tokenizer_name: str = Field(
        default="cl100k_base", validation_alias="EMBEDDING_TOKENIZER_NAME"
    )
    # Inputs above the model's context window are truncated before sending.
    embedding_max_input_tokens: int = Field(
        default=8191, validation_alias="EMBEDDING_MAX_INPUT_TOKENS"
    )
    # Threads used for the per-item fallback when a batch request fails.
    # Keep it low on rate-limited API tiers.
    embedding_max_workers: int = Field(default=4, validation_alias="EMBEDDING_MAX_WORKERS")
    embedding_timeout_seconds: float = Field(
        default=30.0, validation_alias="EMBEDDING_TIMEOUT_SECONDS"
    )

    # ── Persistence / vector store ────────────────────────────────
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    db_pool_min_size: int = Field(default=1, validation_alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(default=10, validation_alias="DB_POOL_MAX_SIZE")
    vector_sync_batch_size: int = Field(default=10, validation_alias="VECTOR_SYNC_BATCH_SIZE")
    # Store-side metadata cap for chunk content.
    vector_content_max_chars: int = Field(
        default=1000, validation_alias="VECTOR_CONTENT_MAX_CHARS"
    )
    vector_store_timeout_seconds: float = Field(
        default=30.0, validation_alias="VECTOR_STORE_TIMEOUT_SECONDS"
    )
    search_top_k: int = Field(default=5, validation_alias="SEARCH_TOP_K")

    # ── Background jobs ───────────────────────────────────────────
    job_queue_name: str = Field(default="ingestion", validation_alias="JOB_QUEUE_NAME")
    job_max_tries: int = Field(default=3, validation_alias="JOB_MAX_TRIES")
    # Delay before retry N is job_backoff_seconds[N-1]; the last entry
    # repeats if there are more tries than entries.
    job_backoff_seconds: list[int] = Field(
        default_factory=lambda: [30, 60, 120], validation_alias="JOB_BACKOFF_SECONDS"
    )
    # Wall-clock window, measured from first enqueue, after which no
    # further retries are scheduled.
    job_retry_deadline_seconds: int = Field(
        default=1800, validation_alias="JOB_RETRY_DEADLINE_SECONDS"
    )
    job_timeout_seconds: int = Field(default=300, validation_alias="JOB_TIMEOUT_SECONDS")
    # Supervised work is cut off this long before arq cancels the job, so
    # the entity status can still be written.
    job_timeout_margin_seconds: int = Field(
        default=20, validation_alias="JOB_TIMEOUT_MARGIN_SECONDS"
    )
    worker_max_jobs: int = Field(default=10, validation_alias="WORKER_MAX_JOBS")

    # ── Logging ───────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")


settings = Settings()
