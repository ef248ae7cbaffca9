from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from openai import OpenAI

from config import settings

# ────────────────────────────────────────────────────────────────
# embedder.py: Embedding collaborator for vector sync
#
# Public interface:
#   embed_text(text)    -> vector | None
#   embed_texts(texts)  -> [vector | None], positionally aligned
#
# Failure semantics:
#   embed_texts() sends one batched request.  If that request raises,
#   or returns the wrong number of vectors, it degrades to one request
#   per text.  Per-item failures come back as None so the caller can
#   skip that chunk; they never fail the batch.  Nothing here raises
#   for API errors.
#
#   The per-item fallback fans out over a ThreadPoolExecutor with at
#   most EMBEDDING_MAX_WORKERS threads.  Keep it low on rate-limited
#   API tiers.
#
# Input length:
#   Texts longer than EMBEDDING_MAX_INPUT_TOKENS are truncated with
#   tiktoken before sending, since the API rejects them outright.
# ────────────────────────────────────────────────────────────────

logger = logging.getLogger(__name__)

# cached singletons - nothing loads at import time

_CLIENT: OpenAI | None = None
_TIKTOKEN_ENCODING: Any | None = None

# build the OpenAI client once using base_url from config; optional API key since local models don't need one


def _get_client() -> OpenAI:
    global _CLIENT
    if _CLIENT is None:
        client_kwargs: dict[str, Any] = {
            "base_url": settings.embedding_base_url,
            "timeout": settings.embedding_timeout_seconds,
        }
        if settings.embedding_api_key:
            client_kwargs["api_key"] = settings.embedding_api_key
        _CLIENT = OpenAI(**client_kwargs)
    return _CLIENT


def _get_tiktoken_encoding() -> Any:
    global _TIKTOKEN_ENCODING
    if _TIKTOKEN_ENCODING is None:
        import tiktoken
        _TIKTOKEN_ENCODING = tiktoken.get_encoding(settings.embedding_tokenizer_name)
    return _TIKTOKEN_ENCODING


def _prepare_input(text: str) -> str:
    encoding = _get_tiktoken_encoding()
    tokens = encoding.encode(text)
    limit = settings.embedding_max_input_tokens
    if len(tokens) <= limit:
        return text
    logger.warning("Truncating embedding input from %d to %d tokens", len(tokens), limit)
    return encoding.decode(tokens[:limit])


def _validate_vector(vector: list[float]) -> list[float]:
    if len(vector) != settings.embedding_dimensions:
        raise ValueError(
            "Embedding dimension mismatch: "
            f"expected {settings.embedding_dimensions}, got {len(vector)}"
        )
    return vector


def _embed_batch_request(texts: list[str]) -> list[list[float]]:
    client = _get_client()
    response = client.embeddings.create(
        model=settings.embedding_model,
        input=[_prepare_input(text) for text in texts],
    )
    # the API reports an index per item; sort so ordering never depends on response order
    items = sorted(response.data, key=lambda item: item.index)
    embeddings = [_validate_vector(list(item.embedding)) for item in items]
    if len(embeddings) != len(texts):
        raise ValueError(
            "Embedding response size mismatch: "
            f"expected {len(texts)} vectors, got {len(embeddings)}"
        )
    return embeddings


def embed_text(text: str) -> list[float] | None:
    """Embed one text; returns None on any API or validation failure."""
    if not text.strip():
        return None
    try:
        return _embed_batch_request([text])[0]
    except Exception as exc:
        logger.warning("Embedding request failed: %s", exc)
        return None


def embed_texts(texts: list[str]) -> list[list[float] | None]:
    """Embed texts in one request, degrading to per-item requests on failure."""
    if not texts:
        return []

    try:
        return list(_embed_batch_request(texts))
    except Exception as exc:
        logger.warning(
            "Batch embedding of %d texts failed, falling back to per-item requests: %s",
            len(texts),
            exc,
        )

    results: list[list[float] | None] = [None] * len(texts)
    with ThreadPoolExecutor(max_workers=max(1, settings.embedding_max_workers)) as executor:
        future_to_index = {
            executor.submit(embed_text, text): index for index, text in enumerate(texts)
        }
        for future in as_completed(future_to_index):
            results[future_to_index[future]] = future.result()
    return results


def embed_query(text: str) -> list[float] | None:
    """Embed a single search query string."""
    return embed_text(text)
