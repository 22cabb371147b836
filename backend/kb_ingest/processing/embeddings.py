"""
Embedding Client  —  Batched OpenAI embeddings with retry
══════════════════════════════════════════════════════════

  • One API call per EMBEDDING_BATCH_SIZE chunks (default 100).
  • Batches are sent one after another; a document is never embedded
    with more than one request in flight.
  • Rate limits, timeouts and 5xx are retried with exponential back-off.
  • Authentication and bad-request errors fail immediately.
  • The whole document fails if any batch fails: the caller receives
    EmbeddingError and no partial vector list.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import openai
from openai import AsyncOpenAI

from kb_ingest.core.config import Settings
from kb_ingest.core.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100
MAX_RETRIES          = 3
RETRY_BASE_DELAY     = 2.0    # seconds, doubles each retry
RETRY_MAX_DELAY      = 30.0

_NON_RETRYABLE = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
)


class EmbeddingClient:
    """
    Thin wrapper over openai.AsyncOpenAI. One instance per process; the
    underlying HTTP pool is reused across documents.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        client: AsyncOpenAI | None = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._batch_size = max(1, batch_size)
        self._retry_base_delay = retry_base_delay
        self._api_key = api_key
        self._client = client

    @classmethod
    def from_settings(cls, cfg: Settings) -> "EmbeddingClient":
        return cls(
            api_key=cfg.openai_api_key,
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            batch_size=cfg.embedding_batch_size,
        )

    @property
    def model(self) -> str:
        return self._model

    def _openai(self) -> AsyncOpenAI:
        # built on first use; AsyncOpenAI refuses an empty key at construction
        if self._client is None:
            if not self._api_key:
                raise EmbeddingError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        """One vector per input text, in input order."""
        if not texts:
            return []

        t0 = time.monotonic()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = list(texts[start : start + self._batch_size])
            vectors.extend(await self._embed_batch_with_retry(batch, start // self._batch_size))

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, received {len(vectors)}")

        logger.info(
            "Embedded | texts=%d model=%s elapsed_ms=%.0f",
            len(texts), self._model, (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query with the ingestion model."""
        vectors = await self._embed_batch_with_retry([text], 0)
        return vectors[0]

    # ------------------------------------------------------------------
    # Batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_batch_with_retry(self, batch: list[str], batch_idx: int) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            try:
                return await self._call_openai(batch)
            except _NON_RETRYABLE as exc:
                logger.error("Non-retryable embedding error | batch=%d error=%s", batch_idx, exc)
                raise EmbeddingError(f"{type(exc).__name__}: {exc}") from exc
            except openai.OpenAIError as exc:
                last_error = exc

        raise EmbeddingError(
            f"Embedding batch {batch_idx} failed after {MAX_RETRIES} retries: {last_error}"
        ) from last_error

    async def _call_openai(self, batch: list[str]) -> list[list[float]]:
        kwargs = {"model": self._model, "input": batch}
        # dimensions param only works for text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        response = await self._openai().embeddings.create(**kwargs)
        data = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in data]
