"""
Unit Tests — EmbeddingClient
═════════════════════════════
Tests for:
  • batching          — one request per batch, order restored by index
  • retry             — transient errors retried, auth errors fail fast
  • configuration     — dimensions only for text-embedding-3-*, missing key

The OpenAI client is a MagicMock — zero network calls.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from kb_ingest.core.exceptions import EmbeddingError
from kb_ingest.processing.embeddings import MAX_RETRIES, EmbeddingClient

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _response(texts: list[str], *, reverse: bool = False):
    items = [SimpleNamespace(index=i, embedding=[float(i), float(len(t))]) for i, t in enumerate(texts)]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items)


def _client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.embeddings.create = create
    client.close = AsyncMock()
    return client


def _embedder(create: AsyncMock, **kwargs) -> EmbeddingClient:
    kwargs.setdefault("retry_base_delay", 0)
    return EmbeddingClient(api_key="sk-test", client=_client(create), **kwargs)


@pytest.mark.unit
class TestBatching:

    async def test_one_request_per_batch(self):
        create = AsyncMock(side_effect=lambda **kw: _response(kw["input"]))
        vectors = await _embedder(create, batch_size=2).embed_documents(["a", "bb", "ccc"])

        assert len(vectors) == 3
        assert [c.kwargs["input"] for c in create.await_args_list] == [["a", "bb"], ["ccc"]]

    async def test_results_are_reordered_by_index(self):
        create = AsyncMock(side_effect=lambda **kw: _response(kw["input"], reverse=True))
        vectors = await _embedder(create).embed_documents(["x", "yy"])

        assert vectors == [[0.0, 1.0], [1.0, 2.0]]

    async def test_empty_input_makes_no_request(self):
        create = AsyncMock()
        assert await _embedder(create).embed_documents([]) == []
        create.assert_not_awaited()

    async def test_dimensions_sent_for_v3_models(self):
        create = AsyncMock(side_effect=lambda **kw: _response(kw["input"]))
        await _embedder(create, dimensions=512).embed_query("hello")
        assert create.await_args.kwargs["dimensions"] == 512

    async def test_no_dimensions_for_ada(self):
        create = AsyncMock(side_effect=lambda **kw: _response(kw["input"]))
        await _embedder(create, model="text-embedding-ada-002").embed_query("hello")
        assert "dimensions" not in create.await_args.kwargs


@pytest.mark.unit
class TestRetry:

    async def test_transient_error_is_retried(self):
        create = AsyncMock(side_effect=[
            openai.APIConnectionError(request=_REQUEST),
            _response(["a"]),
        ])
        vectors = await _embedder(create).embed_documents(["a"])

        assert len(vectors) == 1
        assert create.await_count == 2

    async def test_gives_up_after_max_retries(self):
        create = AsyncMock(side_effect=openai.APIConnectionError(request=_REQUEST))

        with pytest.raises(EmbeddingError, match="failed after"):
            await _embedder(create).embed_documents(["a"])

        assert create.await_count == MAX_RETRIES + 1

    async def test_auth_error_fails_immediately(self):
        error = openai.AuthenticationError(
            "invalid key", response=httpx.Response(401, request=_REQUEST), body=None,
        )
        create = AsyncMock(side_effect=error)

        with pytest.raises(EmbeddingError) as exc_info:
            await _embedder(create).embed_documents(["a"])

        assert create.await_count == 1
        assert exc_info.value.stage == "embedding"


@pytest.mark.unit
class TestConfiguration:

    async def test_missing_key_is_embedding_error(self):
        with pytest.raises(EmbeddingError, match="OPENAI_API_KEY"):
            await EmbeddingClient(api_key="").embed_documents(["a"])

    async def test_aclose_without_client_is_a_no_op(self):
        await EmbeddingClient(api_key="").aclose()
