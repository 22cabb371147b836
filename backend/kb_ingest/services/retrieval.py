"""
Retrieval — similarity search over one chatbot's knowledge base.

The question is embedded with the ingestion model so query and document
vectors share a space. Vector-store errors degrade to an empty result
(see VectorStoreBase.query).
"""

from __future__ import annotations

import logging
from typing import Protocol
from uuid import UUID

from kb_ingest.observability.tracing import traced
from kb_ingest.vectorstore.base import QueryMatch, VectorStoreBase

logger = logging.getLogger(__name__)


class QueryEmbedder(Protocol):
    async def embed_query(self, text: str) -> list[float]: ...


class RetrievalService:

    def __init__(self, *, embedder: QueryEmbedder, vector_store: VectorStoreBase) -> None:
        self._embedder = embedder
        self._vectors = vector_store

    @traced("retrieval.search")
    async def search(self, chatbot_id: UUID, question: str, top_k: int = 5) -> list[QueryMatch]:
        vector = await self._embedder.embed_query(question)
        matches = await self._vectors.query(vector, str(chatbot_id), top_k=top_k)
        logger.info("Search | chatbot=%s top_k=%d matches=%d", chatbot_id, top_k, len(matches))
        return matches
