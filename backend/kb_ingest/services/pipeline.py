"""
Pipeline wiring.

Builds every long-lived collaborator once per process from Settings and
hands them to routes through a single dependency. The API stores the
result on app.state during lifespan; Celery workers build their own
per task with a NullPool session factory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_ingest.core.config import Settings
from kb_ingest.processing.chunking import TextChunker
from kb_ingest.processing.embeddings import EmbeddingClient
from kb_ingest.processing.extractor import ContentExtractor
from kb_ingest.repositories.documents import DocumentStore, SqlDocumentStore
from kb_ingest.services.diagnostics import DiagnosticsService
from kb_ingest.services.dispatch import (
    DispatchStrategy,
    QueueDispatch,
    create_redis_client,
    select_dispatch_strategy,
)
from kb_ingest.services.manual import ManualProcessingService
from kb_ingest.services.processor import DocumentProcessor
from kb_ingest.services.rate_limit import (
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)
from kb_ingest.services.reconciler import BatchReconciler
from kb_ingest.services.retrieval import RetrievalService
from kb_ingest.storage.files import ObjectStorage
from kb_ingest.vectorstore.base import VectorStoreBase
from kb_ingest.vectorstore.factory import get_vector_store

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings:     Settings
    store:        DocumentStore
    processor:    DocumentProcessor
    reconciler:   BatchReconciler
    dispatch:     DispatchStrategy
    manual:       ManualProcessingService
    diagnostics:  DiagnosticsService
    retrieval:    RetrievalService
    rate_limiter: RateLimiter
    counters:     CounterStore
    vector_store: VectorStoreBase
    embedder:     EmbeddingClient

    async def aclose(self) -> None:
        await self.dispatch.aclose()
        await self.counters.aclose()
        await self.vector_store.aclose()
        await self.embedder.aclose()


def build_processor(
    cfg: Settings,
    store: DocumentStore,
    *,
    embedder: EmbeddingClient,
    vector_store: VectorStoreBase,
) -> DocumentProcessor:
    return DocumentProcessor(
        store=store,
        content=ContentExtractor(
            ObjectStorage.from_settings(cfg),
            fetch_timeout=cfg.webpage_fetch_timeout,
        ),
        chunker=TextChunker(cfg.chunk_size, cfg.chunk_overlap),
        embedder=embedder,
        vector_store=vector_store,
    )


def build_reconciler(cfg: Settings, store: DocumentStore, processor: DocumentProcessor) -> BatchReconciler:
    return BatchReconciler(
        store=store,
        processor=processor,
        batch_size=cfg.reconcile_batch_size,
        stuck_threshold=timedelta(minutes=cfg.stuck_threshold_minutes),
        max_retries=cfg.max_retries,
        run_budget_seconds=cfg.run_budget_seconds,
    )


async def build_pipeline(
    cfg: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
) -> Pipeline:
    store = SqlDocumentStore(session_factory)
    embedder = EmbeddingClient.from_settings(cfg)
    vector_store = get_vector_store(cfg)
    processor = build_processor(cfg, store, embedder=embedder, vector_store=vector_store)
    reconciler = build_reconciler(cfg, store, processor)
    dispatch = await select_dispatch_strategy(cfg, processor=processor)

    # counters are shared across replicas only when Redis is known to be up
    counters: CounterStore
    if isinstance(dispatch, QueueDispatch):
        counters = RedisCounterStore(create_redis_client(cfg.redis_url))
    else:
        counters = InMemoryCounterStore()

    stuck_threshold = timedelta(minutes=cfg.stuck_threshold_minutes)
    pipeline = Pipeline(
        settings=cfg,
        store=store,
        processor=processor,
        reconciler=reconciler,
        dispatch=dispatch,
        manual=ManualProcessingService(
            store=store,
            processor=processor,
            dispatch=dispatch,
            stuck_threshold=stuck_threshold,
        ),
        diagnostics=DiagnosticsService(
            store=store,
            dispatch=dispatch,
            stuck_threshold=stuck_threshold,
            max_retries=cfg.max_retries,
        ),
        retrieval=RetrievalService(embedder=embedder, vector_store=vector_store),
        rate_limiter=RateLimiter(
            counters,
            limit=cfg.manual_rate_limit,
            window_seconds=cfg.manual_rate_window_seconds,
        ),
        counters=counters,
        vector_store=vector_store,
        embedder=embedder,
    )
    logger.info(
        "Pipeline ready | dispatch=%s batch_size=%d stuck_after=%dm max_retries=%d",
        dispatch.mode, cfg.reconcile_batch_size, cfg.stuck_threshold_minutes, cfg.max_retries,
    )
    return pipeline


def get_pipeline(request: Request) -> Pipeline:
    """FastAPI dependency; the lifespan hook puts the pipeline on app.state."""
    return request.app.state.pipeline


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]
