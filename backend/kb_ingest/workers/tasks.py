"""
Celery Tasks — queue-mode document processing

Task: process_document(document_id, claimed=False)
  claimed=False  enqueued by the upload hook; the worker claims the
                 document itself and skips it if another worker or a
                 reconciler run got there first.
  claimed=True   enqueued by the manual batch endpoint after it already
                 moved the document to `processing`; the worker only
                 checks the document is still in that state.

Task: reconcile_documents
  Beat-scheduled reconciler run. Same code path as the cron endpoint.

The processor owns all status transitions. Tasks never retry through
Celery: a failed document sits in `error` and the reconciler retries it
until retry_count reaches MAX_RETRIES.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncGenerator

from kb_ingest.core.config import settings
from kb_ingest.core.exceptions import DocumentProcessingError
from kb_ingest.db.session import build_engine, build_session_factory
from kb_ingest.processing.embeddings import EmbeddingClient
from kb_ingest.repositories.documents import SqlDocumentStore
from kb_ingest.schemas.documents import DocumentStatus
from kb_ingest.services.pipeline import build_processor, build_reconciler
from kb_ingest.services.processor import DocumentProcessor, utcnow
from kb_ingest.vectorstore.factory import get_vector_store
from kb_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run a coroutine from a synchronous Celery task in a fresh event loop."""
    return asyncio.run(coro)


@asynccontextmanager
async def worker_pipeline() -> AsyncGenerator[tuple[SqlDocumentStore, DocumentProcessor], None]:
    """
    Per-task collaborators. asyncpg connections are bound to the loop that
    opened them, so each task gets a NullPool engine of its own.
    """
    engine = build_engine(settings, null_pool=True)
    embedder = EmbeddingClient.from_settings(settings)
    vector_store = get_vector_store(settings)
    try:
        store = SqlDocumentStore(build_session_factory(engine))
        processor = build_processor(settings, store, embedder=embedder, vector_store=vector_store)
        yield store, processor
    finally:
        await vector_store.aclose()
        await embedder.aclose()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Per-document processing
# ---------------------------------------------------------------------------

@celery_app.task(
    name="kb_ingest.workers.tasks.process_document",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(*, document_id: str, claimed: bool = False) -> dict[str, Any]:
    return run_async(_process_document_async(uuid.UUID(document_id), claimed))


async def _process_document_async(document_id: uuid.UUID, claimed: bool) -> dict[str, Any]:
    async with worker_pipeline() as (store, processor):
        if claimed:
            document = await store.get(document_id)
            if document is None or document.status != DocumentStatus.PROCESSING:
                logger.info(
                    "Skipping pre-claimed job | doc=%s status=%s",
                    document_id, document.status.value if document else "missing",
                )
                return {"document_id": str(document_id), "status": "skipped"}
        else:
            now = utcnow()
            document = await store.claim(
                document_id,
                now=now,
                stuck_before=now - timedelta(minutes=settings.stuck_threshold_minutes),
                max_retries=settings.max_retries,
            )
            if document is None:
                logger.info("Claim lost or document not eligible | doc=%s", document_id)
                return {"document_id": str(document_id), "status": "skipped"}

        try:
            result = await processor.process(document)
        except DocumentProcessingError as exc:
            return {
                "document_id": str(document_id),
                "status":      DocumentStatus.ERROR.value,
                "stage":       exc.stage,
                "error":       exc.message,
            }

        return {
            "document_id":    str(document_id),
            "status":         DocumentStatus.COMPLETED.value,
            "chunks_created": result.chunks_created,
            "elapsed_ms":     result.elapsed_ms,
        }


# ---------------------------------------------------------------------------
# Periodic reconciler
# ---------------------------------------------------------------------------

@celery_app.task(name="kb_ingest.workers.tasks.reconcile_documents")
def reconcile_documents() -> dict[str, Any]:
    return run_async(_reconcile_documents_async())


async def _reconcile_documents_async() -> dict[str, Any]:
    async with worker_pipeline() as (store, processor):
        reconciler = build_reconciler(settings, store, processor)
        result = await reconciler.run()
    return result.model_dump(mode="json", by_alias=True)


@celery_app.task(name="kb_ingest.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
