"""
Dispatch Strategy — queue mode vs scan mode

Chosen once when the process starts (select_dispatch_strategy) and never
re-probed per request:

  queue  Redis answered PING. Eligible documents are pushed to the Celery
         queue `documents.ingest`; workers claim and process them. The
         reconciler still runs from beat to catch anything the queue lost.

  scan   No Redis. Uploads trigger nothing; the cron-driven reconciler is
         the only path that discovers work. Documents already claimed by
         the manual batch endpoint are processed in a background task of
         the API process.

The processor never knows which mode is active.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

from kb_ingest.core.config import Settings
from kb_ingest.core.exceptions import DocumentProcessingError
from kb_ingest.schemas.documents import DocumentRecord
from kb_ingest.services.processor import DocumentProcessor

logger = logging.getLogger(__name__)

PROCESS_TASK = "kb_ingest.workers.tasks.process_document"
INGEST_QUEUE = "documents.ingest"


class DispatchStrategy(ABC):
    mode: str

    @abstractmethod
    async def notify_uploaded(self, document_id: UUID) -> bool:
        """Called when a document lands in `uploaded`. Returns True if a job was enqueued."""

    @abstractmethod
    async def submit_claimed(self, documents: list[DocumentRecord]) -> int:
        """Hand off documents already moved to `processing`. Returns the number accepted."""

    @abstractmethod
    async def queue_metrics(self) -> dict[str, Any] | None:
        """Queue depth in queue mode; None in scan mode."""

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Queue mode
# ---------------------------------------------------------------------------

class QueueDispatch(DispatchStrategy):
    mode = "queue"

    def __init__(self, *, celery_app: Any, redis_client: Any, queue: str = INGEST_QUEUE) -> None:
        self._celery = celery_app
        self._redis = redis_client
        self._queue = queue

    async def _enqueue(self, document_id: UUID, *, claimed: bool) -> None:
        # send_task talks to the broker synchronously
        await asyncio.to_thread(
            self._celery.send_task,
            PROCESS_TASK,
            kwargs={"document_id": str(document_id), "claimed": claimed},
            queue=self._queue,
        )
        logger.info("Enqueued | doc=%s claimed=%s queue=%s", document_id, claimed, self._queue)

    async def notify_uploaded(self, document_id: UUID) -> bool:
        await self._enqueue(document_id, claimed=False)
        return True

    async def submit_claimed(self, documents: list[DocumentRecord]) -> int:
        accepted = 0
        for document in documents:
            try:
                await self._enqueue(document.document_id, claimed=True)
            except Exception:
                # the reconciler re-claims it once it counts as stuck
                logger.exception("Enqueue failed | doc=%s", document.document_id)
                continue
            accepted += 1
        return accepted

    async def queue_metrics(self) -> dict[str, Any] | None:
        try:
            waiting = int(await self._redis.llen(self._queue))
        except Exception as exc:
            logger.warning("Queue depth unavailable: %s", exc)
            return {"queue": self._queue, "waiting": None, "error": str(exc)}
        return {"queue": self._queue, "waiting": waiting}

    async def aclose(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------------
# Scan mode
# ---------------------------------------------------------------------------

class ScanDispatch(DispatchStrategy):
    mode = "scan"

    def __init__(self, processor: DocumentProcessor) -> None:
        self._processor = processor
        self._tasks: set[asyncio.Task] = set()

    async def notify_uploaded(self, document_id: UUID) -> bool:
        logger.debug("Scan mode, upload left for the reconciler | doc=%s", document_id)
        return False

    async def submit_claimed(self, documents: list[DocumentRecord]) -> int:
        if not documents:
            return 0
        task = asyncio.create_task(self._drain(list(documents)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return len(documents)

    async def _drain(self, documents: list[DocumentRecord]) -> None:
        succeeded = 0
        for document in documents:
            try:
                await self._processor.process(document)
                succeeded += 1
            except DocumentProcessingError as exc:
                logger.warning("Background processing failed | doc=%s error=%s", exc.document_id, exc.message)
            except Exception:
                logger.exception("Background processing crashed | doc=%s", document.document_id)
        logger.info("Background batch done | total=%d succeeded=%d", len(documents), succeeded)

    async def queue_metrics(self) -> dict[str, Any] | None:
        return None

    async def wait_idle(self) -> None:
        """Wait for background batches; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()


# ---------------------------------------------------------------------------
# Startup selection
# ---------------------------------------------------------------------------

def create_redis_client(url: str) -> Any:
    import redis.asyncio as aioredis

    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


async def redis_available(client: Any) -> bool:
    try:
        return bool(await client.ping())
    except Exception as exc:
        logger.info("Redis ping failed: %s", exc)
        return False


async def select_dispatch_strategy(
    cfg: Settings,
    *,
    processor: DocumentProcessor,
    celery_app: Any = None,
    redis_client: Any = None,
) -> DispatchStrategy:
    mode = cfg.dispatch_mode.lower()
    if mode not in ("auto", "queue", "scan"):
        raise ValueError(f"Unknown dispatch_mode '{cfg.dispatch_mode}'. Valid options: auto, queue, scan")

    if mode == "scan":
        logger.info("Dispatch | mode=scan (configured)")
        return ScanDispatch(processor)

    client = redis_client or create_redis_client(cfg.redis_url)
    if mode == "auto" and not await redis_available(client):
        await client.aclose()
        logger.info("Dispatch | mode=scan (redis unreachable)")
        return ScanDispatch(processor)

    if celery_app is None:
        from kb_ingest.workers.celery_app import celery_app as default_app
        celery_app = default_app

    logger.info("Dispatch | mode=queue queue=%s", INGEST_QUEUE)
    return QueueDispatch(celery_app=celery_app, redis_client=client)
