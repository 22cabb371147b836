"""
Owner-triggered processing.

Single document: claimed directly from `error` or `uploaded` (no retry
cap, the owner asked for it), processed synchronously, and the precise
failure reason is returned to the caller.

Batch: the requested ids are narrowed to the chatbot's own documents that
are neither `processing` nor `completed`, claimed, and handed to the
dispatch strategy. The caller only learns how many were queued.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from kb_ingest.core.exceptions import ClaimConflictError
from kb_ingest.repositories.documents import DocumentStore
from kb_ingest.schemas.documents import (
    BatchProcessResponse,
    BatchProcessStats,
    DocumentRecord,
    DocumentStatus,
    ReprocessResponse,
)
from kb_ingest.services.dispatch import DispatchStrategy
from kb_ingest.services.processor import DocumentProcessor, utcnow

logger = logging.getLogger(__name__)

_REQUEUEABLE = (DocumentStatus.UPLOADED, DocumentStatus.ERROR)


class ManualProcessingService:

    def __init__(
        self,
        *,
        store: DocumentStore,
        processor: DocumentProcessor,
        dispatch: DispatchStrategy,
        stuck_threshold: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._processor = processor
        self._dispatch = dispatch
        self._stuck_threshold = stuck_threshold
        self._clock = clock

    async def _claim(self, document_id: UUID) -> DocumentRecord | None:
        now = self._clock()
        return await self._store.claim(
            document_id,
            now=now,
            stuck_before=now - self._stuck_threshold,
            max_retries=None,
        )

    async def reprocess(self, document: DocumentRecord) -> ReprocessResponse:
        """
        Raises ClaimConflictError if the document is (or just became)
        `processing`, DocumentProcessingError if the pipeline fails.
        """
        if document.status == DocumentStatus.PROCESSING:
            raise ClaimConflictError(document.document_id, document.status.value)

        if document.status == DocumentStatus.COMPLETED:
            return ReprocessResponse(
                message="Document has already been processed",
                document=document,
            )

        claimed = await self._claim(document.document_id)
        if claimed is None:
            latest = await self._store.get(document.document_id)
            raise ClaimConflictError(document.document_id, latest.status.value if latest else None)

        logger.info("Manual reprocess | doc=%s previous_status=%s", document.document_id, document.status.value)
        result = await self._processor.process(claimed)
        updated = await self._store.get(document.document_id) or claimed
        return ReprocessResponse(
            message="Document processed successfully",
            document=updated,
            chunks_created=result.chunks_created,
        )

    async def queue_batch(self, chatbot_id: UUID, document_ids: list[UUID]) -> BatchProcessResponse:
        requested = list(dict.fromkeys(document_ids))
        documents = await self._store.get_many(requested)
        eligible = [
            d for d in documents
            if d.chatbot_id == chatbot_id and d.status in _REQUEUEABLE
        ]

        claimed: list[DocumentRecord] = []
        for document in eligible:
            record = await self._claim(document.document_id)
            if record is not None:
                claimed.append(record)

        queued = await self._dispatch.submit_claimed(claimed)
        logger.info(
            "Manual batch | chatbot=%s requested=%d claimed=%d queued=%d mode=%s",
            chatbot_id, len(requested), len(claimed), queued, self._dispatch.mode,
        )
        return BatchProcessResponse(
            message=f"Processing started for {queued} documents",
            documents_queued=queued,
            stats=BatchProcessStats(
                total=len(requested),
                processing=queued,
                skipped=len(requested) - queued,
            ),
        )
