"""
Document Processor

Turns one claimed document into vectors and leaves it `completed` or
`error`:

  1. load content (object storage, or the URL for webpages)
  2. split into chunks and persist document_chunks rows
  3. embed every chunk
  4. upsert one vector per chunk, id "<document_id>:<chunk_index>",
     metadata tagged with documentId and chatbotId
  5. verify the store acknowledged every vector
  6. mark completed, or mark error (retry_count + 1) and raise

Precondition: the caller already moved the document to `processing`
through DocumentStore.claim(). The processor never claims by itself.

A retried document first has its old vectors filter-deleted, so a
shorter second pass cannot leave orphaned chunks behind.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence
from uuid import UUID

from kb_ingest.core.exceptions import (
    ClaimConflictError,
    DocumentContentError,
    DocumentProcessingError,
    PipelineError,
    VectorStoreError,
)
from kb_ingest.observability.tracing import traced
from kb_ingest.processing.chunking import TextChunk, TextChunker
from kb_ingest.repositories.documents import ChunkRow, DocumentStore
from kb_ingest.schemas.documents import DocumentRecord, DocumentStatus
from kb_ingest.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)

_MAX_FAILED_IDS_IN_MESSAGE = 5


class ContentSource(Protocol):
    async def load_text(self, document: DocumentRecord) -> str: ...


class Embedder(Protocol):
    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]: ...


@dataclass
class ProcessingResult:
    document_id:      UUID
    chunks_created:   int
    vectors_upserted: int
    elapsed_ms:       int


def vector_id(document_id: UUID, chunk_index: int) -> str:
    return f"{document_id}:{chunk_index}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentProcessor:

    def __init__(
        self,
        *,
        store: DocumentStore,
        content: ContentSource,
        chunker: TextChunker,
        embedder: Embedder,
        vector_store: VectorStoreBase,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._content = content
        self._chunker = chunker
        self._embedder = embedder
        self._vectors = vector_store
        self._clock = clock

    @traced("processor.process")
    async def process(self, document: DocumentRecord) -> ProcessingResult:
        """
        Returns the chunk count on success. On any pipeline failure the
        document is moved to `error` and DocumentProcessingError is raised.
        """
        if document.status != DocumentStatus.PROCESSING:
            raise ClaimConflictError(document.document_id, document.status.value)

        t0 = time.monotonic()
        logger.info(
            "Processing | doc=%s chatbot=%s type=%s retry_count=%d",
            document.document_id, document.chatbot_id, document.file_type, document.retry_count,
        )

        try:
            chunks = await self._chunk(document)
            await self._store.replace_chunks(
                document.document_id,
                [
                    ChunkRow(
                        chunk_index=c.chunk_index,
                        text=c.text,
                        token_count=c.token_count,
                        embedding_id=vector_id(document.document_id, c.chunk_index),
                    )
                    for c in chunks
                ],
            )
            if self._was_attempted_before(document):
                await self._delete_stale_vectors(document)

            embeddings = await self._embedder.embed_documents([c.text for c in chunks])
            records = self._build_records(document, chunks, embeddings)
            upserted = await self._upsert(records)

            elapsed_ms = int((time.monotonic() - t0) * 1000)
            await self._store.set_chunk_status(document.document_id, "embedded")
            completed = await self._store.mark_completed(
                document.document_id,
                completed_at=self._clock(),
                claimed_at=document.processing_started_at,
                metadata={
                    "chunksCreated":    len(chunks),
                    "vectorsUpserted":  upserted,
                    "processingTimeMs": elapsed_ms,
                    "endTime":          self._clock().isoformat(),
                },
            )
        except PipelineError as exc:
            await self._fail(document, exc.stage, str(exc))
            raise DocumentProcessingError(document.document_id, exc.stage, str(exc)) from exc
        except Exception as exc:
            message = f"unexpected: {type(exc).__name__}: {exc}"
            logger.exception("Unexpected processing failure | doc=%s", document.document_id)
            await self._fail(document, "pipeline", message)
            raise DocumentProcessingError(document.document_id, "pipeline", message) from exc

        if completed is None:
            logger.warning("Claim lost before completion, outcome discarded | doc=%s", document.document_id)

        logger.info(
            "Processing complete | doc=%s chunks=%d elapsed_ms=%d",
            document.document_id, len(chunks), elapsed_ms,
        )
        return ProcessingResult(
            document_id=document.document_id,
            chunks_created=len(chunks),
            vectors_upserted=upserted,
            elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _chunk(self, document: DocumentRecord) -> list[TextChunk]:
        text = await self._content.load_text(document)
        if not text or not text.strip():
            raise DocumentContentError("Document contains no extractable text")
        chunks = self._chunker.split(text)
        if not chunks:
            raise DocumentContentError("Document produced no chunks")
        logger.info("Chunked | doc=%s chunks=%d chars=%d", document.document_id, len(chunks), len(text))
        return chunks

    @staticmethod
    def _was_attempted_before(document: DocumentRecord) -> bool:
        return document.retry_count > 0 or bool(document.processing_metadata)

    async def _delete_stale_vectors(self, document: DocumentRecord) -> None:
        if not await self._vectors.delete_document_vectors(str(document.document_id)):
            raise VectorStoreError("Could not delete vectors from a previous attempt")

    @staticmethod
    def _build_records(
        document: DocumentRecord,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> list[VectorRecord]:
        if len(embeddings) != len(chunks):
            raise VectorStoreError(
                f"Embedding count {len(embeddings)} does not match chunk count {len(chunks)}",
                stage="embedding",
            )
        return [
            VectorRecord(
                id=vector_id(document.document_id, chunk.chunk_index),
                vector=embedding,
                metadata={
                    "chatbotId":  str(document.chatbot_id),
                    "documentId": str(document.document_id),
                    "chunkIndex": chunk.chunk_index,
                    "text":       chunk.text,
                    "fileName":   document.file_name,
                    "fileType":   document.file_type,
                },
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

    async def _upsert(self, records: list[VectorRecord]) -> int:
        report = await self._vectors.upsert(records)
        if not report.ok:
            sample = ", ".join(report.failed_ids[:_MAX_FAILED_IDS_IN_MESSAGE])
            raise VectorStoreError(
                f"Stored {report.upserted} of {report.attempted} vectors"
                + (f" (failed: {sample})" if sample else "")
            )
        return report.upserted

    async def _fail(self, document: DocumentRecord, stage: str, message: str) -> None:
        logger.error("Processing failed | doc=%s stage=%s error=%s", document.document_id, stage, message)
        failed = await self._store.mark_error(
            document.document_id,
            message=message,
            failed_at=self._clock(),
            claimed_at=document.processing_started_at,
            metadata={"lastErrorStage": stage},
        )
        if failed is None:
            logger.warning("Claim lost before failure was recorded | doc=%s", document.document_id)
