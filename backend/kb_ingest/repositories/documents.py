"""
Document Record Store

The only code that writes documents.status. Every public method runs in
its own short transaction, so no row lock is held across an embedding or
vector-store call.

Claiming is a conditional UPDATE ... RETURNING: two concurrent runs can
both select the same candidate, but only one of them gets a row back.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_ingest.db.session import session_scope
from kb_ingest.models.documents import Chatbot, Document, DocumentChunk
from kb_ingest.schemas.documents import DocumentRecord, DocumentStatus

logger = logging.getLogger(__name__)


@dataclass
class ChunkRow:
    chunk_index:  int
    text:         str
    token_count:  int
    embedding_id: str


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class DocumentStore(ABC):
    """Persistence operations used by the processor, reconciler and API."""

    @abstractmethod
    async def get(self, document_id: UUID) -> DocumentRecord | None: ...

    @abstractmethod
    async def get_many(self, document_ids: Sequence[UUID]) -> list[DocumentRecord]:
        """Full records for the given ids, oldest first. Unknown ids are dropped."""

    @abstractmethod
    async def find_candidates(
        self, *, limit: int, stuck_before: datetime, max_retries: int,
    ) -> list[UUID]:
        """Ids of uploaded, stuck or retryable documents, oldest first."""

    @abstractmethod
    async def claim(
        self,
        document_id: UUID,
        *,
        now: datetime,
        stuck_before: datetime,
        max_retries: int | None,
    ) -> DocumentRecord | None:
        """
        Move one eligible document to `processing`. Returns None if it is not
        eligible any more. max_retries=None lifts the retry cap (manual retry).
        """

    @abstractmethod
    async def mark_completed(
        self, document_id: UUID, *, completed_at: datetime, metadata: dict[str, Any],
        claimed_at: datetime | None = None,
    ) -> DocumentRecord | None:
        """Set `completed`. No-op (None) unless the caller still holds the claim."""

    @abstractmethod
    async def mark_error(
        self, document_id: UUID, *, message: str, failed_at: datetime,
        metadata: dict[str, Any] | None = None,
        claimed_at: datetime | None = None,
    ) -> DocumentRecord | None:
        """
        Set `error`, increment retry_count, store the message. Same claim
        guard as mark_completed: a run that lost its claim writes nothing.
        """

    @abstractmethod
    async def record_attempt(self, document_id: UUID, *, attempted_at: datetime, error: str | None) -> None:
        """Merge lastCronAttempt into processing_metadata, keeping other keys."""

    @abstractmethod
    async def replace_chunks(self, document_id: UUID, chunks: Sequence[ChunkRow]) -> None: ...

    @abstractmethod
    async def set_chunk_status(self, document_id: UUID, status: str) -> None: ...

    @abstractmethod
    async def status_counts(self) -> dict[str, int]: ...

    @abstractmethod
    async def stuck_documents(self, *, stuck_before: datetime, limit: int = 50) -> list[DocumentRecord]: ...

    @abstractmethod
    async def stuck_count(self, *, stuck_before: datetime) -> int: ...

    @abstractmethod
    async def retry_exhausted_count(self, *, max_retries: int) -> int: ...

    @abstractmethod
    async def recent_activity(self, *, limit: int = 20) -> list[DocumentRecord]: ...

    @abstractmethod
    async def get_chatbot_owner(self, chatbot_id: UUID) -> str | None: ...


def holds_claim(status: str, processing_started_at: datetime | None, claimed_at: datetime | None) -> bool:
    """
    True while a run may still write its outcome: the row is `processing`
    and, when the run passes its claim time, nobody has re-claimed it since.
    """
    if status != DocumentStatus.PROCESSING.value:
        return False
    return claimed_at is None or processing_started_at == claimed_at


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

def stuck_clause(*, stuck_before: datetime):
    return and_(
        Document.status == DocumentStatus.PROCESSING.value,
        or_(
            Document.processing_started_at < stuck_before,
            Document.processing_started_at.is_(None),
        ),
    )


def eligibility_clause(*, stuck_before: datetime, max_retries: int | None):
    """WHERE clause shared by candidate selection and the conditional claim."""
    stuck = stuck_clause(stuck_before=stuck_before)
    if max_retries is None:
        retryable = Document.status == DocumentStatus.ERROR.value
    else:
        retryable = and_(
            Document.status == DocumentStatus.ERROR.value,
            Document.retry_count < max_retries,
        )
    return or_(Document.status == DocumentStatus.UPLOADED.value, stuck, retryable)


def build_claim_statement(
    document_id: UUID,
    *,
    now: datetime,
    stuck_before: datetime,
    max_retries: int | None,
):
    return (
        update(Document)
        .where(
            Document.document_id == document_id,
            eligibility_clause(stuck_before=stuck_before, max_retries=max_retries),
        )
        .values(
            status=DocumentStatus.PROCESSING.value,
            processing_started_at=now,
            processing_completed_at=None,
            error_message=None,
        )
        .returning(Document)
        .execution_options(synchronize_session=False)
    )


class SqlDocumentStore(DocumentStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: UUID) -> DocumentRecord | None:
        async with session_scope(self._factory) as db:
            doc = await db.get(Document, document_id)
            return DocumentRecord.model_validate(doc) if doc else None

    async def get_many(self, document_ids: Sequence[UUID]) -> list[DocumentRecord]:
        if not document_ids:
            return []
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Document)
                .where(Document.document_id.in_(list(document_ids)))
                .order_by(Document.created_at.asc())
            )
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    async def find_candidates(
        self, *, limit: int, stuck_before: datetime, max_retries: int,
    ) -> list[UUID]:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Document.document_id)
                .where(eligibility_clause(stuck_before=stuck_before, max_retries=max_retries))
                .order_by(Document.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def status_counts(self) -> dict[str, int]:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Document.status, func.count()).group_by(Document.status)
            )
            counts = {s.value: 0 for s in DocumentStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def stuck_documents(self, *, stuck_before: datetime, limit: int = 50) -> list[DocumentRecord]:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Document)
                .where(stuck_clause(stuck_before=stuck_before))
                .order_by(Document.processing_started_at.asc().nulls_first())
                .limit(limit)
            )
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    async def stuck_count(self, *, stuck_before: datetime) -> int:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(func.count())
                .select_from(Document)
                .where(stuck_clause(stuck_before=stuck_before))
            )
            return int(result.scalar_one())

    async def retry_exhausted_count(self, *, max_retries: int) -> int:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(func.count())
                .select_from(Document)
                .where(
                    Document.status == DocumentStatus.ERROR.value,
                    Document.retry_count >= max_retries,
                )
            )
            return int(result.scalar_one())

    async def recent_activity(self, *, limit: int = 20) -> list[DocumentRecord]:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Document).order_by(Document.updated_at.desc()).limit(limit)
            )
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    async def get_chatbot_owner(self, chatbot_id: UUID) -> str | None:
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(Chatbot.teacher_id).where(Chatbot.chatbot_id == chatbot_id)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def claim(
        self,
        document_id: UUID,
        *,
        now: datetime,
        stuck_before: datetime,
        max_retries: int | None,
    ) -> DocumentRecord | None:
        stmt = build_claim_statement(
            document_id, now=now, stuck_before=stuck_before, max_retries=max_retries,
        )
        async with session_scope(self._factory) as db:
            result = await db.execute(stmt)
            doc = result.scalars().first()
            if doc is None:
                logger.info("Claim lost | doc=%s", document_id)
                return None
            logger.debug("Claimed | doc=%s retry_count=%d", document_id, doc.retry_count)
            return DocumentRecord.model_validate(doc)

    async def mark_completed(
        self, document_id: UUID, *, completed_at: datetime, metadata: dict[str, Any],
        claimed_at: datetime | None = None,
    ) -> DocumentRecord | None:
        async with session_scope(self._factory) as db:
            doc = await self._locked(db, document_id)
            if doc is None or not holds_claim(doc.status, doc.processing_started_at, claimed_at):
                logger.warning(
                    "Skipping completion, claim no longer held | doc=%s status=%s",
                    document_id, doc.status if doc else None,
                )
                return None
            doc.status = DocumentStatus.COMPLETED.value
            doc.processing_completed_at = completed_at
            doc.error_message = None
            doc.processing_metadata = {**(doc.processing_metadata or {}), **metadata}
            await db.flush()
            return DocumentRecord.model_validate(doc)

    async def mark_error(
        self, document_id: UUID, *, message: str, failed_at: datetime,
        metadata: dict[str, Any] | None = None,
        claimed_at: datetime | None = None,
    ) -> DocumentRecord | None:
        async with session_scope(self._factory) as db:
            doc = await self._locked(db, document_id)
            if doc is None or not holds_claim(doc.status, doc.processing_started_at, claimed_at):
                logger.warning(
                    "Skipping failure write, claim no longer held | doc=%s status=%s",
                    document_id, doc.status if doc else None,
                )
                return None
            doc.status = DocumentStatus.ERROR.value
            doc.retry_count = (doc.retry_count or 0) + 1
            doc.error_message = message
            doc.processing_metadata = {
                **(doc.processing_metadata or {}),
                "failedAt": failed_at.isoformat(),
                **(metadata or {}),
            }
            await db.flush()
            return DocumentRecord.model_validate(doc)

    async def record_attempt(self, document_id: UUID, *, attempted_at: datetime, error: str | None) -> None:
        async with session_scope(self._factory) as db:
            doc = await self._locked(db, document_id)
            if doc is None:
                return
            doc.processing_metadata = {
                **(doc.processing_metadata or {}),
                "lastCronAttempt": attempted_at.isoformat(),
                "lastCronError": error,
            }

    async def replace_chunks(self, document_id: UUID, chunks: Sequence[ChunkRow]) -> None:
        async with session_scope(self._factory) as db:
            await db.execute(delete(DocumentChunk).where(DocumentChunk.document_id == document_id))
            db.add_all(
                DocumentChunk(
                    document_id=document_id,
                    chunk_index=c.chunk_index,
                    chunk_text=c.text,
                    token_count=c.token_count,
                    embedding_id=c.embedding_id,
                    status="pending",
                )
                for c in chunks
            )

    async def set_chunk_status(self, document_id: UUID, status: str) -> None:
        async with session_scope(self._factory) as db:
            await db.execute(
                update(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .values(status=status)
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _locked(db: AsyncSession, document_id: UUID) -> Document | None:
        result = await db.execute(
            select(Document).where(Document.document_id == document_id).with_for_update()
        )
        return result.scalars().first()
