"""
Unit Tests — DocumentProcessor
═══════════════════════════════
Tests for:
  • Happy path         — chunk rows, one vector per chunk, completed status
  • Failure stages     — extraction, embedding, partial upsert, stale delete
  • Retry bookkeeping  — retry_count increments, error message carries stage
  • Precondition       — refuses documents that were not claimed
  • Claim ownership    — a run that lost its claim cannot overwrite the outcome

All collaborators are the in-memory fakes from tests/fakes.py.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from kb_ingest.core.exceptions import (
    ClaimConflictError,
    DocumentContentError,
    DocumentProcessingError,
    EmbeddingError,
    StorageError,
)
from kb_ingest.schemas.documents import DocumentStatus
from kb_ingest.services.processor import vector_id
from tests.fakes import T0, make_document


async def _claimed(store, chatbot_id, **kwargs):
    doc = store.add(make_document(chatbot_id=chatbot_id, **kwargs))
    claimed = await store.claim(
        doc.document_id, now=T0 + timedelta(hours=1), stuck_before=T0, max_retries=None,
    )
    assert claimed is not None
    return claimed


@pytest.mark.unit
class TestProcessSuccess:

    async def test_every_chunk_gets_exactly_one_vector(self, processor, store, vector_store, chatbot_id):
        doc = await _claimed(store, chatbot_id)

        result = await processor.process(doc)

        chunk_rows = store.chunks[doc.document_id]
        assert result.chunks_created == len(chunk_rows) > 1
        assert vector_store.ids_for(doc.document_id) == {
            vector_id(doc.document_id, row.chunk_index) for row in chunk_rows
        }
        assert result.vectors_upserted == result.chunks_created

    async def test_vector_metadata_identifies_chatbot_and_document(
        self, processor, store, vector_store, chatbot_id,
    ):
        doc = await _claimed(store, chatbot_id)
        await processor.process(doc)

        record = vector_store.vectors[vector_id(doc.document_id, 0)]
        assert record.metadata["chatbotId"] == str(chatbot_id)
        assert record.metadata["documentId"] == str(doc.document_id)
        assert record.metadata["chunkIndex"] == 0
        assert record.metadata["text"] == store.chunks[doc.document_id][0].text
        assert record.metadata["fileName"] == "notes.txt"

    async def test_document_is_completed_with_metadata(self, processor, store, chatbot_id):
        doc = await _claimed(store, chatbot_id)

        result = await processor.process(doc)

        saved = store.documents[doc.document_id]
        assert saved.status == DocumentStatus.COMPLETED
        assert saved.error_message is None
        assert saved.processing_completed_at is not None
        assert saved.processing_metadata["chunksCreated"] == result.chunks_created
        assert "processingTimeMs" in saved.processing_metadata
        assert store.chunk_status[doc.document_id] == "embedded"

    async def test_first_attempt_does_not_delete_vectors(self, processor, store, vector_store, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        await processor.process(doc)
        assert vector_store.deleted_documents == []

    async def test_retry_replaces_stale_vectors(self, processor, store, vector_store, content, chatbot_id):
        """A shorter second pass must not leave vectors from the first pass behind."""
        doc = await _claimed(store, chatbot_id)
        first = await processor.process(doc)

        content.texts[doc.document_id] = "Only one short chunk now."
        store.set_status(doc.document_id, DocumentStatus.ERROR, retry_count=1)
        again = await store.claim(doc.document_id, now=T0, stuck_before=T0, max_retries=3)
        second = await processor.process(again)

        assert first.chunks_created > second.chunks_created == 1
        assert vector_store.deleted_documents == [str(doc.document_id)]
        assert vector_store.ids_for(doc.document_id) == {vector_id(doc.document_id, 0)}


@pytest.mark.unit
class TestProcessFailure:

    async def test_unclaimed_document_is_refused(self, processor, store, chatbot_id):
        doc = store.add(make_document(chatbot_id=chatbot_id))

        with pytest.raises(ClaimConflictError):
            await processor.process(doc)

        assert store.documents[doc.document_id].status == DocumentStatus.UPLOADED

    async def test_empty_text_is_an_extraction_error(self, processor, store, content, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        content.texts[doc.document_id] = "   \n  "

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "extraction"
        saved = store.documents[doc.document_id]
        assert saved.status == DocumentStatus.ERROR
        assert saved.retry_count == 1
        assert saved.error_message.startswith("extraction:")

    async def test_download_failure(self, processor, store, content, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        content.errors[doc.document_id] = StorageError("Object not found: x")

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "download"
        assert store.documents[doc.document_id].error_message == "download: Object not found: x"

    async def test_unsupported_content(self, processor, store, content, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        content.errors[doc.document_id] = DocumentContentError("Unsupported file type: exe")

        with pytest.raises(DocumentProcessingError):
            await processor.process(doc)

        assert store.documents[doc.document_id].processing_metadata["lastErrorStage"] == "extraction"

    async def test_embedding_failure_upserts_nothing(self, processor, store, embedder, vector_store, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        embedder.error = EmbeddingError("AuthenticationError: bad key")

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "embedding"
        assert vector_store.vectors == {}
        assert store.documents[doc.document_id].status == DocumentStatus.ERROR

    async def test_embedding_count_mismatch(self, processor, store, embedder, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        embedder.drop_last = True

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "embedding"

    async def test_partial_upsert_is_not_completed(self, processor, store, vector_store, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        vector_store.reject_ids = {vector_id(doc.document_id, 1)}

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "vector_upsert"
        saved = store.documents[doc.document_id]
        assert saved.status == DocumentStatus.ERROR
        assert f"failed: {vector_id(doc.document_id, 1)}" in saved.error_message

    async def test_stale_vector_delete_failure(self, processor, store, vector_store, chatbot_id):
        doc = await _claimed(store, chatbot_id, retry_count=1)
        vector_store.delete_ok = False

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "vector_upsert"
        assert store.documents[doc.document_id].retry_count == 2

    async def test_unexpected_exception_still_marks_error(self, processor, store, content, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        content.errors[doc.document_id] = KeyError("boom")

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "pipeline"
        assert "KeyError" in store.documents[doc.document_id].error_message

    async def test_completion_write_failure_is_a_processing_error(self, processor, store, chatbot_id):
        doc = await _claimed(store, chatbot_id)
        store.fail_complete = RuntimeError("connection reset by peer")

        with pytest.raises(DocumentProcessingError) as exc_info:
            await processor.process(doc)

        assert exc_info.value.stage == "pipeline"
        saved = store.documents[doc.document_id]
        assert saved.status == DocumentStatus.ERROR
        assert "RuntimeError" in saved.error_message


@pytest.mark.unit
class TestClaimOwnership:
    """
    Run A claims, stalls past the stuck threshold and run B re-claims the
    same document. Whatever A does afterwards must not touch B's outcome.
    """

    async def _reclaimed(self, store, stale):
        fresh = await store.claim(
            stale.document_id,
            now=stale.processing_started_at + timedelta(minutes=30),
            stuck_before=stale.processing_started_at + timedelta(minutes=20),
            max_retries=None,
        )
        assert fresh is not None
        return fresh

    async def test_late_failure_does_not_undo_completion(self, processor, store, content, chatbot_id):
        stale = await _claimed(store, chatbot_id)
        fresh = await self._reclaimed(store, stale)
        await processor.process(fresh)
        assert store.documents[stale.document_id].status == DocumentStatus.COMPLETED

        content.errors[stale.document_id] = StorageError("Object not found: x")
        with pytest.raises(DocumentProcessingError):
            await processor.process(stale)

        saved = store.documents[stale.document_id]
        assert saved.status == DocumentStatus.COMPLETED
        assert saved.retry_count == 0
        assert saved.error_message is None

    async def test_late_failure_leaves_new_claim_processing(self, processor, store, content, chatbot_id):
        stale = await _claimed(store, chatbot_id)
        fresh = await self._reclaimed(store, stale)

        content.errors[stale.document_id] = StorageError("Object not found: x")
        with pytest.raises(DocumentProcessingError):
            await processor.process(stale)

        saved = store.documents[stale.document_id]
        assert saved.status == DocumentStatus.PROCESSING
        assert saved.processing_started_at == fresh.processing_started_at
        assert saved.retry_count == 0

    async def test_late_success_is_discarded_while_new_claim_runs(self, processor, store, chatbot_id):
        stale = await _claimed(store, chatbot_id)
        fresh = await self._reclaimed(store, stale)

        await processor.process(stale)

        saved = store.documents[stale.document_id]
        assert saved.status == DocumentStatus.PROCESSING
        assert saved.processing_started_at == fresh.processing_started_at
        assert saved.processing_completed_at is None
