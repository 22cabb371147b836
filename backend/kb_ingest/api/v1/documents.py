"""
Knowledge-Base Document Processing API

  POST /api/v1/documents/{document_id}/process            reprocess one document now
  POST /api/v1/chatbots/{chatbot_id}/documents/process     queue a batch of documents
  POST /api/v1/documents/{document_id}/uploaded            upload-handler hook
  POST /api/v1/chatbots/{chatbot_id}/search                similarity search

Every route requires a teacher token and ownership of the chatbot the
document belongs to (admins pass the ownership check). Manual processing
routes are rate limited per user.

Request lifecycle (single reprocess):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → role gate (teacher or above)      │
  │ 2. Rate limit keyed on the caller's user id             │
  │ 3. Load document → 404; chatbot owner check → 403       │
  │ 4. processing → 409; completed → 200 "already processed"│
  │ 5. Claim + process synchronously                        │
  │ 6. 200 with chunk count, or 500 with the failure reason │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from kb_ingest.auth.rbac import RequireTeacher, is_admin
from kb_ingest.auth.token import TokenPayload
from kb_ingest.core.exceptions import ClaimConflictError, DocumentProcessingError
from kb_ingest.schemas.documents import (
    BatchProcessRequest,
    BatchProcessResponse,
    DocumentRecord,
    DocumentStatus,
    ErrorResponse,
    PipelineErrors,
    ReprocessResponse,
    SearchHit,
    SearchRequest,
    SearchResponse,
    UploadNotificationResponse,
)
from kb_ingest.services.pipeline import Pipeline, PipelineDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Document Processing"])

_OWNER_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    403: {"model": ErrorResponse, "description": "Caller does not own the chatbot"},
    404: {"model": ErrorResponse, "description": "Document or chatbot not found"},
}


# ---------------------------------------------------------------------------
# Ownership helpers
# ---------------------------------------------------------------------------

async def _require_chatbot_owner(pipeline: Pipeline, chatbot_id: UUID, user: TokenPayload) -> None:
    owner = await pipeline.store.get_chatbot_owner(chatbot_id)
    if owner is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=PipelineErrors.chatbot_not_found(chatbot_id).model_dump(),
        )
    if owner != user.sub and not is_admin(user):
        logger.warning("Ownership check failed | chatbot=%s user=%s", chatbot_id, user.sub)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=PipelineErrors.forbidden(f"chatbot '{chatbot_id}'").model_dump(),
        )


async def _load_owned_document(pipeline: Pipeline, document_id: UUID, user: TokenPayload) -> DocumentRecord:
    document = await pipeline.store.get(document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=PipelineErrors.document_not_found(document_id).model_dump(),
        )
    await _require_chatbot_owner(pipeline, document.chatbot_id, user)
    return document


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/documents/{document_id}/process",
    response_model=ReprocessResponse,
    response_model_by_alias=True,
    summary="Process or reprocess one document synchronously",
    responses={
        **_OWNER_RESPONSES,
        409: {"model": ErrorResponse, "description": "Document is already processing"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Processing failed; details carry the reason"},
    },
)
async def reprocess_document(
    document_id: UUID,
    pipeline: PipelineDep,
    user: TokenPayload = RequireTeacher,
) -> ReprocessResponse:
    await pipeline.rate_limiter.check(f"manual:{user.sub}")
    document = await _load_owned_document(pipeline, document_id, user)

    try:
        return await pipeline.manual.reprocess(document)
    except ClaimConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=PipelineErrors.already_processing(document_id).model_dump(),
        ) from exc
    except DocumentProcessingError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=PipelineErrors.processing_failed(exc.stage, exc.message).model_dump(),
        ) from exc


# ---------------------------------------------------------------------------
# POST /chatbots/{chatbot_id}/documents/process
# ---------------------------------------------------------------------------

@router.post(
    "/chatbots/{chatbot_id}/documents/process",
    response_model=BatchProcessResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue several of a chatbot's documents for processing",
    description=(
        "Documents that are already processing or completed, or that belong "
        "to another chatbot, are skipped. Processing continues after the response."
    ),
    responses={**_OWNER_RESPONSES, 429: {"model": ErrorResponse, "description": "Rate limit exceeded"}},
)
async def process_chatbot_documents(
    chatbot_id: UUID,
    body: BatchProcessRequest,
    pipeline: PipelineDep,
    user: TokenPayload = RequireTeacher,
) -> BatchProcessResponse:
    await pipeline.rate_limiter.check(f"manual:{user.sub}")
    await _require_chatbot_owner(pipeline, chatbot_id, user)
    return await pipeline.manual.queue_batch(chatbot_id, body.document_ids)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/uploaded
# ---------------------------------------------------------------------------

@router.post(
    "/documents/{document_id}/uploaded",
    response_model=UploadNotificationResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Signal that a document finished uploading",
    description=(
        "Queue mode enqueues a processing job immediately. Scan mode does "
        "nothing; the next reconciler run picks the document up."
    ),
    responses=_OWNER_RESPONSES,
)
async def document_uploaded(
    document_id: UUID,
    pipeline: PipelineDep,
    user: TokenPayload = RequireTeacher,
) -> UploadNotificationResponse:
    document = await _load_owned_document(pipeline, document_id, user)

    enqueued = False
    if document.status == DocumentStatus.UPLOADED:
        enqueued = await pipeline.dispatch.notify_uploaded(document_id)
    else:
        logger.info("Upload hook ignored | doc=%s status=%s", document_id, document.status.value)

    return UploadNotificationResponse(
        document_id=document_id,
        dispatch=pipeline.dispatch.mode,
        enqueued=enqueued,
    )


# ---------------------------------------------------------------------------
# POST /chatbots/{chatbot_id}/search
# ---------------------------------------------------------------------------

@router.post(
    "/chatbots/{chatbot_id}/search",
    response_model=SearchResponse,
    response_model_by_alias=True,
    summary="Similarity search over a chatbot's knowledge base",
    responses=_OWNER_RESPONSES,
)
async def search_knowledge_base(
    chatbot_id: UUID,
    body: SearchRequest,
    pipeline: PipelineDep,
    user: TokenPayload = RequireTeacher,
) -> SearchResponse:
    await _require_chatbot_owner(pipeline, chatbot_id, user)
    matches = await pipeline.retrieval.search(chatbot_id, body.query, top_k=body.top_k)
    return SearchResponse(
        chatbot_id=chatbot_id,
        matches=[
            SearchHit(
                id=m.id,
                score=m.score,
                text=m.text,
                document_id=m.metadata.get("documentId"),
                file_name=m.metadata.get("fileName"),
            )
            for m in matches
        ],
    )
