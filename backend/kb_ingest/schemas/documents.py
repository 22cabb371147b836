"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - The DocumentRecord passed between repository, processor and reconciler
  - Batch reconciler run summaries (cron endpoint)
  - Manual single / batch reprocess requests and responses
  - Diagnostics payload (status counts, stuck documents, recommendations)
  - Retrieval search
  - Structured error bodies for every 4xx/5xx

Wire format:
  JSON bodies use camelCase (documentId, processingTime, ...) for the
  existing dashboard clients; Python code uses snake_case attributes.
  Every model accepts both spellings on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Processing state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: uploaded → processing → completed | error;
                 error → processing (retry); processing → processing (stuck re-claim)
    """
    UPLOADED   = "uploaded"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    ERROR      = "error"


class DocumentRecord(CamelModel):
    """A documents row as seen by the pipeline."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True,
    )

    document_id:  UUID
    chatbot_id:   UUID
    file_name:    str
    file_path:    str
    file_type:    str
    file_size:    int = 0
    status:       DocumentStatus
    retry_count:  int = Field(0, ge=0)
    error_message: str | None = None
    processing_started_at:   datetime | None = None
    processing_completed_at: datetime | None = None
    processing_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at:   datetime | None = None
    updated_at:   datetime | None = None


# ---------------------------------------------------------------------------
# Batch reconciler run: GET|POST /cron/process-documents
# ---------------------------------------------------------------------------

class DocumentOutcome(CamelModel):
    """Per-document line of a reconciler run."""
    document_id:     UUID
    success:         bool
    chunks_created:  int | None = None
    error:           str | None = None
    processing_time: int = Field(0, description="Elapsed milliseconds")


class BatchRunResult(CamelModel):
    message:    str
    processed:  int = Field(0, description="Documents attempted in this run")
    successful: int = 0
    failed:     int = 0
    skipped:    int = Field(0, description="Selected but lost the claim or ran out of budget")
    results:    list[DocumentOutcome] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Manual reprocess: POST /documents/{id}/process
# ---------------------------------------------------------------------------

class ReprocessResponse(CamelModel):
    message:        str
    document:       DocumentRecord
    chunks_created: int | None = None


# ---------------------------------------------------------------------------
# Manual batch: POST /chatbots/{chatbot_id}/documents/process
# ---------------------------------------------------------------------------

class BatchProcessRequest(CamelModel):
    document_ids: list[UUID] = Field(..., min_length=1, max_length=100)


class BatchProcessStats(CamelModel):
    total:      int
    processing: int
    skipped:    int


class BatchProcessResponse(CamelModel):
    message:          str
    documents_queued: int
    stats:            BatchProcessStats


class UploadNotificationResponse(CamelModel):
    document_id: UUID
    dispatch:    str = Field(..., description="queue | scan")
    enqueued:    bool


# ---------------------------------------------------------------------------
# Diagnostics: GET /admin/document-status
# ---------------------------------------------------------------------------

class RecommendationSeverity(str, Enum):
    INFO    = "info"
    WARNING = "warning"
    ERROR   = "error"


class Recommendation(CamelModel):
    severity: RecommendationSeverity
    message:  str
    action:   str | None = None


class StuckDocument(CamelModel):
    document_id: UUID
    chatbot_id:  UUID
    file_name:   str
    processing_started_at: datetime | None = None
    retry_count: int = 0


class ActivityEntry(CamelModel):
    document_id:   UUID
    file_name:     str
    status:        DocumentStatus
    retry_count:   int = 0
    error_message: str | None = None
    updated_at:    datetime | None = None


class DiagnosticsResponse(CamelModel):
    processing_method:     str
    status_counts:         dict[str, int]
    stuck_documents:       list[StuckDocument] = Field(default_factory=list)
    stuck_count:           int = 0
    error_count:           int = 0
    retry_exhausted_count: int = 0
    recent_activity:       list[ActivityEntry] = Field(default_factory=list)
    queue_metrics:         dict[str, Any] | None = None
    recommendations:       list[Recommendation] = Field(default_factory=list)
    timestamp:             datetime


# ---------------------------------------------------------------------------
# Retrieval: POST /chatbots/{chatbot_id}/search
# ---------------------------------------------------------------------------

class SearchRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=4000)
    top_k: int = Field(5, ge=1, le=50)


class SearchHit(CamelModel):
    id:          str
    score:       float
    text:        str = ""
    document_id: str | None = None
    file_name:   str | None = None


class SearchResponse(CamelModel):
    chatbot_id: UUID
    matches:    list[SearchHit] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class PipelineErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unauthorized(message: str = "Missing or invalid Authorization header.") -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[ErrorDetail(field=None, message=message, code="UNAUTHORIZED")],
        )

    @staticmethod
    def forbidden(resource: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"You do not own {resource}.",
            details=[],
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )

    @staticmethod
    def chatbot_not_found(chatbot_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="CHATBOT_NOT_FOUND",
            message=f"Chatbot '{chatbot_id}' was not found.",
            details=[],
        )

    @staticmethod
    def already_processing(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_PROCESSING",
            message="Document is already being processed.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Document '{document_id}' is in status 'processing'. Wait for it to finish.",
                    code="ALREADY_PROCESSING",
                )
            ],
        )

    @staticmethod
    def processing_failed(stage: str, detail: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="PROCESSING_FAILED",
            message="Document processing failed.",
            details=[ErrorDetail(field=stage, message=detail, code="PROCESSING_FAILED")],
        )

    @staticmethod
    def reconciler_failed(detail: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RECONCILER_FAILED",
            message="Batch processing run failed.",
            details=[ErrorDetail(field=None, message=detail, code="RECONCILER_FAILED")],
        )

    @staticmethod
    def rate_limited(limit: int, window_seconds: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="RATE_LIMITED",
            message=f"Too many processing requests. Limit is {limit} per {window_seconds}s.",
            details=[],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )
