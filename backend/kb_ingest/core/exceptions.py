"""
Pipeline exception hierarchy.

Every failure inside one document's processing carries the stage it
happened in, so the error_message stored on the document reads
"<stage>: <reason>" and operators can tell a bad file from an outage.
"""

from __future__ import annotations

from uuid import UUID


class PipelineError(Exception):
    """Base class for failures inside a single document's pipeline."""

    stage: str = "pipeline"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage:
            self.stage = stage

    def __str__(self) -> str:
        return f"{self.stage}: {self.args[0]}"


class StorageError(PipelineError):
    stage = "download"


class DocumentContentError(PipelineError):
    """Unreadable, unsupported or empty document content."""
    stage = "extraction"


class EmbeddingError(PipelineError):
    stage = "embedding"


class VectorStoreError(PipelineError):
    stage = "vector_upsert"


class DocumentProcessingError(Exception):
    """
    Raised by DocumentProcessor after the document has been moved to
    `error`. Callers never need to touch the record again.
    """

    def __init__(self, document_id: UUID, stage: str, message: str) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.stage = stage
        self.message = message


class ReconcilerError(Exception):
    """The reconciler could not load its own work list."""


class ClaimConflictError(Exception):
    """Another run claimed the document first, or it is no longer eligible."""

    def __init__(self, document_id: UUID, status: str | None = None) -> None:
        super().__init__(f"Document {document_id} could not be claimed (status={status})")
        self.document_id = document_id
        self.status = status
