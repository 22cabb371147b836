"""
Operator Diagnostics
GET /api/v1/admin/document-status

Admin-only snapshot of the document pipeline: counts per status, stuck
and retry-exhausted documents, recent activity, the dispatch mode chosen
at startup (with queue depth in queue mode) and recommendations.
"""

from __future__ import annotations

from fastapi import APIRouter

from kb_ingest.auth.rbac import RequireAdmin
from kb_ingest.schemas.documents import DiagnosticsResponse, ErrorResponse
from kb_ingest.services.pipeline import PipelineDep

router = APIRouter(
    prefix="/admin",
    tags=["Operations"],
    dependencies=[RequireAdmin],
)


@router.get(
    "/document-status",
    response_model=DiagnosticsResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    summary="Document processing diagnostics",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Requires the admin role"},
    },
)
async def document_status(pipeline: PipelineDep) -> DiagnosticsResponse:
    return await pipeline.diagnostics.build()
