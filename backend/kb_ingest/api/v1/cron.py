"""
Batch Reconciler Trigger
GET|POST /api/v1/cron/process-documents

Called by the external scheduler every few minutes (both verbs, since
some schedulers can only GET). Authenticated with the shared CRON_SECRET
rather than a user token. In queue mode Celery beat runs the same
reconciler, so this endpoint is a manual or backup trigger there.

Returns 200 with the run summary even if individual documents failed;
only a failure to load the work list itself is a 500.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from kb_ingest.auth.token import verify_cron_secret
from kb_ingest.core.exceptions import ReconcilerError
from kb_ingest.schemas.documents import BatchRunResult, ErrorResponse, PipelineErrors
from kb_ingest.services.pipeline import PipelineDep

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["Batch Processing"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.api_route(
    "/process-documents",
    methods=["GET", "POST"],
    response_model=BatchRunResult,
    response_model_by_alias=True,
    summary="Run one reconciler pass",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or wrong cron secret"},
        500: {"model": ErrorResponse, "description": "Work list could not be loaded"},
    },
)
async def process_documents(pipeline: PipelineDep) -> BatchRunResult:
    try:
        return await pipeline.reconciler.run()
    except ReconcilerError as exc:
        logger.error("Reconciler run failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=PipelineErrors.reconciler_failed(str(exc)).model_dump(),
        ) from exc
