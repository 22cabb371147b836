"""
Diagnostics — document pipeline health for operators.

Reports status counts, documents stuck in `processing`, documents that
exhausted their retries, recent activity, the active dispatch mode with
its queue depth, and plain-language recommendations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from kb_ingest.repositories.documents import DocumentStore
from kb_ingest.schemas.documents import (
    ActivityEntry,
    DiagnosticsResponse,
    DocumentStatus,
    Recommendation,
    RecommendationSeverity,
    StuckDocument,
)
from kb_ingest.services.dispatch import DispatchStrategy
from kb_ingest.services.processor import utcnow

logger = logging.getLogger(__name__)

ERROR_COUNT_THRESHOLD = 5
QUEUE_DEPTH_THRESHOLD = 100
RECENT_ACTIVITY_LIMIT = 20
RECONCILE_ACTION = "POST /api/v1/cron/process-documents"


def generate_recommendations(
    *,
    processing_method: str,
    stuck_count: int,
    error_count: int,
    retry_exhausted_count: int = 0,
    queue_depth: int | None = None,
) -> list[Recommendation]:
    recs: list[Recommendation] = []

    if processing_method == "scan":
        recs.append(Recommendation(
            severity=RecommendationSeverity.INFO,
            message=(
                "System is using scan-driven processing. "
                "Consider setting up Redis for better performance at scale."
            ),
        ))

    if stuck_count > 0:
        recs.append(Recommendation(
            severity=RecommendationSeverity.WARNING,
            message=f"{stuck_count} documents are stuck in processing. Run the batch processor to retry them.",
            action=RECONCILE_ACTION,
        ))

    if error_count > ERROR_COUNT_THRESHOLD:
        recs.append(Recommendation(
            severity=RecommendationSeverity.ERROR,
            message=f"{error_count} documents have errors. Check logs and consider manual intervention.",
        ))

    if retry_exhausted_count > 0:
        recs.append(Recommendation(
            severity=RecommendationSeverity.WARNING,
            message=(
                f"{retry_exhausted_count} documents reached the retry limit and will not be "
                "retried automatically. Reprocess them manually once the cause is fixed."
            ),
        ))

    if queue_depth is not None and queue_depth > QUEUE_DEPTH_THRESHOLD:
        recs.append(Recommendation(
            severity=RecommendationSeverity.WARNING,
            message=f"Queue depth is high ({queue_depth}). Consider scaling up workers.",
        ))

    return recs


class DiagnosticsService:

    def __init__(
        self,
        *,
        store: DocumentStore,
        dispatch: DispatchStrategy,
        stuck_threshold: timedelta,
        max_retries: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._dispatch = dispatch
        self._stuck_threshold = stuck_threshold
        self._max_retries = max_retries
        self._clock = clock

    async def build(self) -> DiagnosticsResponse:
        now = self._clock()
        counts = await self._store.status_counts()
        stuck_before = now - self._stuck_threshold
        stuck = await self._store.stuck_documents(stuck_before=stuck_before)
        stuck_count = await self._store.stuck_count(stuck_before=stuck_before)
        exhausted = await self._store.retry_exhausted_count(max_retries=self._max_retries)
        recent = await self._store.recent_activity(limit=RECENT_ACTIVITY_LIMIT)
        queue_metrics = await self._dispatch.queue_metrics()

        error_count = counts.get(DocumentStatus.ERROR.value, 0)
        queue_depth = (queue_metrics or {}).get("waiting")

        logger.info(
            "Diagnostics | mode=%s stuck=%d errors=%d exhausted=%d queue_depth=%s",
            self._dispatch.mode, stuck_count, error_count, exhausted, queue_depth,
        )
        return DiagnosticsResponse(
            processing_method=self._dispatch.mode,
            status_counts=counts,
            stuck_documents=[
                StuckDocument(
                    document_id=d.document_id,
                    chatbot_id=d.chatbot_id,
                    file_name=d.file_name,
                    processing_started_at=d.processing_started_at,
                    retry_count=d.retry_count,
                )
                for d in stuck
            ],
            stuck_count=stuck_count,
            error_count=error_count,
            retry_exhausted_count=exhausted,
            recent_activity=[
                ActivityEntry(
                    document_id=d.document_id,
                    file_name=d.file_name,
                    status=d.status,
                    retry_count=d.retry_count,
                    error_message=d.error_message,
                    updated_at=d.updated_at,
                )
                for d in recent
            ],
            queue_metrics=queue_metrics,
            recommendations=generate_recommendations(
                processing_method=self._dispatch.mode,
                stuck_count=stuck_count,
                error_count=error_count,
                retry_exhausted_count=exhausted,
                queue_depth=queue_depth,
            ),
            timestamp=now,
        )
