"""
Batch Reconciler

Finds documents that need work and runs them through the processor, one
at a time. Runs from the cron endpoint (scan mode) and from Celery beat
(queue mode); both paths call run() and differ only in authorization.

Eligible documents, oldest created_at first, at most batch_size per run:
  - uploaded                       never attempted
  - processing, started too long ago   presumed abandoned by a dead worker
  - error with retry_count < max       retryable

Each document is claimed with a conditional update right before it is
processed, so an overlapping run (or a queue worker) that got there first
wins and this run counts the document as skipped. Once the run budget is
spent the remaining documents are left untouched for the next run.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable

from kb_ingest.core.exceptions import DocumentProcessingError, ReconcilerError
from kb_ingest.observability.tracing import traced
from kb_ingest.repositories.documents import DocumentStore
from kb_ingest.schemas.documents import BatchRunResult, DocumentOutcome, DocumentRecord
from kb_ingest.services.processor import DocumentProcessor, utcnow

logger = logging.getLogger(__name__)


class BatchReconciler:

    def __init__(
        self,
        *,
        store: DocumentStore,
        processor: DocumentProcessor,
        batch_size: int = 10,
        stuck_threshold: timedelta = timedelta(minutes=10),
        max_retries: int = 3,
        run_budget_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._processor = processor
        self._batch_size = batch_size
        self._stuck_threshold = stuck_threshold
        self._max_retries = max_retries
        self._budget = run_budget_seconds
        self._clock = clock
        self._monotonic = monotonic

    @property
    def stuck_threshold(self) -> timedelta:
        return self._stuck_threshold

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def stuck_before(self) -> datetime:
        return self._clock() - self._stuck_threshold

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    @traced("reconciler.run")
    async def run(self) -> BatchRunResult:
        run_started = self._monotonic()
        documents = await self._load_work()

        if not documents:
            logger.info("Reconciler | nothing to process")
            return BatchRunResult(message="No documents to process")

        logger.info("Reconciler | selected=%d", len(documents))
        results: list[DocumentOutcome] = []
        skipped = 0

        for position, document in enumerate(documents):
            if self._monotonic() - run_started >= self._budget:
                remaining = len(documents) - position
                skipped += remaining
                logger.warning(
                    "Reconciler | run budget of %.0fs exhausted, leaving %d documents for the next run",
                    self._budget, remaining,
                )
                break

            outcome = await self._process_one(document)
            if outcome is None:
                skipped += 1
            else:
                results.append(outcome)

        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful
        logger.info(
            "Reconciler done | processed=%d successful=%d failed=%d skipped=%d",
            len(results), successful, failed, skipped,
        )
        return BatchRunResult(
            message=f"Processed {len(results)} documents",
            processed=len(results),
            successful=successful,
            failed=failed,
            skipped=skipped,
            results=results,
        )

    async def _load_work(self) -> list[DocumentRecord]:
        try:
            ids = await self._store.find_candidates(
                limit=self._batch_size,
                stuck_before=self.stuck_before(),
                max_retries=self._max_retries,
            )
            if not ids:
                return []
            return await self._store.get_many(ids)
        except Exception as exc:
            logger.exception("Reconciler could not load candidates")
            raise ReconcilerError(f"Failed to load candidate documents: {exc}") from exc

    async def _process_one(self, document: DocumentRecord) -> DocumentOutcome | None:
        """Claim and process one document. None means the claim was lost."""
        t0 = self._monotonic()
        try:
            claimed = await self._store.claim(
                document.document_id,
                now=self._clock(),
                stuck_before=self.stuck_before(),
                max_retries=self._max_retries,
            )
        except Exception as exc:
            logger.exception("Claim failed | doc=%s", document.document_id)
            return self._failure(document, f"claim: {exc}", t0)

        if claimed is None:
            return None

        try:
            result = await self._processor.process(claimed)
        except DocumentProcessingError as exc:
            outcome = self._failure(document, exc.message, t0)
        except Exception as exc:
            logger.exception("Processor raised outside its error boundary | doc=%s", document.document_id)
            outcome = self._failure(document, f"{type(exc).__name__}: {exc}", t0)
        else:
            return DocumentOutcome(
                document_id=document.document_id,
                success=True,
                chunks_created=result.chunks_created,
                processing_time=self._elapsed_ms(t0),
            )

        await self._stamp_attempt(document, outcome.error)
        return outcome

    async def _stamp_attempt(self, document: DocumentRecord, error: str | None) -> None:
        try:
            await self._store.record_attempt(
                document.document_id, attempted_at=self._clock(), error=error,
            )
        except Exception:
            logger.exception("Could not record reconciler attempt | doc=%s", document.document_id)

    def _failure(self, document: DocumentRecord, error: str, t0: float) -> DocumentOutcome:
        return DocumentOutcome(
            document_id=document.document_id,
            success=False,
            error=error,
            processing_time=self._elapsed_ms(t0),
        )

    def _elapsed_ms(self, t0: float) -> int:
        return int((self._monotonic() - t0) * 1000)
