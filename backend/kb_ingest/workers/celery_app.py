"""
Celery Application Factory

Only used in queue mode (Redis reachable). Broker and result backend are
both Redis; the authoritative document state lives in PostgreSQL, so
task results are informational.

Queue topology:
  documents.ingest     — one job per document (upload hook, manual batch)
  documents.reconcile  — periodic reconciler run from beat; picks up
                         stuck, failed-but-retryable and never-enqueued
                         documents
  system.health        — worker liveness probe

Task payloads carry only document ids; workers reload everything from
the database.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, worker_process_init
from kombu import Exchange, Queue

from kb_ingest.core.config import settings
from kb_ingest.observability.tracing import init_tracing

logger = logging.getLogger(__name__)

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        durable=True,
    ),
    Queue(
        "documents.reconcile",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.reconcile",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "kb_ingest.workers.tasks.process_document":    {"queue": "documents.ingest"},
    "kb_ingest.workers.tasks.reconcile_documents": {"queue": "documents.reconcile"},
    "kb_ingest.workers.tasks.health_check":        {"queue": "system.health"},
}


def create_celery_app() -> Celery:
    app = Celery("kb_ingest")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        # a run that hits the hard limit leaves its document in `processing`;
        # the reconciler re-claims it once it is older than the stuck threshold
        task_soft_time_limit=settings.run_budget_seconds,
        task_time_limit=settings.run_budget_seconds + 60,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "reconcile-documents": {
                "task":     "kb_ingest.workers.tasks.reconcile_documents",
                "schedule": settings.reconcile_interval_seconds,
                "options":  {"queue": "documents.reconcile"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["kb_ingest.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one log line per task boundary
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )


@worker_process_init.connect
def on_worker_process_init(**_):
    init_tracing(settings)
