"""
Pipeline Tracing — OpenTelemetry spans + `@traced` decorator

Every async pipeline stage (content load, embedding, upsert, a whole
document, a whole reconciler run) is wrapped in an OpenTelemetry span and
its wall time and any exception land in the log with the span name:

    trace | span=processor.process elapsed_ms=812.4 ok
    trace | span=vector_store.upsert elapsed_ms=30001.2 error=...

Span export (Jaeger, Tempo, Datadog ...) is off unless configured; the
API tracer is a no-op until init_tracing() installs a provider, so the
log line is always the baseline.

Environment variables:
  OTEL_ENABLED=true
  OTEL_EXPORTER_OTLP_ENDPOINT=http://otel-collector:4318/v1/traces
  OTEL_SERVICE_NAME=kb-ingest
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from kb_ingest.core.config import Settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

_tracer = trace.get_tracer("kb_ingest")
_initialised = False


def init_tracing(cfg: Settings) -> bool:
    """
    Install an OTLP/HTTP span exporter. Call once per process (API
    lifespan, Celery worker_process_init). Returns True if export is on.
    """
    global _initialised
    if _initialised:
        return True

    if not cfg.otel_enabled or not cfg.otel_exporter_otlp_endpoint:
        logger.debug("OTEL tracing disabled")
        return False

    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": cfg.otel_service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    _initialised = True

    logger.info("OTEL tracing enabled | endpoint=%s", cfg.otel_exporter_otlp_endpoint)
    return True


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Instrument an async function with a span, timing and error logging.

    Usage::

        @traced("processor.process")
        async def process(self, document): ...

        @traced()   # uses the function's qualified name as span name
        async def embed_query(text: str) -> list[float]: ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            with _tracer.start_as_current_span(
                span_name, record_exception=False, set_status_on_exception=False,
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    elapsed_ms = (time.perf_counter() - t0) * 1000
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    logger.error(
                        "trace | span=%s elapsed_ms=%.1f error=%s",
                        span_name, elapsed_ms, exc,
                    )
                    raise
                elapsed_ms = (time.perf_counter() - t0) * 1000
                span.set_attribute("elapsed_ms", round(elapsed_ms, 1))
                logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
                return result

        return wrapper  # type: ignore[return-value]
    return decorator
