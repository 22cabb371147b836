"""
kb-ingest HTTP service

Knowledge-base document processing service.

Architecture:
  - Pipeline routes live under /api/v1/ (cron, documents, admin)
  - Dashboard users authenticate with an OIDC JWT; the scheduler with CRON_SECRET
  - The dispatch strategy (queue | scan) is chosen once at startup
  - Every 4xx/5xx body is an ErrorResponse envelope

Middleware, innermost first:
  1. Gzip — compress responses > 1 KB
  2. CORS — dashboard origins only outside development
  3. Request ID + request logging — X-Request-ID header on every response
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kb_ingest.api.v1.admin import router as admin_router
from kb_ingest.api.v1.cron import router as cron_router
from kb_ingest.api.v1.documents import router as documents_router
from kb_ingest.core.config import settings
from kb_ingest.db.session import AsyncSessionLocal, check_db_health, engine
from kb_ingest.observability.tracing import init_tracing
from kb_ingest.schemas.documents import ErrorDetail, ErrorResponse, PipelineErrors
from kb_ingest.services.pipeline import build_pipeline

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Lifespan: DB check, tracing, pipeline assembly; teardown in reverse
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting kb-ingest | env=%s dispatch_mode=%s", settings.app_env, settings.dispatch_mode)
    init_tracing(settings)

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    app.state.pipeline = await build_pipeline(settings, session_factory=AsyncSessionLocal)
    if not settings.cron_secret:
        logger.warning("CRON_SECRET is not set; /api/v1/cron/process-documents accepts any caller")

    yield

    logger.info("Shutting down kb-ingest")
    await app.state.pipeline.aclose()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Knowledge-Base Document Processing",
        description=(
            "Turns uploaded chatbot knowledge-base documents into searchable vectors. "
            "Queue-driven when Redis is available, scan-driven otherwise."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = (
        ["*"] if settings.app_env == "development"
        else ["https://app.classbots.io", "https://admin.classbots.io"]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code, duration_ms, request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: everything leaves as an ErrorResponse
    # ----------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Routes raise HTTPException with an ErrorResponse dict; plain strings are wrapped."""
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse.model_validate(exc.detail)
        else:
            body = ErrorResponse(
                error_code=_status_code_name(exc.status_code),
                message=str(exc.detail),
            )
        body.request_id = request.headers.get("X-Request-ID")
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Last resort: log with the request id, answer INTERNAL_ERROR."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=PipelineErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(cron_router,      prefix="/api/v1")
    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(admin_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Probes: unauthenticated, polled by the orchestrator
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "kb-ingest"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    @app.get(
        "/health/vector-store",
        tags=["Operations"],
        summary="Vector store connectivity",
        description="Calls describe_index_stats; 503 if the index is unreachable.",
    )
    async def vector_store_health(request: Request) -> JSONResponse:
        result = await request.app.state.pipeline.vector_store.check_status()
        return JSONResponse(
            status_code=status.HTTP_200_OK if result.is_connected else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "isConnected": result.is_connected,
                "details":     result.details,
                "stats":       result.stats,
            },
        )

    return app


def _status_code_name(code: int) -> str:
    return {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        429: "RATE_LIMITED",
        503: "SERVICE_UNAVAILABLE",
    }.get(code, "HTTP_ERROR")


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kb_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
