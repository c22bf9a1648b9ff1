"""
docingest HTTP service

The web process is a thin ingress in front of the ingestion pipeline:

  /api/v1/ingest/...   submission endpoints (see docingest.api.v1.ingest)
  /health              liveness, no dependencies touched
  /health/ready        registry reachable + dispatcher queue stats

Startup (lifespan):
  build one Runtime → check the registry → start the local worker pool
  → run the crash-recovery sweep → serve.

Every error leaves as an ErrorResponse body carrying the request id; request
validation failures are reported as 400 INVALID_SUBMISSION.

Middleware, outermost first: request id + access log, CORS, gzip.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docingest import __version__
from docingest.api.v1.ingest import router as ingest_router
from docingest.core.config import Settings, get_settings
from docingest.runtime import Runtime, build_runtime, recover_submissions
from docingest.schemas.documents import ErrorDetail, ErrorResponse
from docingest.services.ingestion import IngestionService

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _error_response(status_code: int, body: ErrorResponse, request_id: str | None) -> JSONResponse:
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Starting docingest | env=%s registry=%s dispatch=%s vector_store=%s",
        settings.app_env, settings.registry_backend,
        settings.dispatch_mode, settings.vector_store_backend,
    )

    runtime = await build_runtime(settings)
    registry_health = await runtime.registry.health()
    if registry_health["status"] != "ok":
        logger.critical("Registry unreachable at startup | detail=%s", registry_health)
        await runtime.close()
        raise RuntimeError(f"Registry unavailable: {registry_health}")

    app.state.runtime = runtime
    app.state.ingestion_service = IngestionService.from_runtime(runtime)
    await runtime.start()

    # Celery workers elsewhere may still be running; only sweep stale rows then
    stale_after = None
    if settings.dispatch_mode == "celery":
        stale_after = timedelta(seconds=settings.recovery_stale_after_seconds)
    await recover_submissions(
        runtime.registry, runtime.spool, runtime.dispatcher,
        stale_after=stale_after,
        limit=settings.recovery_batch_size,
    )

    try:
        yield
    finally:
        logger.info("Shutting down docingest")
        await runtime.close()


async def readiness_report(runtime: Runtime | None) -> tuple[int, dict[str, Any]]:
    if runtime is None:
        return status.HTTP_503_SERVICE_UNAVAILABLE, {"status": "not_ready", "reason": "runtime not started"}

    registry_health = await runtime.registry.health()
    queue = runtime.dispatcher.stats() if runtime.dispatcher is not None else {}
    ready = registry_health["status"] == "ok"
    return (
        status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        {"status": "ready" if ready else "not_ready", "registry": registry_health, "queue": queue},
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    docs_enabled = not settings.is_production
    app = FastAPI(
        title="docingest",
        description=(
            "Document ingestion pipeline: PDF, DOC/DOCX, TXT, MD and EPUB are "
            "normalized to text and written to vector and graph stores."
        ),
        version=__version__,
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Last added runs first
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER, "X-Submission-ID", "Location"],
    )

    @app.middleware("http")
    async def tag_and_log(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="INVALID_SUBMISSION",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code="VALIDATION_ERROR",
                )
                for err in exc.errors()
            ],
            request_id=request.headers.get(REQUEST_ID_HEADER),
        )
        return _error_response(status.HTTP_400_BAD_REQUEST, body, body.request_id)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, body, request_id)

    app.include_router(ingest_router, prefix="/api/v1")

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "docingest"}

    @app.get("/health/ready", tags=["Operations"], summary="Readiness probe")
    async def ready(request: Request) -> JSONResponse:
        code, report = await readiness_report(getattr(request.app.state, "runtime", None))
        return JSONResponse(status_code=code, content=report)

    return app


# uvicorn docingest.main:create_app --factory
if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "docingest.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
    )
