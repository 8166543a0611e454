"""
FastAPI Application — Entry Point

docpipe processing API. The API process never does ingestion work itself;
it validates document state and publishes Celery tasks.

  /api/v1/documents/{id}/process           queue processing
  /api/v1/documents/{id}/quiz              queue quiz regeneration
  /api/v1/documents/{id}/processing-logs   progress trail
  /health, /ready                          liveness / readiness
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docpipe.api.v1.processing import router as processing_router
from docpipe.core.config import settings
from docpipe.db.session import check_db_health
from docpipe.schemas.processing import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting docpipe API | env=%s bucket=%s embedding_model=%s",
        settings.app_env, settings.s3_bucket, settings.embedding_model,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    yield

    logger.info("Shutting down docpipe API")
    from docpipe.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="docpipe",
        description="Document ingestion: extraction, chunking, embedding and enrichment.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

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
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(processing_router, prefix="/api/v1")

    from docpipe.observability.tracing import TracingConfig
    TracingConfig.init()

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "docpipe-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": db_status})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docpipe.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
