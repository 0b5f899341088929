"""
FastAPI Application — Entry Point

Document OCR & grounded chat API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is bearer-JWT based, enforced per-route
  - Every service is built once here and shared through app.state
  - Structured JSON error responses on all 4xx/5xx

Wiring (create_app):

  Settings ─┬─ engine ── session factory ─┬─ DocumentService
            ├─ ArtifactStore ─────────────┤
            ├─ PageRasterizer ────────────┼─ DocumentProcessor
            ├─ RecognitionPool(Tesseract) ┘
            └─ OllamaCompletionClient ──── ConversationService

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID + request logging — X-Request-ID on every response
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docchat.api.v1.conversations import router as conversations_router
from docchat.api.v1.documents import router as documents_router
from docchat.api.v1.ocr import router as ocr_router
from docchat.core.config import Settings, get_settings
from docchat.core.errors import DocChatError
from docchat.db.session import build_engine, build_session_factory, check_db_health, init_models
from docchat.llm.completion import CompletionService, OllamaCompletionClient
from docchat.processing.orchestrator import DocumentProcessor
from docchat.processing.rasterizer import PageRasterizer
from docchat.processing.recognition import RecognitionPool, Recognizer, TesseractRecognizer
from docchat.schemas.common import ApiErrors, ErrorResponse
from docchat.services.conversations import ConversationService
from docchat.services.documents import DocumentService
from docchat.storage.artifacts import ArtifactStore, build_artifact_store

logger = logging.getLogger(__name__)

# HTTP status code → error code for errors raised outside the service layer
HTTP_ERROR_MAP: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "FILE_TOO_LARGE",
}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: ensure the schema, validate DB connectivity, log config summary.
    Run on shutdown: close the completion client and connection pools.
    """
    settings: Settings = app.state.settings
    logger.info(
        "Starting DocChat | env=%s storage=%s ocr_concurrency=%d model=%s",
        settings.app_env, settings.storage_backend, settings.ocr_concurrency, settings.ollama_model,
    )

    await init_models(app.state.engine)
    db_health = await check_db_health(app.state.engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    yield

    logger.info("Shutting down DocChat")
    await app.state.engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings:   Settings | None = None,
    *,
    artifacts:  ArtifactStore | None = None,
    recognizer: Recognizer | None = None,
    completion: CompletionService | None = None,
) -> FastAPI:
    """
    Build the application. The keyword overrides replace the external
    collaborators (blob storage, OCR engine, LLM) without touching the rest
    of the wiring.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="DocChat — Document OCR & Grounded Chat",
        description=(
            "Upload PDFs and images, extract their text (text layer or OCR), "
            "and chat with an LLM grounded in the extracted text."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Services
    # ----------------------------------------------------------------

    engine   = build_engine(settings)
    sessions = build_session_factory(engine)

    artifacts  = artifacts or build_artifact_store(settings)
    recognizer = recognizer or TesseractRecognizer(
        tesseract_cmd=settings.tesseract_cmd,
        timeout=settings.ocr_page_timeout_seconds,
    )
    completion = completion or OllamaCompletionClient.from_settings(settings)

    app.state.settings   = settings
    app.state.engine     = engine
    app.state.sessions   = sessions
    app.state.completion = completion

    app.state.document_service = DocumentService(sessions, artifacts, settings)
    app.state.document_processor = DocumentProcessor(
        sessions=sessions,
        artifacts=artifacts,
        rasterizer=PageRasterizer(dpi=settings.ocr_render_dpi, min_text_chars=settings.pdf_text_min_chars),
        pool=RecognitionPool(
            recognizer,
            concurrency=settings.ocr_concurrency,
            page_timeout=settings.ocr_page_timeout_seconds,
        ),
        settings=settings,
    )
    app.state.conversation_service = ConversationService(sessions, completion)

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DocChatError)
    async def docchat_exception_handler(request: Request, exc: DocChatError):
        request_id = _request_id(request)
        if exc.status_code >= 500:
            logger.error(
                "Request failed | path=%s error_code=%s message=%s request_id=%s",
                request.url.path, exc.error_code, exc.message, request_id,
            )
        body = ApiErrors.from_exception(exc, request_id)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse.model_validate({**exc.detail, "request_id": _request_id(request)})
        else:
            body = ErrorResponse(
                error_code=HTTP_ERROR_MAP.get(exc.status_code, "HTTP_ERROR"),
                message=str(exc.detail),
                request_id=_request_id(request),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        body = ApiErrors.validation_error(exc.errors(), _request_id(request))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router,     prefix="/api/v1")
    app.include_router(ocr_router,           prefix="/api/v1")
    app.include_router(conversations_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth, used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness check",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docchat-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness check",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health(app.state.engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "docchat.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
