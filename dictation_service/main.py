"""
Dictation Service - FastAPI Main Application
"""

import mimetypes
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from dictation_service.config import settings, STTProvider
from dictation_service.core.errors import DictationServiceError
from dictation_service.core.logging import setup_logging, get_logger, audit_logger
from dictation_service.core.metrics import request_count, request_duration
from dictation_service.core.security import (
    DataEncryption,
    OwnerAuthorizer,
    get_current_user,
    security_manager,
)
from dictation_service.models.responses import (
    DictationCreatedResponse,
    DictationListResponse,
    DictationView,
    ErrorResponse,
    HealthCheckResponse,
    RateLimitResponse,
    StructuredNoteListResponse,
    StructuredNoteResponse,
)
from dictation_service.services.dictations import DictationQueryService
from dictation_service.services.ingestion import DictationIngestionService
from dictation_service.services.llm_service import OpenAINoteClient
from dictation_service.services.note_extraction import NoteExtractionService
from dictation_service.services.scheduler import TranscriptionScheduler
from dictation_service.services.stt_service import AssemblyAITranscriber, OpenAITranscriber
from dictation_service.services.transcription_worker import TranscriptionWorker
from dictation_service.stores.blob_store import LocalBlobStore
from dictation_service.stores.sqlite_store import SQLiteRecordStore

# Initialize logging
setup_logging()
logger = get_logger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

STARTED_AT = time.time()

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    415: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def default_stt_clients() -> Dict[str, Any]:
    clients = {
        STTProvider.OPENAI.value: OpenAITranscriber(settings.openai_api_key, settings.default_stt_model),
    }
    if settings.assemblyai_api_key:
        clients[STTProvider.ASSEMBLYAI.value] = AssemblyAITranscriber(
            settings.assemblyai_api_key,
            settings.assemblyai_api_base_url,
            http_timeout=settings.stt_timeout,
        )
    return clients


def _ensure(state, name: str, factory):
    """Keeps a collaborator that was placed on app.state before startup, builds the default otherwise"""
    if not hasattr(state, name):
        setattr(state, name, factory())
    return getattr(state, name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("🚀 Dictation Service starting...")
    logger.info(f"Environment: {settings.environment.value}")
    state = app.state

    record_store = _ensure(state, "record_store", lambda: SQLiteRecordStore(settings.database_path))
    blob_store = _ensure(
        state,
        "blob_store",
        lambda: LocalBlobStore(
            settings.blob_storage_dir,
            settings.public_base_url,
            DataEncryption(settings.data_encryption_key),
            security_manager,
        ),
    )
    stt_clients = _ensure(state, "stt_clients", default_stt_clients)
    note_client = _ensure(
        state,
        "note_client",
        lambda: OpenAINoteClient(settings.openai_api_key, settings.default_llm_model, settings.llm_max_tokens),
    )
    authorizer = _ensure(state, "authorizer", OwnerAuthorizer)

    init = getattr(record_store, "init", None)
    if init is not None:
        await init()

    worker = TranscriptionWorker(
        blob_store=blob_store,
        record_store=record_store,
        stt_clients=stt_clients,
        download_timeout=settings.download_timeout,
        stt_timeout=settings.stt_timeout,
    )
    state.scheduler = TranscriptionScheduler(worker, settings.max_concurrent_transcriptions)
    state.ingestion_service = DictationIngestionService(
        blob_store=blob_store,
        record_store=record_store,
        scheduler=state.scheduler,
        worker=worker,
        vendors=stt_clients.keys(),
        default_vendor=settings.stt_provider.value,
        max_size_bytes=settings.max_file_size_bytes,
        supported_formats=settings.supported_audio_formats,
        signed_url_ttl=settings.signed_url_ttl_seconds,
    )
    state.query_service = DictationQueryService(record_store, authorizer)
    state.extraction_service = NoteExtractionService(
        record_store=record_store,
        note_client=note_client,
        authorizer=authorizer,
        timeout=settings.llm_timeout,
        temperature=settings.llm_temperature,
    )

    yield

    logger.info("🛑 Dictation Service shutting down...")
    await state.scheduler.shutdown(settings.shutdown_grace_seconds)


# --- Dependencies ---

def get_ingestion_service(request: Request) -> DictationIngestionService:
    return request.app.state.ingestion_service


def get_query_service(request: Request) -> DictationQueryService:
    return request.app.state.query_service


def get_extraction_service(request: Request) -> NoteExtractionService:
    return request.app.state.extraction_service


# --- Routes ---

@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        version=settings.api_version,
        uptime_seconds=int(time.time() - STARTED_AT),
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Checks if the service and its dependencies are ready to accept traffic.
    Returns 200 OK if all checks pass, otherwise 503 Service Unavailable.
    """
    ping = getattr(request.app.state.record_store, "ping", None)
    store_ok = await ping() if ping is not None else True
    scheduler = request.app.state.scheduler
    response_data = {
        "status": "ready" if store_ok else "unavailable",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.api_version,
        "details": {
            "recordStore": {"status": "ok" if store_ok else "error"},
            "transcriptionsInFlight": scheduler.in_flight,
        },
    }
    if store_ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response_data)
    logger.warning(f"Readiness check failed: {response_data['details']}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response_data)


@router.get("/metrics")
async def metrics():
    """Prometheus metrics"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post(
    "/v1/dictations",
    response_model=DictationCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=ERROR_RESPONSES,
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def create_dictation(
    request: Request,
    user_info: dict = Depends(get_current_user),
    ingestion: DictationIngestionService = Depends(get_ingestion_service),
    audio: Optional[UploadFile] = File(None),
    duration_sec: int = Form(0, alias="durationSec"),
    patient_id: Optional[str] = Form(None, alias="patientId"),
    vendor: Optional[str] = Form(None),
):
    """
    Stores an audio recording and starts transcription in the background.
    Poll GET /v1/dictations/{id} for the outcome.
    """
    audio_data = None
    content_type = None
    if audio is not None:
        # one byte past the limit is enough to reject oversized uploads
        audio_data = await audio.read(settings.max_file_size_bytes + 1)
        content_type = audio.content_type

    dictation = await ingestion.ingest(
        clinician_id=user_info["sub"],
        audio=audio_data,
        content_type=content_type,
        duration_sec=duration_sec,
        patient_id=patient_id,
        vendor=vendor,
    )
    return DictationCreatedResponse(id=dictation.id, status=dictation.status)


@router.get("/v1/dictations", response_model=DictationListResponse, responses=ERROR_RESPONSES)
async def list_dictations(
    user_info: dict = Depends(get_current_user),
    queries: DictationQueryService = Depends(get_query_service),
    limit: int = Query(20, ge=1, le=100),
):
    """Lists the caller's dictations, newest first"""
    dictations = await queries.list(user_info, limit)
    return DictationListResponse(items=[DictationView.from_dictation(d) for d in dictations])


@router.get("/v1/dictations/{dictation_id}", response_model=DictationView, responses=ERROR_RESPONSES)
async def get_dictation(
    dictation_id: str,
    user_info: dict = Depends(get_current_user),
    queries: DictationQueryService = Depends(get_query_service),
):
    """Current status and results of a dictation"""
    dictation = await queries.get(user_info, dictation_id)
    return DictationView.from_dictation(dictation)


@router.post(
    "/v1/dictations/{dictation_id}/process",
    response_model=StructuredNoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def process_dictation(
    dictation_id: str,
    user_info: dict = Depends(get_current_user),
    extraction: NoteExtractionService = Depends(get_extraction_service),
):
    """Converts a finished transcript into a structured clinical note"""
    note = await extraction.extract(user_info, dictation_id)
    return StructuredNoteResponse.from_note(note)


@router.get(
    "/v1/dictations/{dictation_id}/notes",
    response_model=StructuredNoteListResponse,
    responses=ERROR_RESPONSES,
)
async def list_dictation_notes(
    dictation_id: str,
    user_info: dict = Depends(get_current_user),
    queries: DictationQueryService = Depends(get_query_service),
):
    notes = await queries.list_notes(user_info, dictation_id)
    return StructuredNoteListResponse(items=[StructuredNoteResponse.from_note(n) for n in notes])


@router.get("/v1/blobs/{path:path}", include_in_schema=False)
async def read_blob(request: Request, path: str, token: str = Query(...)):
    """Serves a stored recording to holders of a signed URL"""
    read_signed = getattr(request.app.state.blob_store, "read_signed", None)
    if read_signed is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blob access not supported")
    data = await read_signed(path, token)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# --- Error rendering ---

def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=request_id,
        timestamp=datetime.utcnow(),
    )
    response_headers = dict(headers or {})
    if request_id:
        response_headers["X-Request-ID"] = request_id
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True),
        headers=response_headers,
    )


async def dictation_error_handler(request: Request, exc: DictationServiceError):
    if exc.status_code >= 500:
        audit_logger.log_error(
            request_id=getattr(request.state, "request_id", None),
            error_type=exc.reason,
            error_message=exc.message,
        )
    return _error_response(request, exc.status_code, exc.reason, exc.message, exc.details)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    reason = {
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
    }.get(exc.status_code, "http_error")
    return _error_response(request, exc.status_code, reason, str(exc.detail), headers=getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "invalid_request",
        "Malformed request",
        {"fields": fields},
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""
    retry_after = settings.rate_limit_window
    body = RateLimitResponse(
        message="Too many requests. Please try again later.",
        retry_after=retry_after,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
        timestamp=datetime.utcnow(),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=body.model_dump(mode="json", by_alias=True),
        headers={"Retry-After": str(retry_after)},
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"Unhandled error in request {request_id}: {exc}")
    logger.error(f"Stacktrace: {traceback.format_exc()}")
    return _error_response(request, 500, "internal_server_error", "An unexpected error occurred")


# --- Application factory ---

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.api_title,
        description=settings.api_description,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Request tracking and Prometheus metrics"""
        start_time = time.time()
        request_id = security_manager.generate_request_id()
        request.state.request_id = request_id

        response = await call_next(request)

        duration = time.time() - start_time
        route = request.scope.get("route")
        request_count.labels(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code,
        ).inc()
        request_duration.observe(duration)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time"] = f"{duration:.3f}s"
        return response

    app.add_exception_handler(DictationServiceError, dictation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dictation_service.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
