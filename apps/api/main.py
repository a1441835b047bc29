"""
DuoVR Media Gateway - FastAPI Backend
Main application entry point: storage-backed upload, streaming and processing API.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_storage_settings
from database import create_engine, create_session_maker
from media_tools.inspector import MediaInspector
from media_tools.transcoder import Transcoder
from routers import analytics, files, health, jobs, records, sessions
from services.errors import GatewayError, UpstreamError
from services.processing import MediaProcessor
from services.repository import MetadataRepository
from services.storage import ObjectStore

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "X-DNS-Prefetch-Control": "off",
}


async def build_repository() -> Optional[MetadataRepository]:
    """Connect the optional metadata database; None means storage-only mode."""
    database_url = settings.database_url
    if not database_url:
        print("ℹ️ No database configured, running in storage-only mode.")
        return None

    engine = create_engine(database_url, echo=settings.is_development and settings.LOG_LEVEL.upper() == "DEBUG")
    repository = MetadataRepository(create_session_maker(engine), engine)
    try:
        if settings.AUTO_CREATE_DB_SCHEMA:
            await repository.create_schema()
            print("🗄️ Database schema verified.")
        await repository.ping()
    except Exception as exc:
        print(f"⚠️ Database unavailable, running in storage-only mode: {exc}")
        await repository.dispose()
        return None

    try:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=int(settings.STALLED_PROCESSING_MINUTES))
        stalled_records, stalled_jobs = await repository.recover_stalled(cutoff)
        if stalled_records or stalled_jobs:
            print(f"♻️ Recovered {stalled_records} stalled files and {stalled_jobs} stalled transcoding jobs.")
    except Exception as exc:
        print(f"⚠️ Stalled processing recovery skipped: {exc}")
    return repository


async def _periodic_session_sweep(repository: MetadataRepository) -> None:
    interval_minutes = max(int(settings.SESSION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(minutes=int(settings.SESSION_IDLE_TIMEOUT_MINUTES))
            expired = await repository.expire_idle_sessions(cutoff)
            if expired:
                print(f"⏱️ Session sweep: expired={expired}")
        except Exception as exc:
            print(f"⚠️ Session sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print(f"🚀 Starting {settings.SERVICE_NAME}...")
    validate_storage_settings()

    store = ObjectStore(settings.GCS_BUCKET_NAME, project=settings.GOOGLE_CLOUD_PROJECT_ID)
    print(f"🪣 Object store bucket: {store.bucket_name}")
    repository = await build_repository()
    inspector = MediaInspector(settings.FFPROBE_BINARY)
    transcoder = Transcoder(settings.FFMPEG_BINARY, settings.FFPROBE_BINARY)
    processor = MediaProcessor(
        store,
        repository,
        inspector,
        transcoder,
        workers=settings.PROCESSING_WORKERS,
        queue_size=settings.PROCESSING_QUEUE_SIZE,
    )
    await processor.start()
    if repository is not None:
        try:
            requeued, dropped = await processor.requeue_queued_jobs()
            if requeued or dropped:
                print(f"♻️ Re-queued {requeued} transcoding jobs ({dropped} failed, queue full).")
        except Exception as exc:
            print(f"⚠️ Transcoding job re-queue skipped: {exc}")

    app.state.store = store
    app.state.repository = repository
    app.state.transcoder = transcoder
    app.state.processor = processor

    sweep_task = None
    if repository is not None and int(settings.SESSION_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_session_sweep(repository))
        print(
            "📅 Session sweep loop enabled "
            f"(every {int(settings.SESSION_SWEEP_INTERVAL_MINUTES)} min, "
            f"idle timeout {int(settings.SESSION_IDLE_TIMEOUT_MINUTES)} min)."
        )
    print(f"✅ Features: {settings.feature_flags}")
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await processor.stop()
    if repository is not None:
        await repository.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title=settings.SERVICE_NAME,
    description="Upload, stream and process 360° videos stored in Google Cloud Storage",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"],
)


@app.middleware("http")
async def request_logging(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# Error handlers

@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    content = {"error": exc.message}
    if isinstance(exc, UpstreamError):
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
        if settings.is_development and exc.detail:
            content["message"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    content = {"error": "Internal server error"}
    if settings.is_development:
        content["message"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"error": "Internal server error"}
    if settings.is_development:
        content["message"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(files.router, prefix="/files", tags=["Files"])
app.include_router(records.router, prefix="/db", tags=["Records"])
app.include_router(jobs.router, prefix="/transcode-jobs", tags=["Transcoding"])
app.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
app.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "status": "running",
    }
