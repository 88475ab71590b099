"""
FastAPI Backend for the Mail Archiver.

API server and lifecycle host for:
- Periodic and on-demand mailbox sync (IMAP and Microsoft Graph)
- Batch restore of archived emails into a mailbox
- Batch deletion from the local archive
- Bulk mbox and EML import
- Deletion of whole accounts with their archive
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailarchiver.core.config import settings
from mailarchiver.core.database import DatabaseManager
from mailarchiver.routers import jobs
from mailarchiver.services.archive import ArchiveWriter
from mailarchiver.services.dedup import DedupIndex, DedupPolicy
from mailarchiver.services.sanitizer import ContentLimits, ContentSanitizer
from mailarchiver.services.store import MongoArchiveStore
from mailarchiver.workers.host import JobHost
from mailarchiver.workers.scheduler import MailSyncScheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_job_host(store, app_settings=settings) -> JobHost:
    """Wire the archive pipeline and the job families around a store."""
    dedup = DedupIndex(store, DedupPolicy.from_settings(app_settings))
    sanitizer = ContentSanitizer(ContentLimits.from_settings(app_settings))
    writer = ArchiveWriter(store, dedup, sanitizer=sanitizer)
    return JobHost(store, writer, app_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    # Startup
    logger.info("Starting Mail Archiver API...")

    db_manager = DatabaseManager()
    await db_manager.connect()
    app.state.db = db_manager
    logger.info(f"Connected to database: {settings.mongodb_database}")

    store = MongoArchiveStore(db_manager.db)
    try:
        await store.ensure_indexes()
    except Exception as e:
        logger.warning(f"Failed to ensure archive indexes: {e}")

    job_host = build_job_host(store)
    job_host.start()
    app.state.store = store
    app.state.job_host = job_host

    scheduler = None
    if settings.mail_sync_enabled:
        scheduler = MailSyncScheduler(store, job_host, settings)
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    # Shutdown - running jobs observe the shutdown signal and end as cancelled
    logger.info("Shutting down Mail Archiver API...")

    if scheduler is not None:
        await scheduler.stop()
    try:
        await job_host.stop()
    except Exception as e:
        logger.warning(f"Error during job shutdown: {e}")

    await db_manager.disconnect()
    logger.info("Database connection closed")


# Create FastAPI app
app = FastAPI(
    title="Mail Archiver API",
    description="""
    Archive mailboxes into MongoDB and manage archive jobs.

    ## Features
    - **Sync**: Incremental and full mailbox synchronization
    - **Restore**: Copy archived emails back into a mailbox
    - **Deletion**: Remove emails from the archive
    - **Import**: Bulk import of mbox files
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Exception Handlers ==============

def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with a tracking id."""
    error_id = _get_error_id()
    logger.warning(
        f"HTTP {exc.status_code} [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.detail}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": f"http_{exc.status_code}",
            "message": exc.detail,
            "error_id": error_id,
        }
    )


# ============== Routers ==============

app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["Jobs"])


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Mail Archiver API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
async def health(request: Request):
    """Liveness plus database reachability."""
    db = getattr(request.app.state, "db", None)
    database_ok = await db.ping() if db is not None else False
    return {"status": "healthy" if database_ok else "degraded", "database": database_ok}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailarchiver.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug
    )
