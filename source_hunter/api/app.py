"""FastAPI application entry point with lifespan, CORS, and structured logging.

This module initializes the FastAPI application with:
- Lifespan context manager that opens the database and wires the scan services
- CORS middleware for the browser UI dev server
- Structured logging (JSON) to logs/source_hunter.log
- Exception handlers for consistent error responses
- Basic health check endpoint

Services created in the lifespan and stored on app.state:
    db          sqlite3 connection (schema initialized)
    store       LocalStore
    session     SessionStore
    analytics   SqliteAnalyticsSink
    queue       RequestQueue (the single gate for outbound API calls)
    source      YouTubeCommentSource
    controller  ScanController
    scan_tasks  container_id -> asyncio.Task of the running scan

Usage:
    uvicorn source_hunter.api.app:app --reload
"""

import asyncio
import os
import traceback
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from source_hunter.analytics import SqliteAnalyticsSink
from source_hunter.api.models import ErrorEnvelope, ErrorDetail
from source_hunter.api.responses import (
    VALIDATION_ERROR, DATABASE_ERROR, NOT_FOUND, SCAN_ALREADY_RUNNING,
)
from source_hunter.api.routes import items, session
from source_hunter.backend.db.connection import (
    get_db_path, init_schema, load_scan_settings, open_connection,
)
from source_hunter.backend.utils.logging_config import get_logger, setup_logging
from source_hunter.request_queue import RequestQueue
from source_hunter.scanner import ScanController
from source_hunter.storage import LocalStore, SessionStore
from source_hunter.youtube import YouTubeCommentSource


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database, build the scan services, and tear them down on shutdown.

    Running scans are cancelled on shutdown; the controller records them as
    paused so a later start resumes from the stored comments.
    """
    logger = get_logger(__name__)

    db_path = get_db_path()
    conn = open_connection(db_path)

    try:
        init_schema(conn)
        settings = load_scan_settings(conn)

        app.state.db = conn
        app.state.settings = settings
        app.state.store = LocalStore(conn)
        app.state.session = SessionStore(conn)
        app.state.analytics = SqliteAnalyticsSink(conn)
        app.state.queue = RequestQueue(min_interval=settings.request_min_interval)
        app.state.source = YouTubeCommentSource(app.state.queue, analytics=app.state.analytics)
        app.state.controller = ScanController(
            app.state.source,
            app.state.store,
            analytics=app.state.analytics,
            settings=settings
        )
        app.state.scan_tasks = {}

        logger.info(
            "database_connection_acquired",
            db_path=db_path,
            request_min_interval=settings.request_min_interval,
            smart_score_threshold=settings.smart_score_threshold
        )

        yield

    finally:
        tasks = [t for t in getattr(app.state, 'scan_tasks', {}).values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("running_scans_cancelled", count=len(tasks))

        conn.close()
        app.state.db = None
        logger.info("database_connection_closed")


# Initialize logging before creating the app
setup_logging()

app = FastAPI(
    title="Source Hunter API",
    description="Crawl, score and query YouTube comment threads for source identifications",
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = os.environ.get(
    'CORS_ORIGINS',
    'http://localhost:5173'
).split(',')

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = get_logger(__name__)
logger.info("fastapi_app_initialized", cors_origins=cors_origins)

app.include_router(items.router)
app.include_router(session.router)


# Exception Handlers
# These handlers convert exceptions to the standard ErrorEnvelope format


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Convert request validation errors into a 422 ErrorEnvelope."""
    logger = get_logger(__name__)
    logger.warning("validation_error", path=request.url.path, errors=exc.errors())

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=VALIDATION_ERROR,
            message=f"Request validation failed: {exc.errors()[0]['msg']}"
        )
    )

    return JSONResponse(
        status_code=422,
        content=error_envelope.model_dump(),
        headers={"Content-Type": "application/json"}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException with error envelope format.

    Routes exceptions raised via raise_api_error() or raw HTTPException
    into the standard ErrorEnvelope structure.
    """
    logger = get_logger(__name__)
    logger.warning("http_exception", path=request.url.path, status=exc.status_code)

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        code = exc.detail["code"]
        message = exc.detail["message"]
    else:
        code_map = {404: NOT_FOUND, 422: VALIDATION_ERROR, 409: SCAN_ALREADY_RUNNING}
        code = code_map.get(exc.status_code, DATABASE_ERROR)
        message = str(exc.detail) if exc.detail else "An error occurred"

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message)
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope.model_dump(),
        headers={"Content-Type": "application/json"}
    )


@app.exception_handler(404)
async def not_found_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert unmatched routes into a 404 ErrorEnvelope.

    Status-code handlers take precedence over the HTTPException handler, so
    404s raised through raise_api_error() are passed back to it to keep
    their own code and message.
    """
    detail = getattr(exc, "detail", None)
    if isinstance(detail, dict) and "code" in detail:
        return await http_exception_handler(request, exc)

    logger = get_logger(__name__)
    logger.warning("not_found", path=request.url.path)

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=NOT_FOUND,
            message=f"Resource not found: {request.url.path}"
        )
    )

    return JSONResponse(
        status_code=404,
        content=error_envelope.model_dump(),
        headers={"Content-Type": "application/json"}
    )


@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert uncaught server errors into a 500 ErrorEnvelope."""
    logger = get_logger(__name__)
    logger.error(
        "internal_server_error",
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(),
    )

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=DATABASE_ERROR,
            message="An internal server error occurred"
        )
    )

    return JSONResponse(
        status_code=500,
        content=error_envelope.model_dump(),
        headers={"Content-Type": "application/json"}
    )


@app.get("/health")
async def health() -> Dict[str, str]:
    """Health check endpoint.

    Example:
        GET /health -> {"status": "healthy"}
    """
    return {"status": "healthy"}
