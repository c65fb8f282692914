"""
GrantMatch FastAPI Application
Entry point for the R&D funding match engine API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.api import admin, health, matches, organizations
from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.core.sentry import capture_exception, init_sentry
from backend.database import close_db, init_db

configure_logging()
logger = logging.getLogger(__name__)


def _error_body(status_code: int, message, **extra) -> dict:
    return {"error": True, "message": message, "status_code": status_code, **extra}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: Sentry, and table creation in debug mode (migrations own the
    schema everywhere else). Shutdown: dispose the connection pool.
    """
    logger.info(
        f"Starting {settings.app_name} {settings.app_version} "
        f"(env={settings.environment}, debug={settings.debug})"
    )
    init_sentry("api")

    if settings.debug:
        init_db()
        logger.info("Database tables created")

    yield

    close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="GrantMatch API",
    description="""
    R&D Funding Match Engine API

    Scores government R&D announcements against an organization's profile,
    ranks them and explains each match.

    ## Features
    - **Match Generation**: Eligibility filtering, weighted scoring and ranking
    - **Explanations**: AI explanations with template fallback
    - **Quota**: Monthly generation limits per plan
    - **Admin**: Cache invalidation, reclassification, warming and ranking metrics
    """,
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)


# =============================================================================
# Exception Handlers
# =============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Every HTTP error uses the same envelope; structured details pass through as-is."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is a 400, with one entry per offending field."""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(status.HTTP_400_BAD_REQUEST, "Invalid request", errors=errors),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    event_id = capture_exception(
        exc,
        extra={"request_method": request.method, "request_path": request.url.path},
    )

    if settings.debug:
        detail = str(exc)
    else:
        detail = f"Internal server error (ref: {event_id})" if event_id else "Internal server error"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(status.HTTP_500_INTERNAL_SERVER_ERROR, detail),
    )


app.include_router(health.router)
app.include_router(organizations.router)
app.include_router(matches.router)
app.include_router(admin.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    return {"name": settings.app_name, "version": settings.app_version}
