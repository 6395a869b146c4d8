"""
OrgTree Ownership Transfer API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.database import init_db
from app.core.errors import TransferError
from app.core.logging import configure_logging
from app.api.v1 import router as api_v1_router
from app.api.v1.ownership_transfers import get_transfer_manager

settings = get_settings()
log = structlog.get_logger()


async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
    """Map domain errors to their HTTP status with a stable error code."""
    if exc.status_code >= 500:
        log.error("api.transfer_error", path=request.url.path, code=exc.code, detail=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="OrgTree Ownership Transfers",
        description="Hand sole ownership of an organization to another member.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(TransferError, transfer_error_handler)

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check endpoint for startup probes."""
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        log.info("OrgTree transfer service starting", expiry_days=settings.transfer_expiry_days)
        if settings.debug:
            await init_db()

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("OrgTree transfer service shutting down")
        await get_transfer_manager().drain_notifications()

    return app


app = create_app()
