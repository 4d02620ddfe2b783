"""
FastAPI application for the FarmSync records server.

This module sets up the FastAPI application with the records and health
routes, structured error handling and configuration.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from farmsync import __version__
from farmsync.server.api.health import router as health_router
from farmsync.server.api.records import router as records_router
from farmsync.server.config import ServerConfig, get_config
from farmsync.server.conflict_guard import VersionedRecordStore
from farmsync.shared.exceptions import (
    ConflictError, ErrorCode, FarmSyncError, create_error_response, handle_exception
)
from farmsync.shared.interfaces import IClock
from farmsync.shared.logging_config import (
    LogFormat, LogLevel, SyncAuditLogger, log_structured_error, setup_logging
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting FarmSync records server...")
    yield
    store = getattr(app.state, "record_store", None)
    logger.info(f"Shutting down with {len(store) if store is not None else 0} record(s) in memory")


def create_app(config: Optional[ServerConfig] = None,
               store: Optional[VersionedRecordStore] = None,
               clock: Optional[IClock] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    config = config or get_config()

    app = FastAPI(
        title="FarmSync Records API",
        description="Versioned record storage with last-write-wins conflict detection",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.record_store = store if store is not None else VersionedRecordStore(clock=clock)

    audit_logger = SyncAuditLogger("server_audit")
    app.state.audit_logger = audit_logger

    @app.exception_handler(FarmSyncError)
    async def farmsync_error_handler(request: Request, exc: FarmSyncError):
        """Handle structured FarmSyncError exceptions."""
        # Conflicts are an expected outcome of concurrent editing
        level = logging.INFO if isinstance(exc, ConflictError) else logging.WARNING
        log_structured_error(logger, exc, level=level)
        if not isinstance(exc, ConflictError):
            audit_logger.log_error(exc)

        error_response = create_error_response(exc)
        error_response['error']['request_context'] = {
            'method': request.method,
            'path': str(request.url.path),
            'client_host': request.client.host if request.client else None
        }

        return JSONResponse(
            status_code=exc.get_http_status_code(),
            content=error_response,
            headers={
                'X-Error-Code': exc.error_code.value,
                'X-Error-Severity': exc.severity.value,
                'X-Request-ID': f"req_{datetime.now().timestamp()}"
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with structured error format."""
        structured_error = handle_exception(
            exc,
            context={
                'request_method': request.method,
                'request_path': str(request.url.path),
                'exception_type': type(exc).__name__
            },
            default_error_code=ErrorCode.INTERNAL_UNEXPECTED_ERROR
        )

        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        audit_logger.log_error(structured_error)

        error_response = create_error_response(structured_error)

        # Don't expose internal details in production
        if config.environment == "production":
            error_response['error']['context'] = {}
            error_response['error']['message'] = "An internal server error occurred"

        return JSONResponse(
            status_code=structured_error.get_http_status_code(),
            content=error_response,
            headers={
                'X-Error-Code': structured_error.error_code.value,
                'X-Error-Severity': structured_error.severity.value
            }
        )

    app.include_router(health_router, tags=["health"])
    app.include_router(records_router, prefix="/api", tags=["records"])

    return app


def main() -> None:
    """Run the server with uvicorn."""
    config = get_config()
    setup_logging(
        log_level=LogLevel(config.log_level) if config.log_level in LogLevel.__members__ else LogLevel.INFO,
        log_format=LogFormat.JSON if config.structured_logging else LogFormat.STANDARD
    )

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
