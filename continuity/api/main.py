"""
Supervisor Continuity - FastAPI Application
===========================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from continuity.api import checkpoints, events, fixes, instances
from continuity.api.schemas import ErrorResponse, HealthResponse
from continuity.core.config import settings
from continuity.core.database import close_db, get_db_session, init_db
from continuity.core.errors import (
    ConflictError,
    ConsistencyError,
    ContinuityError,
    NotFoundError,
    ValidationError,
)
from continuity.core.logging import configure_logging
from continuity.core.services import Services, build_services

configure_logging()

logger = structlog.get_logger()


# HTTP status per error kind
ERROR_STATUS: list[tuple[type[ContinuityError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ConsistencyError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database connection
    - Start the heartbeat monitor

    Shutdown:
    - Cancel running fix loops (each records a cancelled attempt)
    - Stop the monitor and close database connections
    """
    services: Services = app.state.services
    logger.info("Starting Supervisor Continuity", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    if settings.HEARTBEAT_MONITOR_ENABLED:
        await services.monitor.start()

    yield

    logger.info("Shutting down Supervisor Continuity")
    await services.fix_agent.shutdown()
    await services.monitor.stop()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built service graph; defaults to build_services()

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Instance registry, event store, checkpoints and adaptive fix loop",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(ContinuityError)
    async def continuity_exception_handler(request: Request, exc: ContinuityError) -> JSONResponse:
        """Map error kinds to HTTP status codes."""
        status_code = next(
            (code for kind, code in ERROR_STATUS if isinstance(exc, kind)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if status_code >= 500:
            logger.error(
                "Consistency failure",
                code=exc.code,
                error=exc.message,
                path=request.url.path,
                **exc.context,
            )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
                code=exc.code,
                context={key: str(value) for key, value in exc.context.items() if value is not None},
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Application, database and heartbeat monitor status."""
        services: Services = app.state.services
        database = "connected"
        try:
            async with get_db_session(services.registry.session_factory) as db:
                await db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Health check database query failed", error=str(e))
            database = "disconnected"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            heartbeat_monitor="running" if services.monitor.running else "stopped",
        )

    app.include_router(instances.router)
    app.include_router(events.router)
    app.include_router(checkpoints.router)
    app.include_router(fixes.router)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "continuity.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
