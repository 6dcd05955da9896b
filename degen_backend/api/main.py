"""
Main FastAPI application for the Flappy Degen backend.
Configures the API server with routes, middleware and error handling.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import structlog

from degen_backend.api.middleware import add_middleware
from degen_backend.api.routes import admin, leaderboard, payouts, scores, state
from degen_backend.api.schemas.common import APIResponse, HealthCheckResponse, create_error_response
from degen_backend.core.config import settings
from degen_backend.core.container import ServiceContainer
from degen_backend.core.exceptions import DegenBackendException
from degen_backend.core.logging import setup_logging


logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "AUTHENTICATION_ERROR": status.HTTP_401_UNAUTHORIZED,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_POOL": status.HTTP_409_CONFLICT,
    "SETTLEMENT_FAILURE": status.HTTP_502_BAD_GATEWAY,
    "TRANSIENT_NETWORK_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
    "SOLANA_RPC_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
    "PRICE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container unless one was injected."""
    owns_container = getattr(app.state, "container", None) is None

    if owns_container:
        logger.info("Starting Flappy Degen API server")
        container = ServiceContainer()
        await container.init()
        app.state.container = container

        if settings.background_services_enabled:
            try:
                await container.start_background()
                logger.info("Background services started")
            except Exception as e:
                logger.error("Failed to start background services", error=str(e))

    yield

    if owns_container:
        logger.info("Shutting down Flappy Degen API server")
        try:
            await app.state.container.close()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))


def add_exception_handlers(app: FastAPI) -> None:
    """Map application exceptions to ErrorResponse bodies."""

    @app.exception_handler(DegenBackendException)
    async def handle_backend_exception(request: Request, exc: DegenBackendException):
        status_code = ERROR_STATUS_CODES.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error("Request error", url=str(request.url), code=exc.code, error=exc.message)
        else:
            logger.info("Request rejected", url=str(request.url), code=exc.code, error=exc.message)
        body = create_error_response(exc.message, exc.code, exc.details)
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        body = create_error_response("Invalid request", "VALIDATION_ERROR", {"errors": errors})
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="Flappy Degen API",
        description="Fee-funded rewards backend: game state, scores, leaderboard and payouts.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    add_middleware(app)
    add_exception_handlers(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server and database health"
    )
    async def health_check(request: Request):
        database_ok = await request.app.state.container.database.health_check()
        if database_ok:
            return HealthCheckResponse(
                status="healthy",
                version=settings.app_version,
                services={"database": "healthy", "api": "healthy"}
            )

        body = HealthCheckResponse(
            status="unhealthy",
            version=settings.app_version,
            services={"database": "unhealthy", "api": "healthy"}
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json")
        )

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return APIResponse(message=f"Flappy Degen API v{settings.app_version}")

    app.include_router(state.router, prefix=f"{settings.api_v1_prefix}/state")
    app.include_router(scores.router, prefix=f"{settings.api_v1_prefix}/scores")
    app.include_router(leaderboard.router, prefix=f"{settings.api_v1_prefix}/leaderboard")
    app.include_router(payouts.router, prefix=f"{settings.api_v1_prefix}/payouts")
    app.include_router(admin.router, prefix=f"{settings.api_v1_prefix}/admin")

    logger.debug("FastAPI application created")
    return app
