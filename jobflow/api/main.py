"""
FastAPI application entry point.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from jobflow import __version__
from jobflow.api.routes import health_router, jobs_router
from jobflow.channel import KafkaEventChannel, create_event_channel
from jobflow.config import Settings, get_settings
from jobflow.db import Database
from jobflow.errors import (
    GuardUnavailableError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    TransportError,
)
from jobflow.idempotency import create_idempotency_guard
from jobflow.observability.logging import setup_logging
from jobflow.observability.metrics import get_metrics
from jobflow.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from jobflow.services.jobs import JobService
from jobflow.types.api import ErrorResponse

logger = logging.getLogger(__name__)


def _build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """
        Application lifespan manager.

        Builds the job service unless one was supplied to create_app.
        """
        if getattr(app.state, "job_service", None) is not None:
            logger.info("Application started")
            yield
            logger.info("Application shutdown")
            return

        setup_logging(settings)
        setup_tracing(settings)

        database = Database.from_settings(settings)
        instrument_sqlalchemy(database.engine.sync_engine)
        channel = create_event_channel(settings, client_id="jobflow-api")
        guard = create_idempotency_guard(settings)

        await channel.start()
        if isinstance(channel, KafkaEventChannel):
            await channel.ensure_topics()

        app.state.job_service = JobService(
            settings, database.job_store(), channel, guard, metrics=app.state.metrics
        )
        logger.info("Application started")

        try:
            yield
        finally:
            await channel.stop()
            await guard.close()
            await database.close()
            logger.info("Application shutdown")

    return lifespan


def _error(status_code: int, error: str, detail: str | None = None, **extra) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP responses."""

    @app.exception_handler(JobNotFoundError)
    async def not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "Not Found", str(exc))

    @app.exception_handler(JobValidationError)
    async def invalid_job(request: Request, exc: JobValidationError) -> JSONResponse:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Validation Failed",
            str(exc),
            field_errors=exc.field_errors or None,
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_operation(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "Invalid Operation", str(exc))

    @app.exception_handler(GuardUnavailableError)
    @app.exception_handler(TransportError)
    async def unavailable(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Dependency unavailable", extra={"path": request.url.path}, exc_info=exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable", str(exc))


def create_app(
    settings: Settings | None = None,
    service: JobService | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted.
        service: Prebuilt job service. When given, the lifespan does not
            connect to the database, channel or guard.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Jobflow API",
        description="Event-driven job orchestration with retries and a dead-letter channel",
        version=__version__,
        lifespan=_build_lifespan(settings),
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.metrics = service.metrics if service is not None else get_metrics()
    app.state.job_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request_metrics(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        app.state.metrics.record_api_request(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code,
            duration_seconds=time.perf_counter() - start,
        )
        return response

    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(jobs_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
