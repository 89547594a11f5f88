"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from warden.api.middleware import (
    AuthenticationMiddleware,
    ErrorHandlingMiddleware,
    ObservabilityMiddleware,
    RequestLoggingMiddleware,
    error_response,
)
from warden.api.routers import health_router, v1_router
from warden.api.routers.health import APP_VERSION
from warden.api.schemas.errors import ErrorCode
from warden.config.settings import Settings, get_settings
from warden.config.validation import get_configuration_summary, validate_or_raise
from warden.core.logging import get_logger, setup_logging
from warden.observability import get_metrics_manager, get_tracing_manager
from warden.service import ThreatResponseService, create_threat_response_service

logger = get_logger("warden.api")


def create_app(
    settings: Settings | None = None,
    service: ThreatResponseService | None = None,
) -> FastAPI:
    """Build the Warden API.

    When ``service`` is given the caller owns its start and shutdown, which
    is how tests inject a service wired to in-memory collaborators.
    Otherwise the lifespan validates settings, builds the service from
    them, starts it and drains it on shutdown.

    Served with ``uvicorn warden.api.app:create_app --factory``.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Warden API",
        description="Threat detection and automated response API",
        version=APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=_lifespan,
    )

    app.state.settings = settings
    app.state.service = service
    app.state.owns_service = service is None

    _configure_middleware(app, settings)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(health_router)
    app.include_router(v1_router)

    return app


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings: Settings = app.state.settings
    setup_logging(
        log_level=settings.log_level, json_format=settings.ENVIRONMENT == "production"
    )

    tracing_manager = get_tracing_manager()
    tracing_manager.initialize()
    get_metrics_manager().initialize(
        service_name="warden",
        service_version=APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    if app.state.owns_service:
        validate_or_raise(settings)
        app.state.service = create_threat_response_service(settings)
        await app.state.service.start()

    logger.info("api_started", **get_configuration_summary(settings))

    yield

    if app.state.owns_service and app.state.service is not None:
        await app.state.service.shutdown()
    tracing_manager.shutdown()
    logger.info("api_stopped")


def _configure_middleware(app: FastAPI, settings: Settings) -> None:
    # Starlette runs the last-added middleware outermost, so the effective
    # order is request id and access log, metrics and spans, error mapping,
    # then authentication.
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(ErrorHandlingMiddleware, debug=settings.DEBUG)
    app.add_middleware(ObservabilityMiddleware)
    app.add_middleware(RequestLoggingMiddleware)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        422,
        ErrorCode.VALIDATION_ERROR.value,
        "Request validation failed",
        {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
    )
