from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.middleware.cors import CORSMiddleware

from chatrelay.api.main import api_router
from chatrelay.core.config import settings
from chatrelay.core.db import init_db, init_queue_db
from chatrelay.errors import (
    AuthenticationRequiredError,
    ChatRelayError,
    ConcurrencyViolationError,
    ConfigurationError,
    InvalidRequestError,
    MessageNotFoundError,
    PersistenceError,
    TransportError,
    UpstreamError,
)
from chatrelay.middleware.auth import ApiKeyAuthMiddleware
from chatrelay.middleware.request_id import RequestIdMiddleware
from chatrelay.observability import MetricsMiddleware, configure_logging, metrics_router
from chatrelay.services.container import AppServices, build_services
from chatrelay.utils.idempotency import close_idempotency, init_idempotency

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = structlog.get_logger()

# Most specific first
ERROR_STATUS = [
    (AuthenticationRequiredError, 401),
    (ConfigurationError, 400),
    (InvalidRequestError, 400),
    (MessageNotFoundError, 404),
    (ConcurrencyViolationError, 409),
    (UpstreamError, 502),
    (TransportError, 504),
    (PersistenceError, 503),
]


def status_for(exc: ChatRelayError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status
    return 500


def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}" if route.tags else route.name


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Build the application; tests pass their own wired services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            init_db()
            init_queue_db()
            app.state.services = build_services()
        else:
            app.state.services = services
        await init_idempotency()
        current: AppServices = app.state.services
        # Entries left over from a previous run are picked up by the first drain
        current.queue.start()
        logger.info("startup_complete", environment=settings.ENVIRONMENT)
        try:
            yield
        finally:
            await current.queue.stop()
            if owned:
                await current.http_client.aclose()
            await close_idempotency()
            logger.info("shutdown_complete")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    @app.exception_handler(ChatRelayError)
    async def chatrelay_error_handler(request: Request, exc: ChatRelayError):
        status = status_for(exc)
        log = logger.warning if status < 500 else logger.error
        log("request_failed", path=request.url.path, code=exc.code, category=exc.category, status=status)
        return JSONResponse(status_code=status, content={"detail": exc.message, "error": exc.to_dict()})

    app.add_middleware(ApiKeyAuthMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=512)

    # Set all CORS enabled origins
    if settings.all_cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.all_cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix=settings.API_V1_STR)
    app.include_router(metrics_router)
    return app


app = create_app()
