"""
FastAPI application factory for the Gatehouse auth broker.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from gatehouse.auth.errors import LoginRequired, SessionError
from gatehouse.auth.providers import init_providers
from gatehouse.auth.stores import init_stores
from gatehouse.config import StoreBackend, settings
from gatehouse.logging_config import configure_logging, get_logger
from gatehouse.redis.client import close_redis, init_redis

from .health import router as health_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting Gatehouse", version="0.1.0")

    uses_redis = settings.auth.store_backend == StoreBackend.REDIS
    if uses_redis:
        await init_redis()
        logger.info("Redis initialized")

    init_stores()
    init_providers()

    yield

    # Shutdown
    logger.info("Shutting down Gatehouse")
    if uses_redis:
        await close_redis()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Gatehouse",
        description="Authentication broker: OAuth2, SAML2 and LTI 1.3 to one session",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    # Protected browser routes without a session go to the login page
    @app.exception_handler(LoginRequired)
    async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
        return RedirectResponse(exc.login_url, status_code=307)

    # Protected API routes without a session
    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"error": "unauthorized"})

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    # Session routes (provider list, current user)
    from gatehouse.api.routers.session import router as session_router

    app.include_router(session_router)

    # OAuth2 authorization-code routes
    from gatehouse.api.routers.oauth2 import router as oauth2_router

    app.include_router(oauth2_router)

    # SAML SP routes (login, ACS, metadata, logout)
    from gatehouse.api.routers.saml import router as saml_router

    app.include_router(saml_router)

    # LTI 1.3 tool routes
    from gatehouse.api.routers.lti import router as lti_router

    app.include_router(lti_router)

    return app


# Application instance
app = create_application()
