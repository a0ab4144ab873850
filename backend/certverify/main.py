"""
CertVerify Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
Who:   uvicorn (certverify.main:app), `python -m certverify`, the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────┐
    │                    FastAPI App                       │
    │                                                      │
    │  RequestIDMiddleware                                 │
    │   └─ PipelineMiddleware (standard | public variant)  │
    │       cors → security_headers → rate_limit → metrics │
    │       → csrf → cache_headers → error_handling        │
    │       → response_cache → router                      │
    │                                                      │
    │  Routes: verification, certificates, auth,           │
    │          cache admin, instances, /health, /metrics   │
    └──────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Configure logging
    2. Validate configuration (development secrets refused in production)
    3. Build the service container unless one was injected
    4. Create tables when DATABASE_AUTO_CREATE is set
    5. Start the cache invalidation listener

    Shutdown:
    1. Stop the listener
    2. Close the coordination store and dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from certverify import __version__
from certverify.config import settings
from certverify.container import ServiceContainer, build_container
from certverify.database import create_tables
from certverify.exceptions import ValidationError
from certverify.middleware.errors import error_payload, error_response
from certverify.middleware.pipeline import PipelineMiddleware, build_pipelines
from certverify.middleware.request_id import RequestIdFilter, RequestIDMiddleware
from certverify.routes import auth, cache_admin, certificates, health, instances, metrics, verification

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Structured Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: Optional[str] = None) -> None:
    """
    Format: 2025-01-31T09:00:00 [INFO] certverify.access [a1b2c3d4]: GET ...

    RequestIdFilter sits on the handler, so records from every logger
    (ours and third-party) get a request_id attribute before formatting.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=getattr(logging, level or settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("CertVerify Backend %s starting up (instance %s)...", __version__, settings.instance_id)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        raise

    owned = app.state.container is None
    if owned:
        app.state.container = build_container(settings)
        app.state.pipelines = build_pipelines(app.state.container)
    container: ServiceContainer = app.state.container

    if container.settings.database_auto_create and container.engine is not None:
        await create_tables(container.engine)
        logger.info("Database tables ensured")

    if container.listener is not None:
        container.listener.start()
    container.instances.start()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("CertVerify Backend shutting down...")
    if owned:
        await container.close()
    else:
        if container.listener is not None:
            await container.listener.stop()
        await container.instances.stop()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Errors raised inside route handlers are converted by the pipeline's
    error-handling stage. These handlers cover what FastAPI raises itself
    (body/query validation, unknown routes, wrong methods) and produce the
    same envelope.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        field_errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query")),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return error_response(ValidationError("Request validation failed", field_errors=field_errors))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        error = "not_found" if exc.status_code == 404 else "http_error"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(error, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Args:
        container: Pre-built services (tests). When omitted, lifespan builds
                   one from settings and owns its shutdown.
    """
    app = FastAPI(
        title="CertVerify API",
        description="Certificate issuance, revocation and public verification.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.container = container
    if container is not None:
        app.state.pipelines = build_pipelines(container)

    # Last added runs first: RequestID wraps the pipeline
    app.add_middleware(PipelineMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # verification before certificates: /api/certificates/verify must not
    # be captured by /api/certificates/{certificate_pk}
    app.include_router(verification.router)
    app.include_router(certificates.router)
    app.include_router(auth.router)
    app.include_router(cache_admin.router)
    app.include_router(instances.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    return app


app = create_app()
