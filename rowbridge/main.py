"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from rowbridge.api.v1 import router as v1_router
from rowbridge.core.config import settings
from rowbridge.core.deps import build_services
from rowbridge.core.errors import setup_error_handlers
from rowbridge.core.middleware import MetricsMiddleware, RequestIDMiddleware

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Create and configure FastAPI application.

    ``transport`` replaces the network transport of the datastore client.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting rowbridge...")
        removed = app.state.services.local_cache.cleanup_old_files()
        if removed:
            logger.info(f"Cleaned {removed} expired cached files")
        yield
        logger.info("Shutting down rowbridge...")
        await app.state.services.aclose()

    app = FastAPI(
        title="rowbridge API",
        description="""
Spreadsheet import service for a remote tabular datastore.

## Flow
- **Uploads**: register a CSV file for the operator
- **Mapping**: match file columns to table fields
- **Imports**: provision a table, load rows in batches, verify, stream progress

## Error Codes
- `AUTH_FAILED`: Datastore credentials rejected
- `CONTENT_UNAVAILABLE`: Full file content could not be recovered
- `SCHEMA_PROVISIONING_FAILED`, `MISSING_FIELD_MAPPING`: Table setup
- `MAPPING_INCOMPLETE`, `MAPPING_LOCKED`: Column mapping
        """.strip(),
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.environment == "development" else None,
        redoc_url="/api/redoc" if settings.environment == "development" else None,
        openapi_tags=[
            {"name": "health", "description": "Health checks and metrics"},
            {"name": "credentials", "description": "Datastore token status"},
            {"name": "uploads", "description": "CSV upload"},
            {"name": "mapping", "description": "Column mapping"},
            {"name": "imports", "description": "Import runs, progress and cancellation"},
        ],
    )
    app.state.services = build_services(settings, transport=transport)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Session middleware (populates request.session for the handlers)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.environment == "production",
        session_cookie=settings.session_cookie_name,
    )

    # Metrics middleware (collect metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Request ID middleware (added last so it runs first on requests)
    app.add_middleware(RequestIDMiddleware)

    setup_error_handlers(app)

    app.include_router(v1_router, prefix="/api/v1")

    return app


app = create_app()
