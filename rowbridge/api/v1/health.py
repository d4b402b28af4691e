"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from rowbridge.core.deps import Services, get_services
from rowbridge.core.metrics import metrics

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str = "0.1.0"


class ReadinessResponse(BaseModel):
    """Readiness check response."""
    status: str
    timestamp: str
    datastore: dict
    version: str = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    services: Services = Depends(get_services),
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Reports whether datastore access is configured. No datastore call is
    made, so the check stays cheap enough for frequent probes.
    """
    config = services.config
    datastore = {
        "url": config.api_base_url,
        "relay": bool(config.relay_url),
        "static_token": bool(config.api_token),
        "credentials": services.credentials.status()["configured"],
        "registry_table_id": config.registry_table_id or None,
    }
    ready = datastore["static_token"] and datastore["credentials"]
    return ReadinessResponse(
        status="ready" if ready else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        datastore=datastore,
    )


@router.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    metrics_data = metrics.get_metrics()
    return Response(
        content=metrics_data,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
