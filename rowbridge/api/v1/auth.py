"""Datastore credential endpoints."""

from fastapi import APIRouter, Depends

from rowbridge.core.deps import Services, get_services

router = APIRouter()


@router.get("/status")
async def credential_status(services: Services = Depends(get_services)) -> dict:
    """State of the elevated datastore token (masked)."""
    return services.credentials.status()


@router.post("/refresh")
async def refresh_credentials(services: Services = Depends(get_services)) -> dict:
    """Obtain a fresh elevated token unless the cached one is comfortably valid."""
    await services.credentials.ensure_fresh()
    return services.credentials.status()
