"""API v1 routes."""

from fastapi import APIRouter

from rowbridge.api.v1 import auth, health, imports, mapping, uploads

router = APIRouter()

# Health checks (no prefix, no session required)
router.include_router(health.router, tags=["health"])

router.include_router(auth.router, prefix="/auth", tags=["credentials"])
router.include_router(uploads.router, prefix="/uploads", tags=["uploads"])
router.include_router(mapping.router, prefix="/mapping", tags=["mapping"])
router.include_router(imports.router, prefix="/imports", tags=["imports"])
