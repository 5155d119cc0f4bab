"""API v1 router aggregation."""

from fastapi import APIRouter

from .monitoring import router as monitoring_router

# Create main v1 router
router = APIRouter(prefix="/api/v1")

router.include_router(monitoring_router, tags=["monitoring"])


__all__ = ["router"]
