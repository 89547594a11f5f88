"""API v1 routers."""

from fastapi import APIRouter

from .cases import router as cases_router
from .events import router as events_router

# Create v1 router that includes all v1 endpoints
router = APIRouter(prefix="/v1")

router.include_router(events_router)
router.include_router(cases_router)

__all__ = ["router", "events_router", "cases_router"]
