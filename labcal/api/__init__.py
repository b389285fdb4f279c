"""API endpoints module."""

from fastapi import APIRouter

from labcal.api.admin import router as admin_router
from labcal.api.connections import router as connections_router
from labcal.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(connections_router)
api_router.include_router(webhooks_router)
api_router.include_router(admin_router)

__all__ = ["api_router"]
