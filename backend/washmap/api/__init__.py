"""API route definitions for the wash map scheduler."""

from fastapi import APIRouter

from .maps import router as maps_router
from .campaigns import router as campaigns_router
from .tasks import router as tasks_router


api_router = APIRouter()
api_router.include_router(maps_router)
api_router.include_router(campaigns_router)
api_router.include_router(tasks_router)


__all__ = ["api_router"]
