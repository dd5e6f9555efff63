"""API router composition for the backend.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from opinion_map.api.routes import opinion_map_router, worker_router

api_router = APIRouter()
api_router.include_router(opinion_map_router)
api_router.include_router(worker_router)

__all__ = ["api_router"]
