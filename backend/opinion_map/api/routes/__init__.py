"""Route exports for the API layer.

Re-exports the opinion map and worker routers so callers can include them with a single import.
"""

from .opinion_map import router as opinion_map_router
from .worker import router as worker_router

__all__ = ["opinion_map_router", "worker_router"]
