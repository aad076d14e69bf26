"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .build import router as build_router
from .dependencies import router as dependencies_router
from .sessions import router as sessions_router

__all__ = [
    "build_router",
    "dependencies_router",
    "sessions_router",
]
