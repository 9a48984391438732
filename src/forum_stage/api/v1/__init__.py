# src/forum_stage/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import notifications_router, realtime_router, threads_router

__all__ = [
    "notifications_router",
    "realtime_router",
    "threads_router",
]
