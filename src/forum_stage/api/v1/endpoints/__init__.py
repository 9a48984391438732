"""API endpoint modules."""

from .notifications import router as notifications_router
from .realtime import router as realtime_router
from .threads import router as threads_router

__all__ = ["notifications_router", "realtime_router", "threads_router"]
