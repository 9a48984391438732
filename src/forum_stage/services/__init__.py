# src/forum_stage/services/__init__.py
"""Business logic services for the forum application."""

from .cache import CacheService, ThreadCacheKeys
from .container import ServiceContainer
from .jobs import JobQueue
from .notifications import NotificationService
from .realtime import RealtimeHub
from .threads import ThreadService
from .workers import WorkerPool

__all__ = [
    "CacheService",
    "JobQueue",
    "NotificationService",
    "RealtimeHub",
    "ServiceContainer",
    "ThreadCacheKeys",
    "ThreadService",
    "WorkerPool",
]
