# src/forum_stage/schemas/__init__.py
"""
Pydantic schemas for engine results, API request bodies and job payloads.
"""

from .jobs import Backoff, JobOptions, ModerationJob, NotificationJob, SummaryJob
from .notification import NotificationOut, NotificationPage
from .post import (
    AuthorSummary,
    PostCreate,
    PostModeration,
    PostOut,
    PostUpdate,
    ReactionCreate,
    ReactionResult,
)
from .thread import (
    ThreadCreate,
    ThreadCreated,
    ThreadDetail,
    ThreadOut,
    ThreadPage,
    ThreadStatusUpdate,
)

__all__ = [
    "AuthorSummary",
    "Backoff",
    "JobOptions",
    "ModerationJob",
    "NotificationJob",
    "NotificationOut",
    "NotificationPage",
    "PostCreate",
    "PostModeration",
    "PostOut",
    "PostUpdate",
    "ReactionCreate",
    "ReactionResult",
    "SummaryJob",
    "ThreadCreate",
    "ThreadCreated",
    "ThreadDetail",
    "ThreadOut",
    "ThreadPage",
    "ThreadStatusUpdate",
]
