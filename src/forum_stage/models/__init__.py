# src/forum_stage/models/__init__.py
"""SQLAlchemy models for the forum application."""

from .job import Job
from .mention import Mention
from .notification import Notification
from .post import Post
from .reaction import Reaction
from .thread import Thread
from .user import User

__all__ = [
    "Job",
    "Mention",
    "Notification",
    "Post",
    "Reaction",
    "Thread",
    "User",
]
