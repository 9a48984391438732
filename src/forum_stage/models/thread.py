# src/forum_stage/models/thread.py
"""SQLAlchemy model for discussion threads."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from forum_stage.db.session import Base
from forum_stage.db.time import utcnow

THREAD_STATUS_OPEN = "open"
THREAD_STATUS_LOCKED = "locked"
THREAD_STATUS_ARCHIVED = "archived"
THREAD_STATUSES = (THREAD_STATUS_OPEN, THREAD_STATUS_LOCKED, THREAD_STATUS_ARCHIVED)


class Thread(Base):
    """Top-level discussion unit holding an ordered list of posts.

    ``posts_count``, ``participant_ids`` and ``participants_count`` are
    denormalized aggregates kept in step with the post table by the mutation
    engine inside the same transaction as the post write.
    """

    __tablename__ = "thread"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'locked', 'archived')",
            name="ck_thread_status",
        ),
        Index("ix_thread_last_activity_at", "last_activity_at"),
        Index("ix_thread_author_id", "author_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    # Assigned once at creation; unique across all threads.
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    author_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("forum_user.id"),
        nullable=False,
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=THREAD_STATUS_OPEN)

    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    posts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    participants_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    participant_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
