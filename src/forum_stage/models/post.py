# src/forum_stage/models/post.py
"""SQLAlchemy models for posts."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from forum_stage.db.session import Base
from forum_stage.db.time import utcnow

MODERATION_STATE_PENDING = "pending"
MODERATION_STATE_APPROVED = "approved"
MODERATION_STATE_FLAGGED = "flagged"
MODERATION_STATE_REJECTED = "rejected"
MODERATION_STATES = (
    MODERATION_STATE_PENDING,
    MODERATION_STATE_APPROVED,
    MODERATION_STATE_FLAGGED,
    MODERATION_STATE_REJECTED,
)


class Post(Base):
    """Message within a thread, optionally replying to another post of the same thread."""

    __tablename__ = "post"
    __table_args__ = (
        CheckConstraint(
            "moderation_state IN ('pending', 'approved', 'flagged', 'rejected')",
            name="ck_post_moderation_state",
        ),
        Index("ix_post_thread_created", "thread_id", "created_at"),
        Index("ix_post_author_id", "author_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    thread_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("thread.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("forum_user.id"),
        nullable=False,
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    # Lowercase handles resolved when the body was last written.
    mentions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Parent chain for replies; top-level posts have parent_post_id = NULL.
    parent_post_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("post.id", ondelete="SET NULL"),
        nullable=True,
    )

    # New posts are approved optimistically and corrected by the moderation job.
    moderation_state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=MODERATION_STATE_APPROVED,
    )
    moderation_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    upvotes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    downvotes_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    replies_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

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
