# src/forum_stage/models/mention.py
"""Model linking a post to the users it mentions."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from forum_stage.db.session import Base


class Mention(Base):
    """Directed reference from a post to a mentioned user.

    Rows are replaced wholesale whenever the post body is written.
    """

    __tablename__ = "post_mention"
    __table_args__ = (Index("ix_post_mention_user_id", "mentioned_user_id"),)

    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("post.id", ondelete="CASCADE"),
        primary_key=True,
    )
    mentioned_user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("forum_user.id"),
        primary_key=True,
    )
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
