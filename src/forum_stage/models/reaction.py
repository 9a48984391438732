# src/forum_stage/models/reaction.py
"""Models capturing reactions on posts."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from forum_stage.db.session import Base
from forum_stage.db.time import utcnow

REACTION_UPVOTE = "upvote"
REACTION_DOWNVOTE = "downvote"
REACTION_TYPES = (REACTION_UPVOTE, REACTION_DOWNVOTE)


class Reaction(Base):
    """Per-user reaction on a post.

    The composite primary key is the uniqueness guarantee for (post, user);
    concurrent inserts for the same pair are resolved by the database.
    """

    __tablename__ = "post_reaction"
    __table_args__ = (
        CheckConstraint("type IN ('upvote', 'downvote')", name="ck_post_reaction_type"),
        Index("ix_post_reaction_post_id", "post_id"),
    )

    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("post.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("forum_user.id"),
        primary_key=True,
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)

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
