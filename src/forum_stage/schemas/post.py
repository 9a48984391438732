# src/forum_stage/schemas/post.py
"""Post-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ModerationStateLiteral = Literal["pending", "approved", "flagged", "rejected"]
ReactionTypeLiteral = Literal["upvote", "downvote"]


class AuthorSummary(BaseModel):
    """Display data embedded in posts so clients need no extra user lookups."""

    id: str
    handle: str
    display_name: str
    avatar_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PostCreate(BaseModel):
    """Schema for replying in a thread."""

    body: str = Field(..., min_length=1, max_length=10_000, description="Post body")
    parent_post_id: str | None = Field(None, description="Post being replied to")


class PostUpdate(BaseModel):
    """Schema for editing a post body."""

    body: str = Field(..., min_length=1, max_length=10_000)


class ReactionCreate(BaseModel):
    """Schema for reacting to a post."""

    type: ReactionTypeLiteral = Field(..., description="upvote or downvote")


class PostModeration(BaseModel):
    """Schema for the privileged moderation override."""

    moderation_state: ModerationStateLiteral
    moderation_feedback: str | None = Field(None, max_length=2_000)
    lock_thread: bool = False


class PostOut(BaseModel):
    """Schema for post information returned by the engine and the API."""

    id: str
    thread_id: str
    author_id: str
    body: str
    mentions: list[str] = Field(default_factory=list)
    parent_post_id: str | None = None
    moderation_state: ModerationStateLiteral
    moderation_feedback: str | None = None
    upvotes_count: int = 0
    downvotes_count: int = 0
    replies_count: int = 0
    created_at: datetime
    updated_at: datetime
    author: AuthorSummary | None = None

    model_config = ConfigDict(from_attributes=True)


class ReactionResult(BaseModel):
    """Counts after a reaction change plus the acting user's resulting reaction."""

    thread_id: str
    post_id: str
    user_id: str
    upvotes_count: int
    downvotes_count: int
    reaction: ReactionTypeLiteral | None = None
