# src/forum_stage/schemas/thread.py
"""Thread-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .post import PostOut

ThreadStatusLiteral = Literal["open", "locked", "archived"]


class ThreadCreate(BaseModel):
    """Schema for starting a new thread with its first post."""

    title: str = Field(..., min_length=3, max_length=200)
    body: str = Field(..., min_length=1, max_length=10_000)
    tags: list[str] = Field(default_factory=list, max_length=10)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in tags:
            cleaned = tag.strip().lower()
            if not cleaned:
                continue
            if len(cleaned) > 50:
                raise ValueError("Tags must be at most 50 characters")
            if cleaned not in seen:
                seen.append(cleaned)
        return seen


class ThreadStatusUpdate(BaseModel):
    """Schema for the privileged status change."""

    status: ThreadStatusLiteral


class ThreadOut(BaseModel):
    """Schema for thread information returned by the engine and the API."""

    id: str
    title: str
    slug: str
    author_id: str
    tags: list[str] = Field(default_factory=list)
    status: ThreadStatusLiteral
    last_activity_at: datetime
    posts_count: int
    participants_count: int
    participant_ids: list[str] = Field(default_factory=list)
    summary: str | None = None
    summary_generated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ThreadCreated(BaseModel):
    """Result of creating a thread: the thread and its enriched first post."""

    thread: ThreadOut
    first_post: PostOut


class ThreadDetail(BaseModel):
    """One page of a thread's posts, oldest first."""

    thread: ThreadOut
    posts: list[PostOut]
    posts_total: int
    page: int
    limit: int


class ThreadPage(BaseModel):
    """One page of a thread listing."""

    data: list[ThreadOut]
    total: int
    page: int
    limit: int
