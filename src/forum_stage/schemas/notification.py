"""Notification schemas pushed to user rooms."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationOut(BaseModel):
    """In-app notification as delivered to clients."""

    id: str
    user_id: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationPage(BaseModel):
    """One page of a user's inbox, newest first."""

    data: list[NotificationOut]
    total: int
    page: int
    limit: int
