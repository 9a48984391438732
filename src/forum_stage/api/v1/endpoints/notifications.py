# src/forum_stage/api/v1/endpoints/notifications.py
"""Inbox endpoints and the outbound webhook receiver."""

import secrets
from typing import Annotated, Any

from fastapi import APIRouter, Body, Header, HTTPException, Query, Response, status

from forum_stage.api.v1.dependencies import (
    CurrentUserDep,
    NotificationServiceDep,
    ServicesDep,
    http_error,
)
from forum_stage.core.errors import ForumError
from forum_stage.schemas.notification import NotificationOut, NotificationPage

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
async def list_notifications(
    current_user: CurrentUserDep,
    notifications: NotificationServiceDep,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False, alias="unreadOnly"),
) -> NotificationPage:
    """List notifications for the current user."""
    return await notifications.list_notifications(
        current_user.user_id, page=page, limit=limit, unread_only=unread_only
    )


@router.patch("/read-all")
async def mark_all_as_read(
    current_user: CurrentUserDep,
    notifications: NotificationServiceDep,
) -> dict[str, int]:
    updated = await notifications.mark_all_as_read(current_user.user_id)
    return {"updatedCount": updated}


@router.patch("/{notification_id}/read", response_model=NotificationOut)
async def mark_as_read(
    notification_id: str,
    current_user: CurrentUserDep,
    notifications: NotificationServiceDep,
) -> NotificationOut:
    try:
        return await notifications.mark_as_read(current_user.user_id, notification_id)
    except ForumError as exc:
        raise http_error(exc) from exc


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
async def receive_webhook(
    services: ServicesDep,
    body: Annotated[dict[str, Any] | None, Body()] = None,
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> Response:
    """Accept a delivered notification envelope.

    When NOTIFICATION_WEBHOOK_SECRET is configured, callers must present it in
    the ``X-Webhook-Secret`` header.
    """
    expected = (services.settings.notification_webhook_secret or "").strip()
    if expected:
        provided = (x_webhook_secret or "").strip()
        if not provided or not secrets.compare_digest(provided, expected):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized webhook caller",
            )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
