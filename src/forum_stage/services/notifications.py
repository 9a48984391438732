"""In-app notifications and outbound webhook delivery.

This module provides:

- NotificationService, which records inbox rows, pushes them to user rooms and
  schedules webhook delivery, plus the inbox read paths
- WebhookDeliveryHandler, the worker handler that POSTs event envelopes
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import httpx
from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forum_stage.core.errors import NotFoundError
from forum_stage.core.settings import Settings
from forum_stage.db.time import as_utc, utcnow
from forum_stage.models.notification import Notification
from forum_stage.schemas.jobs import ModerationJob, NotificationJob, SummaryJob
from forum_stage.schemas.notification import NotificationOut, NotificationPage
from forum_stage.services.jobs import ClaimedJob, JobQueue
from forum_stage.services.realtime import RealtimeHub

logger = logging.getLogger(__name__)


class WebhookDeliveryError(RuntimeError):
    """Raised when the webhook receiver rejects or never answers a delivery."""


class NotificationService:
    """Record, push and forward notifications."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        jobs: JobQueue,
        realtime: RealtimeHub,
        settings: Settings,
    ) -> None:
        self._sessions = sessions
        self._jobs = jobs
        self._realtime = realtime
        self._settings = settings

    async def notify(
        self,
        event: str,
        payload: Mapping[str, Any],
        recipient_ids: Iterable[str] = (),
    ) -> list[NotificationOut]:
        """Create one inbox entry per distinct recipient and forward the event.

        Args:
            event: Event name, e.g. ``post.created``.
            payload: JSON-compatible event data.
            recipient_ids: Users who receive an inbox entry.

        Returns:
            The notifications that were recorded.
        """
        recipients = list(dict.fromkeys(user_id for user_id in recipient_ids if user_id))
        body = jsonable_encoder(dict(payload))

        created: list[NotificationOut] = []
        if recipients:
            async with self._sessions() as session, session.begin():
                rows = [
                    Notification(user_id=user_id, event=event, payload=body)
                    for user_id in recipients
                ]
                session.add_all(rows)
                await session.flush()
                created = [NotificationOut.model_validate(row) for row in rows]

        for notification in created:
            self._realtime.emit_to_user(notification.user_id, "notification.created", notification)

        webhook_url = self._settings.webhook_url
        if not webhook_url:
            logger.warning(
                'Notification for event "%s" skipped because NOTIFICATION_WEBHOOK_URL is not set.',
                event,
            )
            return created

        await self._jobs.enqueue_notification(
            NotificationJob(
                event=event,
                payload=body,
                webhook_url=webhook_url,
                retry_limit=self._settings.notification_retry_limit,
                recipient_ids=recipients,
            )
        )
        return created

    async def list_notifications(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
    ) -> NotificationPage:
        """Return one page of ``user_id``'s inbox, newest first."""
        filters = [Notification.user_id == user_id]
        if unread_only:
            filters.append(Notification.read.is_(False))

        async with self._sessions() as session:
            total = await session.scalar(
                select(func.count()).select_from(Notification).where(*filters)
            )
            result = await session.execute(
                select(Notification)
                .where(*filters)
                .order_by(Notification.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [NotificationOut.model_validate(row) for row in result.scalars()]
        return NotificationPage(data=items, total=total or 0, page=page, limit=limit)

    async def mark_as_read(self, user_id: str, notification_id: str) -> NotificationOut:
        async with self._sessions() as session, session.begin():
            notification = await session.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                raise NotFoundError("Notification not found.")
            if not notification.read:
                notification.read = True
                notification.read_at = utcnow()
            await session.flush()
            return NotificationOut.model_validate(notification)

    async def mark_all_as_read(self, user_id: str) -> int:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.read.is_(False))
                .values(read=True, read_at=utcnow())
            )
        return result.rowcount or 0


def _epoch_ms(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


class WebhookDeliveryHandler:
    """POST a notification envelope to the configured receiver."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.notification_request_timeout_seconds),
            transport=transport,
        )

    async def __call__(
        self, payload: ModerationJob | SummaryJob | NotificationJob, job: ClaimedJob
    ) -> None:
        if not isinstance(payload, NotificationJob):
            raise TypeError(f"notification handler received a {payload.kind} job")

        envelope = {
            "event": payload.event,
            "payload": payload.payload,
            "attempts": job.attempts_made + 1,
            "queuedAt": _epoch_ms(job.created_at),
            "processedAt": _epoch_ms(utcnow()),
        }
        headers = {"Content-Type": "application/json"}
        if self._settings.notification_webhook_secret:
            headers["X-Webhook-Secret"] = self._settings.notification_webhook_secret

        try:
            response = await self._client.post(payload.webhook_url, json=envelope, headers=headers)
        except httpx.TimeoutException as exc:
            raise WebhookDeliveryError("Webhook request timed out.") from exc

        if not response.is_success:
            raise WebhookDeliveryError(
                f"Webhook responded with status {response.status_code} "
                f"{response.reason_phrase} body={response.text}"
            )
        logger.debug("Notification job %s delivered to %s", job.id, payload.webhook_url)

    async def close(self) -> None:
        await self._client.aclose()
