"""Tests for the notification service and webhook delivery."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest
from sqlalchemy import select

from forum_stage.core.errors import NotFoundError
from forum_stage.models import Job
from forum_stage.schemas.jobs import NotificationJob
from forum_stage.services.jobs import ClaimedJob
from forum_stage.services.notifications import (
    NotificationService,
    WebhookDeliveryError,
    WebhookDeliveryHandler,
)
from tests.conftest import RecordingSink, make_settings


def _claimed(attempts_made: int = 0) -> ClaimedJob:
    return ClaimedJob(
        id="job-1",
        queue="notifications",
        kind="notification",
        payload={},
        attempts_made=attempts_made,
        max_attempts=5,
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


async def test_notify_records_one_row_per_recipient(notifications, users, realtime):
    alice, bob = users["alice"], users["bob"]
    sink = RecordingSink()
    realtime.register(sink, alice.id)

    created = await notifications.notify(
        "post.created", {"post_id": "p1"}, [alice.id, bob.id, alice.id, ""]
    )
    await realtime.drain()

    assert [item.user_id for item in created] == [alice.id, bob.id]
    assert all(item.read is False for item in created)
    assert sink.events() == ["notification.created"]
    assert sink.of("notification.created")[0]["payload"] == {"post_id": "p1"}


async def test_notify_without_webhook_does_not_queue(notifications, users, sessions, caplog):
    await notifications.notify("post.created", {"post_id": "p1"}, [users["alice"].id])

    async with sessions() as session:
        assert (await session.execute(select(Job))).first() is None
    assert "NOTIFICATION_WEBHOOK_URL is not set" in caplog.text


async def test_notify_with_webhook_queues_delivery(sessions, jobs, realtime, users):
    settings = make_settings(notification_webhook_url=" https://hooks.test/forum ")
    service = NotificationService(sessions, jobs, realtime, settings)

    await service.notify(
        "post.reacted",
        {"post_id": "p1", "at": datetime(2026, 1, 1, tzinfo=UTC)},
        [users["bob"].id],
    )
    # Events without recipients are still forwarded.
    await service.notify("post.created", {"post_id": "p2"})

    async with sessions() as session:
        rows = (await session.execute(select(Job).order_by(Job.created_at))).scalars().all()

    assert [row.payload["event"] for row in rows] == ["post.reacted", "post.created"]
    first = rows[0]
    assert first.queue == "notifications"
    assert first.payload["webhook_url"] == "https://hooks.test/forum"
    assert first.payload["recipient_ids"] == [users["bob"].id]
    assert first.payload["payload"]["at"].startswith("2026-01-01T00:00:00")
    assert first.max_attempts == settings.notification_retry_limit


async def test_inbox_listing_and_read_flags(notifications, users):
    alice = users["alice"]
    for index in range(3):
        await notifications.notify("post.created", {"index": index}, [alice.id])
    await notifications.notify("post.created", {"index": 99}, [users["bob"].id])

    page = await notifications.list_notifications(alice.id, page=1, limit=2)
    assert page.total == 3
    assert [item.payload["index"] for item in page.data] == [2, 1]

    read = await notifications.mark_as_read(alice.id, page.data[0].id)
    assert read.read is True
    assert read.read_at is not None

    unread = await notifications.list_notifications(alice.id, unread_only=True)
    assert unread.total == 2

    assert await notifications.mark_all_as_read(alice.id) == 2
    assert (await notifications.list_notifications(alice.id, unread_only=True)).total == 0


async def test_mark_as_read_checks_ownership(notifications, users):
    [created] = await notifications.notify("post.created", {}, [users["alice"].id])

    with pytest.raises(NotFoundError):
        await notifications.mark_as_read(users["bob"].id, created.id)
    with pytest.raises(NotFoundError):
        await notifications.mark_as_read(users["alice"].id, "missing")


async def test_webhook_delivery_posts_envelope():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    settings = make_settings(notification_webhook_secret="s3cret")
    delivery = WebhookDeliveryHandler(settings, transport=httpx.MockTransport(handler))
    job = NotificationJob(
        event="post.created", payload={"post_id": "p1"}, webhook_url="https://hooks.test/in"
    )

    await delivery(job, _claimed(attempts_made=2))
    await delivery.close()

    request = requests[0]
    assert str(request.url) == "https://hooks.test/in"
    assert request.headers["X-Webhook-Secret"] == "s3cret"
    envelope = json.loads(request.content)
    assert envelope["event"] == "post.created"
    assert envelope["payload"] == {"post_id": "p1"}
    assert envelope["attempts"] == 3
    assert envelope["queuedAt"] == 1767225600000
    assert envelope["processedAt"] >= envelope["queuedAt"]


async def test_webhook_non_success_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="nope")

    delivery = WebhookDeliveryHandler(make_settings(), transport=httpx.MockTransport(handler))
    job = NotificationJob(event="post.created", webhook_url="https://hooks.test/in")

    with pytest.raises(WebhookDeliveryError, match="500 Internal Server Error body=nope"):
        await delivery(job, _claimed())
    await delivery.close()


async def test_webhook_timeout_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    delivery = WebhookDeliveryHandler(make_settings(), transport=httpx.MockTransport(handler))
    job = NotificationJob(event="post.created", webhook_url="https://hooks.test/in")

    with pytest.raises(WebhookDeliveryError, match="timed out"):
        await delivery(job, _claimed())
    await delivery.close()
