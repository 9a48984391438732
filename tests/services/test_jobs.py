"""Tests for the durable job queue."""

from __future__ import annotations

from datetime import timedelta

import pytest

from forum_stage.db.time import as_utc, utcnow
from forum_stage.models import Job
from forum_stage.schemas.jobs import (
    Backoff,
    JobOptions,
    ModerationJob,
    NotificationJob,
    SummaryJob,
    parse_job_payload,
)


def _moderation(post_id: str = "p1") -> ModerationJob:
    return ModerationJob(post_id=post_id, thread_id="t1", author_id="u1", content="hello")


async def _job(sessions, job_id: str) -> Job | None:
    async with sessions() as session:
        return await session.get(Job, job_id)


@pytest.mark.parametrize(
    ("backoff", "attempts", "expected"),
    [
        (Backoff(type="exponential", delay=2.0), 1, 2.0),
        (Backoff(type="exponential", delay=2.0), 2, 4.0),
        (Backoff(type="exponential", delay=2.0), 4, 16.0),
        (Backoff(type="fixed", delay=5.0), 3, 5.0),
    ],
)
def test_backoff_delay(backoff, attempts, expected):
    assert backoff.delay_for(attempts) == expected


def test_parse_job_payload_dispatches_on_kind():
    summary = parse_job_payload(
        {"kind": "summary", "thread_id": "t1", "requester_id": "u1", "prompt": "p"}
    )
    notification = parse_job_payload(
        {"kind": "notification", "event": "post.created", "webhook_url": "http://hook"}
    )
    assert isinstance(summary, SummaryJob)
    assert isinstance(notification, NotificationJob)
    assert notification.payload == {}


async def test_enqueue_uses_default_options(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation())

    job = await _job(sessions, job_id)
    assert job.queue == "ai-moderation"
    assert job.kind == "moderation"
    assert job.status == "pending"
    assert job.max_attempts == 3
    assert job.backoff_type == "exponential"
    assert job.payload["post_id"] == "p1"


async def test_notification_jobs_use_notification_retry_budget(jobs, sessions):
    job_id = await jobs.enqueue_notification(
        NotificationJob(event="post.created", webhook_url="http://hook")
    )
    job = await _job(sessions, job_id)
    assert job.queue == "notifications"
    assert job.max_attempts == 5
    assert job.backoff_delay == 5.0


async def test_claim_returns_oldest_due_job(jobs):
    first = await jobs.enqueue_moderation(_moderation("p1"))
    await jobs.enqueue_moderation(_moderation("p2"))
    await jobs.enqueue_moderation(_moderation("p3"), JobOptions(delay=3600))

    claimed = await jobs.claim("ai-moderation", lease_seconds=30)
    second = await jobs.claim("ai-moderation", lease_seconds=30)
    third = await jobs.claim("ai-moderation", lease_seconds=30)

    assert claimed.id == first
    assert claimed.payload["post_id"] == "p1"
    assert second.payload["post_id"] == "p2"
    assert third is None


async def test_claim_ignores_other_queues(jobs):
    await jobs.enqueue_summary(SummaryJob(thread_id="t1", requester_id="u1", prompt="p"))
    assert await jobs.claim("ai-moderation", lease_seconds=30) is None
    assert await jobs.claim("ai-summary", lease_seconds=30) is not None


async def test_expired_lease_is_reclaimed(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation())
    await jobs.claim("ai-moderation", lease_seconds=30)
    assert await jobs.claim("ai-moderation", lease_seconds=30) is None

    async with sessions() as session, session.begin():
        job = await session.get(Job, job_id)
        job.locked_until = utcnow() - timedelta(seconds=1)

    reclaimed = await jobs.claim("ai-moderation", lease_seconds=30)
    assert reclaimed.id == job_id
    assert reclaimed.attempts_made == 0


async def test_complete_removes_job_by_default(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation())
    await jobs.claim("ai-moderation", lease_seconds=30)
    await jobs.complete(job_id)
    assert await _job(sessions, job_id) is None


async def test_complete_can_keep_job(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation(), JobOptions(remove_on_complete=False))
    await jobs.claim("ai-moderation", lease_seconds=30)
    await jobs.complete(job_id)

    job = await _job(sessions, job_id)
    assert job.status == "completed"
    assert job.finished_at is not None


async def test_fail_schedules_retry_with_backoff(jobs, sessions):
    options = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay=10))
    job_id = await jobs.enqueue_moderation(_moderation(), options)
    await jobs.claim("ai-moderation", lease_seconds=30)

    before = utcnow()
    status = await jobs.fail(job_id, "boom")

    job = await _job(sessions, job_id)
    assert status == "pending"
    assert job.attempts_made == 1
    assert job.last_error == "boom"
    assert as_utc(job.available_at) >= before + timedelta(seconds=10)
    assert await jobs.claim("ai-moderation", lease_seconds=30) is None


async def test_fail_dead_letters_after_last_attempt(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation(), JobOptions(attempts=2))
    assert await jobs.fail(job_id, "first") == "pending"
    assert await jobs.fail(job_id, "second") == "dead"

    job = await _job(sessions, job_id)
    assert job.attempts_made == 2
    assert job.finished_at is not None


async def test_fail_without_retry_is_terminal(jobs):
    job_id = await jobs.enqueue_moderation(_moderation(), JobOptions(attempts=5))
    assert await jobs.fail(job_id, "bad payload", retry=False) == "dead"


async def test_fail_truncates_long_errors(jobs, sessions):
    job_id = await jobs.enqueue_moderation(_moderation())
    await jobs.fail(job_id, "x" * 5_000)
    assert len((await _job(sessions, job_id)).last_error) == 2_000


async def test_unknown_job_ids_are_ignored(jobs):
    await jobs.complete("missing")
    assert await jobs.fail("missing", "boom") is None
