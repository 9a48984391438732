"""Durable job queue backed by the ``job`` table.

This module provides the JobQueue class used by the mutation engine to dispatch
background work and by worker pools to consume it. It includes:

- Named queues, one per job kind
- At-least-once delivery through claim leases that expire on worker crashes
- Retry bookkeeping with exponential or fixed backoff
- Dead-lettering once the attempt budget is exhausted
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forum_stage.core.settings import Settings
from forum_stage.db.time import utcnow
from forum_stage.models.job import (
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_DEAD,
    JOB_STATUS_PENDING,
    Job,
)
from forum_stage.schemas.jobs import (
    Backoff,
    JobOptions,
    ModerationJob,
    NotificationJob,
    SummaryJob,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2_000


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job handed to a worker."""

    id: str
    queue: str
    kind: str
    payload: dict
    attempts_made: int
    max_attempts: int
    created_at: datetime


class JobQueue:
    """Enqueue and lifecycle operations for background jobs."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], settings: Settings) -> None:
        self._sessions = sessions
        self._settings = settings
        self._claim_lock = asyncio.Lock()

    @property
    def default_options(self) -> JobOptions:
        """Options applied when a caller passes none."""
        return JobOptions(
            attempts=self._settings.job_default_attempts,
            backoff=Backoff(type="exponential", delay=self._settings.job_default_backoff_seconds),
            remove_on_complete=True,
        )

    @property
    def notification_options(self) -> JobOptions:
        """Webhook deliveries get a per-deployment retry budget and a longer backoff."""
        return JobOptions(
            attempts=max(1, self._settings.notification_retry_limit),
            backoff=Backoff(
                type="exponential",
                delay=self._settings.notification_backoff_seconds,
            ),
            remove_on_complete=True,
        )

    async def enqueue(
        self,
        queue_name: str,
        payload: ModerationJob | SummaryJob | NotificationJob,
        options: JobOptions | None = None,
    ) -> str:
        """Persist a job on ``queue_name`` and return its identifier.

        The insert runs in its own session so a failure here can never touch
        the caller's transaction.
        """
        opts = options or self.default_options
        now = utcnow()
        job = Job(
            queue=queue_name,
            kind=payload.kind,
            payload=payload.model_dump(mode="json"),
            status=JOB_STATUS_PENDING,
            attempts_made=0,
            max_attempts=opts.attempts,
            backoff_type=opts.backoff.type,
            backoff_delay=opts.backoff.delay,
            remove_on_complete=opts.remove_on_complete,
            available_at=now + timedelta(seconds=opts.delay),
            created_at=now,
        )
        async with self._sessions() as session, session.begin():
            session.add(job)
            await session.flush()
            job_id = job.id
        logger.debug("Enqueued %s job %s on %s", payload.kind, job_id, queue_name)
        return job_id

    async def enqueue_moderation(
        self, payload: ModerationJob, options: JobOptions | None = None
    ) -> str:
        return await self.enqueue(self._settings.ai_moderation_queue, payload, options)

    async def enqueue_summary(self, payload: SummaryJob, options: JobOptions | None = None) -> str:
        return await self.enqueue(self._settings.ai_summary_queue, payload, options)

    async def enqueue_notification(
        self, payload: NotificationJob, options: JobOptions | None = None
    ) -> str:
        return await self.enqueue(
            self._settings.notification_queue,
            payload,
            options or self.notification_options,
        )

    async def claim(self, queue_name: str, lease_seconds: float) -> ClaimedJob | None:
        """Lease the next due job on ``queue_name``.

        A job is due when it is pending and its ``available_at`` has passed, or
        when it is active but the previous worker's lease expired.
        """
        async with self._claim_lock:
            async with self._sessions() as session, session.begin():
                now = utcnow()
                stmt = (
                    select(Job)
                    .where(
                        Job.queue == queue_name,
                        or_(
                            and_(Job.status == JOB_STATUS_PENDING, Job.available_at <= now),
                            and_(Job.status == JOB_STATUS_ACTIVE, Job.locked_until < now),
                        ),
                    )
                    .order_by(Job.available_at, Job.created_at)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job = (await session.execute(stmt)).scalars().first()
                if job is None:
                    return None
                if job.status == JOB_STATUS_ACTIVE:
                    logger.warning("Reclaiming job %s after an expired lease", job.id)
                job.status = JOB_STATUS_ACTIVE
                job.locked_until = now + timedelta(seconds=lease_seconds)
                return ClaimedJob(
                    id=job.id,
                    queue=job.queue,
                    kind=job.kind,
                    payload=dict(job.payload),
                    attempts_made=job.attempts_made,
                    max_attempts=job.max_attempts,
                    created_at=job.created_at,
                )

    async def complete(self, job_id: str) -> None:
        """Mark a job as succeeded, removing it when configured to."""
        async with self._sessions() as session, session.begin():
            job = await session.get(Job, job_id)
            if job is None:
                return
            if job.remove_on_complete:
                await session.execute(delete(Job).where(Job.id == job_id))
                return
            job.status = JOB_STATUS_COMPLETED
            job.locked_until = None
            job.finished_at = utcnow()

    async def fail(self, job_id: str, error: str, *, retry: bool = True) -> str | None:
        """Record a failed attempt and schedule a retry or abandon the job.

        Passing ``retry=False`` dead-letters the job regardless of its budget.

        Returns:
            The job's new status, or None if the job no longer exists.
        """
        async with self._sessions() as session, session.begin():
            job = await session.get(Job, job_id)
            if job is None:
                return None
            job.attempts_made += 1
            job.last_error = error[:MAX_ERROR_LENGTH]
            job.locked_until = None
            if not retry or job.attempts_made >= job.max_attempts:
                job.status = JOB_STATUS_DEAD
                job.finished_at = utcnow()
                return job.status

            backoff = Backoff(type=job.backoff_type, delay=job.backoff_delay)
            job.status = JOB_STATUS_PENDING
            job.available_at = utcnow() + timedelta(seconds=backoff.delay_for(job.attempts_made))
            return job.status
