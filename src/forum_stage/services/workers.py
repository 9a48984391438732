"""Worker pools that consume background jobs.

This module provides the WorkerPool class. Each pool runs a fixed number of
consumer loops against one named queue. It handles:

- Claiming due jobs with a lease
- Decoding the stored payload into its tagged variant
- Reporting success or failure back to the queue for retry bookkeeping
- Draining in-flight jobs on shutdown
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import SQLAlchemyError

from forum_stage.models.job import JOB_STATUS_DEAD
from forum_stage.schemas.jobs import (
    ModerationJob,
    NotificationJob,
    SummaryJob,
    parse_job_payload,
)
from forum_stage.services.jobs import ClaimedJob, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[ModerationJob | SummaryJob | NotificationJob, ClaimedJob], Awaitable[None]]

MAX_ERROR_BACKOFF_SECONDS = 30.0


class WorkerPool:
    """Bounded-concurrency consumer for a single queue."""

    def __init__(
        self,
        *,
        name: str,
        queue_name: str,
        jobs: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        lease_seconds: float = 120.0,
    ) -> None:
        self.name = name
        self.queue_name = queue_name
        self.concurrency = max(1, concurrency)
        self._jobs = jobs
        self._handler = handler
        self._poll_interval = max(0.05, float(poll_interval))
        self._lease_seconds = lease_seconds
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the consumer loops."""
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(slot), name=f"{self.name}-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info(
            "%s worker started on %s with concurrency %d",
            self.name,
            self.queue_name,
            self.concurrency,
        )

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for in-flight ones to finish."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("%s worker stopped", self.name)

    async def run_once(self) -> bool:
        """Claim and process at most one job.

        Returns:
            True if a job was processed, False if the queue had nothing due.
        """
        job = await self._jobs.claim(self.queue_name, self._lease_seconds)
        if job is None:
            return False
        await self._process(job)
        return True

    async def _run(self, slot: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except (SQLAlchemyError, OSError) as e:
                logger.warning("%s worker %d could not reach the job store: %s", self.name, slot, e)
                await self._sleep(min(self._poll_interval * 4, MAX_ERROR_BACKOFF_SECONDS))
                continue

            if not processed:
                await self._sleep(self._poll_interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _process(self, job: ClaimedJob) -> None:
        started = time.perf_counter()
        try:
            payload = parse_job_payload(job.payload)
        except PayloadValidationError as e:
            # A malformed payload never becomes valid, so skip the retries.
            logger.error("%s job %s has an invalid payload: %s", self.name, job.id, e)
            await self._jobs.fail(job.id, f"invalid payload: {e}", retry=False)
            return

        try:
            await self._handler(payload, job)
        except Exception as e:  # noqa: BLE001
            status = await self._jobs.fail(job.id, str(e) or type(e).__name__)
            attempt = job.attempts_made + 1
            if status == JOB_STATUS_DEAD:
                logger.error(
                    "%s job %s failed permanently after %d attempts: %s",
                    self.name,
                    job.id,
                    attempt,
                    e,
                )
            else:
                logger.warning(
                    "%s job %s failed on attempt %d/%d: %s",
                    self.name,
                    job.id,
                    attempt,
                    job.max_attempts,
                    e,
                )
            return

        await self._jobs.complete(job.id)
        logger.debug(
            "%s job %s completed in %.1f ms",
            self.name,
            job.id,
            (time.perf_counter() - started) * 1000,
        )
