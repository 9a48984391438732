"""Explicit construction and lifecycle of the application's services.

The container builds every service once at startup and hands each one its
collaborators, so nothing reaches for a module-level client. ``start`` launches
the worker pools. ``shutdown`` drains them before closing HTTP clients, the
cache connection and the database engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from forum_stage.core.settings import Settings
from forum_stage.db.session import create_engine_from_settings, create_session_factory
from forum_stage.services.ai import AiClient, ModerationHandler, SummaryHandler
from forum_stage.services.cache import CacheService
from forum_stage.services.jobs import JobQueue
from forum_stage.services.notifications import NotificationService, WebhookDeliveryHandler
from forum_stage.services.realtime import RealtimeHub
from forum_stage.services.threads import ThreadService
from forum_stage.services.workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """All long-lived services of one application instance."""

    settings: Settings
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    cache: CacheService
    jobs: JobQueue
    realtime: RealtimeHub
    notifications: NotificationService
    threads: ThreadService
    ai: AiClient
    webhook: WebhookDeliveryHandler
    workers: list[WorkerPool] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
        cache: CacheService | None = None,
        ai_transport: httpx.AsyncBaseTransport | None = None,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
    ) -> ServiceContainer:
        """Wire the service graph.

        Args:
            settings: Application settings.
            engine: Optional pre-built database engine (tests use an in-memory one).
            cache: Optional cache service; defaults to one connected to REDIS_URL.
            ai_transport: Optional httpx transport for the AI client.
            webhook_transport: Optional httpx transport for webhook delivery.
        """
        engine = engine or create_engine_from_settings(settings)
        sessions = create_session_factory(engine)
        cache = cache or CacheService.from_settings(settings)
        jobs = JobQueue(sessions, settings)
        realtime = RealtimeHub()
        notifications = NotificationService(sessions, jobs, realtime, settings)
        threads = ThreadService(
            sessions,
            cache=cache,
            jobs=jobs,
            notifications=notifications,
            realtime=realtime,
            settings=settings,
        )
        ai = AiClient(settings, transport=ai_transport)
        webhook = WebhookDeliveryHandler(settings, transport=webhook_transport)

        container = cls(
            settings=settings,
            engine=engine,
            sessions=sessions,
            cache=cache,
            jobs=jobs,
            realtime=realtime,
            notifications=notifications,
            threads=threads,
            ai=ai,
            webhook=webhook,
        )
        container.workers = container._build_workers()
        return container

    def _build_workers(self) -> list[WorkerPool]:
        settings = self.settings
        common = {
            "jobs": self.jobs,
            "poll_interval": settings.worker_poll_interval_seconds,
            "lease_seconds": settings.worker_lease_seconds,
        }
        workers: list[WorkerPool] = []

        if settings.ai_enabled:
            workers.append(
                WorkerPool(
                    name="ai-moderation",
                    queue_name=settings.ai_moderation_queue,
                    handler=ModerationHandler(self.ai, self.threads),
                    concurrency=settings.moderation_concurrency,
                    **common,
                )
            )
            workers.append(
                WorkerPool(
                    name="ai-summary",
                    queue_name=settings.ai_summary_queue,
                    handler=SummaryHandler(self.ai, self.threads),
                    concurrency=settings.summary_concurrency,
                    **common,
                )
            )
        else:
            logger.warning("AI_API_KEY not configured; AI workers are disabled.")

        if settings.webhook_url:
            workers.append(
                WorkerPool(
                    name="notifications",
                    queue_name=settings.notification_queue,
                    handler=self.webhook,
                    concurrency=settings.notification_concurrency,
                    **common,
                )
            )
        else:
            logger.warning(
                "NOTIFICATION_WEBHOOK_URL not configured; notification worker is disabled."
            )

        return workers

    async def start(self) -> None:
        """Start background workers when enabled."""
        if not self.settings.workers_enabled:
            logger.info("Background workers disabled by configuration")
            return
        for worker in self.workers:
            await worker.start()

    async def shutdown(self) -> None:
        """Stop workers, flush pending broadcasts and release connections."""
        for worker in self.workers:
            await worker.stop()
        await self.realtime.drain()
        await self.ai.close()
        await self.webhook.close()
        await self.cache.close()
        await self.engine.dispose()
        logger.info("Services shut down")
