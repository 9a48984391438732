# tests/conftest.py
from __future__ import annotations

import fnmatch
import os
from collections.abc import AsyncIterator, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("WORKERS_ENABLED", "false")

from forum_stage.core.settings import Settings
from forum_stage.db.session import Base, create_session_factory, create_tables
from forum_stage.main import app as fastapi_app
from forum_stage.models import User
from forum_stage.services.cache import CacheService
from forum_stage.services.container import ServiceContainer
from forum_stage.services.jobs import JobQueue
from forum_stage.services.notifications import NotificationService
from forum_stage.services.realtime import RealtimeHub
from forum_stage.services.threads import ThreadService

TEST_SECRET = "test-secret-key"


class FakeRedis:
    """Dict-backed stand-in for the handful of Redis commands the cache uses."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class RecordingSink:
    """Collects every message pushed to a realtime connection."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        self.messages.append(data)

    def events(self) -> list[str]:
        return [message["event"] for message in self.messages]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [message["data"] for message in self.messages if message["event"] == event]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "secret_key": TEST_SECRET,
        "database_url": "sqlite+aiosqlite://",
        "workers_enabled": False,
        "ai_api_key": None,
        "notification_webhook_url": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_token(user_id: str, roles: list[str] | None = None, secret: str = TEST_SECRET) -> str:
    claims = {
        "sub": user_id,
        "roles": roles or [],
        "exp": datetime.now(UTC) + timedelta(minutes=30),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture()
async def engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def sessions(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis: FakeRedis) -> CacheService:
    return CacheService(fake_redis)  # type: ignore[arg-type]


@pytest.fixture()
def realtime() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture()
def jobs(sessions: async_sessionmaker[AsyncSession], test_settings: Settings) -> JobQueue:
    return JobQueue(sessions, test_settings)


@pytest.fixture()
def notifications(
    sessions: async_sessionmaker[AsyncSession],
    jobs: JobQueue,
    realtime: RealtimeHub,
    test_settings: Settings,
) -> NotificationService:
    return NotificationService(sessions, jobs, realtime, test_settings)


@pytest.fixture()
def thread_service(
    sessions: async_sessionmaker[AsyncSession],
    cache: CacheService,
    jobs: JobQueue,
    notifications: NotificationService,
    realtime: RealtimeHub,
    test_settings: Settings,
) -> ThreadService:
    return ThreadService(
        sessions,
        cache=cache,
        jobs=jobs,
        notifications=notifications,
        realtime=realtime,
        settings=test_settings,
    )


async def _add_user(
    sessions: async_sessionmaker[AsyncSession], handle: str, roles: list[str] | None = None
) -> User:
    async with sessions() as session, session.begin():
        user = User(handle=handle, display_name=handle.title(), roles=roles or [])
        session.add(user)
        await session.flush()
        return user


@pytest.fixture()
async def users(sessions: async_sessionmaker[AsyncSession]) -> dict[str, User]:
    return {
        "alice": await _add_user(sessions, "alice"),
        "bob": await _add_user(sessions, "bob"),
        "carol": await _add_user(sessions, "carol"),
        "mod": await _add_user(sessions, "moddy", roles=["moderator"]),
    }


# ---------------------------------------------------------------------------
# HTTP fixtures
#
# The application runs inside TestClient's own event loop, so the API tests use
# a file-backed database prepared with a synchronous engine.
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_database_url(tmp_path) -> Iterator[str]:
    path = tmp_path / "forum.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    import forum_stage.models  # noqa: F401

    Base.metadata.create_all(bind=sync_engine)
    try:
        yield f"sqlite+aiosqlite:///{path}"
    finally:
        sync_engine.dispose()


@pytest.fixture()
def api_settings(api_database_url: str) -> Settings:
    return make_settings(database_url=api_database_url)


@pytest.fixture()
def api_users(api_database_url: str) -> dict[str, str]:
    sync_engine = create_engine(api_database_url.replace("sqlite+aiosqlite", "sqlite", 1))
    ids: dict[str, str] = {}
    with sync_engine.begin() as conn:
        for handle, roles in (("alice", []), ("bob", []), ("carol", []), ("moddy", ["moderator"])):
            user_id = f"{handle}-0000-0000-0000-000000000000"[:36]
            conn.execute(
                User.__table__.insert().values(
                    id=user_id,
                    handle=handle,
                    display_name=handle.title(),
                    roles=roles,
                    threads_count=0,
                    posts_count=0,
                    created_at=datetime.now(UTC),
                )
            )
            ids[handle] = user_id
    sync_engine.dispose()
    return ids


@pytest.fixture()
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def services(api_settings: Settings) -> ServiceContainer:
    cache = CacheService(FakeRedis())  # type: ignore[arg-type]
    return ServiceContainer.build(api_settings, cache=cache)


@pytest.fixture()
def client(
    app: FastAPI, services: ServiceContainer, api_users: dict[str, str]
) -> Iterator[TestClient]:
    app.state.services = services
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.state.services = None


@pytest.fixture()
def auth_headers(api_users: dict[str, str]):
    def _headers(handle: str, roles: list[str] | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(api_users[handle], roles)}"}

    return _headers
