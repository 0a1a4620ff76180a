"""Shared pytest fixtures for ProTV tests.

Store-backed tests run against a fresh SQLite database file per test
(aiosqlite), with the in-process realtime notifier.
"""
import asyncio
import os
import uuid
from types import SimpleNamespace

# Must be set before protv.config / protv.database are imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest_protv.db")
os.environ["REDIS_URL"] = ""
os.environ["DAILY_API_KEY"] = ""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

import protv.models  # noqa: F401  (registers every table on Base.metadata)
from protv.api import deps
from protv.database import Base, build_engine, build_session_factory, get_db
from protv.models.profile import Profile
from protv.services.chat_service import ChatService
from protv.services.connection_service import ConnectionService
from protv.services.match_service import MatchService
from protv.services.pairing_service import PairingService
from protv.services.realtime_service import RealtimeNotifier
from protv.services.report_service import ReportService
from protv.services.video_service import VideoRoom, VideoService
from protv.services.waiting_pool_service import WaitingPoolService


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'protv.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def notifier():
    return RealtimeNotifier()


@pytest.fixture
def video():
    """Video provider double: every room provisions successfully."""
    service = AsyncMock(spec=VideoService)
    service.create_room.side_effect = lambda name: VideoRoom(
        name=name, url=f"https://protv.daily.co/{name}"
    )
    service.delete_room.return_value = True
    return service


def build_services(session_factory, notifier, video) -> SimpleNamespace:
    matches = MatchService(session_factory, notifier)
    pairing = PairingService(session_factory, notifier, matches)
    connections = ConnectionService(session_factory, matches)
    return SimpleNamespace(
        session_factory=session_factory,
        notifier=notifier,
        matches=matches,
        pairing=pairing,
        pool=WaitingPoolService(session_factory, notifier, matches, pairing),
        chat=ChatService(session_factory, notifier, matches, connections),
        connections=connections,
        reports=ReportService(session_factory, matches),
        video=video,
    )


def override_dependencies(app, services) -> None:
    """Point every service dependency of *app* at *services*."""

    async def _get_db():
        async with services.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides.update(
        {
            get_db: _get_db,
            deps.get_match_service: lambda: services.matches,
            deps.get_pairing_service: lambda: services.pairing,
            deps.get_waiting_pool: lambda: services.pool,
            deps.get_chat_service: lambda: services.chat,
            deps.get_connection_service: lambda: services.connections,
            deps.get_report_service: lambda: services.reports,
            deps.get_video: lambda: services.video,
        }
    )


@pytest.fixture
def services(session_factory, notifier, video):
    return build_services(session_factory, notifier, video)


@pytest.fixture
def live(tmp_path, video):
    """A started Starlette TestClient with services built on its own loop.

    Websocket tests are synchronous; ``live.call(fn, *args)`` runs a
    coroutine function on the app's loop, where the engine, locks and
    subscriptions live.
    """
    from starlette.testclient import TestClient

    from protv.main import app

    async def _build():
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'live.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return engine, build_services(build_session_factory(engine), RealtimeNotifier(), video)

    with TestClient(app) as client:
        engine, built = client.portal.call(_build)
        override_dependencies(app, built)
        try:
            yield SimpleNamespace(client=client, services=built, call=client.portal.call)
        finally:
            app.dependency_overrides.clear()
            client.portal.call(engine.dispose)


@pytest.fixture
def make_profile(session_factory):
    """Insert a Profile and return it."""

    async def _make(
        school: str = "Harvard University",
        class_year: int = 2026,
        major: str = "Computer Science",
        **extra,
    ) -> Profile:
        uid = extra.pop("id", None) or uuid.uuid4()
        profile = Profile(
            id=uid,
            email=extra.pop("email", f"{uid.hex[:12]}@protv.test"),
            full_name=extra.pop("full_name", f"Student {uid.hex[:6]}"),
            school=school,
            class_year=class_year,
            major=major,
            interests=extra.pop("interests", []),
            **extra,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(profile)
        return profile

    return _make


@pytest.fixture
def make_match(services, make_profile):
    """Two fresh profiles paired through the queue; returns (match, a, b)."""

    async def _make():
        a = await make_profile(school="Harvard University")
        b = await make_profile(school="Yale University")
        await services.pool.enter(a.id)
        _, match = await services.pool.enter(b.id)
        assert match is not None
        return match, a, b

    return _make


@pytest.fixture
def eventually():
    """Poll *predicate* while letting background tasks run."""

    async def _wait(predicate, attempts: int = 100, delay: float = 0.01) -> bool:
        for _ in range(attempts):
            if predicate():
                return True
            await asyncio.sleep(delay)
        return predicate()

    return _wait
