import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment variables before importing learnsync modules
os.environ.setdefault("LOCAL_DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_SYNC_ENABLED", "false")

SITE_INFO = {
    "sitename": "Test School",
    "siteurl": "https://school.example.org",
    "username": "teacher",
    "userid": 2,
    "functions": [
        {"name": "core_notes_create_notes", "version": "2017051500"},
        {"name": "core_notes_get_course_notes", "version": "2017051500"},
        {"name": "core_notes_view_notes", "version": "2017051500"},
    ],
    "advancedfeatures": [
        {"name": "enablenotes", "value": 1},
        {"name": "enablebadges", "value": 0},
    ],
}

SERVER_NOTE = {
    "id": 31,
    "courseid": 10,
    "userid": 5,
    "content": "<p>Great <b>progress</b></p>",
    "format": 1,
    "created": 1706500000,
    "lastmodified": 1706500000,
    "usermodified": 2,
    "publishstate": "personal",
}


class FakeSiteClient:
    """Scripted stand-in for :class:`SiteClient`.

    ``responses`` maps a function name to a value, an exception instance
    (raised), or a callable ``(params) -> value`` that may raise.  While
    ``offline`` is set every call fails with ``TransportError``.  Setting
    ``gate`` makes calls wait until the event is set.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = dict(responses or {})
        self.calls: list[tuple[str, dict]] = []
        self.offline = False
        self.gate: asyncio.Event | None = None
        self.closed = False

    def calls_to(self, function: str) -> list[dict]:
        return [params for name, params in self.calls if name == function]

    async def call(self, function: str, params: dict | None = None, *, timeout: float | None = None) -> Any:
        from learnsync.site_gateway.client import TransportError

        self.calls.append((function, params or {}))
        if self.gate is not None:
            await self.gate.wait()
        if self.offline:
            raise TransportError("Cannot connect to site: offline", function=function)

        response = self.responses.get(function)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params or {})
        return response

    async def close(self) -> None:
        self.closed = True


def created_note_response(noteid: int = 77) -> Callable[[dict], list[dict]]:
    """Response factory for core_notes_create_notes: one result per note."""

    def _respond(params: dict) -> list[dict]:
        return [
            {"clientnoteid": None, "noteid": noteid, "errormessage": ""}
            for _ in params.get("notes", [])
        ]

    return _respond


def rejected_note_response(message: str = "invalid userid") -> Callable[[dict], list[dict]]:
    def _respond(params: dict) -> list[dict]:
        return [{"clientnoteid": None, "noteid": -1, "errormessage": message}]

    return _respond


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a throwaway SQLite file with all tables created."""
    from learnsync.database import init_models

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'local.db'}", echo=False)
    await init_models(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    from learnsync.services.local_store import LocalStore

    return LocalStore(session_factory)


@pytest.fixture
def cache(store):
    from learnsync.services.result_cache import ResultCache

    return ResultCache(store)


@pytest.fixture
def queue(store):
    from learnsync.services.pending_queue import PendingOperationQueue

    return PendingOperationQueue(store)


@pytest.fixture
def connectivity():
    from learnsync.services.connectivity import ConnectivityMonitor

    return ConnectivityMonitor(online=True)


@pytest.fixture
def fake_client() -> FakeSiteClient:
    return FakeSiteClient(
        {
            "core_notes_create_notes": created_note_response(),
            "core_notes_get_course_notes": {
                "sitenotes": [],
                "coursenotes": [],
                "personalnotes": [dict(SERVER_NOTE)],
                "warnings": [],
            },
            "core_notes_view_notes": {"status": True, "warnings": []},
            "core_user_get_course_user_profiles": [
                {"id": 5, "fullname": "Ada Student", "profileimageurl": "https://school.example.org/pic/5.png"}
            ],
        }
    )


@pytest.fixture
def site(fake_client):
    from learnsync.services.site_manager import SiteContext

    return SiteContext(
        id="site-1",
        url="https://school.example.org",
        client=fake_client,
        user_id=2,
        username="teacher",
        info=SITE_INFO,
    )


@pytest.fixture
def notes_service(cache, queue, connectivity):
    from learnsync.services.notes_service import NotesService

    return NotesService(cache, queue, connectivity)


@pytest.fixture
def coordinator(queue, cache, store):
    from learnsync.services.notes_service import NotesSyncHandler
    from learnsync.services.sync_coordinator import SyncCoordinator

    return SyncCoordinator(queue, cache, store, handlers=[NotesSyncHandler()])
