"""Tests for the HTTP facade.

The app runs without its lifespan; ``get_container`` is overridden with
services built on the per-test SQLite store and a ``FakeSiteClient``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from learnsync.api.deps import get_container
from learnsync.config import get_settings
from learnsync.main import app
from learnsync.services.container import ServiceContainer, build_container
from learnsync.services.local_store import StorageError
from learnsync.site_gateway.client import ServerError
from tests.conftest import SITE_INFO, FakeSiteClient, rejected_note_response


@pytest.fixture
def container(session_factory, fake_client: FakeSiteClient) -> ServiceContainer:
    fake_client.responses["core_webservice_get_site_info"] = dict(SITE_INFO)
    return build_container(session_factory, get_settings(), client_factory=lambda url, token: fake_client)


@pytest_asyncio.fixture(scope="function")
async def api(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_container] = lambda: container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _login(api: AsyncClient) -> str:
    response = await api.post("/api/sites", json={"url": "https://school.example.org", "token": "tok"})
    assert response.status_code == 201
    return response.json()["site_id"]


def _notes_url(site_id: str, course_id: int = 10) -> str:
    return f"/api/sites/{site_id}/courses/{course_id}/notes"


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------


class TestSitesEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, api: AsyncClient):
        response = await api.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_login_and_list(self, api: AsyncClient):
        site_id = await _login(api)

        response = await api.get("/api/sites")

        assert response.status_code == 200
        [site] = response.json()
        assert site["site_id"] == site_id
        assert site["username"] == "teacher"
        assert site["user_id"] == 2

    @pytest.mark.asyncio
    async def test_login_rejected(self, api: AsyncClient, fake_client: FakeSiteClient):
        fake_client.responses["core_webservice_get_site_info"] = ServerError("Invalid token")

        response = await api.post("/api/sites", json={"url": "https://school.example.org", "token": "bad"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    @pytest.mark.asyncio
    async def test_login_unreachable(self, api: AsyncClient, fake_client: FakeSiteClient):
        fake_client.offline = True

        response = await api.post("/api/sites", json={"url": "https://school.example.org", "token": "tok"})

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_logout(self, api: AsyncClient):
        site_id = await _login(api)

        assert (await api.delete(f"/api/sites/{site_id}")).status_code == 204
        assert (await api.get(_notes_url(site_id))).status_code == 404

    @pytest.mark.asyncio
    async def test_logout_storage_failure_is_503(self, api: AsyncClient, container: ServiceContainer):
        site_id = await _login(api)

        with patch.object(
            container.cache, "invalidate_all", new_callable=AsyncMock, side_effect=StorageError("disk full")
        ):
            response = await api.delete(f"/api/sites/{site_id}")

        assert response.status_code == 503
        assert response.json()["detail"] == "disk full"

    @pytest.mark.asyncio
    async def test_unknown_site_is_404(self, api: AsyncClient):
        assert (await api.get(_notes_url("nope"))).status_code == 404
        assert (await api.post("/api/sites/nope/sync")).status_code == 404
        assert (await api.delete("/api/sites/nope")).status_code == 404


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


class TestNotesEndpoints:
    @pytest.mark.asyncio
    async def test_list_notes_enriched(self, api: AsyncClient):
        site_id = await _login(api)

        response = await api.get(_notes_url(site_id))

        assert response.status_code == 200
        data = response.json()
        assert data["has_offline"] is False
        [note] = data["notes"]
        assert note["id"] == 31
        assert note["userfullname"] == "Ada Student"
        assert note["textpreview"] == "Great progress"

    @pytest.mark.asyncio
    async def test_filter_by_publish_state(self, api: AsyncClient):
        site_id = await _login(api)

        assert (await api.get(_notes_url(site_id), params={"type": "course"})).json()["notes"] == []
        assert len((await api.get(_notes_url(site_id), params={"type": "personal"})).json()["notes"]) == 1
        assert (await api.get(_notes_url(site_id), params={"type": "public"})).status_code == 422

    @pytest.mark.asyncio
    async def test_add_note_online(self, api: AsyncClient, fake_client: FakeSiteClient):
        site_id = await _login(api)

        response = await api.post(
            _notes_url(site_id), json={"user_id": 5, "publish_state": "personal", "text": "hi"}
        )

        assert response.status_code == 201
        assert response.json() == {"status": "sent"}
        assert len(fake_client.calls_to("core_notes_create_notes")) == 1

    @pytest.mark.asyncio
    async def test_add_note_offline_then_reconnect(self, api: AsyncClient, fake_client: FakeSiteClient):
        site_id = await _login(api)
        await api.post("/api/connectivity", json={"online": False})
        fake_client.offline = True

        response = await api.post(
            _notes_url(site_id), json={"user_id": 5, "publish_state": "personal", "text": "hi"}
        )
        assert response.json() == {"status": "stored"}

        listed = (await api.get(_notes_url(site_id))).json()
        assert listed["has_offline"] is True
        assert listed["notes"][0]["text"] == "hi"
        assert listed["notes"][0]["userfullname"] == "User with ID 5"

        status = (await api.get(f"/api/sites/{site_id}/sync/status")).json()
        assert status["pending"] == 1

        fake_client.offline = False
        response = await api.post("/api/connectivity", json={"online": True})
        assert response.json() == {"online": True}

        status = (await api.get(f"/api/sites/{site_id}/sync/status")).json()
        assert status["pending"] == 0
        assert status["status"] == "idle"
        assert status["last_sync_at"] is not None

    @pytest.mark.asyncio
    async def test_add_note_rejected(self, api: AsyncClient, fake_client: FakeSiteClient):
        site_id = await _login(api)
        fake_client.responses["core_notes_create_notes"] = rejected_note_response("invalid userid")

        response = await api.post(
            _notes_url(site_id), json={"user_id": 999, "publish_state": "personal", "text": "hi"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "invalid userid"

    @pytest.mark.asyncio
    async def test_list_unreachable_without_cache(self, api: AsyncClient, fake_client: FakeSiteClient):
        site_id = await _login(api)
        fake_client.offline = True

        assert (await api.get(_notes_url(site_id))).status_code == 503

    @pytest.mark.asyncio
    async def test_invalidate_then_refetch(self, api: AsyncClient, fake_client: FakeSiteClient):
        site_id = await _login(api)
        await api.get(_notes_url(site_id))

        assert (await api.post(f"{_notes_url(site_id)}/invalidate")).status_code == 204
        await api.get(_notes_url(site_id))

        assert len(fake_client.calls_to("core_notes_get_course_notes")) == 2

    @pytest.mark.asyncio
    async def test_invalidate_storage_failure_is_503(self, api: AsyncClient, container: ServiceContainer):
        site_id = await _login(api)

        with patch.object(container.cache, "invalidate", new_callable=AsyncMock, side_effect=StorageError("disk full")):
            response = await api.post(f"{_notes_url(site_id)}/invalidate")

        assert response.status_code == 503
        assert response.json()["detail"] == "disk full"

    @pytest.mark.asyncio
    async def test_refresh_reports_sync_warnings(self, api: AsyncClient, container: ServiceContainer, fake_client):
        site_id = await _login(api)
        site = container.sites.get_site(site_id)
        await container.queue.enqueue(
            site.id,
            "notes",
            {"userid": 999, "publishstate": "personal", "courseid": 10, "text": "hi", "format": 1},
        )
        fake_client.responses["core_notes_create_notes"] = rejected_note_response("invalid userid")

        data = (await api.get(_notes_url(site_id), params={"refresh": True})).json()

        assert data["warnings"] == ["Note for course 10 could not be sent: invalid userid"]
        assert data["has_offline"] is False


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class TestSyncEndpoints:
    @pytest.mark.asyncio
    async def test_trigger_sync(self, api: AsyncClient, container: ServiceContainer):
        site_id = await _login(api)
        op_id = await container.queue.enqueue(
            site_id,
            "notes",
            {"userid": 5, "publishstate": "personal", "courseid": 10, "text": "hi", "format": 1},
        )

        response = await api.post(f"/api/sites/{site_id}/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["site_id"] == site_id
        assert data["succeeded"] == [op_id]
        assert data["failed"] == []
        assert data["interrupted"] is False

    @pytest.mark.asyncio
    async def test_status_before_any_sync(self, api: AsyncClient):
        site_id = await _login(api)

        data = (await api.get(f"/api/sites/{site_id}/sync/status")).json()

        assert data == {"status": "idle", "pending": 0, "last_sync_at": None}
