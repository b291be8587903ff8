"""Tests for site contexts, login and logout."""

import pytest

from learnsync.constants import ENTITY_NOTES
from learnsync.services.result_cache import ResultCache
from learnsync.services.site_manager import SiteContext, SiteManager, SiteNotFoundError, build_site_id
from learnsync.site_gateway.client import ServerError, TransportError
from tests.conftest import SITE_INFO, FakeSiteClient


@pytest.fixture
def clients() -> list[FakeSiteClient]:
    return []


@pytest.fixture
def manager(cache: ResultCache, clients) -> SiteManager:
    def factory(url: str, token: str) -> FakeSiteClient:
        client = FakeSiteClient({"core_webservice_get_site_info": dict(SITE_INFO)})
        clients.append(client)
        return client

    return SiteManager(cache, client_factory=factory)


class TestSiteContext:
    def test_build_site_id_is_stable(self):
        assert build_site_id("https://school.example.org/", "teacher") == build_site_id(
            "https://school.example.org", "teacher"
        )
        assert build_site_id("https://school.example.org", "teacher") != build_site_id(
            "https://school.example.org", "student"
        )

    def test_ws_available(self, site: SiteContext):
        assert site.ws_available("core_notes_create_notes") is True
        assert site.ws_available("core_message_send_instant_messages") is False

    def test_advanced_features(self, site: SiteContext):
        assert site.can_use_advanced_feature("enablenotes") is True
        assert site.can_use_advanced_feature("enablebadges") is False
        assert site.can_use_advanced_feature("unknown") is True
        assert site.can_use_advanced_feature("unknown", when_undefined=False) is False


class TestLogin:
    @pytest.mark.asyncio
    async def test_add_site_registers_context(self, manager: SiteManager):
        site = await manager.add_site("https://school.example.org/", "tok")

        assert site.id == build_site_id("https://school.example.org", "teacher")
        assert site.url == "https://school.example.org"
        assert site.user_id == 2
        assert site.username == "teacher"
        assert manager.get_site(site.id) is site
        assert manager.list_sites() == [site]

    @pytest.mark.asyncio
    async def test_login_again_replaces_and_closes_old_client(self, manager: SiteManager, clients):
        first = await manager.add_site("https://school.example.org", "tok")
        second = await manager.add_site("https://school.example.org", "tok2")

        assert first.id == second.id
        assert clients[0].closed is True
        assert manager.list_sites() == [second]

    @pytest.mark.asyncio
    async def test_failed_login_closes_client(self, cache):
        created: list[FakeSiteClient] = []

        def factory(url, token):
            client = FakeSiteClient({"core_webservice_get_site_info": ServerError("Invalid token", errorcode="invalidtoken")})
            created.append(client)
            return client

        manager = SiteManager(cache, client_factory=factory)

        with pytest.raises(ServerError):
            await manager.add_site("https://school.example.org", "bad")

        assert created[0].closed is True
        assert manager.list_sites() == []

    @pytest.mark.asyncio
    async def test_unreachable_site(self, cache):
        def factory(url, token):
            client = FakeSiteClient()
            client.offline = True
            return client

        with pytest.raises(TransportError):
            await SiteManager(cache, client_factory=factory).add_site("https://down.example.org", "tok")

    def test_unknown_site(self, manager: SiteManager):
        with pytest.raises(SiteNotFoundError):
            manager.get_site("nope")


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_keeps_cache_as_emergency_and_queue(self, manager: SiteManager, cache, queue, clients):
        site = await manager.add_site("https://school.example.org", "tok")
        await cache.put(site.id, "k", "value")
        await queue.enqueue(site.id, ENTITY_NOTES, {"courseid": 10})
        forgotten: list[str] = []
        manager.on_logout(forgotten.append)

        await manager.logout(site.id)

        entry = await cache.get_entry(site.id, "k")
        assert entry.stale is True
        assert entry.value == "value"
        assert await queue.count(site.id) == 1
        assert forgotten == [site.id]
        assert clients[0].closed is True
        with pytest.raises(SiteNotFoundError):
            manager.get_site(site.id)

    @pytest.mark.asyncio
    async def test_async_logout_hook_awaited(self, manager: SiteManager):
        site = await manager.add_site("https://school.example.org", "tok")
        seen = []

        async def hook(site_id):
            seen.append(site_id)

        manager.on_logout(hook)
        await manager.logout(site.id)
        assert seen == [site.id]

    @pytest.mark.asyncio
    async def test_close_closes_clients(self, manager: SiteManager, clients):
        await manager.add_site("https://school.example.org", "tok")
        await manager.close()
        assert clients[0].closed is True
