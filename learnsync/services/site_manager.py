"""Site contexts: the explicit scope passed to every data operation.

A :class:`SiteContext` identifies one backend account/session.  All cached
and queued state is partitioned by its ``id``.  The :class:`SiteManager`
creates contexts on login and tears them down on logout; it is an ordinary
object owned by the application, not a module-level registry.
"""

from __future__ import annotations

import hashlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from learnsync.constants import WS_SITE_INFO
from learnsync.services.result_cache import ResultCache
from learnsync.site_gateway.client import RemoteCaller, SiteClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], RemoteCaller]
LogoutHook = Callable[[str], Awaitable[None] | None]


class SiteNotFoundError(KeyError):
    """Raised when a site id is not registered."""


def build_site_id(url: str, username: str) -> str:
    """Derive the stable id of a site account from its URL and username."""
    return hashlib.md5(f"{url.rstrip('/')}{username}".encode()).hexdigest()  # noqa: S324


@dataclass
class SiteContext:
    """One logged-in site account.

    Attributes:
        id: Stable site id (see :func:`build_site_id`).
        url: Base URL of the site.
        client: Remote caller bound to the account's token.
        user_id: Id of the logged-in user.
        username: Login name of the logged-in user.
        info: Site info as returned at login (functions, advanced features).
    """

    id: str
    url: str
    client: RemoteCaller
    user_id: int | None = None
    username: str | None = None
    info: dict = field(default_factory=dict)

    def ws_available(self, function: str) -> bool:
        """Whether the site exposes the web service *function* to this user."""
        return any(f.get("name") == function for f in self.info.get("functions", []))

    def can_use_advanced_feature(self, feature: str, when_undefined: bool = True) -> bool:
        """Whether an advanced feature (e.g. ``enablenotes``) is enabled."""
        for item in self.info.get("advancedfeatures", []):
            if item.get("name") == feature:
                return str(item.get("value")) == "1"
        return when_undefined


class SiteManager:
    """Creates, holds and logs out :class:`SiteContext` objects.

    Args:
        cache: Result cache, invalidated for a site when it logs out.
        client_factory: Builds the remote caller for ``(url, token)``.
    """

    def __init__(self, cache: ResultCache, client_factory: ClientFactory = SiteClient) -> None:
        self._cache = cache
        self._client_factory = client_factory
        self._sites: dict[str, SiteContext] = {}
        self._logout_hooks: list[LogoutHook] = []

    async def add_site(self, url: str, token: str) -> SiteContext:
        """Log in with *token*: fetch site info and register the context.

        Raises:
            TransportError: The site could not be reached.
            ServerError: The token was rejected.
        """
        client = self._client_factory(url, token)
        try:
            info = await client.call(WS_SITE_INFO)
        except Exception:
            await client.close()
            raise

        username = info.get("username", "")
        site = SiteContext(
            id=build_site_id(info.get("siteurl") or url, username),
            url=url.rstrip("/"),
            client=client,
            user_id=info.get("userid"),
            username=username,
            info=info,
        )
        previous = self._sites.get(site.id)
        if previous is not None:
            await previous.client.close()
        self._sites[site.id] = site
        logger.info("Site added: %s (site=%s, user=%s)", site.url, site.id, site.user_id)
        return site

    def register(self, site: SiteContext) -> SiteContext:
        """Register an already-built context (restored session)."""
        self._sites[site.id] = site
        return site

    def get_site(self, site_id: str) -> SiteContext:
        try:
            return self._sites[site_id]
        except KeyError:
            raise SiteNotFoundError(site_id) from None

    def list_sites(self) -> list[SiteContext]:
        return list(self._sites.values())

    def on_logout(self, hook: LogoutHook) -> None:
        """Run *hook(site_id)* whenever a site logs out."""
        self._logout_hooks.append(hook)

    async def logout(self, site_id: str) -> None:
        """Log a site out.

        Cache entries are marked stale (still usable as emergency cache),
        logout hooks run, and the client is closed.  Queued operations are
        kept so the next login can still sync them.
        """
        site = self.get_site(site_id)
        await self._cache.invalidate_all(site_id)
        for hook in self._logout_hooks:
            outcome = hook(site_id)
            if inspect.isawaitable(outcome):
                await outcome
        del self._sites[site_id]
        await site.client.close()
        logger.info("Site logged out (site=%s)", site_id)

    async def close(self) -> None:
        """Close every client without logging out."""
        for site in self._sites.values():
            await site.client.close()
