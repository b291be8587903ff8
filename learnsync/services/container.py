"""Builds and wires the data-access services of the application."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from learnsync.config import Settings
from learnsync.services.connectivity import ConnectivityMonitor
from learnsync.services.local_store import LocalStore
from learnsync.services.notes_service import NotesService, NotesSyncHandler
from learnsync.services.pending_queue import PendingOperationQueue
from learnsync.services.result_cache import ResultCache
from learnsync.services.site_manager import ClientFactory, SiteManager
from learnsync.services.sync_coordinator import SyncCoordinator
from learnsync.site_gateway.client import SiteClient


@dataclass
class ServiceContainer:
    store: LocalStore
    cache: ResultCache
    queue: PendingOperationQueue
    connectivity: ConnectivityMonitor
    sites: SiteManager
    coordinator: SyncCoordinator
    notes: NotesService


def build_container(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    client_factory: ClientFactory | None = None,
    online: bool = True,
) -> ServiceContainer:
    """Create every service and connect the cross-cutting hooks.

    - logout forgets the notes capability memo
    - going online triggers a sync of every logged-in site
    """
    if client_factory is None:

        def client_factory(url: str, token: str) -> SiteClient:
            return SiteClient(url, token, timeout=settings.WS_TIMEOUT, verify=settings.WS_VERIFY_TLS)

    store = LocalStore(session_factory)
    cache = ResultCache(store)
    queue = PendingOperationQueue(store)
    connectivity = ConnectivityMonitor(online=online)
    sites = SiteManager(cache, client_factory=client_factory)
    notes = NotesService(cache, queue, connectivity)
    coordinator = SyncCoordinator(
        queue,
        cache,
        store,
        handlers=[NotesSyncHandler()],
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        min_interval=settings.SYNC_INTERVAL,
    )

    sites.on_logout(notes.forget_site)
    coordinator.attach(connectivity, sites.list_sites)

    return ServiceContainer(
        store=store,
        cache=cache,
        queue=queue,
        connectivity=connectivity,
        sites=sites,
        coordinator=coordinator,
        notes=notes,
    )
