"""Sync endpoints.

- ``POST /sites/{site_id}/sync``         -- Drain the site's pending operations now
- ``GET  /sites/{site_id}/sync/status``  -- Phase, pending count and last sync time
- ``POST /connectivity``                 -- Report the device going online/offline
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from learnsync.api.deps import get_container, resolve_site
from learnsync.constants import SyncPhase
from learnsync.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


class SyncFailureItem(BaseModel):
    operation_id: str
    reason: str


class SyncResultResponse(BaseModel):
    site_id: str
    succeeded: list[str]
    failed: list[SyncFailureItem]
    warnings: list[str]
    interrupted: bool
    synced_at: str


class SyncStatusResponse(BaseModel):
    status: SyncPhase
    pending: int
    last_sync_at: str | None = None


class ConnectivityRequest(BaseModel):
    online: bool


class ConnectivityResponse(BaseModel):
    online: bool


@router.post("/sites/{site_id}/sync", response_model=SyncResultResponse)
async def trigger_sync(
    site_id: str,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> SyncResultResponse:
    """Run a sync for the site, joining one already in progress."""
    site = resolve_site(container, site_id)
    result = await container.coordinator.sync(site)
    return SyncResultResponse(
        site_id=result.site_id,
        succeeded=result.succeeded,
        failed=[SyncFailureItem(operation_id=f.operation_id, reason=f.reason) for f in result.failed],
        warnings=result.warnings,
        interrupted=result.interrupted,
        synced_at=result.synced_at.isoformat(),
    )


@router.get("/sites/{site_id}/sync/status", response_model=SyncStatusResponse)
async def get_sync_status(
    site_id: str,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> SyncStatusResponse:
    site = resolve_site(container, site_id)
    last = await container.coordinator.last_sync_at(site.id)
    return SyncStatusResponse(
        status=container.coordinator.phase(site.id),
        pending=await container.queue.count(site.id),
        last_sync_at=last.isoformat() if last else None,
    )


@router.post("/connectivity", response_model=ConnectivityResponse)
async def set_connectivity(
    body: ConnectivityRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> ConnectivityResponse:
    """Going online triggers a sync of every logged-in site before returning."""
    await container.connectivity.set_online(body.online)
    return ConnectivityResponse(online=container.connectivity.is_online)
