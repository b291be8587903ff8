"""Site session endpoints.

- ``POST   /sites``            -- Log in to a site with a web service token
- ``GET    /sites``            -- List logged-in sites
- ``DELETE /sites/{site_id}``  -- Log out (cache kept as emergency data)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from learnsync.api.deps import get_container, resolve_site
from learnsync.services.container import ServiceContainer
from learnsync.services.local_store import StorageError
from learnsync.services.site_manager import SiteContext
from learnsync.site_gateway.client import ServerError, TransportError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites", tags=["sites"])


class SiteLoginRequest(BaseModel):
    url: str
    token: str


class SiteResponse(BaseModel):
    site_id: str
    url: str
    user_id: int | None = None
    username: str | None = None


def _to_response(site: SiteContext) -> SiteResponse:
    return SiteResponse(site_id=site.id, url=site.url, user_id=site.user_id, username=site.username)


@router.post("", response_model=SiteResponse, status_code=status.HTTP_201_CREATED)
async def add_site(
    body: SiteLoginRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> SiteResponse:
    try:
        site = await container.sites.add_site(body.url, body.token)
    except ServerError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message) from exc
    except TransportError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
    return _to_response(site)


@router.get("", response_model=list[SiteResponse])
async def list_sites(
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> list[SiteResponse]:
    return [_to_response(site) for site in container.sites.list_sites()]


@router.delete("/{site_id}", status_code=status.HTTP_204_NO_CONTENT)
async def logout_site(
    site_id: str,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    resolve_site(container, site_id)
    try:
        await container.sites.logout(site_id)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
