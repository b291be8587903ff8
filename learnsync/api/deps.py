from fastapi import HTTPException, Request

from learnsync.services.container import ServiceContainer
from learnsync.services.site_manager import SiteContext, SiteNotFoundError


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the services built in the app lifespan."""
    return request.app.state.container


def resolve_site(container: ServiceContainer, site_id: str) -> SiteContext:
    try:
        return container.sites.get_site(site_id)
    except SiteNotFoundError:
        raise HTTPException(status_code=404, detail=f"Unknown site: {site_id}") from None
