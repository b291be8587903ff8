import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from learnsync.config import get_settings
from learnsync.database import async_session_factory, engine, init_models
from learnsync.services.container import build_container

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create tables, wire services and run the periodic sync loop."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_models(engine)

    container = build_container(async_session_factory, settings)
    app.state.container = container

    periodic: asyncio.Task | None = None
    if settings.AUTO_SYNC_ENABLED:
        periodic = asyncio.create_task(
            container.coordinator.run_periodic(
                container.sites.list_sites,
                settings.SYNC_INTERVAL,
                monitor=container.connectivity,
            )
        )

    yield

    if periodic is not None:
        periodic.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await periodic
    await container.sites.close()
    await engine.dispose()


app = FastAPI(
    title="learnsync",
    description="Offline-capable notes access for a learning platform",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Router includes ---
from learnsync.api.notes import router as notes_router  # noqa: E402
from learnsync.api.sites import router as sites_router  # noqa: E402
from learnsync.api.sync import router as sync_router  # noqa: E402

app.include_router(sites_router, prefix="/api")
app.include_router(notes_router, prefix="/api")
app.include_router(sync_router, prefix="/api")


@app.get("/api/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
