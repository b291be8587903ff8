"""Course notes endpoints.

- ``GET  /sites/{site_id}/courses/{course_id}/notes``             -- Notes list (cached, offline merged)
- ``POST /sites/{site_id}/courses/{course_id}/notes``             -- Add a note (queued when offline)
- ``POST /sites/{site_id}/courses/{course_id}/notes/invalidate``  -- Mark cached notes stale
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from learnsync.api.deps import get_container, resolve_site
from learnsync.constants import PublishState, WriteStatus
from learnsync.services.container import ServiceContainer
from learnsync.services.local_store import StorageError
from learnsync.services.notes_service import has_offline_note
from learnsync.site_gateway.client import ServerError, TransportError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites/{site_id}/courses/{course_id}/notes", tags=["notes"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class NotesResponse(BaseModel):
    notes: list[dict[str, Any]]
    has_offline: bool
    warnings: list[str] = []


class AddNoteRequest(BaseModel):
    user_id: int
    publish_state: PublishState
    text: str


class AddNoteResponse(BaseModel):
    status: WriteStatus


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=NotesResponse)
async def list_notes(
    site_id: str,
    course_id: int,
    type: PublishState | None = Query(default=None),  # noqa: A002, B008
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> NotesResponse:
    """Return the notes of a course, optionally of a single publish state.

    With ``refresh`` the cached notes are invalidated and pending notes
    synced first; sync problems are reported as warnings, never as errors.
    """
    site = resolve_site(container, site_id)
    warnings: list[str] = []

    try:
        if refresh:
            await container.notes.invalidate_notes(site, course_id)
            result = await container.coordinator.sync(site)
            warnings.extend(result.warnings)

        grouped = await container.notes.get_notes(site, course_id)
    except TransportError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
    except ServerError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc

    if type is not None:
        notes = grouped.get(f"{type}notes", [])
    else:
        notes = [note for state in PublishState for note in grouped.get(f"{state}notes", [])]

    notes = await container.notes.get_notes_user_data(site, notes, course_id)
    return NotesResponse(notes=notes, has_offline=has_offline_note(notes), warnings=warnings)


@router.post("", response_model=AddNoteResponse, status_code=status.HTTP_201_CREATED)
async def add_note(
    site_id: str,
    course_id: int,
    body: AddNoteRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> AddNoteResponse:
    site = resolve_site(container, site_id)
    try:
        outcome = await container.notes.add_note(
            site, body.user_id, course_id, body.publish_state, body.text
        )
    except ServerError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
    return AddNoteResponse(status=outcome)


@router.post("/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_notes(
    site_id: str,
    course_id: int,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    site = resolve_site(container, site_id)
    try:
        await container.notes.invalidate_notes(site, course_id)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
