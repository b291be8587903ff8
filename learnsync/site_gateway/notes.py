"""Notes web service wrapper.

Provides a high-level async interface over the ``core_notes_*`` web
service functions.  All network calls are delegated to a
:class:`~learnsync.site_gateway.client.RemoteCaller`; its
:class:`~learnsync.site_gateway.client.TransportError` and
:class:`~learnsync.site_gateway.client.ServerError` propagate unchanged.
"""

from __future__ import annotations

import logging
from typing import Any

from learnsync.constants import (
    NOTE_FORMAT_HTML,
    WS_CREATE_NOTES,
    WS_GET_COURSE_NOTES,
    WS_VIEW_NOTES,
)
from learnsync.site_gateway.client import RemoteCaller, ServerError

logger = logging.getLogger(__name__)


def build_note(
    user_id: int,
    course_id: int,
    publish_state: str,
    text: str,
    text_format: int = NOTE_FORMAT_HTML,
) -> dict[str, Any]:
    """Build the wire representation of one note to create."""
    return {
        "userid": user_id,
        "publishstate": str(publish_state),
        "courseid": course_id,
        "text": text,
        "format": text_format,
    }


def raise_for_rejected(response: Any, function: str = WS_CREATE_NOTES) -> None:
    """Raise :class:`ServerError` if the first created note was refused.

    The create call can succeed as a whole while reporting ``noteid == -1``
    and an ``errormessage`` for an individual note.
    """
    if isinstance(response, list) and response:
        first = response[0]
        if isinstance(first, dict) and first.get("noteid") == -1:
            raise ServerError(
                first.get("errormessage") or "Note rejected by the server",
                function=function,
                details=first,
            )


class NotesWebService:
    """Wrapper for the notes web service functions.

    Args:
        client: The remote caller of the site the notes belong to.
    """

    def __init__(self, client: RemoteCaller) -> None:
        self._client = client

    async def create_notes(self, notes: list[dict]) -> list[dict]:
        """Create notes on the server.

        Returns:
            One result dict per note (``clientnoteid``, ``noteid``,
            ``errormessage``).  A resolved call does not mean every note
            was created; see :func:`raise_for_rejected`.
        """
        if not notes:
            return []
        result = await self._client.call(WS_CREATE_NOTES, {"notes": notes})
        return result if isinstance(result, list) else []

    async def get_course_notes(self, course_id: int, user_id: int | None = None) -> dict:
        """Fetch site, course and personal notes visible in a course.

        Returns:
            A dict with ``sitenotes``, ``coursenotes``, ``personalnotes`` and
            ``warnings`` keys (missing lists are left absent).
        """
        params: dict[str, Any] = {"courseid": course_id}
        if user_id is not None:
            params["userid"] = user_id
        result = await self._client.call(WS_GET_COURSE_NOTES, params)
        return result if isinstance(result, dict) else {}

    async def view_notes(self, course_id: int, user_id: int = 0) -> dict:
        """Log that the current user viewed the notes of a course."""
        return await self._client.call(WS_VIEW_NOTES, {"courseid": course_id, "userid": user_id})
