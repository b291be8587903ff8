"""Offline-capable notes repository.

Reads go through the per-site :class:`ResultCache`; notes still waiting in
the pending-operation queue are merged into every read, flagged
``offline=True`` and placed before the confirmed ones.

Writes try the server first:

- device known offline, or a :class:`TransportError` → queue the note,
  return :attr:`WriteStatus.STORED`
- :class:`ServerError` → raise; the note is never queued
- success → invalidate the course notes, return :attr:`WriteStatus.SENT`
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import UTC, datetime
from typing import Any

from bs4 import BeautifulSoup

from learnsync.constants import (
    ENTITY_NOTES,
    WS_CREATE_NOTES,
    WS_GET_COURSE_NOTES,
    WS_GET_COURSE_USER_PROFILES,
    PublishState,
    WriteStatus,
)
from learnsync.services.connectivity import ConnectivityMonitor
from learnsync.services.local_store import StorageError
from learnsync.services.pending_queue import PendingOperation, PendingOperationQueue
from learnsync.services.result_cache import ResultCache, make_cache_key
from learnsync.services.site_manager import SiteContext
from learnsync.site_gateway.client import RemoteCallError, ServerError, TransportError
from learnsync.site_gateway.notes import NotesWebService, build_note, raise_for_rejected
from learnsync.site_gateway.users import UsersWebService

logger = logging.getLogger(__name__)

# User id that can never receive a note; used to probe the create capability.
_PROBE_USER_ID = -1


class EnrichmentError(Exception):
    """Raised when auxiliary display data for a note cannot be resolved."""


def notes_cache_key(course_id: int) -> str:
    """Cache key of the notes read for *course_id*."""
    return make_cache_key(WS_GET_COURSE_NOTES, {"courseid": int(course_id)})


def has_offline_note(notes: list[dict] | None) -> bool:
    """Return True if at least one note is an unsent offline note."""
    return any(note.get("offline") for note in notes or [])


def placeholder_name(user_id: Any) -> str:
    return f"User with ID {user_id}"


def plain_text(html: str | None) -> str:
    """Strip markup from a note body for list previews."""
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)


class NotesService:
    """Notes repository composing cache, queue and connectivity.

    Holds no per-site state besides memoized course capability checks,
    which are forgotten on logout via :meth:`forget_site`.

    Args:
        cache: Result cache for remote reads.
        queue: Queue for notes that could not be sent.
        connectivity: Current online/offline state of the device.
    """

    def __init__(
        self,
        cache: ResultCache,
        queue: PendingOperationQueue,
        connectivity: ConnectivityMonitor,
    ) -> None:
        self._cache = cache
        self._queue = queue
        self._connectivity = connectivity
        self._capabilities: dict[tuple[str, str, int], bool] = {}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_note(
        self,
        site: SiteContext,
        user_id: int,
        course_id: int,
        publish_state: PublishState | str,
        text: str,
    ) -> WriteStatus:
        """Add a note, queueing it when the server cannot be reached.

        Returns:
            :attr:`WriteStatus.SENT` if the server confirmed the note,
            :attr:`WriteStatus.STORED` if it was queued for a later sync.

        Raises:
            ServerError: The server rejected the note (it is not queued).
            StorageError: The note could not be queued locally.
            ValueError: *publish_state* is not a known publish state.
        """
        state = PublishState(publish_state)

        if not self._connectivity.is_online:
            return await self._store_offline(site, user_id, course_id, state, text)

        try:
            await self.add_note_online(site, user_id, course_id, state, text)
        except TransportError as exc:
            logger.info("Could not send note for course %s, storing it: %s", course_id, exc.message)
            return await self._store_offline(site, user_id, course_id, state, text)
        return WriteStatus.SENT

    async def add_note_online(
        self,
        site: SiteContext,
        user_id: int,
        course_id: int,
        publish_state: PublishState | str,
        text: str,
    ) -> None:
        """Send a note to the server; fails if offline or rejected.

        Raises:
            TransportError: The server could not be reached.
            ServerError: The server rejected the note.
        """
        note = build_note(user_id, course_id, PublishState(publish_state), text)
        response = await self.add_notes_online(site, [note])
        raise_for_rejected(response)

        try:
            await self.invalidate_notes(site, course_id)
        except StorageError:
            logger.warning("Note sent but course %s notes could not be invalidated", course_id)

    async def add_notes_online(self, site: SiteContext, notes: list[dict]) -> list[dict]:
        """Send several notes in one call.

        A returned response does not mean every note was added; entries with
        ``noteid == -1`` carry the server's ``errormessage``.
        """
        if not notes:
            return []
        return await NotesWebService(site.client).create_notes(notes)

    async def _store_offline(
        self,
        site: SiteContext,
        user_id: int,
        course_id: int,
        publish_state: PublishState,
        text: str,
    ) -> WriteStatus:
        payload = build_note(user_id, course_id, publish_state, text)
        payload["created"] = int(datetime.now(UTC).timestamp())
        await self._queue.enqueue(site.id, ENTITY_NOTES, payload)
        return WriteStatus.STORED

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_notes(
        self,
        site: SiteContext,
        course_id: int,
        ignore_cache: bool = False,
        only_online: bool = False,
    ) -> dict[str, Any]:
        """Get the site, course and personal notes of a course.

        Args:
            ignore_cache: Fetch from the server even if cached; a forced
                refresh never falls back to stale data.
            only_online: Skip merging queued offline notes.

        If the notes were never fetched and the server cannot be reached,
        the queued notes of the course are returned on their own.

        Returns:
            A dict with ``sitenotes``, ``coursenotes`` and ``personalnotes``
            lists.  Offline notes lead their list, most recent first.
        """
        logger.debug("Get notes for course %s (site=%s)", course_id, site.id)
        ws = NotesWebService(site.client)

        offline_notes = [] if only_online else await self.get_offline_notes(site, course_id)
        try:
            raw = await self._cache.read(
                site.id,
                notes_cache_key(course_id),
                lambda: ws.get_course_notes(course_id),
                ignore_cache=ignore_cache,
                emergency_cache=not ignore_cache,
            )
        except TransportError:
            # Never fetched: show the queued notes alone.
            if ignore_cache or not offline_notes:
                raise
            logger.info("Notes of course %s unavailable offline, showing queued notes only", course_id)
            raw = {}

        notes = copy.deepcopy(raw) if isinstance(raw, dict) else {}
        for offline_note in offline_notes:
            field_name = f"{offline_note['publishstate']}notes"
            notes.setdefault(field_name, []).insert(0, offline_note)
        return notes

    async def get_offline_notes(self, site: SiteContext, course_id: int) -> list[dict]:
        """Return queued notes of *course_id*, oldest first, flagged offline."""
        offline = []
        for operation in await self._queue.list(site.id, ENTITY_NOTES):
            if int(operation.payload.get("courseid", 0)) != int(course_id):
                continue
            offline.append(
                {
                    **operation.payload,
                    "offline": True,
                    "operation_id": operation.id,
                }
            )
        return offline

    async def get_notes_user_data(
        self,
        site: SiteContext,
        notes: list[dict],
        course_id: int,
    ) -> list[dict]:
        """Attach author display data (name, avatar, text preview) to notes.

        Never fails because of missing profile data: an author that cannot be
        resolved gets a placeholder name derived from the user id.

        Returns:
            New note dicts; the input list is left untouched.
        """
        return list(
            await asyncio.gather(
                *(self._attach_display_metadata(site, note, course_id) for note in notes)
            )
        )

    async def _attach_display_metadata(self, site: SiteContext, note: dict, course_id: int) -> dict:
        enriched = dict(note)
        enriched["textpreview"] = plain_text(note.get("content") or note.get("text"))
        user_id = note.get("userid")
        try:
            profile = await self._get_profile(site, user_id, course_id)
            enriched["userfullname"] = profile["fullname"]
            enriched["userprofileimageurl"] = profile.get("profileimageurl")
        except (EnrichmentError, RemoteCallError, StorageError) as exc:
            logger.warning("No profile for user %s, using placeholder: %s", user_id, exc)
            enriched["userfullname"] = placeholder_name(user_id)
            enriched["userprofileimageurl"] = None
        return enriched

    async def _get_profile(self, site: SiteContext, user_id: Any, course_id: int) -> dict:
        if user_id is None:
            raise EnrichmentError("Note has no author")
        ws = UsersWebService(site.client)
        profile = await self._cache.read(
            site.id,
            make_cache_key(WS_GET_COURSE_USER_PROFILES, {"userid": user_id, "courseid": course_id}),
            lambda: ws.get_profile(user_id, course_id),
        )
        if not isinstance(profile, dict) or not profile.get("fullname"):
            raise EnrichmentError(f"Profile of user {user_id} not found")
        return profile

    async def invalidate_notes(self, site: SiteContext, course_id: int) -> None:
        """Mark the cached notes of *course_id* stale."""
        await self._cache.invalidate(site.id, notes_cache_key(course_id))

    async def log_view(self, site: SiteContext, course_id: int) -> None:
        """Record a notes view on the server; failures are only logged."""
        try:
            await NotesWebService(site.client).view_notes(course_id)
        except RemoteCallError as exc:
            logger.info("Could not log notes view for course %s: %s", course_id, exc.message)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def is_add_note_enabled(self, site: SiteContext) -> bool:
        """Quick site-level check; never calls the server."""
        return site.can_use_advanced_feature("enablenotes") and site.ws_available(WS_CREATE_NOTES)

    def is_view_notes_enabled(self, site: SiteContext) -> bool:
        """Quick site-level check; never calls the server."""
        return site.can_use_advanced_feature("enablenotes") and site.ws_available(WS_GET_COURSE_NOTES)

    async def is_add_note_enabled_for_course(self, site: SiteContext, course_id: int) -> bool:
        """Whether the user may add notes in *course_id*.

        The only way to know is to try: a create call for a user id that
        cannot exist is sent as a cached read, so a user without the
        capability gets an exception while a permitted one gets a per-note
        error and nothing is saved.  Being a cached read, the answer is
        also available offline.  Without a cached answer an unreachable
        server yields ``False``, which is not memoized.
        """
        memo = (site.id, "add", int(course_id))
        if memo in self._capabilities:
            return self._capabilities[memo]

        probe = {"notes": [build_note(_PROBE_USER_ID, course_id, PublishState.PERSONAL, "")]}
        ws = NotesWebService(site.client)
        try:
            await self._cache.read(
                site.id,
                make_cache_key(WS_CREATE_NOTES, probe),
                lambda: ws.create_notes(probe["notes"]),
            )
            enabled = True
        except TransportError:
            return False
        except ServerError:
            enabled = False

        self._capabilities[memo] = enabled
        return enabled

    async def is_view_notes_enabled_for_course(self, site: SiteContext, course_id: int) -> bool:
        """Whether the user may read the notes of *course_id*."""
        memo = (site.id, "view", int(course_id))
        if memo in self._capabilities:
            return self._capabilities[memo]

        try:
            await self.get_notes(site, course_id, only_online=True)
            enabled = True
        except TransportError:
            return False
        except ServerError:
            enabled = False

        self._capabilities[memo] = enabled
        return enabled

    def forget_site(self, site_id: str) -> None:
        """Drop memoized capability answers of *site_id* (called on logout)."""
        for memo in [m for m in self._capabilities if m[0] == site_id]:
            del self._capabilities[memo]


class NotesSyncHandler:
    """Replays queued notes for the :class:`SyncCoordinator`."""

    entity_kind = ENTITY_NOTES

    async def replay(self, site: SiteContext, operation: PendingOperation) -> list[str]:
        note = {k: v for k, v in operation.payload.items() if k != "created"}
        response = await NotesWebService(site.client).create_notes([note])
        raise_for_rejected(response)
        return [notes_cache_key(note["courseid"])]

    def describe(self, operation: PendingOperation) -> str:
        return f"Note for course {operation.payload.get('courseid')}"
