from __future__ import annotations

from learnsync.constants import WS_GET_COURSE_USER_PROFILES, WS_GET_USERS_BY_FIELD
from learnsync.site_gateway.client import RemoteCaller


class UsersWebService:
    """Wrapper for the user profile web service functions."""

    def __init__(self, client: RemoteCaller) -> None:
        self._client = client

    async def get_profile(self, user_id: int, course_id: int | None = None) -> dict | None:
        """Return the profile of *user_id*, or ``None`` if the site has none.

        Tries the course-scoped profile first (it carries course roles and is
        visible to teachers), then falls back to the site-wide lookup by id.
        """
        if course_id:
            profiles = await self._client.call(
                WS_GET_COURSE_USER_PROFILES,
                {"userlist": [{"userid": user_id, "courseid": course_id}]},
            )
            if isinstance(profiles, list) and profiles:
                return profiles[0]

        users = await self._client.call(
            WS_GET_USERS_BY_FIELD,
            {"field": "id", "values": [user_id]},
        )
        if isinstance(users, list) and users:
            return users[0]
        return None
